import logging
import os
from dataclasses import asdict, dataclass

import requests

from errors import ConfigError, SearchError

logger = logging.getLogger(__name__)

YOUTUBE_SEARCH_URL = "https://www.googleapis.com/youtube/v3/search"
YOUTUBE_WATCH_URL = "https://www.youtube.com/watch?v="

YOUTUBE_API_KEY = os.environ.get("YOUTUBE_API_KEY", "")
YOUTUBE_MAX_RESULTS = int(os.environ.get("YOUTUBE_MAX_RESULTS", "3"))
YOUTUBE_TIMEOUT_S = float(os.environ.get("YOUTUBE_TIMEOUT_S", "15"))

SEARCH_ORDERS = ("date", "rating", "relevance", "title", "viewCount")
VIDEO_DURATIONS = ("any", "short", "medium", "long")


@dataclass
class SearchFilters:
    max_results: int | None = None
    order: str | None = None
    video_duration: str | None = None
    published_after: str | None = None
    channel_id: str | None = None

    def describe(self) -> str:
        extras = [f"{k}={v}" for k, v in asdict(self).items() if v]
        return f" (options: {', '.join(extras)})" if extras else ""


@dataclass
class SearchResult:
    video_id: str
    title: str
    channel_title: str
    published_at: str | None
    channel_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "videoId": self.video_id,
            "title": self.title,
            "channelTitle": self.channel_title,
            "publishedAt": self.published_at,
        }


def watch_url(video_id: str) -> str:
    return f"{YOUTUBE_WATCH_URL}{video_id}"


def build_track_query(track) -> str:
    """Search string for a track: first artist followed by the track name."""
    if track is None:
        return ""
    return f"{track.first_artist} {track.name or ''}".strip()


def _clamp(value: int, lo: int, hi: int) -> int:
    return max(lo, min(value, hi))


def _require_api_key() -> str:
    if not YOUTUBE_API_KEY:
        raise ConfigError("YouTube API key missing. Set YOUTUBE_API_KEY.")
    return YOUTUBE_API_KEY


def search_videos(query: str, filters: SearchFilters | None = None) -> list[SearchResult]:
    """Query the YouTube Data API for videos. Raises SearchError or ConfigError."""
    query = (query or "").strip()
    if not query:
        raise SearchError("YouTube query is required")
    filters = filters or SearchFilters()
    params = {
        "key": _require_api_key(),
        "part": "snippet",
        "type": "video",
        "q": query,
        "maxResults": _clamp(filters.max_results or YOUTUBE_MAX_RESULTS or 3, 1, 10),
    }
    if filters.order in SEARCH_ORDERS:
        params["order"] = filters.order
    if filters.video_duration in VIDEO_DURATIONS:
        params["videoDuration"] = filters.video_duration
    if filters.published_after:
        params["publishedAfter"] = filters.published_after
    if filters.channel_id:
        params["channelId"] = filters.channel_id

    try:
        resp = requests.get(YOUTUBE_SEARCH_URL, params=params, timeout=YOUTUBE_TIMEOUT_S)
    except requests.RequestException as e:
        raise SearchError(f"YouTube API error: {e}") from e

    if resp.status_code != 200:
        try:
            message = resp.json()["error"]["message"]
        except (ValueError, KeyError, TypeError):
            message = resp.reason or f"HTTP {resp.status_code}"
        raise SearchError(f"YouTube API error: {message}")

    items = resp.json().get("items") or []
    results = []
    for item in items:
        snippet = item.get("snippet") or {}
        raw_id = item.get("id")
        video_id = raw_id.get("videoId") if isinstance(raw_id, dict) else raw_id
        if not video_id:
            continue
        results.append(
            SearchResult(
                video_id=video_id,
                title=snippet.get("title", ""),
                channel_title=snippet.get("channelTitle", ""),
                published_at=snippet.get("publishedAt"),
                channel_id=snippet.get("channelId"),
            )
        )
    logger.debug(f"YouTube search {query!r} returned {len(results)} result(s)")
    return results


def search_payload(query: str, filters: SearchFilters | None = None) -> dict:
    """search_videos, with failures reported in the payload instead of raised."""
    try:
        results = search_videos(query, filters)
    except (SearchError, ConfigError) as e:
        return {"results": [], "error": str(e)}
    return {"results": [r.to_dict() for r in results], "error": None}
