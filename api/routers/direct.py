import logging
import os
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from database import find_track_by_video_id, upsert_track
from downloader import VideoMetadata, build_track_from_metadata, fetch_video_info, normalize_video_metadata
from errors import ProcessError
from models import TrackSource
from routers.downloads import get_download_manager
from worker import DownloadManager, queue_track_download

logger = logging.getLogger(__name__)
router = APIRouter()

YOUTUBE_HOSTS = {"youtube.com", "www.youtube.com", "youtu.be", "m.youtube.com", "music.youtube.com"}
YOUTUBE_DIRECT_MAX_ITEMS = int(os.environ.get("YOUTUBE_DIRECT_MAX_ITEMS", "50"))


class DirectDownloadRequest(BaseModel):
    url: str


def _is_youtube_url(url: str) -> bool:
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and (parsed.hostname or "").lower() in YOUTUBE_HOSTS


def _is_playlist(info: dict) -> bool:
    return info.get("_type") == "playlist" and isinstance(info.get("entries"), list)


def _ensure_track_and_enqueue(manager: DownloadManager, metadata: VideoMetadata) -> dict:
    existing = find_track_by_video_id(metadata.video_id)
    if existing and existing.source == TrackSource.CATALOG:
        # Catalog metadata wins; only the download is scheduled.
        track = existing
    else:
        track = upsert_track(build_track_from_metadata(metadata, existing.id if existing else None))
    job = queue_track_download(manager, track, video_id=metadata.video_id)
    return {
        "job_id": job.id,
        "track_id": track.id,
        "video_id": metadata.video_id,
        "reused_existing": existing is not None,
    }


@router.post("/api/youtube/direct-download")
async def direct_download(req: DirectDownloadRequest, manager: DownloadManager = Depends(get_download_manager)):
    """Download a YouTube video or playlist without a catalog match."""
    if not _is_youtube_url(req.url):
        raise HTTPException(400, "A valid YouTube video or playlist URL is required.")

    try:
        info = await fetch_video_info(req.url.strip(), flat_playlist=True)
    except ProcessError as e:
        raise HTTPException(400, f"Unable to inspect YouTube URL: {e}")

    if not _is_playlist(info):
        metadata = normalize_video_metadata(info, url=info.get("webpage_url"))
        if not metadata.video_id:
            raise HTTPException(400, "Unable to determine the YouTube video id for the provided URL.")
        job = _ensure_track_and_enqueue(manager, metadata)
        logger.info(f"Direct download scheduled: video {metadata.video_id} as {job['job_id']}")
        return {
            "message": "Video download scheduled.",
            "type": "video",
            "video": {
                "id": metadata.video_id,
                "title": metadata.title,
                "channel": metadata.channel_name,
                "duration_ms": metadata.duration_ms,
            },
            "jobs": [job],
        }

    playlist_title = info.get("title") or "YouTube Playlist"
    entries = info["entries"]
    limited = entries[: max(1, YOUTUBE_DIRECT_MAX_ITEMS)]
    jobs, failures = [], []
    for entry in limited:
        entry = entry or {}
        metadata = normalize_video_metadata(
            entry,
            playlist_title=playlist_title,
            url=entry.get("url"),
            video_id=entry.get("id"),
            title=entry.get("title"),
            channel_name=entry.get("channel"),
        )
        if not metadata.video_id:
            failures.append({"video_id": None, "title": entry.get("title"), "error": "Entry did not include a video id."})
            continue
        jobs.append(_ensure_track_and_enqueue(manager, metadata))

    logger.info(f"Direct playlist {info.get('id')}: {len(jobs)} scheduled, {len(failures)} failed")
    return {
        "message": "Playlist download scheduled.",
        "type": "playlist",
        "playlist": {
            "id": info.get("id"),
            "title": playlist_title,
            "total_entries": len(entries),
            "processed_entries": len(limited),
            "skipped_entries": max(0, len(entries) - len(limited)),
        },
        "jobs": jobs,
        "failures": failures,
    }
