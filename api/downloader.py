import logging
import os
import re
from dataclasses import dataclass, field
from typing import Callable

from database import get_track, set_download_status, upsert_track
from errors import NotFoundError, ProcessError, ResolutionError
from models import DownloadStatus, Job, Track, TrackSource
from process import run_command, run_json
from resolver import resolve_youtube_track
from youtube import watch_url

logger = logging.getLogger(__name__)

DOWNLOAD_DIR = os.environ.get("DOWNLOAD_DIR", "/media/downloads")
DOWNLOAD_AUDIO_FORMAT = os.environ.get("DOWNLOAD_AUDIO_FORMAT", "m4a")
YTDLP_PATH = os.environ.get("YTDLP_PATH", "yt-dlp")
YTDLP_TIMEOUT_S = float(os.environ.get("YTDLP_TIMEOUT_S", "900"))
COOKIES_PATH = os.environ.get("COOKIES_PATH", "/app/cookies/youtube.txt")

# Prefix of file paths stored on tracks; the static server maps it to DOWNLOAD_DIR.
DOWNLOADS_URL_PREFIX = "downloads"
DEFAULT_SINGLE_ALBUM = "YouTube Single"
UNKNOWN_TITLE = "Unknown Track from YouTube"
UNKNOWN_ARTIST = "Unknown Artist"

MAX_FILENAME_LENGTH = 80
FILENAME_PLACEHOLDER = "track"
_INVALID_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9\-_.]")
_REPEATED_SEPARATORS = re.compile(r"[\-_.]{2,}")
_SEPARATORS = "-_."


def sanitize_filename(value: str) -> str:
    """Reduce a string to [A-Za-z0-9-_.], at most 80 characters, never empty."""
    name = _INVALID_FILENAME_CHARS.sub("_", value or "")
    name = _REPEATED_SEPARATORS.sub("_", name)
    name = name.strip(_SEPARATORS)[:MAX_FILENAME_LENGTH].rstrip(_SEPARATORS)
    return name or FILENAME_PLACEHOLDER


def _timeout() -> float | None:
    return YTDLP_TIMEOUT_S if YTDLP_TIMEOUT_S > 0 else None


def _cookie_args() -> list[str]:
    if COOKIES_PATH and os.path.exists(COOKIES_PATH):
        return ["--cookies", COOKIES_PATH]
    return []


@dataclass
class VideoMetadata:
    video_id: str | None
    url: str | None
    title: str
    channel_name: str
    album_name: str
    duration_ms: int | None = None
    upload_date: str | None = None
    playlist_title: str | None = None
    description: str | None = None
    tags: list[str] = field(default_factory=list)
    channel_id: str | None = None


def normalize_upload_date(value) -> str | None:
    """yt-dlp dates come as YYYYMMDD."""
    if not isinstance(value, str) or len(value) != 8 or not value.isdigit():
        return None
    return f"{value[:4]}-{value[4:6]}-{value[6:]}"


async def fetch_video_info(url: str, no_playlist: bool = False, flat_playlist: bool = False) -> dict:
    if not url:
        raise ValueError("YouTube URL is required")
    args = ["--dump-single-json", "--skip-download", "--no-warnings", *_cookie_args()]
    if no_playlist:
        args.append("--no-playlist")
    if flat_playlist:
        args.append("--flat-playlist")
    args.append(url)
    return await run_json(YTDLP_PATH, args, timeout=_timeout())


def normalize_video_metadata(info: dict | None, **context) -> VideoMetadata:
    """Flatten yt-dlp info JSON; context supplies fallbacks for flat playlist entries."""
    info = info or {}
    video_id = info.get("id") or info.get("video_id") or context.get("video_id")
    url = (
        info.get("webpage_url")
        or context.get("url")
        or info.get("url")
        or (watch_url(video_id) if video_id else None)
    )
    playlist_title = context.get("playlist_title") or info.get("playlist_title") or info.get("playlist")
    duration = info.get("duration")
    return VideoMetadata(
        video_id=video_id,
        url=url,
        title=info.get("title") or info.get("fulltitle") or context.get("title") or UNKNOWN_TITLE,
        channel_name=info.get("channel") or info.get("uploader") or context.get("channel_name") or UNKNOWN_ARTIST,
        album_name=playlist_title or DEFAULT_SINGLE_ALBUM,
        duration_ms=round(duration * 1000) if duration else info.get("duration_ms"),
        upload_date=normalize_upload_date(info.get("upload_date") or info.get("release_date")),
        playlist_title=playlist_title,
        description=info.get("description") or None,
        tags=info.get("tags") if isinstance(info.get("tags"), list) else [],
        channel_id=info.get("channel_id") or info.get("uploader_id"),
    )


def build_track_from_metadata(metadata: VideoMetadata, track_id: str | None = None) -> dict:
    """Track payload for a video downloaded directly from YouTube."""
    return {
        "id": track_id or f"youtube:{metadata.video_id}",
        "name": metadata.title,
        "artists": [metadata.channel_name],
        "album": metadata.album_name,
        "duration_ms": metadata.duration_ms,
        "release_date": metadata.upload_date,
        "source": TrackSource.DIRECT_MEDIA,
        "youtube_video_id": metadata.video_id,
        "youtube_url": metadata.url,
        "youtube_channel": metadata.channel_name,
        "youtube_channel_id": metadata.channel_id,
        "youtube_description": metadata.description,
        "youtube_tags": metadata.tags or None,
        "playlist_name": metadata.playlist_title,
    }


def merge_video_metadata(track: Track, video_id: str, url: str, metadata: VideoMetadata | None) -> dict:
    """
    Patch for a track after probing its video. YouTube fields are always refreshed;
    title, artists, album, duration and release date are only taken from YouTube
    when the track itself came from YouTube, since catalog metadata is authoritative.
    """
    patch = {
        "id": track.id,
        "youtube_video_id": video_id,
        "youtube_url": url,
        "youtube_channel": (metadata and metadata.channel_name) or track.youtube_channel,
        "youtube_channel_id": (metadata and metadata.channel_id) or track.youtube_channel_id,
        "youtube_description": (metadata and metadata.description) or track.youtube_description,
        "youtube_tags": (metadata and metadata.tags) or track.youtube_tags,
        "playlist_name": (metadata and metadata.playlist_title) or track.playlist_name,
    }
    if metadata is not None and track.source == TrackSource.DIRECT_MEDIA:
        patch["name"] = metadata.title or track.name or UNKNOWN_TITLE
        patch["artists"] = [metadata.channel_name] if metadata.channel_name else track.artists or [UNKNOWN_ARTIST]
        patch["album"] = metadata.playlist_title or track.album or DEFAULT_SINGLE_ALBUM
        patch["duration_ms"] = metadata.duration_ms or track.duration_ms
        patch["release_date"] = metadata.upload_date or track.release_date
    return patch


def output_filename(track: Track) -> str:
    stem = sanitize_filename(f"{track.first_artist or 'unknown'}_{track.name or track.id}")
    return f"{stem}_{sanitize_filename(track.id)}.{DOWNLOAD_AUDIO_FORMAT}"


async def execute_job(job: Job, log: Callable[[str], None]) -> None:
    """Resolve, look up and download the audio for one job, keeping the track's status current."""
    track = get_track(job.track_id)
    if track is None:
        set_download_status(job.track_id, DownloadStatus.FAILED, error="Track not found")
        raise NotFoundError("Track not found")

    video_id = job.video_id or track.youtube_video_id
    if not video_id:
        log("Resolving YouTube video via AI workflow")
        result = await resolve_youtube_track(track, on_log=lambda message: log(f"[ai] {message}"))
        if not result.succeeded:
            message = result.error or result.reason or "Unable to find matching YouTube video"
            set_download_status(track.id, DownloadStatus.FAILED, error=message)
            raise ResolutionError(message, reason=result.reason)
        video_id = result.video_id
        attempts = f" after {result.attempts} attempt(s)" if result.attempts else ""
        reason = f" ({result.reason})" if result.reason else ""
        log(f"Matched YouTube video {video_id}{attempts}{reason}")
    else:
        log(f"Using provided YouTube video id {video_id}")
    job.video_id = video_id

    set_download_status(track.id, DownloadStatus.IN_PROGRESS)
    # Cancellation is left alone so the track stays in progress and is re-queued on restart.
    try:
        job.file_path = await _download(track, video_id, log)
    except Exception as e:
        set_download_status(track.id, DownloadStatus.FAILED, error=str(e) or e.__class__.__name__)
        raise


async def _download(track: Track, video_id: str, log: Callable[[str], None]) -> str:
    url = track.youtube_url if track.youtube_video_id == video_id and track.youtube_url else watch_url(video_id)
    metadata = None
    try:
        metadata = normalize_video_metadata(await fetch_video_info(url, no_playlist=True))
    except ProcessError as e:
        log(f"[metadata] Failed to fetch metadata: {e}")
    track = upsert_track(merge_video_metadata(track, video_id, url, metadata))

    os.makedirs(DOWNLOAD_DIR, exist_ok=True)
    filename = output_filename(track)
    args = [
        url,
        "-x",
        "--audio-format",
        DOWNLOAD_AUDIO_FORMAT,
        "--newline",
        "-o",
        os.path.join(DOWNLOAD_DIR, filename),
        *_cookie_args(),
    ]

    logger.info(f"Downloading {url} for track {track.id} -> {filename}")
    await run_command(YTDLP_PATH, args, on_line=lambda line: log(f"[yt-dlp] {line}"), timeout=_timeout())

    relative_path = f"{DOWNLOADS_URL_PREFIX}/{filename}"
    set_download_status(track.id, DownloadStatus.DOWNLOADED, file_path=relative_path)
    return relative_path
