import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from database import get_track, import_tracks, list_tracks, set_download_status, upsert_track
from errors import ConfigError, SearchError
from models import DownloadStatus
from routers.downloads import get_download_manager
from worker import DownloadManager, queue_track_download
from youtube import build_track_query, search_videos

logger = logging.getLogger(__name__)
router = APIRouter()


class TrackImport(BaseModel):
    id: str | None = None
    spotify_id: str | None = None
    name: str
    artists: list[str] = []
    album: str | None = None
    duration_ms: int | None = None
    release_date: str | None = None
    explicit: bool = False
    youtube_video_id: str | None = None


class ImportRequest(BaseModel):
    tracks: list[TrackImport]


class TrackUpdate(BaseModel):
    name: str | None = None
    artists: list[str] | None = None
    album: str | None = None
    duration_ms: int | None = None
    release_date: str | None = None
    explicit: bool | None = None
    youtube_video_id: str | None = None


class DownloadRequest(BaseModel):
    video_id: str | None = None
    query: str | None = None


class BulkDownloadRequest(BaseModel):
    track_ids: list[str]


@router.get("/api/tracks")
def get_tracks(status: DownloadStatus | None = None):
    tracks = list_tracks(status.value if status else None)
    return {"items": [t.to_dict() for t in tracks], "total": len(tracks)}


@router.get("/api/tracks/{track_id}")
def get_track_details(track_id: str):
    track = get_track(track_id)
    if not track:
        raise HTTPException(404, "Track not found")
    return track.to_dict()


@router.patch("/api/tracks/{track_id}")
def update_track(track_id: str, req: TrackUpdate):
    if not get_track(track_id):
        raise HTTPException(404, "Track not found")
    patch = req.model_dump(exclude_unset=True)
    if not patch:
        raise HTTPException(400, "No fields to update")
    if "name" in patch and not patch["name"]:
        raise HTTPException(400, "Track name cannot be empty")
    track = upsert_track({**patch, "id": track_id})
    logger.info(f"Updated track {track_id}: {sorted(patch)}")
    return track.to_dict()


@router.post("/api/tracks/import")
def import_catalog_tracks(req: ImportRequest):
    if not req.tracks:
        raise HTTPException(400, "Tracks array is required")
    payload = []
    for t in req.tracks:
        track_id = t.id or t.spotify_id
        if not track_id:
            raise HTTPException(400, f"Track {t.name!r} needs an id or spotify_id")
        data = t.model_dump(exclude={"spotify_id"}, exclude_none=True)
        data["id"] = track_id
        payload.append(data)
    summary = import_tracks(payload)
    logger.info(f"Imported tracks: {summary}")
    return {"message": "Import complete", "summary": summary}


async def _enqueue_download(
    manager: DownloadManager,
    track_id: str,
    video_id: str | None = None,
    query: str | None = None,
):
    track = get_track(track_id)
    if not track:
        raise HTTPException(404, "Track not found")

    if not video_id and query:
        # An explicit query bypasses the resolver: take its top hit.
        try:
            results = await asyncio.to_thread(search_videos, query.strip() or build_track_query(track))
        except (SearchError, ConfigError) as e:
            raise HTTPException(400, str(e))
        if not results:
            set_download_status(track.id, DownloadStatus.FAILED, error="No YouTube results")
            raise HTTPException(400, "No YouTube results found")
        video_id = results[0].video_id

    job = queue_track_download(manager, track, video_id=video_id)
    return {"message": "Download started", "video_id": video_id, "job_id": job.id}


@router.post("/api/tracks/{track_id}/download")
async def download_track(
    track_id: str,
    req: DownloadRequest | None = None,
    manager: DownloadManager = Depends(get_download_manager),
):
    req = req or DownloadRequest()
    return await _enqueue_download(manager, track_id, req.video_id, req.query)


@router.post("/api/tracks/downloads/bulk")
async def download_tracks(req: BulkDownloadRequest, manager: DownloadManager = Depends(get_download_manager)):
    if not req.track_ids:
        raise HTTPException(400, "track_ids array is required")
    results = []
    for track_id in req.track_ids:
        try:
            queued = await _enqueue_download(manager, track_id)
        except HTTPException as e:
            results.append({"id": track_id, "status": "error", "error": e.detail})
            continue
        results.append({"id": track_id, "status": "ok", "video_id": queued["video_id"], "job_id": queued["job_id"]})
    return {"results": results}
