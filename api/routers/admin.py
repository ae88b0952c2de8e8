import logging
import os
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, File, Header, HTTPException, UploadFile
from pydantic import BaseModel

import downloader
from database import delete_track, get_config, get_track, set_config
from routers.downloads import get_download_manager
from worker import DownloadManager

logger = logging.getLogger(__name__)
router = APIRouter()

ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "")
MAX_CONCURRENT_LIMIT = 10


def require_admin(x_admin_token: str = Header(None)):
    if not ADMIN_TOKEN:
        raise HTTPException(500, "ADMIN_TOKEN not configured")
    if x_admin_token != ADMIN_TOKEN:
        raise HTTPException(403, "Invalid admin token")


class ConfigUpdate(BaseModel):
    download_max_concurrent: int | None = None


@router.get("/admin/config")
def get_admin_config(auth=Depends(require_admin)):
    return {"download_max_concurrent": int(get_config("download_max_concurrent"))}


@router.post("/admin/config")
async def update_admin_config(
    update: ConfigUpdate,
    auth=Depends(require_admin),
    manager: DownloadManager = Depends(get_download_manager),
):
    if update.download_max_concurrent is not None:
        if not (1 <= update.download_max_concurrent <= MAX_CONCURRENT_LIMIT):
            raise HTTPException(400, f"download_max_concurrent must be 1-{MAX_CONCURRENT_LIMIT}")
        set_config("download_max_concurrent", str(update.download_max_concurrent))
        logger.info(f"Concurrent downloads set to: {update.download_max_concurrent}")
        # A raised limit should start waiting jobs right away.
        manager.drain()

    return {"ok": True}


@router.get("/admin/youtube-cookies/status")
def youtube_cookies_status(auth=Depends(require_admin)):
    """Check whether a YouTube cookies file is present."""
    path = downloader.COOKIES_PATH
    exists = os.path.exists(path)
    updated_at = None
    if exists:
        updated_at = datetime.fromtimestamp(os.path.getmtime(path), timezone.utc).isoformat()
    return {"present": exists, "updated_at": updated_at}


@router.post("/admin/youtube-cookies")
async def upload_youtube_cookies(file: UploadFile = File(...), auth=Depends(require_admin)):
    """Upload a YouTube cookies.txt file (Netscape format); yt-dlp picks it up on the next run."""
    path = downloader.COOKIES_PATH
    os.makedirs(os.path.dirname(path), exist_ok=True)
    content = await file.read()
    with open(path, "wb") as f:
        f.write(content)
    logger.info("YouTube cookies updated")
    return {"ok": True}


@router.delete("/admin/track/{track_id}")
def remove_track(track_id: str, delete_file: bool = False, auth=Depends(require_admin)):
    """Remove a track from the catalog, optionally deleting its downloaded file."""
    track = get_track(track_id)
    if not track:
        raise HTTPException(404, "Track not found")

    deleted_file = False
    if delete_file and track.file_path:
        # Stored paths are relative; only the basename is trusted.
        full_path = os.path.join(downloader.DOWNLOAD_DIR, os.path.basename(track.file_path))
        if os.path.exists(full_path):
            os.unlink(full_path)
            deleted_file = True
            logger.info(f"Deleted file: {full_path}")

    delete_track(track_id)
    logger.info(f"Deleted track: {track_id}")
    return {"ok": True, "deleted_file": deleted_file}
