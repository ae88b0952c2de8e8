import asyncio
import json
import logging
import os

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from errors import NotFoundError
from worker import DownloadManager

logger = logging.getLogger(__name__)
router = APIRouter()

SSE_KEEPALIVE_S = float(os.environ.get("SSE_KEEPALIVE_S", "30"))
# Lines buffered per stream client before new lines are dropped for it.
SSE_QUEUE_SIZE = 1000


def get_download_manager(request: Request) -> DownloadManager:
    return request.app.state.download_manager


def _sse(data: dict) -> str:
    return f"data: {json.dumps(data)}\n\n"


@router.get("/api/downloads/jobs")
async def list_jobs(manager: DownloadManager = Depends(get_download_manager)):
    """Queue length, active count, limit and tracked jobs (newest first)."""
    return manager.get_job_stats()


@router.get("/api/downloads/jobs/{job_id}")
async def get_job(job_id: str, manager: DownloadManager = Depends(get_download_manager)):
    try:
        return manager.get_job(job_id).to_dict()
    except NotFoundError as e:
        raise HTTPException(404, str(e))


@router.get("/api/downloads/logs")
async def recent_logs(manager: DownloadManager = Depends(get_download_manager)):
    return {"logs": [entry.to_dict() for entry in manager.recent_logs()]}


@router.get("/api/downloads/logs/stream")
async def stream_logs(request: Request, manager: DownloadManager = Depends(get_download_manager)):
    """Server-sent events: the buffered backlog first, then live lines, with keep-alives while idle."""

    async def events():
        queue: asyncio.Queue = asyncio.Queue(maxsize=SSE_QUEUE_SIZE)

        def push(entry):
            try:
                queue.put_nowait(entry)
            except asyncio.QueueFull:
                logger.debug(f"Log stream client is behind, dropping line for {entry.job_id}")

        # Snapshot and subscribe in the same step so no line is missed or repeated.
        backlog = manager.recent_logs()
        handle = manager.subscribe(push)
        try:
            for entry in backlog:
                yield _sse(entry.to_dict())
            while not await request.is_disconnected():
                try:
                    entry = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_S)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield _sse(entry.to_dict())
        finally:
            manager.unsubscribe(handle)

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
