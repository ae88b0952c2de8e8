import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

import downloader
import worker
from database import init_db
from routers import admin, direct, downloads, tracks
from worker import DownloadManager, configured_max_concurrent, requeue_interrupted_downloads

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting track downloader API")
    init_db()
    os.makedirs(downloader.DOWNLOAD_DIR, exist_ok=True)
    manager = DownloadManager(
        max_concurrent=configured_max_concurrent,
        log_file=worker.DOWNLOAD_LOG_FILE,
    )
    app.state.download_manager = manager
    requeue_interrupted_downloads(manager)
    yield
    logger.info("Shutting down track downloader API")
    await manager.close()


app = FastAPI(title="Track Downloader API", lifespan=lifespan)

_hostname = os.environ.get("SERVER_HOSTNAME", "")
_origins = [f"https://{_hostname}"] if _hostname else ["http://localhost", "http://localhost:5173"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "X-Admin-Token"],
)

app.include_router(tracks.router)
app.include_router(downloads.router)
app.include_router(direct.router)
app.include_router(admin.router)

app.mount(
    f"/{downloader.DOWNLOADS_URL_PREFIX}",
    StaticFiles(directory=downloader.DOWNLOAD_DIR, check_dir=False),
    name="downloads",
)


@app.get("/health")
@app.get("/api/health")
def health():
    return {"ok": True}
