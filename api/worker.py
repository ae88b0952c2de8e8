import asyncio
import itertools
import logging
import os
import re
from collections import deque
from datetime import datetime, timezone
from typing import Awaitable, Callable, TextIO

import downloader
from alerts import send_alert
from database import get_config, set_download_status, tracks_with_status
from errors import NotFoundError
from models import DownloadStatus, Job, JobStatus, LogEntry, Track

logger = logging.getLogger(__name__)

DOWNLOAD_LOG_FILE = os.environ.get("DOWNLOAD_LOG_FILE", "/data/logs/download-jobs.log")
MAX_TRACKED_JOBS = 200
MAX_RECENT_LOGS = 300

_LINE_SPLIT = re.compile(r"\r\n|\r|\n")

Executor = Callable[[Job, Callable[[str], None]], Awaitable[None]]
LogSubscriber = Callable[[LogEntry], None]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def configured_max_concurrent() -> int:
    return int(get_config("download_max_concurrent"))


def _is_bot_check(error: str) -> bool:
    lowered = error.lower()
    return "not a bot" in lowered or "sign in to confirm" in lowered


class DownloadManager:
    """
    Queue of download jobs, run at most max_concurrent at a time.

    All state lives on the event loop thread and is only changed between awaits,
    so draining, starting and finishing jobs need no locks. Job output is split
    into LogEntry lines that go to the log file, a ring buffer of recent lines,
    and any live subscribers.
    """

    def __init__(
        self,
        max_concurrent: int | Callable[[], int] = 1,
        execute: Executor | None = None,
        log_file: str | None = None,
        max_tracked_jobs: int = MAX_TRACKED_JOBS,
        max_recent_logs: int = MAX_RECENT_LOGS,
    ):
        self._limit = max_concurrent
        self._last_limit = 1
        self._execute = execute or downloader.execute_job
        self.max_tracked_jobs = max_tracked_jobs

        self._pending: deque[Job] = deque()
        self._active = 0
        self._ids = itertools.count(1)
        # Insertion-ordered, doubles as the job history.
        self._jobs: dict[str, Job] = {}
        self._tasks: set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

        self._recent_logs: deque[LogEntry] = deque(maxlen=max_recent_logs)
        self._subscribers: dict[int, LogSubscriber] = {}
        self._handles = itertools.count(1)
        self.log_file = log_file
        self._log_stream: TextIO | None = self._open_log(log_file)

    # -- introspection ---------------------------------------------------------

    @property
    def max_concurrent(self) -> int:
        if not callable(self._limit):
            return max(1, int(self._limit))
        try:
            self._last_limit = max(1, int(self._limit()))
        except Exception as e:
            logger.error(f"Could not read concurrency limit, keeping {self._last_limit}: {e}")
        return self._last_limit

    @property
    def queue_length(self) -> int:
        return len(self._pending)

    @property
    def active_jobs(self) -> int:
        return self._active

    def get_job(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def jobs(self) -> list[Job]:
        """Tracked jobs, most recently enqueued first."""
        return list(reversed(self._jobs.values()))

    def get_job_stats(self) -> dict:
        return {
            "queue_length": self.queue_length,
            "active_jobs": self.active_jobs,
            "max_concurrent_jobs": self.max_concurrent,
            "jobs": [job.to_dict() for job in self.jobs()],
        }

    def recent_logs(self) -> list[LogEntry]:
        return list(self._recent_logs)

    # -- queue -----------------------------------------------------------------

    def enqueue(
        self,
        track_id: str,
        video_id: str | None = None,
        job_id: str | None = None,
        track_name: str | None = None,
        artists: list[str] | None = None,
    ) -> Job:
        """Queue a download and start it if a slot is free. Must be called on the event loop."""
        asyncio.get_running_loop()
        if self._closed:
            raise RuntimeError("Download manager is shut down")
        if job_id is None:
            job_id = f"job-{next(self._ids)}"
            while job_id in self._jobs:
                job_id = f"job-{next(self._ids)}"
        elif job_id in self._jobs:
            raise ValueError(f"Job {job_id} already exists")

        job = Job(
            id=job_id,
            track_id=track_id,
            video_id=video_id,
            track_name=track_name,
            artists=artists,
            enqueued_at=_now(),
        )
        self._pending.append(job)
        self._jobs[job.id] = job
        self._idle.clear()
        self._trim_history()
        self.log(job.id, f"Enqueued track {track_id}" + (f" (video {video_id})" if video_id else ""))
        self.drain()
        return job

    def drain(self):
        """Start queued jobs while slots are free. The limit is re-read on every call."""
        if self._closed:
            return
        while self._pending and self._active < self.max_concurrent:
            self._start(self._pending.popleft())

    def _start(self, job: Job):
        job.status = JobStatus.RUNNING
        job.started_at = _now()
        self._active += 1
        task = asyncio.get_running_loop().create_task(self._run(job), name=f"download-{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job: Job):
        self.log(job.id, "Starting download")
        try:
            await self._execute(job, lambda message: self.log(job.id, message))
        except asyncio.CancelledError:
            self._fail(job, "Cancelled during shutdown")
            raise
        except Exception as e:
            self._fail(job, str(e) or e.__class__.__name__)
        else:
            job.status = JobStatus.COMPLETED
            job.completed_at = _now()
            self.log(job.id, "Download completed")
            logger.info(f"Job {job.id} completed: track {job.track_id} at {job.file_path}")
        finally:
            self._active -= 1
            self._trim_history()
            self.drain()
            if not self._pending and self._active == 0:
                self._idle.set()

    def _fail(self, job: Job, error: str):
        job.status = JobStatus.FAILED
        job.error = error
        job.completed_at = _now()
        self.log(job.id, f"Download failed: {error}")
        logger.error(f"Job {job.id} failed: {error}")
        if _is_bot_check(error):
            self._send_bot_check_alert(job)

    def _send_bot_check_alert(self, job: Job):
        hostname = os.environ.get("SERVER_HOSTNAME", "")
        admin_url = f"https://{hostname}/admin" if hostname else "(admin panel)"
        body = (
            f"A YouTube download failed because YouTube is requiring sign-in verification.\n\n"
            f"Job: {job.id}\n"
            f"Track: {job.track_id}\n"
            f"Video: {job.video_id or '(unresolved)'}\n\n"
            f"Fix: upload fresh cookies at the admin panel:\n"
            f"{admin_url}\n\n"
            f"Error: {job.error}"
        )
        asyncio.get_running_loop().run_in_executor(
            None, send_alert, "[Track Downloader] YouTube bot-check failed", body
        )

    def _trim_history(self):
        # Oldest first; stop at the first job still queued or running.
        while len(self._jobs) > self.max_tracked_jobs:
            oldest = next(iter(self._jobs.values()))
            if not oldest.status.is_terminal:
                break
            del self._jobs[oldest.id]

    async def wait_idle(self):
        """Wait until nothing is queued or running."""
        await self._idle.wait()

    async def close(self):
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._log_stream is not None:
            self._log_stream.close()
            self._log_stream = None

    # -- logging ---------------------------------------------------------------

    @staticmethod
    def _open_log(path: str | None) -> TextIO | None:
        if not path:
            return None
        try:
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            return open(path, "a", encoding="utf-8")
        except OSError as e:
            logger.error(f"Cannot open download log {path}: {e}")
            return None

    def _write(self, entry: LogEntry):
        if self._log_stream is None:
            return
        try:
            self._log_stream.write(entry.format() + "\n")
            self._log_stream.flush()
        except (OSError, ValueError) as e:
            logger.error(f"Download log write failed: {e}")

    def log(self, job_id: str, message: str):
        if not message:
            return
        timestamp = _now()
        for line in _LINE_SPLIT.split(str(message)):
            if not line.strip():
                continue
            entry = LogEntry(timestamp=timestamp, job_id=job_id, message=line)
            self._write(entry)
            self._recent_logs.append(entry)
            logger.debug(entry.format())
            for handle, callback in list(self._subscribers.items()):
                try:
                    callback(entry)
                except Exception as e:
                    logger.warning(f"Log subscriber {handle} failed: {e}")

    def subscribe(self, callback: LogSubscriber) -> int:
        handle = next(self._handles)
        self._subscribers[handle] = callback
        return handle

    def unsubscribe(self, handle: int):
        self._subscribers.pop(handle, None)


def queue_track_download(manager: DownloadManager, track: Track, video_id: str | None = None) -> Job:
    """Mark a track as pending and queue its download."""
    set_download_status(track.id, DownloadStatus.PENDING)
    return manager.enqueue(
        track.id,
        video_id=video_id,
        track_name=track.name,
        artists=track.artists,
    )


def requeue_interrupted_downloads(manager: DownloadManager) -> int:
    """Queue again any download a previous process left pending or in progress.

    The job queue is not persisted, so on startup these tracks would otherwise
    stay stuck in a non-terminal status.
    """
    stuck = tracks_with_status(DownloadStatus.PENDING, DownloadStatus.IN_PROGRESS)
    for track in stuck:
        queue_track_download(manager, track, video_id=track.youtube_video_id)
    if stuck:
        logger.warning(f"Re-queued {len(stuck)} interrupted download(s) on startup")
    else:
        logger.info("No interrupted downloads found on startup")
    return len(stuck)
