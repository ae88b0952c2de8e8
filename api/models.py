import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class DownloadStatus(str, Enum):
    NOT_DOWNLOADED = "not_downloaded"
    PENDING = "download_pending"
    IN_PROGRESS = "download_in_progress"
    DOWNLOADED = "downloaded"
    FAILED = "download_failed"


class TrackSource(str, Enum):
    """Where a track's canonical metadata came from."""

    CATALOG = "spotify"
    DIRECT_MEDIA = "youtube_direct"


@dataclass
class Track:
    id: str
    name: str
    artists: list[str] = field(default_factory=list)
    album: str | None = None
    duration_ms: int | None = None
    release_date: str | None = None
    explicit: bool = False
    source: TrackSource = TrackSource.CATALOG
    youtube_video_id: str | None = None
    youtube_url: str | None = None
    youtube_channel: str | None = None
    youtube_channel_id: str | None = None
    youtube_description: str | None = None
    youtube_tags: list[str] | None = None
    playlist_name: str | None = None
    download_status: DownloadStatus = DownloadStatus.NOT_DOWNLOADED
    last_download_error: str | None = None
    file_path: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row) -> "Track":
        tags = row["youtube_tags"]
        return cls(
            id=row["id"],
            name=row["name"],
            artists=json.loads(row["artists"] or "[]"),
            album=row["album"],
            duration_ms=row["duration_ms"],
            release_date=row["release_date"],
            explicit=bool(row["explicit"]),
            source=TrackSource(row["source"]),
            youtube_video_id=row["youtube_video_id"],
            youtube_url=row["youtube_url"],
            youtube_channel=row["youtube_channel"],
            youtube_channel_id=row["youtube_channel_id"],
            youtube_description=row["youtube_description"],
            youtube_tags=json.loads(tags) if tags else None,
            playlist_name=row["playlist_name"],
            download_status=DownloadStatus(row["download_status"]),
            last_download_error=row["last_download_error"],
            file_path=row["file_path"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @property
    def first_artist(self) -> str:
        return self.artists[0] if self.artists else ""

    def to_dict(self) -> dict:
        data = asdict(self)
        data["source"] = self.source.value
        data["download_status"] = self.download_status.value
        return data


@dataclass
class Job:
    id: str
    track_id: str
    enqueued_at: str
    video_id: str | None = None
    track_name: str | None = None
    artists: list[str] | None = None
    status: JobStatus = JobStatus.QUEUED
    started_at: str | None = None
    completed_at: str | None = None
    error: str | None = None
    file_path: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class LogEntry:
    timestamp: str
    job_id: str
    message: str

    def format(self) -> str:
        return f"{self.timestamp} [{self.job_id}] {self.message}"

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp, "job_id": self.job_id, "message": self.message}


@dataclass
class ResolutionResult:
    status: str  # 'success' | 'failure'
    video_id: str | None
    attempts: int
    reason: str
    error: str | None = None
    details: dict[str, Any] | None = None

    @classmethod
    def success(cls, video_id: str, attempts: int, reason: str, details: dict | None = None):
        return cls("success", video_id, attempts, reason, None, details)

    @classmethod
    def failure(cls, attempts: int, reason: str, error: str | None = None):
        return cls("failure", None, attempts, reason, error)

    @property
    def succeeded(self) -> bool:
        return self.status == "success" and bool(self.video_id)
