import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone

from models import DownloadStatus, Track, TrackSource

DB_PATH = os.environ.get("DB_PATH", "/data/tracks.db")

SCHEMA = """
PRAGMA journal_mode = WAL;

CREATE TABLE IF NOT EXISTS tracks (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    artists TEXT NOT NULL DEFAULT '[]',
    album TEXT,
    duration_ms INTEGER,
    release_date TEXT,
    explicit INTEGER NOT NULL DEFAULT 0,
    source TEXT NOT NULL DEFAULT 'spotify',
    youtube_video_id TEXT,
    youtube_url TEXT,
    youtube_channel TEXT,
    youtube_channel_id TEXT,
    youtube_description TEXT,
    youtube_tags TEXT,
    playlist_name TEXT,
    download_status TEXT NOT NULL DEFAULT 'not_downloaded',
    last_download_error TEXT,
    file_path TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tracks_video_id ON tracks (youtube_video_id);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

CONFIG_DEFAULTS = {
    "download_max_concurrent": os.environ.get("DOWNLOAD_MAX_CONCURRENT", "1"),
}

# Columns a patch may write; anything else in an upsert payload is ignored.
TRACK_FIELDS = (
    "name",
    "artists",
    "album",
    "duration_ms",
    "release_date",
    "explicit",
    "source",
    "youtube_video_id",
    "youtube_url",
    "youtube_channel",
    "youtube_channel_id",
    "youtube_description",
    "youtube_tags",
    "playlist_name",
    "download_status",
    "last_download_error",
    "file_path",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_connection() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


@contextmanager
def db():
    conn = get_connection()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db():
    directory = os.path.dirname(DB_PATH)
    if directory:
        os.makedirs(directory, exist_ok=True)
    conn = get_connection()
    try:
        conn.executescript(SCHEMA)
        for key, value in CONFIG_DEFAULTS.items():
            conn.execute(
                "INSERT OR IGNORE INTO config (key, value) VALUES (?, ?)",
                (key, value),
            )
        conn.commit()
    finally:
        conn.close()


def get_config(key: str) -> str:
    with db() as conn:
        row = conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
        if row:
            return row["value"]
        return CONFIG_DEFAULTS.get(key, "")


def set_config(key: str, value: str):
    with db() as conn:
        conn.execute(
            "INSERT OR REPLACE INTO config (key, value) VALUES (?, ?)",
            (key, value),
        )


def _encode(column: str, value):
    if column == "artists":
        return json.dumps([a for a in (value or []) if a])
    if column == "youtube_tags":
        return json.dumps(value) if value else None
    if column == "explicit":
        return 1 if value else 0
    if column in ("source", "download_status") and value is not None:
        return value.value if hasattr(value, "value") else str(value)
    return value


def get_track(track_id: str) -> Track | None:
    with db() as conn:
        row = conn.execute("SELECT * FROM tracks WHERE id=?", (track_id,)).fetchone()
    return Track.from_row(row) if row else None


def find_track_by_video_id(video_id: str) -> Track | None:
    with db() as conn:
        row = conn.execute(
            "SELECT * FROM tracks WHERE youtube_video_id=? ORDER BY created_at LIMIT 1",
            (video_id,),
        ).fetchone()
    return Track.from_row(row) if row else None


def list_tracks(status: str | None = None) -> list[Track]:
    with db() as conn:
        if status:
            rows = conn.execute(
                "SELECT * FROM tracks WHERE download_status=? ORDER BY name COLLATE NOCASE",
                (status,),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM tracks ORDER BY name COLLATE NOCASE").fetchall()
    return [Track.from_row(r) for r in rows]


def _upsert(conn: sqlite3.Connection, patch: dict) -> tuple[Track, bool]:
    track_id = patch.get("id") or patch.get("spotify_id")
    if not track_id:
        raise ValueError("Track must include an id or spotify_id")

    existing = conn.execute("SELECT id FROM tracks WHERE id=?", (track_id,)).fetchone()
    values = {k: _encode(k, patch[k]) for k in TRACK_FIELDS if k in patch}
    now = _now()

    if existing:
        if values:
            assignments = ", ".join(f"{k}=?" for k in values)
            conn.execute(
                f"UPDATE tracks SET {assignments}, updated_at=? WHERE id=?",
                (*values.values(), now, track_id),
            )
    else:
        if "name" not in values:
            raise ValueError(f"Track {track_id} needs a name")
        values.setdefault("download_status", DownloadStatus.NOT_DOWNLOADED.value)
        values.setdefault("source", TrackSource.CATALOG.value)
        values.setdefault("artists", "[]")
        columns = ["id", *values, "created_at", "updated_at"]
        placeholders = ", ".join("?" for _ in columns)
        conn.execute(
            f"INSERT INTO tracks ({', '.join(columns)}) VALUES ({placeholders})",
            (track_id, *values.values(), now, now),
        )

    row = conn.execute("SELECT * FROM tracks WHERE id=?", (track_id,)).fetchone()
    return Track.from_row(row), bool(existing)


def upsert_track(patch: dict) -> Track:
    """Insert a track or merge the given fields onto an existing one."""
    with db() as conn:
        track, _ = _upsert(conn, patch)
    return track


def import_tracks(tracks: list[dict]) -> dict:
    summary = {"added": 0, "updated": 0}
    with db() as conn:
        for patch in tracks:
            _, existed = _upsert(conn, patch)
            summary["updated" if existed else "added"] += 1
    return summary


def set_download_status(
    track_id: str,
    status: DownloadStatus,
    error: str | None = None,
    file_path: str | None = None,
) -> Track | None:
    """Record a download status change. Returns None when the track does not exist."""
    with db() as conn:
        cur = conn.execute(
            """
            UPDATE tracks SET
                download_status=?, last_download_error=?,
                file_path=COALESCE(?, file_path), updated_at=?
            WHERE id=?
            """,
            (status.value, error, file_path, _now(), track_id),
        )
        if cur.rowcount == 0:
            return None
        row = conn.execute("SELECT * FROM tracks WHERE id=?", (track_id,)).fetchone()
    return Track.from_row(row)


def delete_track(track_id: str) -> bool:
    with db() as conn:
        cur = conn.execute("DELETE FROM tracks WHERE id=?", (track_id,))
    return cur.rowcount > 0


def tracks_with_status(*statuses: DownloadStatus) -> list[Track]:
    placeholders = ", ".join("?" for _ in statuses)
    with db() as conn:
        rows = conn.execute(
            f"SELECT * FROM tracks WHERE download_status IN ({placeholders}) ORDER BY updated_at",
            tuple(s.value for s in statuses),
        ).fetchall()
    return [Track.from_row(r) for r in rows]
