import asyncio

import pytest

import database
import downloader
from downloader import (
    VideoMetadata,
    build_track_from_metadata,
    execute_job,
    merge_video_metadata,
    normalize_upload_date,
    normalize_video_metadata,
    output_filename,
    sanitize_filename,
)
from errors import NotFoundError, ProcessExitError, ResolutionError
from models import DownloadStatus, Job, ResolutionResult, Track, TrackSource

VIDEO_INFO = {
    "id": "abc123",
    "title": "Neil Young - Harvest Moon (Official Audio)",
    "channel": "NeilYoungVEVO",
    "channel_id": "UC123",
    "duration": 303.4,
    "upload_date": "20091002",
    "description": "Provided to YouTube",
    "tags": ["neil young", "harvest moon"],
    "webpage_url": "https://www.youtube.com/watch?v=abc123",
}


# -- filenames -----------------------------------------------------------------


@pytest.mark.parametrize(
    "value, expected",
    [
        ("AC/DC - Back in Black", "AC_DC_Back_in_Black"),
        ("Sigur Rós: Hoppípolla", "Sigur_R_s_Hopp_polla"),
        ("...hidden--file__", "hidden_file"),
        ("", "track"),
        ("!!!", "track"),
        (None, "track"),
    ],
)
def test_sanitize_filename(value, expected):
    assert sanitize_filename(value) == expected


def test_sanitize_filename_caps_length_without_trailing_separator():
    assert sanitize_filename("x" * 79 + "!!y") == "x" * 79
    assert len(sanitize_filename("a" * 200)) == 80


def test_output_filename_combines_artist_title_and_id(catalog_track):
    assert output_filename(catalog_track) == "Neil_Young_Harvest_Moon_sp-1.m4a"


def test_output_filename_without_artist_or_name():
    assert output_filename(Track(id="youtube:xY_9", name="")) == "unknown_youtube_xY_9_youtube_xY_9.m4a"


# -- metadata ------------------------------------------------------------------


@pytest.mark.parametrize(
    "value, expected",
    [("20091002", "2009-10-02"), ("2009-10-02", None), ("2009", None), (None, None), (20091002, None)],
)
def test_normalize_upload_date(value, expected):
    assert normalize_upload_date(value) == expected


def test_normalize_video_metadata_from_full_info():
    metadata = normalize_video_metadata(VIDEO_INFO)

    assert metadata.video_id == "abc123"
    assert metadata.url == "https://www.youtube.com/watch?v=abc123"
    assert metadata.channel_name == "NeilYoungVEVO"
    assert metadata.album_name == downloader.DEFAULT_SINGLE_ALBUM
    assert metadata.duration_ms == 303400
    assert metadata.upload_date == "2009-10-02"
    assert metadata.tags == ["neil young", "harvest moon"]


def test_normalize_video_metadata_uses_context_for_flat_entries():
    metadata = normalize_video_metadata(
        {"id": "v1"},
        playlist_title="Road Trip",
        title="Track One",
        channel_name="Some Band",
    )

    assert metadata.url == "https://www.youtube.com/watch?v=v1"
    assert metadata.title == "Track One"
    assert metadata.channel_name == "Some Band"
    assert metadata.album_name == "Road Trip"
    assert metadata.duration_ms is None


def test_normalize_video_metadata_placeholders():
    metadata = normalize_video_metadata(None, video_id="v2")

    assert metadata.title == downloader.UNKNOWN_TITLE
    assert metadata.channel_name == downloader.UNKNOWN_ARTIST


def test_build_track_from_metadata_marks_direct_media():
    payload = build_track_from_metadata(normalize_video_metadata(VIDEO_INFO))

    assert payload["id"] == "youtube:abc123"
    assert payload["source"] == TrackSource.DIRECT_MEDIA
    assert payload["artists"] == ["NeilYoungVEVO"]
    assert payload["release_date"] == "2009-10-02"


def test_merge_keeps_catalog_metadata(catalog_track):
    patch = merge_video_metadata(
        catalog_track, "abc123", VIDEO_INFO["webpage_url"], normalize_video_metadata(VIDEO_INFO)
    )

    assert patch["youtube_video_id"] == "abc123"
    assert patch["youtube_channel"] == "NeilYoungVEVO"
    assert "name" not in patch
    assert "artists" not in patch
    assert "duration_ms" not in patch


def test_merge_overwrites_direct_media_metadata():
    track = Track(id="youtube:abc123", name="old title", artists=["old"], source=TrackSource.DIRECT_MEDIA)
    metadata = VideoMetadata(
        video_id="abc123",
        url="u",
        title="New Title",
        channel_name="New Channel",
        album_name="Mix",
        playlist_title="Mix",
        duration_ms=1000,
    )

    patch = merge_video_metadata(track, "abc123", "u", metadata)

    assert patch["name"] == "New Title"
    assert patch["artists"] == ["New Channel"]
    assert patch["album"] == "Mix"
    assert patch["duration_ms"] == 1000


def test_merge_without_metadata_keeps_existing_youtube_fields():
    track = Track(id="t", name="n", youtube_channel="Known Channel", source=TrackSource.DIRECT_MEDIA)

    patch = merge_video_metadata(track, "vid", "u", None)

    assert patch["youtube_channel"] == "Known Channel"
    assert "name" not in patch


# -- job execution -------------------------------------------------------------


class FakeYtDlp:
    """Stands in for the yt-dlp metadata and download commands."""

    def __init__(self, info=None, info_error=None, download_error=None):
        self.info = info if info is not None else VIDEO_INFO
        self.info_error = info_error
        self.download_error = download_error
        self.lookups = []
        self.downloads = []

    async def run_json(self, command, args, timeout=None):
        self.lookups.append(args)
        if self.info_error:
            raise self.info_error
        return self.info

    async def run_command(self, command, args, on_line=None, timeout=None):
        self.downloads.append(args)
        if on_line:
            on_line("[stdout] [download] 100% of 4.20MiB")
        if self.download_error:
            raise self.download_error


@pytest.fixture
def ytdlp(monkeypatch):
    fake = FakeYtDlp()
    monkeypatch.setattr(downloader, "run_json", fake.run_json)
    monkeypatch.setattr(downloader, "run_command", fake.run_command)
    return fake


@pytest.fixture
def stored_track(temp_db, catalog_track):
    return database.upsert_track(
        {
            "id": catalog_track.id,
            "name": catalog_track.name,
            "artists": catalog_track.artists,
            "album": catalog_track.album,
            "duration_ms": catalog_track.duration_ms,
            "release_date": catalog_track.release_date,
        }
    )


def _job(track_id="sp-1", video_id=None):
    return Job(id="job-1", track_id=track_id, enqueued_at="2024-01-01T00:00:00+00:00", video_id=video_id)


def _resolver_returning(result, calls=None):
    async def fake_resolve(track, on_log=None, **kwargs):
        if calls is not None:
            calls.append(track.id)
        if on_log:
            on_log("Attempt 1/3: youtubeSearch for \"Neil Young Harvest Moon\".")
        return result

    return fake_resolve


def test_execute_job_with_known_video(stored_track, download_dir, ytdlp):
    logs = []
    job = _job(video_id="abc123")

    asyncio.run(execute_job(job, logs.append))

    track = database.get_track("sp-1")
    assert track.download_status == DownloadStatus.DOWNLOADED
    assert track.file_path == "downloads/Neil_Young_Harvest_Moon_sp-1.m4a"
    assert track.youtube_video_id == "abc123"
    assert track.youtube_channel == "NeilYoungVEVO"
    # Catalog metadata is not replaced by the video's.
    assert track.name == "Harvest Moon"
    assert track.duration_ms == 303000
    assert job.file_path == track.file_path

    args = ytdlp.downloads[0]
    assert args[0] == VIDEO_INFO["webpage_url"]
    assert args[args.index("--audio-format") + 1] == "m4a"
    assert args[args.index("-o") + 1] == str(download_dir / "Neil_Young_Harvest_Moon_sp-1.m4a")
    assert "--cookies" not in args
    assert download_dir.is_dir()
    assert "Using provided YouTube video id abc123" in logs
    assert any(line.startswith("[yt-dlp] [stdout]") for line in logs)


def test_execute_job_passes_cookies_when_present(stored_track, download_dir, ytdlp):
    cookies = download_dir.parent / "cookies" / "youtube.txt"
    cookies.parent.mkdir(parents=True)
    cookies.write_text("# Netscape HTTP Cookie File\n")

    asyncio.run(execute_job(_job(video_id="abc123"), lambda line: None))

    for args in (ytdlp.lookups[0], ytdlp.downloads[0]):
        assert args[args.index("--cookies") + 1] == str(cookies)


def test_execute_job_resolves_missing_video(stored_track, download_dir, ytdlp, monkeypatch):
    calls = []
    monkeypatch.setattr(
        downloader,
        "resolve_youtube_track",
        _resolver_returning(ResolutionResult.success("abc123", 2, "official audio"), calls),
    )
    logs = []
    job = _job()

    asyncio.run(execute_job(job, logs.append))

    assert calls == ["sp-1"]
    assert job.video_id == "abc123"
    assert database.get_track("sp-1").download_status == DownloadStatus.DOWNLOADED
    assert any(line.startswith("[ai] Attempt 1/3") for line in logs)
    assert "Matched YouTube video abc123 after 2 attempt(s) (official audio)" in logs


def test_execute_job_uses_stored_video_id_without_resolving(stored_track, download_dir, ytdlp, monkeypatch):
    database.upsert_track({"id": "sp-1", "youtube_video_id": "stored1"})
    calls = []
    monkeypatch.setattr(downloader, "resolve_youtube_track", _resolver_returning(None, calls))
    job = _job()

    asyncio.run(execute_job(job, lambda line: None))

    assert calls == []
    assert job.video_id == "stored1"


def test_execute_job_resolution_failure(stored_track, download_dir, ytdlp, monkeypatch):
    monkeypatch.setattr(
        downloader,
        "resolve_youtube_track",
        _resolver_returning(ResolutionResult.failure(3, "only covers found", "no_match")),
    )

    with pytest.raises(ResolutionError) as excinfo:
        asyncio.run(execute_job(_job(), lambda line: None))

    assert excinfo.value.reason == "only covers found"
    track = database.get_track("sp-1")
    assert track.download_status == DownloadStatus.FAILED
    assert track.last_download_error == "no_match"
    assert ytdlp.downloads == []


def test_execute_job_continues_when_metadata_lookup_fails(stored_track, download_dir, ytdlp):
    ytdlp.info_error = ProcessExitError("ERROR: unable to extract", 1)
    logs = []

    asyncio.run(execute_job(_job(video_id="abc123"), logs.append))

    track = database.get_track("sp-1")
    assert track.download_status == DownloadStatus.DOWNLOADED
    assert track.youtube_url == "https://www.youtube.com/watch?v=abc123"
    assert any(line.startswith("[metadata] Failed to fetch metadata") for line in logs)


def test_execute_job_download_failure_marks_track(stored_track, download_dir, ytdlp):
    ytdlp.download_error = ProcessExitError("yt-dlp exited with code 1: Sign in to confirm you're not a bot", 1)

    with pytest.raises(ProcessExitError):
        asyncio.run(execute_job(_job(video_id="abc123"), lambda line: None))

    track = database.get_track("sp-1")
    assert track.download_status == DownloadStatus.FAILED
    assert "not a bot" in track.last_download_error
    assert track.file_path is None


def test_execute_job_unknown_track(temp_db, download_dir, ytdlp):
    with pytest.raises(NotFoundError):
        asyncio.run(execute_job(_job(track_id="missing"), lambda line: None))

    assert ytdlp.lookups == []


def test_execute_job_marks_track_failed_on_unexpected_error(stored_track, tmp_path, ytdlp, monkeypatch):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    monkeypatch.setattr(downloader, "DOWNLOAD_DIR", str(blocker / "downloads"))

    with pytest.raises(OSError):
        asyncio.run(execute_job(_job(video_id="abc123"), lambda line: None))

    track = database.get_track("sp-1")
    assert track.download_status == DownloadStatus.FAILED
    assert track.last_download_error
    assert ytdlp.downloads == []


def test_cancelled_job_leaves_track_in_progress(stored_track, download_dir, monkeypatch):
    async def hang(command, args, timeout=None):
        await asyncio.sleep(10)

    monkeypatch.setattr(downloader, "run_json", hang)

    async def scenario():
        task = asyncio.ensure_future(execute_job(_job(video_id="abc123"), lambda line: None))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    assert database.get_track("sp-1").download_status == DownloadStatus.IN_PROGRESS
