import sys
from pathlib import Path

import pytest

# The service modules live flat under api/ and import each other by bare name.
API_DIR = Path(__file__).resolve().parents[1] / "api"
API_DIR_STR = str(API_DIR)
if API_DIR_STR not in sys.path:
    sys.path.insert(0, API_DIR_STR)

import database  # noqa: E402
import downloader  # noqa: E402
from models import Track  # noqa: E402


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    monkeypatch.setattr(database, "DB_PATH", str(tmp_path / "tracks.db"))
    database.init_db()
    return database.DB_PATH


@pytest.fixture
def download_dir(tmp_path, monkeypatch):
    path = tmp_path / "downloads"
    monkeypatch.setattr(downloader, "DOWNLOAD_DIR", str(path))
    monkeypatch.setattr(downloader, "COOKIES_PATH", str(tmp_path / "cookies" / "youtube.txt"))
    return path


@pytest.fixture
def catalog_track() -> Track:
    return Track(
        id="sp-1",
        name="Harvest Moon",
        artists=["Neil Young"],
        album="Harvest Moon",
        duration_ms=303000,
        release_date="1992-11-02",
    )
