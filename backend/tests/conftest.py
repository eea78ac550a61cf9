"""Shared test fixtures and configuration for backend tests."""
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from uploader.config import AppConfig
from uploader.files.index import MetadataIndex
from uploader.files.schemas import FileRecord, utc_now
from uploader.files.storage import BlobStorage
from uploader.main import create_app

API_KEY = "test-secret-token"


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    """Configuration pointing storage and index at a temp directory."""
    return AppConfig(
        server={"base_url": "http://files.test/"},
        storage={
            "upload_dir": str(tmp_path / "uploads"),
            "db_path": str(tmp_path / "db" / "files.duckdb"),
            "max_file_size_mb": 1,
        },
        secrets={"auth_token": API_KEY},
    )


@pytest.fixture
def api_client(app_config):
    """TestClient with the lifespan running (context built, scheduler started)."""
    with TestClient(create_app(app_config)) as client:
        yield client


@pytest.fixture
def context(api_client):
    return api_client.app.state.context


@pytest.fixture
def storage(tmp_path) -> BlobStorage:
    return BlobStorage(upload_dir=str(tmp_path / "blobs"), max_size_bytes=1024)


@pytest.fixture
def index(tmp_path):
    idx = MetadataIndex(str(tmp_path / "index.duckdb"))
    yield idx
    idx.close()


@pytest.fixture
def make_record():
    """Factory for FileRecords expiring ``expires_in`` seconds from now."""

    def _make(file_id: str, expires_in: float = 3600, ext: str = "png", mime: str = "image/png") -> FileRecord:
        now = utc_now()
        return FileRecord(
            id=file_id,
            filename=f"{file_id}.{ext}",
            ext=ext,
            mime=mime,
            size=3,
            created_at=now - timedelta(hours=2),
            expires_at=now + timedelta(seconds=expires_in),
        )

    return _make
