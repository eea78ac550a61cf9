"""Tests for the DuckDB metadata index."""
from datetime import timedelta, timezone

import pytest

from uploader.errors import DuplicateRecordError
from uploader.files.index import MetadataIndex
from uploader.files.schemas import FileRecord, utc_now


class TestFileRecord:
    def test_expiry_must_follow_creation(self):
        now = utc_now()
        with pytest.raises(ValueError):
            FileRecord(
                id="abc", filename="abc.png", ext="png", mime="image/png",
                size=1, created_at=now, expires_at=now,
            )


class TestMetadataIndex:
    def test_insert_and_get(self, index, make_record):
        record = make_record("a1b2c3d4e5f6")
        index.insert(record)

        loaded = index.get("a1b2c3d4e5f6")
        assert loaded is not None
        assert loaded.filename == "a1b2c3d4e5f6.png"
        assert loaded.mime == "image/png"
        assert loaded.size == 3
        assert loaded.expires_at.tzinfo is not None
        # DuckDB keeps microseconds
        assert loaded.expires_at == record.expires_at.astimezone(timezone.utc)

    def test_get_missing_returns_none(self, index):
        assert index.get("nope") is None

    def test_insert_never_overwrites(self, index, make_record):
        index.insert(make_record("dup", ext="png"))
        with pytest.raises(DuplicateRecordError):
            index.insert(make_record("dup", ext="pdf", mime="application/pdf"))
        assert index.get("dup").ext == "png"
        assert index.count() == 1

    def test_delete_is_noop_when_absent(self, index, make_record):
        index.insert(make_record("gone"))
        assert index.delete("gone") is True
        assert index.delete("gone") is False
        assert index.get("gone") is None

    def test_insert_after_delete(self, index, make_record):
        index.insert(make_record("again"))
        index.delete("again")
        index.insert(make_record("again", ext="pdf", mime="application/pdf"))
        assert index.get("again").ext == "pdf"

    def test_list_expired_uses_inclusive_cutoff(self, index, make_record):
        past = make_record("past", expires_in=-10)
        future = make_record("future", expires_in=3600)
        index.insert(past)
        index.insert(future)

        expired = index.list_expired(utc_now())
        assert [r.id for r in expired] == ["past"]

        exact = index.list_expired(past.expires_at)
        assert [r.id for r in exact] == ["past"]

        everything = index.list_expired(utc_now() + timedelta(days=1))
        assert [r.id for r in everything] == ["past", "future"]

    def test_content_survives_reopen(self, tmp_path, make_record):
        path = str(tmp_path / "persist.duckdb")
        first = MetadataIndex(path)
        first.insert(make_record("keepme"))
        first.close()

        second = MetadataIndex(path)
        try:
            assert second.get("keepme") is not None
            assert second.count() == 1
        finally:
            second.close()
