"""Tests for the expiration scheduler."""
import asyncio
from unittest.mock import patch

import pytest

from uploader.scheduler import ExpirationScheduler


def _store(index, storage, record):
    (storage.root / record.filename).write_bytes(b"abc")
    index.insert(record)


@pytest.fixture
def scheduler(index, storage):
    return ExpirationScheduler(index=index, storage=storage, interval_seconds=3600)


class TestSweepOnce:
    def test_expired_record_and_blob_removed(self, scheduler, index, storage, make_record):
        record = make_record("expired00001", expires_in=-1)
        _store(index, storage, record)

        assert scheduler.sweep_once() == 1
        assert index.get(record.id) is None
        assert not storage.exists(record.filename)

    def test_future_record_survives(self, scheduler, index, storage, make_record):
        record = make_record("future000001", expires_in=3600)
        _store(index, storage, record)

        assert scheduler.sweep_once() == 0
        assert index.get(record.id) is not None
        assert storage.exists(record.filename)

    def test_missing_blob_is_not_an_error(self, scheduler, index, make_record):
        record = make_record("noblob000001", expires_in=-1)
        index.insert(record)

        assert scheduler.sweep_once() == 1
        assert index.get(record.id) is None

    def test_records_after_snapshot_are_ignored(self, scheduler, index, storage, make_record):
        record = make_record("later0000001", expires_in=5)
        _store(index, storage, record)

        # Snapshot "now" is before the record's expiry.
        assert scheduler.sweep_once() == 0
        assert index.get(record.id) is not None

    def test_failure_on_one_record_does_not_abort_sweep(self, scheduler, index, storage, make_record):
        bad = make_record("bad000000001", expires_in=-20)
        good = make_record("good00000001", expires_in=-10)
        _store(index, storage, bad)
        _store(index, storage, good)

        real_remove = storage.remove

        def flaky_remove(filename):
            if filename == bad.filename:
                raise PermissionError("read-only")
            return real_remove(filename)

        with patch.object(storage, "remove", side_effect=flaky_remove):
            assert scheduler.sweep_once() == 1

        # The failed record stays indexed with its blob, for the next sweep.
        assert index.get(bad.id) is not None
        assert storage.exists(bad.filename)
        assert index.get(good.id) is None
        assert not storage.exists(good.filename)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_sweeps_immediately(self, scheduler, index, storage, make_record):
        record = make_record("boot00000001", expires_in=-1)
        _store(index, storage, record)

        await scheduler.start()
        try:
            assert scheduler.running
            assert index.get(record.id) is None
        finally:
            await scheduler.stop()
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_loop_sweeps_on_interval(self, index, storage, make_record):
        scheduler = ExpirationScheduler(index=index, storage=storage, interval_seconds=0.05)
        await scheduler.start()
        try:
            record = make_record("tick00000001", expires_in=-1)
            _store(index, storage, record)
            for _ in range(100):
                if index.get(record.id) is None:
                    break
                await asyncio.sleep(0.02)
            assert index.get(record.id) is None
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, scheduler):
        await scheduler.stop()
        assert not scheduler.running
