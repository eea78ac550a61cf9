"""Tests for BlobStorage: streaming writes, size ceiling, collisions, lookup."""
import io

import pytest

from uploader.errors import InternalError, SizeLimitError
from uploader.files.storage import BlobStorage


class TestWrite:
    def test_write_returns_blob_description(self, storage):
        blob = storage.write(io.BytesIO(b"abc"), "image/png", "pic.png")

        assert len(blob.id) == 12
        assert blob.filename == f"{blob.id}.png"
        assert blob.ext == "png"
        assert blob.mime == "image/png"
        assert blob.size == 3
        assert (storage.root / blob.filename).read_bytes() == b"abc"

    def test_write_exactly_at_limit_succeeds(self, storage):
        blob = storage.write(io.BytesIO(b"x" * 1024), "image/png")
        assert blob.size == 1024

    def test_write_over_limit_removes_partial_blob(self, storage):
        with pytest.raises(SizeLimitError):
            storage.write(io.BytesIO(b"x" * 1025), "image/png")
        assert list(storage.root.iterdir()) == []

    def test_large_stream_written_in_chunks(self, tmp_path):
        big = BlobStorage(str(tmp_path / "big"), max_size_bytes=1024 * 1024)
        payload = bytes(range(256)) * 1024  # 256 KiB
        blob = big.write(io.BytesIO(payload), "video/mp4")
        assert (big.root / blob.filename).read_bytes() == payload

    def test_io_error_becomes_internal_error(self, storage):
        class Broken(io.RawIOBase):
            def read(self, n=-1):
                raise OSError("disk gone")

        with pytest.raises(InternalError):
            storage.write(Broken(), "image/png")
        assert list(storage.root.iterdir()) == []


class _WatchingStream(io.BytesIO):
    """Records what the storage root exposes each time the writer reads."""

    def __init__(self, storage, payload):
        super().__init__(payload)
        self._storage = storage
        self.seen = []

    def read(self, n=-1):
        for path in self._storage.root.iterdir():
            self.seen.append((path.name, self._storage.resolve(path.name)))
        return super().read(n)


class TestStaging:
    def test_blob_not_resolvable_while_writing(self, storage):
        stream = _WatchingStream(storage, b"x" * 512)
        blob = storage.write(stream, "image/png")

        assert stream.seen
        assert all(name.startswith(".") and resolved is None for name, resolved in stream.seen)
        assert storage.resolve(blob.filename) is not None

    def test_aborted_write_never_resolvable(self, storage):
        stream = _WatchingStream(storage, b"x" * 1025)
        with pytest.raises(SizeLimitError):
            storage.write(stream, "image/png")

        assert all(resolved is None for _, resolved in stream.seen)
        assert list(storage.root.iterdir()) == []

    def test_commit_publishes_and_drops_staging(self, storage):
        writer = storage.open_blob("image/png", "pic.png")
        writer.write(b"ab")
        writer.write(b"c")
        assert storage.count() == 0

        blob = writer.commit()

        assert blob.size == 3
        assert [p.name for p in storage.root.iterdir()] == [blob.filename]
        assert storage.resolve(blob.filename).read_bytes() == b"abc"

    def test_abort_is_idempotent_and_final(self, storage):
        writer = storage.open_blob("image/png")
        writer.write(b"abc")
        writer.abort()
        writer.abort()

        assert writer.finished
        assert list(storage.root.iterdir()) == []
        with pytest.raises(InternalError):
            writer.write(b"more")
        with pytest.raises(InternalError):
            writer.commit()

    def test_purge_staging_removes_leftovers(self, storage):
        (storage.root / ".abcdefabcdef.png.part").write_bytes(b"half")
        (storage.root / "keep00000001.png").write_bytes(b"whole")

        assert storage.purge_staging() == 1
        assert [p.name for p in storage.root.iterdir()] == ["keep00000001.png"]


class TestCollisions:
    def test_collision_draws_new_id(self, tmp_path):
        ids = iter(["aaaaaaaaaaaa", "aaaaaaaaaaaa", "bbbbbbbbbbbb"])
        storage = BlobStorage(str(tmp_path / "u"), 1024, id_factory=lambda: next(ids))

        first = storage.write(io.BytesIO(b"1"), "image/png")
        second = storage.write(io.BytesIO(b"2"), "image/png")

        assert first.id == "aaaaaaaaaaaa"
        assert second.id == "bbbbbbbbbbbb"
        assert (storage.root / first.filename).read_bytes() == b"1"

    def test_same_id_with_other_extension_counts_as_collision(self, tmp_path):
        ids = iter(["cccccccccccc", "cccccccccccc", "dddddddddddd"])
        storage = BlobStorage(str(tmp_path / "u"), 1024, id_factory=lambda: next(ids))

        storage.write(io.BytesIO(b"1"), "image/png")
        second = storage.write(io.BytesIO(b"2"), "application/pdf")

        assert second.id == "dddddddddddd"

    def test_id_reserved_by_inflight_write_is_skipped(self, tmp_path):
        ids = iter(["ffffffffffff", "ffffffffffff", "111111111111"])
        storage = BlobStorage(str(tmp_path / "u"), 1024, id_factory=lambda: next(ids))

        pending = storage.open_blob("image/png")
        second = storage.write(io.BytesIO(b"2"), "application/pdf")
        first = pending.commit()

        assert first.id == "ffffffffffff"
        assert second.id == "111111111111"

    def test_id_known_to_index_is_skipped(self, tmp_path):
        ids = iter(["222222222222", "333333333333"])
        storage = BlobStorage(
            str(tmp_path / "u"), 1024,
            id_factory=lambda: next(ids),
            id_taken=lambda file_id: file_id == "222222222222",
        )

        assert storage.write(io.BytesIO(b"1"), "image/png").id == "333333333333"

    def test_exhausted_attempts_raise_internal_error(self, tmp_path):
        storage = BlobStorage(
            str(tmp_path / "u"), 1024,
            id_factory=lambda: "eeeeeeeeeeee",
            max_attempts=3,
        )
        storage.write(io.BytesIO(b"1"), "image/png")

        with pytest.raises(InternalError):
            storage.write(io.BytesIO(b"2"), "image/png")
        assert storage.count() == 1


class TestRemoveAndResolve:
    def test_remove_existing_and_missing(self, storage):
        blob = storage.write(io.BytesIO(b"abc"), "image/png")
        assert storage.remove(blob.filename) is True
        assert storage.remove(blob.filename) is False

    def test_resolve_existing_blob(self, storage):
        blob = storage.write(io.BytesIO(b"abc"), "image/png")
        path = storage.resolve(blob.filename)
        assert path is not None
        assert path.read_bytes() == b"abc"

    @pytest.mark.parametrize("name", [
        ".hidden",
        "..",
        "../secret.txt",
        "sub/file.png",
        "..\\win.ini",
        "",
        "missing.png",
    ])
    def test_resolve_rejects(self, storage, name):
        (storage.root / ".hidden").write_bytes(b"x")
        (storage.root.parent / "secret.txt").write_bytes(b"x")
        assert storage.resolve(name) is None

    def test_resolve_rejects_directories(self, storage):
        (storage.root / "folder").mkdir()
        assert storage.resolve("folder") is None

    def test_count_ignores_dotfiles(self, storage):
        (storage.root / ".keep").write_bytes(b"")
        storage.write(io.BytesIO(b"abc"), "image/png")
        assert storage.count() == 1
