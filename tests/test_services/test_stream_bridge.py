"""
Tests for keepsake.services.stream_bridge: bounded pipe and streaming export.
"""
import asyncio
import os
import threading
import time
from pathlib import Path

import pytest

from keepsake.core.errors import InvalidArchive, StreamTerminated
from keepsake.services import stream_bridge
from keepsake.services.archive import validate_archive
from keepsake.services.stream_bridge import BoundedPipe, PipeWriter, stream_archive
from tests.factories import tar_members, write_file


async def _collect(agen) -> bytes:
    chunks = []
    async for chunk in agen:
        chunks.append(chunk)
    return b"".join(chunks)


class TestBoundedPipe:
    async def test_read_returns_written_bytes_then_eof(self):
        pipe = BoundedPipe(16)
        assert pipe.write(b"hello") == 5
        pipe.close_writer()
        assert await pipe.read(100) == b"hello"
        assert await pipe.read(100) == b""

    async def test_write_accepts_at_most_remaining_capacity(self):
        pipe = BoundedPipe(4)
        assert pipe.write(b"abcdef") == 4
        assert pipe.high_water == 4

    async def test_read_respects_max_bytes(self):
        pipe = BoundedPipe(16)
        pipe.write(b"abcdef")
        assert await pipe.read(2) == b"ab"
        assert await pipe.read(10) == b"cdef"

    async def test_reader_waits_for_writer_thread(self):
        pipe = BoundedPipe(16)

        def produce():
            time.sleep(0.05)
            pipe.write(b"late")
            pipe.close_writer()

        threading.Thread(target=produce).start()
        assert await asyncio.wait_for(pipe.read(16), timeout=5) == b"late"
        assert await asyncio.wait_for(pipe.read(16), timeout=5) == b""

    async def test_close_reader_unblocks_full_writer(self):
        pipe = BoundedPipe(2)
        errors = []

        def produce():
            try:
                while True:
                    pipe.write(b"xx")
            except BrokenPipeError as e:
                errors.append(e)

        thread = threading.Thread(target=produce)
        thread.start()
        await asyncio.sleep(0.05)
        pipe.close_reader()
        thread.join(timeout=5)
        assert not thread.is_alive()
        assert len(errors) == 1

    async def test_slow_consumer_bounds_buffered_bytes(self):
        capacity = 1024
        pipe = BoundedPipe(capacity)
        payload = os.urandom(64 * 1024)

        def produce():
            writer = PipeWriter(pipe)
            view = memoryview(payload)
            while view:
                n = writer.write(view)
                view = view[n:]
            pipe.close_writer()

        thread = threading.Thread(target=produce)
        thread.start()
        received = bytearray()
        reads = 0
        while True:
            chunk = await pipe.read(1)
            if not chunk:
                break
            received += chunk
            reads += 1
            if reads % 4096 == 0:
                await asyncio.sleep(0.001)
            assert pipe.high_water <= capacity
        thread.join(timeout=5)
        assert bytes(received) == payload
        assert pipe.high_water <= capacity

    async def test_writer_error_is_recorded(self):
        pipe = BoundedPipe(8)
        err = StreamTerminated("boom")
        pipe.close_writer(err)
        assert await pipe.read(8) == b""
        assert pipe.error is err

    async def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            BoundedPipe(0)


class TestStreamArchive:
    @pytest.fixture
    def root(self, tmp_path: Path) -> Path:
        root = tmp_path / "data"
        write_file(root / "cards" / "a.json", b'{"n": "a"}')
        write_file(root / "uploads" / "big.bin", os.urandom(256 * 1024))
        write_file(root / "config.yml", b"username: alice\n")
        write_file(root / "temp" / "x.tmp", b"x")
        return root

    async def test_streams_complete_archive(self, root: Path):
        blob = await _collect(stream_archive(
            root, capacity=4096, write_buffer=1024, chunk_size=1000,
        ))
        validate_archive(blob)
        members = tar_members(blob)
        assert set(members) == {"cards/a.json", "uploads/big.bin"}
        assert members["uploads/big.bin"] == (root / "uploads" / "big.bin").read_bytes()

    async def test_chunks_never_exceed_chunk_size(self, root: Path):
        sizes = []
        async for chunk in stream_archive(root, capacity=8192, chunk_size=512):
            sizes.append(len(chunk))
        assert sizes and max(sizes) <= 512

    async def test_compressed_stream(self, root: Path):
        blob = await _collect(stream_archive(root, compress=True))
        assert blob[:2] == b"\x1f\x8b"
        assert "cards/a.json" in tar_members(blob)

    async def test_concurrent_exports_are_independent(self, root: Path):
        first, second = await asyncio.gather(
            _collect(stream_archive(root, capacity=2048)),
            _collect(stream_archive(root, capacity=2048)),
        )
        assert tar_members(first) == tar_members(second)

    async def test_consumer_disconnect_stops_producer(self, root: Path, monkeypatch):
        finished = threading.Event()
        original = stream_bridge._pack_into_pipe

        def tracked(*args, **kwargs):
            try:
                return original(*args, **kwargs)
            finally:
                finished.set()

        monkeypatch.setattr(stream_bridge, "_pack_into_pipe", tracked)

        agen = stream_archive(root, capacity=1024, write_buffer=512, chunk_size=256)
        first = await agen.__anext__()
        assert first
        await agen.aclose()

        # The packer would block forever on the full pipe if it were not told
        assert await asyncio.to_thread(finished.wait, 5)

    async def test_producer_failure_truncates_stream(self, root: Path, monkeypatch):
        def failing_pack(source_root, fileobj, exclude=None, compress=False):
            fileobj.write(b"\0" * 700)
            raise OSError("disk vanished")

        monkeypatch.setattr(stream_bridge, "pack", failing_pack)
        blob = await _collect(stream_archive(root, write_buffer=256))
        assert len(blob) < 1024
        with pytest.raises(InvalidArchive):
            validate_archive(blob)

    async def test_stalled_exports_do_not_block_new_ones(self, root: Path):
        stalled = [
            stream_archive(root, capacity=1024, write_buffer=512, chunk_size=256)
            for _ in range(8)
        ]
        try:
            # Every export gets a first chunk even though none is drained
            for agen in stalled:
                assert await asyncio.wait_for(agen.__anext__(), timeout=5)
            blob = await asyncio.wait_for(_collect(stream_archive(root)), timeout=10)
            validate_archive(blob)
        finally:
            for agen in stalled:
                await agen.aclose()

    async def test_each_export_runs_on_its_own_thread(self, root: Path, monkeypatch):
        names = []
        original = stream_bridge._pack_into_pipe

        def tracked(*args, **kwargs):
            names.append(threading.current_thread().name)
            return original(*args, **kwargs)

        monkeypatch.setattr(stream_bridge, "_pack_into_pipe", tracked)
        await asyncio.gather(_collect(stream_archive(root)), _collect(stream_archive(root)))
        assert len(set(names)) == 2
        assert all(name.startswith("backup-export-") for name in names)
