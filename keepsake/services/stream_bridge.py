"""
Streaming bridge - feeds a blocking tar writer into an async response body.

Each export runs its packer on its own thread, writing into a BoundedPipe; the
HTTP layer reads chunks from the other end without tying up a thread. When the
pipe is full the packer's writes block, so a slow client throttles packing and
memory stays bounded by the pipe capacity plus the producer's write buffer.
A stalled client only ever holds its own thread, never a shared worker.
"""

import asyncio
import io
import itertools
import logging
import threading
from pathlib import Path
from typing import AsyncIterator, Optional

from keepsake.config import settings
from keepsake.core.errors import StreamTerminated
from keepsake.services.archive import ExcludePredicate, is_protected, pack

logger = logging.getLogger(__name__)

# Producer threads are named backup-export-1, backup-export-2, ...
_export_ids = itertools.count(1)


class BoundedPipe:
    """In-memory byte pipe with a fixed capacity.

    The writer side is synchronous and blocks while the pipe is full. The
    reader side is a coroutine; it is woken from the writer thread through
    ``loop.call_soon_threadsafe``.
    """

    def __init__(self, capacity: int, loop: Optional[asyncio.AbstractEventLoop] = None):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.high_water = 0
        self._buffer = bytearray()
        self._cond = threading.Condition()
        self._writer_closed = False
        self._reader_closed = False
        self._error: Optional[BaseException] = None
        self._loop = loop or asyncio.get_running_loop()
        self._readable = asyncio.Event()

    @property
    def reader_closed(self) -> bool:
        with self._cond:
            return self._reader_closed

    @property
    def error(self) -> Optional[BaseException]:
        with self._cond:
            return self._error

    def _wake_reader(self) -> None:
        try:
            self._loop.call_soon_threadsafe(self._readable.set)
        except RuntimeError:
            # Loop already closed: the reader is gone with it
            logger.debug("Event loop closed before pipe reader could be woken")

    # ---- producer end (blocking, worker thread) ----

    def write(self, data) -> int:
        """Write up to ``len(data)`` bytes, blocking while the pipe is full.

        Returns the number of bytes accepted. Raises BrokenPipeError once the
        reader has gone away.
        """
        view = memoryview(data).cast("B")
        if not view.nbytes:
            return 0
        with self._cond:
            while len(self._buffer) >= self.capacity and not self._reader_closed:
                self._cond.wait()
            if self._reader_closed:
                raise BrokenPipeError("Backup stream consumer went away")
            if self._writer_closed:
                raise ValueError("write to closed pipe")
            accepted = min(view.nbytes, self.capacity - len(self._buffer))
            self._buffer += view[:accepted]
            self.high_water = max(self.high_water, len(self._buffer))
        self._wake_reader()
        return accepted

    def close_writer(self, error: Optional[BaseException] = None) -> None:
        """Signal end-of-stream; ``error`` marks the stream as terminated early."""
        with self._cond:
            if self._writer_closed:
                return
            self._writer_closed = True
            self._error = error
            self._cond.notify_all()
        self._wake_reader()

    # ---- consumer end (async, event loop) ----

    async def read(self, max_bytes: int) -> bytes:
        """Return the next chunk of at most ``max_bytes``; ``b""`` at end-of-stream."""
        while True:
            with self._cond:
                if self._buffer:
                    chunk = bytes(self._buffer[:max_bytes])
                    del self._buffer[:max_bytes]
                    self._cond.notify_all()
                    return chunk
                if self._writer_closed or self._reader_closed:
                    return b""
                self._readable.clear()
            await self._readable.wait()

    def close_reader(self) -> None:
        """Drop the consumer end; a blocked or later write fails with BrokenPipeError."""
        with self._cond:
            self._reader_closed = True
            self._buffer.clear()
            self._cond.notify_all()


class PipeWriter(io.RawIOBase):
    """File-like producer end of a BoundedPipe, for libraries that want ``write()``."""

    def __init__(self, pipe: BoundedPipe):
        self._pipe = pipe

    def writable(self) -> bool:
        return True

    def write(self, b) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed file")
        return self._pipe.write(b)


def _pack_into_pipe(
    pipe: BoundedPipe,
    source_root: Path,
    exclude: ExcludePredicate,
    compress: bool,
    write_buffer: int,
) -> None:
    """Worker-thread body: pack into the pipe and always close the producer end."""
    error: Optional[BaseException] = None
    buffered = io.BufferedWriter(PipeWriter(pipe), buffer_size=write_buffer)
    try:
        pack(source_root, buffered, exclude=exclude, compress=compress)
        # Flushes the tail of the archive before end-of-stream is signalled
        buffered.close()
    except BrokenPipeError as e:
        error = StreamTerminated("Client disconnected during backup export")
        error.__cause__ = e
        logger.warning(f"Backup export abandoned by client: {source_root}")
    except Exception as e:
        error = StreamTerminated(f"Backup packing failed mid-stream: {e}")
        error.__cause__ = e
        # Headers are already sent; all we can do is log and cut the stream short
        logger.error(f"Backup packing failed mid-stream: {e}")
    finally:
        pipe.close_writer(error)
        if not buffered.closed:
            # Pipe is closed now, so the flush inside close() fails and the
            # buffered tail of a broken archive is dropped
            try:
                buffered.close()
            except (OSError, ValueError):
                logger.debug("Discarded unflushed bytes of an aborted backup stream")


async def stream_archive(
    source_root: Path,
    compress: bool = False,
    exclude: ExcludePredicate = is_protected,
    capacity: Optional[int] = None,
    write_buffer: Optional[int] = None,
    chunk_size: Optional[int] = None,
) -> AsyncIterator[bytes]:
    """Yield the tar stream of ``source_root`` chunk by chunk.

    Each call gets its own pipe and producer thread. If the consumer stops
    iterating (client disconnect), the pipe's reader end is closed and the
    packer terminates on its next write.
    """
    loop = asyncio.get_running_loop()
    pipe = BoundedPipe(capacity or settings.backup_pipe_capacity, loop=loop)
    chunk_size = chunk_size or settings.backup_chunk_size
    producer = threading.Thread(
        target=_pack_into_pipe,
        args=(
            pipe,
            Path(source_root),
            exclude,
            compress,
            write_buffer or settings.backup_write_buffer,
        ),
        name=f"backup-export-{next(_export_ids)}",
        daemon=True,
    )
    producer.start()
    sent = 0
    try:
        while True:
            chunk = await pipe.read(chunk_size)
            if not chunk:
                break
            sent += len(chunk)
            yield chunk
    finally:
        pipe.close_reader()

    if pipe.error is not None:
        logger.error(f"Backup stream terminated early after {sent} bytes: {pipe.error}")
    else:
        logger.info(f"Backup stream completed: {sent} bytes from {source_root}")
