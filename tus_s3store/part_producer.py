"""Split a byte stream into parts held in temporary files or in memory."""

from __future__ import annotations

import contextlib
import io
import os
import tempfile
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, Iterator, Optional

TEMP_DIR_USE_MEMORY = "_memory"
TEMP_MEMORY_ENV = "TUSD_S3STORE_TEMP_MEMORY"
TEMP_FILE_PREFIX = "tusd-s3-tmp-"

_COPY_BUFFER = 32 * 1024
_POLL_SECONDS = 0.05


@dataclass
class FileChunk:
    """One part: a seekable reader positioned at the start, and its size."""

    reader: BinaryIO
    size: int
    on_close: Optional[Callable[[], None]] = field(default=None, repr=False)
    closed: bool = field(default=False, repr=False)

    def close(self) -> None:
        """Release the part's storage; calling it again does nothing."""
        if self.closed:
            return
        self.closed = True
        if self.on_close is not None:
            self.on_close()


def _copy_limited(source, target, limit: int) -> int:
    copied = 0
    while copied < limit:
        data = source.read(min(_COPY_BUFFER, limit - copied))
        if not data:
            break
        target.write(data)
        copied += len(data)
    return copied


class PartProducer:
    """Reads a source into parts of a given size and hands them to a consumer.

    ``produce`` runs in its own thread; the consumer iterates the producer.
    At most ``backlog`` parts (at least one) wait unconsumed at a time.
    """

    def __init__(self, source, backlog: int, tmp_dir: str) -> None:
        if os.environ.get(TEMP_MEMORY_ENV) == "1":
            tmp_dir = TEMP_DIR_USE_MEMORY
        self.tmp_dir = tmp_dir
        self.error: BaseException | None = None
        self._source = source
        self._capacity = max(int(backlog), 1)
        self._pending: deque[FileChunk] = deque()
        self._closed = False
        self._cond = threading.Condition()

    def produce(self, part_size: int, stop: threading.Event | None = None) -> None:
        """Read parts until the source ends, reading fails, or ``stop`` is set."""
        stop = stop or threading.Event()
        try:
            while not stop.is_set():
                try:
                    chunk = self._next_part(part_size)
                except Exception as exc:
                    self.error = exc
                    break
                if chunk is None:
                    break
                if not self._offer(chunk, stop):
                    with contextlib.suppress(OSError):
                        chunk.close()
                    break
        finally:
            with self._cond:
                self._closed = True
                self._cond.notify_all()

    def __iter__(self) -> Iterator[FileChunk]:
        while True:
            with self._cond:
                while not self._pending and not self._closed:
                    self._cond.wait()
                if not self._pending:
                    return
                chunk = self._pending.popleft()
                self._cond.notify_all()
            yield chunk

    def close_unread_files(self) -> None:
        """Wait for the producer to finish and release every part not consumed."""
        for chunk in self:
            with contextlib.suppress(OSError):
                chunk.close()

    def _offer(self, chunk: FileChunk, stop: threading.Event) -> bool:
        with self._cond:
            while len(self._pending) >= self._capacity:
                if stop.is_set():
                    return False
                self._cond.wait(_POLL_SECONDS)
            self._pending.append(chunk)
            self._cond.notify_all()
            return True

    def _next_part(self, size: int) -> FileChunk | None:
        if self.tmp_dir == TEMP_DIR_USE_MEMORY:
            buffer = io.BytesIO()
            copied = _copy_limited(self._source, buffer, size)
            if copied == 0:
                return None
            buffer.seek(0)
            return FileChunk(buffer, copied)

        file = tempfile.NamedTemporaryFile(
            mode="w+b", prefix=TEMP_FILE_PREFIX, dir=self.tmp_dir or None, delete=False
        )
        path = file.name

        def cleanup() -> None:
            file.close()
            os.remove(path)

        try:
            copied = _copy_limited(self._source, file, size)
        except BaseException:
            cleanup()
            raise
        if copied == 0:
            cleanup()
            return None
        file.flush()
        file.seek(0)
        return FileChunk(file, copied, cleanup)