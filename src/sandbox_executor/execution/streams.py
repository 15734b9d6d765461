from __future__ import annotations

import threading
from typing import IO, Iterator

CHUNK_SIZE = 4096


def iter_chunks(stream: IO[bytes], chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Yield chunks from a binary pipe in arrival order until EOF.

    Example:
        ```python
        for chunk in iter_chunks(proc.stdout):
            buffer.write(chunk)
        ```
    """
    read = getattr(stream, "read1", stream.read)
    while True:
        chunk = read(chunk_size)
        if not chunk:
            return
        yield chunk


class CappedBuffer:
    """Byte sink that keeps only the first `limit` bytes it is given.

    Bytes past the limit are counted and dropped so the writer can keep
    draining the pipe without growing memory.

    Example:
        ```python
        buf = CappedBuffer(limit=8192)
        buf.write(b"hello")
        ```
    """

    def __init__(self, limit: int) -> None:
        """Create an empty buffer with a byte budget.

        Example:
            ```python
            buf = CappedBuffer(limit=4096)
            ```
        """
        if limit < 0:
            raise ValueError("limit must be non-negative")
        self._limit = limit
        self._data = bytearray()
        self._total = 0
        self._lock = threading.Lock()

    def write(self, chunk: bytes) -> None:
        """Append a chunk, keeping only what fits in the budget.

        Example:
            ```python
            buf.write(b"line\\n")
            ```
        """
        with self._lock:
            self._total += len(chunk)
            room = self._limit - len(self._data)
            if room > 0:
                self._data.extend(chunk[:room])

    def getvalue(self) -> bytes:
        """Return a copy of the retained bytes.

        Example:
            ```python
            data = buf.getvalue()
            ```
        """
        with self._lock:
            return bytes(self._data)

    @property
    def total(self) -> int:
        """Return the number of bytes seen, retained or not.

        Example:
            ```python
            seen = buf.total
            ```
        """
        with self._lock:
            return self._total

    @property
    def truncated(self) -> bool:
        """Return whether any bytes were dropped.

        Example:
            ```python
            if buf.truncated:
                ...
            ```
        """
        with self._lock:
            return self._total > len(self._data)


class StreamCollector:
    """Drain one process pipe into a `CappedBuffer` on a background thread.

    Example:
        ```python
        collector = StreamCollector(proc.stdout, limit=8192, name="stdout")
        collector.start()
        collector.join(timeout=1)
        ```
    """

    def __init__(self, stream: IO[bytes], *, limit: int, name: str) -> None:
        """Bind a pipe to a fresh capped buffer.

        Example:
            ```python
            collector = StreamCollector(proc.stderr, limit=4096, name="stderr")
            ```
        """
        self.buffer = CappedBuffer(limit)
        self._stream = stream
        self._thread = threading.Thread(target=self._drain, name=f"sandbox-{name}", daemon=True)

    def start(self) -> None:
        """Start draining the pipe.

        Example:
            ```python
            collector.start()
            ```
        """
        self._thread.start()

    def join(self, timeout: float | None = None) -> None:
        """Wait for the pipe to reach EOF.

        Example:
            ```python
            collector.join(timeout=2)
            ```
        """
        self._thread.join(timeout)

    def _drain(self) -> None:
        """Copy chunks into the buffer until EOF or the pipe is closed.

        Example:
            ```python
            collector._drain()
            ```
        """
        try:
            for chunk in iter_chunks(self._stream):
                self.buffer.write(chunk)
        except (OSError, ValueError):
            # pipe closed underneath us after a kill
            return
        finally:
            try:
                self._stream.close()
            except OSError:
                pass
