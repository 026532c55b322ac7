"""Bounded in-process pipe connecting a writer thread to a reader thread.

The writer blocks once ``capacity`` bytes are buffered and the reader blocks
while the buffer is empty, so an upload never holds more than ``capacity``
bytes of the payload in memory. Either end can close with an error, which is
then raised on the opposite end.
"""

from __future__ import annotations

import errno
import threading
from typing import Iterator

DEFAULT_CAPACITY = 64 * 1024


class _PipeState:
    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("pipe capacity must be positive")
        self.capacity = capacity
        self.buffer = bytearray()
        self.cond = threading.Condition()
        self.writer_closed = False
        self.writer_error: BaseException | None = None
        self.reader_closed = False
        self.reader_error: BaseException | None = None


class PipeReader:
    """Read end of a pipe. Iterating yields chunks until end of stream."""

    def __init__(self, state: _PipeState) -> None:
        self._state = state

    def read(self, size: int = -1) -> bytes:
        state = self._state
        with state.cond:
            while not state.buffer and not state.writer_closed and not state.reader_closed:
                state.cond.wait()
            if state.reader_closed:
                raise ValueError("read from closed pipe")
            if state.buffer:
                if size is None or size < 0:
                    size = len(state.buffer)
                chunk = bytes(state.buffer[:size])
                del state.buffer[:size]
                state.cond.notify_all()
                return chunk
            if state.writer_error is not None:
                raise state.writer_error
            return b""

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self.read(self._state.capacity)
            if not chunk:
                return
            yield chunk

    def close(self) -> None:
        self.close_with_error(None)

    def close_with_error(self, error: BaseException | None) -> None:
        """Close the read end; pending and later writes raise ``error``."""
        state = self._state
        with state.cond:
            if state.reader_closed:
                return
            state.reader_closed = True
            state.reader_error = error
            state.buffer.clear()
            state.cond.notify_all()


class PipeWriter:
    """Write end of a pipe."""

    def __init__(self, state: _PipeState) -> None:
        self._state = state

    def write(self, data: bytes) -> int:
        """Write all of ``data``, blocking while the pipe is full."""
        state = self._state
        view = memoryview(data).cast("B")
        written = 0
        with state.cond:
            if state.writer_closed:
                raise ValueError("write to closed pipe")
            while written < len(view):
                while len(state.buffer) >= state.capacity and not state.reader_closed:
                    state.cond.wait()
                if state.reader_closed:
                    if state.reader_error is not None:
                        raise state.reader_error
                    raise BrokenPipeError(errno.EPIPE, "read end of pipe is closed")
                room = state.capacity - len(state.buffer)
                state.buffer.extend(view[written : written + room])
                written += min(room, len(view) - written)
                state.cond.notify_all()
        return written

    def close(self) -> None:
        self.close_with_error(None)

    def close_with_error(self, error: BaseException | None) -> None:
        """Close the write end; the reader sees EOF, or ``error`` once drained."""
        state = self._state
        with state.cond:
            if state.writer_closed:
                return
            state.writer_closed = True
            state.writer_error = error
            state.cond.notify_all()


def make_pipe(capacity: int = DEFAULT_CAPACITY) -> tuple[PipeReader, PipeWriter]:
    state = _PipeState(capacity)
    return PipeReader(state), PipeWriter(state)
