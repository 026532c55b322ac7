"""Write sink for streaming uploads.

An :class:`UploadHandle` is what ``put`` hands back to the caller. Bytes
written to it flow through a pipe into a request that is already being sent
on a background thread; ``close`` ends the stream and reports how that
request finished.
"""

from __future__ import annotations

import logging
import threading
from types import TracebackType

from s3pipe.infra.observability.metrics import TRANSFER_BYTES
from s3pipe.infra.storage.client import StorageError, Target, UploadAbortedError
from s3pipe.infra.storage.pipe import PipeWriter

logger = logging.getLogger("s3pipe.storage")


class UploadHandle:
    """Caller side of a backgrounded upload.

    The background sender must call :meth:`release` exactly once, on every
    exit path. :meth:`close` blocks until that happened and raises the error
    the sender stored, if any.
    """

    def __init__(self, writer: PipeWriter, *, target: Target | None = None) -> None:
        self._writer = writer
        self.target = target
        self.bytes_written = 0
        self._released = threading.Event()
        self._lock = threading.Lock()
        self._error: StorageError | None = None
        self._is_released = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def done(self) -> bool:
        """Whether the background sender has reported its outcome."""
        return self._released.is_set()

    def write(self, data: bytes) -> int:
        if self._closed:
            raise ValueError("write to closed upload handle")
        written = self._writer.write(data)
        self.bytes_written += written
        TRANSFER_BYTES.labels("upload").inc(written)
        return written

    def release(self, error: StorageError | None = None) -> None:
        """Store the final outcome and wake the pending close()."""
        with self._lock:
            if self._is_released:
                raise RuntimeError(f"upload handle for {self.target} released twice")
            self._is_released = True
            self._error = error
        self._released.set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._released.wait(timeout)

    def close(self) -> None:
        """End the stream, wait for the upload to finish and raise its error."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._writer.close()
        self._released.wait()
        if self._error is not None:
            raise self._error

    def abort(self, reason: BaseException | None = None) -> None:
        """Fail the in-flight upload instead of completing it.

        The request body raises, so the server never sees a complete payload.
        Waits for the background sender like close() but does not raise.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
        error = UploadAbortedError(f"Upload of {self.target} aborted: {reason}")
        if reason is not None:
            error.__cause__ = reason
        self._writer.close_with_error(error)
        self._released.wait()
        if self._error is not None:
            logger.debug("upload of %s aborted: %s", self.target, self._error)

    def __enter__(self) -> "UploadHandle":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc is None:
            self.close()
        else:
            self.abort(exc)
