"""Storage client protocol, data types and errors.

This module defines the abstract interface for streaming object transfers
(upload, full and ranged download, metadata probe) and the error taxonomy
shared by every storage backend.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, BinaryIO, Iterator, Protocol

from s3pipe.infra.observability.metrics import TRANSFER_BYTES

if TYPE_CHECKING:
    from s3pipe.infra.storage.upload import UploadHandle


class StorageError(RuntimeError):
    """Raised when object storage operations fail."""


class InvalidArgumentError(StorageError):
    """Raised before any request is sent when the arguments are unusable."""


class InvalidRangeError(InvalidArgumentError):
    """Raised when a ranged read starts at a negative offset."""

    def __init__(self, offset: int) -> None:
        super().__init__(f"Invalid range: offset {offset} must not be negative")
        self.offset = offset


class ObjectNotFoundError(StorageError):
    """Raised when the bucket or the object does not exist (HTTP 404)."""

    def __init__(self, bucket: str, object_key: str) -> None:
        super().__init__(f"Object not found: {bucket}/{object_key}")
        self.bucket = bucket
        self.object_key = object_key


class ProtocolError(StorageError):
    """Raised when the server answers with an unexpected status code.

    Attributes:
        status_code: HTTP status of the response.
        code: S3 error code from the XML error document, or the reason phrase.
        message: Human readable detail reported by the server.
        request_id: Server-side request id, when the server sent one.
        resource: The resource the server complained about.
        response: The response itself, kept for diagnostics.
    """

    def __init__(
        self,
        status_code: int,
        *,
        code: str | None = None,
        message: str | None = None,
        request_id: str | None = None,
        resource: str | None = None,
        response: Any = None,
    ) -> None:
        detail = f"HTTP {status_code}"
        if code:
            detail += f" {code}"
        if message:
            detail += f": {message}"
        if resource:
            detail += f" ({resource})"
        super().__init__(detail)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.request_id = request_id
        self.resource = resource
        self.response = response


class TransportError(StorageError):
    """Raised when the request never produced a response (DNS, connect, timeout)."""


class MalformedResponseError(StorageError):
    """Raised when a required response header is present but cannot be parsed."""

    def __init__(self, header: str, value: str | None) -> None:
        super().__init__(f"Malformed {header} header in response: {value!r}")
        self.header = header
        self.value = value


class UploadAbortedError(StorageError):
    """Raised inside an upload whose writer gave up before end of stream."""


@dataclass(frozen=True, slots=True)
class Target:
    """A single remote object."""

    bucket: str
    object_key: str

    def __str__(self) -> str:
        return f"{self.bucket}/{self.object_key}"


@dataclass(frozen=True, slots=True)
class ObjectStat:
    """Metadata from a HEAD object request."""

    size_bytes: int
    last_modified: datetime | None


class ObjectStream:
    """Body of a downloaded object.

    The caller owns the stream and must close it, either explicitly or by
    using it as a context manager.
    """

    def __init__(self, body: BinaryIO, *, size: int, etag: str, on_close: Any = None):
        self.body = body
        self.size = size
        self.etag = etag
        self._on_close = on_close
        self._closed = False

    def read(self, amt: int = -1) -> bytes:
        data = self.body.read() if amt is None or amt < 0 else self.body.read(amt)
        if data:
            TRANSFER_BYTES.labels("download").inc(len(data))
        return data

    def iter_chunks(self, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        while True:
            chunk = self.read(chunk_size)
            if not chunk:
                return
            yield chunk

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.body.close()
        finally:
            if self._on_close is not None:
                self._on_close()

    def __enter__(self) -> "ObjectStream":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class StorageClient(Protocol):
    """Protocol defining the interface for streaming object transfers.

    Implementations must provide all methods defined here.
    Currently supports S3-compatible storage services.
    """

    def put(
        self,
        target: Target,
        *,
        content_md5: str = "",
        size: int = -1,
    ) -> "UploadHandle":
        """Start a streaming upload and return its write sink.

        The request is sent in the background as soon as this returns; bytes
        written to the handle become the request body.

        Args:
            target: Object to create or overwrite.
            content_md5: Hex encoded MD5 of the full payload, or empty.
            size: Exact payload length, or a negative number when unknown.

        Returns:
            UploadHandle whose close() reports the final outcome.

        Raises:
            InvalidArgumentError: If bucket or key is empty.
        """
        ...

    def get(self, target: Target) -> ObjectStream:
        """Download a whole object.

        Args:
            target: Object to read.

        Returns:
            ObjectStream with the open body, its size and ETag.

        Raises:
            StorageError: If the object doesn't exist or the operation fails.
        """
        ...

    def get_partial(
        self,
        target: Target,
        *,
        offset: int,
        length: int = -1,
    ) -> ObjectStream:
        """Download the byte range [offset, offset + length) of an object.

        Args:
            target: Object to read.
            offset: First byte to read, must not be negative.
            length: Number of bytes, or a negative number to read to the end.

        Returns:
            ObjectStream with the open body, its size and ETag.

        Raises:
            InvalidRangeError: If offset is negative.
            StorageError: If the object doesn't exist or the operation fails.
        """
        ...

    def stat_object(self, target: Target) -> ObjectStat:
        """Get object metadata without downloading the content.

        Args:
            target: Object to probe.

        Returns:
            ObjectStat with size and last modification time.

        Raises:
            InvalidArgumentError: If bucket or key is empty.
            ObjectNotFoundError: If the object doesn't exist.
            StorageError: If the operation fails.
        """
        ...


def require_target(target: Target) -> None:
    if not target.bucket or not target.object_key:
        raise InvalidArgumentError(
            f"Bucket and object key are required, got {target.bucket!r}/{target.object_key!r}"
        )
