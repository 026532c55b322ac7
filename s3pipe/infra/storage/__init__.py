"""Object storage abstraction layer.

This module provides a protocol-based abstraction for streaming object
transfers, with an implementation for S3, MinIO, and other S3-compatible
services.
"""

from .client import (
    InvalidArgumentError,
    InvalidRangeError,
    MalformedResponseError,
    ObjectNotFoundError,
    ObjectStat,
    ObjectStream,
    ProtocolError,
    StorageClient,
    StorageError,
    Target,
    TransportError,
    UploadAbortedError,
)
from .s3_client import S3StorageClient
from .upload import UploadHandle

__all__ = [
    "InvalidArgumentError",
    "InvalidRangeError",
    "MalformedResponseError",
    "ObjectNotFoundError",
    "ObjectStat",
    "ObjectStream",
    "ProtocolError",
    "S3StorageClient",
    "StorageClient",
    "StorageError",
    "Target",
    "TransportError",
    "UploadAbortedError",
    "UploadHandle",
]
