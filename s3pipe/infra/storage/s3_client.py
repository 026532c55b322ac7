"""S3-compatible storage client implementation.

This module provides a streaming S3-compatible storage client that works with
AWS S3, MinIO, and other S3-compatible object storage services. Uploads are
never buffered in full: the request body is the read end of a bounded pipe
whose write end is handed to the caller.

Dependencies:
    - requests
    - botocore
"""

from __future__ import annotations

import base64
import logging
import threading
import time
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any, Mapping
from urllib.parse import quote
from xml.etree import ElementTree

import requests

from s3pipe.infra.observability.metrics import TRANSFER_DURATION, TRANSFER_OPERATIONS
from s3pipe.infra.storage.client import (
    InvalidArgumentError,
    InvalidRangeError,
    MalformedResponseError,
    ObjectNotFoundError,
    ObjectStat,
    ObjectStream,
    ProtocolError,
    StorageError,
    Target,
    TransportError,
    require_target,
)
from s3pipe.infra.storage.pipe import DEFAULT_CAPACITY, PipeReader, make_pipe
from s3pipe.infra.storage.signing import RequestSigner, SignedRequestBuilder
from s3pipe.infra.storage.upload import UploadHandle

if TYPE_CHECKING:
    from s3pipe.common.config import Settings

logger = logging.getLogger("s3pipe.storage")

# Error documents are small; anything past this is not worth reading.
_ERROR_BODY_LIMIT = 64 * 1024


class S3StorageClient:
    """Streaming S3-compatible object storage client.

    Supports AWS S3, MinIO, and other S3-compatible services addressed
    path-style (``<endpoint>/<bucket>/<key>``). Nothing is retried here.
    """

    def __init__(
        self,
        *,
        endpoint_url: str,
        signer: RequestSigner | None = None,
        session: requests.Session | None = None,
        user_agent: str | None = None,
        timeout: float | tuple[float, float] | None = None,
        pipe_capacity: int = DEFAULT_CAPACITY,
    ) -> None:
        """Initialize the client.

        Args:
            endpoint_url: Scheme and host of the service, e.g. ``https://s3.amazonaws.com``.
            signer: Signs every request; anonymous when omitted.
            session: HTTP session used as transport.
            user_agent: User-Agent header value.
            timeout: Connect/read timeout passed to requests.
            pipe_capacity: Bytes buffered between an upload writer and the request.
        """
        self.endpoint_url = endpoint_url.rstrip("/")
        self._builder = SignedRequestBuilder(
            signer or RequestSigner(), user_agent=user_agent
        )
        self._session = session or requests.Session()
        self._timeout = timeout
        self._pipe_capacity = pipe_capacity

    @classmethod
    def from_settings(
        cls, settings: "Settings", *, endpoint_url: str | None = None
    ) -> "S3StorageClient":
        """Create a client from settings, optionally for another endpoint."""
        endpoint = endpoint_url or settings.S3_ENDPOINT_URL
        if not endpoint:
            raise InvalidArgumentError("S3_ENDPOINT_URL is required")
        return cls(
            endpoint_url=endpoint,
            signer=RequestSigner.from_settings(settings),
            user_agent=settings.USER_AGENT,
            timeout=(settings.HTTP_CONNECT_TIMEOUT, settings.HTTP_READ_TIMEOUT),
            pipe_capacity=settings.PIPE_BUFFER_SIZE,
        )

    def object_url(self, target: Target) -> str:
        bucket = quote(target.bucket, safe="")
        key = quote(target.object_key, safe="/~")
        return f"{self.endpoint_url}/{bucket}/{key}"

    def put(
        self,
        target: Target,
        *,
        content_md5: str = "",
        size: int = -1,
    ) -> UploadHandle:
        """Start a streaming upload; the request is already in flight on return."""
        require_target(target)
        reader, writer = make_pipe(self._pipe_capacity)
        handle = UploadHandle(writer, target=target)
        thread = threading.Thread(
            target=self._run_upload,
            args=(target, reader, handle, content_md5, size),
            name=f"s3pipe-put-{target}",
            daemon=True,
        )
        thread.start()
        return handle

    def _run_upload(
        self,
        target: Target,
        reader: PipeReader,
        handle: UploadHandle,
        content_md5: str,
        size: int,
    ) -> None:
        start = time.perf_counter()
        error: StorageError | None = None
        try:
            self._upload(target, reader, content_md5, size)
        except StorageError as exc:
            error = exc
        except Exception as exc:
            error = StorageError(f"Upload of {target} failed: {exc}")
            error.__cause__ = exc
        finally:
            reader.close_with_error(error)
            _record("put", start, error)
            if error is None:
                logger.info(
                    "put bucket=%s key=%s bytes=%s",
                    target.bucket,
                    target.object_key,
                    handle.bytes_written,
                    extra={
                        "extra": {
                            "operation": "put",
                            "bucket": target.bucket,
                            "key": target.object_key,
                            "bytes": handle.bytes_written,
                        }
                    },
                )
            else:
                logger.warning(
                    "put_failed bucket=%s key=%s error=%s",
                    target.bucket,
                    target.object_key,
                    error,
                )
            handle.release(error)

    def _upload(
        self, target: Target, reader: PipeReader, content_md5: str, size: int
    ) -> None:
        headers: dict[str, str] = {}
        if size >= 0:
            headers["Content-Length"] = str(size)
        # set Content-MD5 only if an md5 is provided
        if content_md5.strip():
            headers["Content-MD5"] = _encode_content_md5(content_md5.strip())
        response = self._send("PUT", target, headers=headers, body=reader)
        try:
            if response.status_code != 200:
                raise _protocol_error(response)
        finally:
            response.close()

    def get(self, target: Target) -> ObjectStream:
        """Download a whole object."""
        require_target(target)
        start = time.perf_counter()
        try:
            response = self._send("GET", target)
            stream = self._open_stream(response, target, accepted=(200,))
        except StorageError as exc:
            _record("get", start, exc)
            raise
        _record("get", start, None)
        return stream

    def get_partial(
        self,
        target: Target,
        *,
        offset: int,
        length: int = -1,
    ) -> ObjectStream:
        """Download ``length`` bytes from ``offset``, or to the end when negative."""
        if offset < 0:
            raise InvalidRangeError(offset)
        require_target(target)
        if length >= 0:
            byte_range = f"bytes={offset}-{offset + length - 1}"
        else:
            byte_range = f"bytes={offset}-"
        start = time.perf_counter()
        try:
            response = self._send("GET", target, headers={"Range": byte_range})
            stream = self._open_stream(response, target, accepted=(200, 206))
        except StorageError as exc:
            _record("get_partial", start, exc)
            raise
        _record("get_partial", start, None)
        return stream

    def stat_object(self, target: Target) -> ObjectStat:
        """Get object size and modification time with a HEAD request."""
        require_target(target)
        start = time.perf_counter()
        try:
            stat = self._stat(target)
        except StorageError as exc:
            _record("stat", start, exc)
            raise
        _record("stat", start, None)
        return stat

    def _stat(self, target: Target) -> ObjectStat:
        response = self._send("HEAD", target)
        try:
            if response.status_code == 404:
                raise ObjectNotFoundError(target.bucket, target.object_key)
            if response.status_code != 200:
                raise _protocol_error(response)
            raw_length = response.headers.get("Content-Length")
            size = _parse_length(raw_length)
            if size is None:
                raise MalformedResponseError("Content-Length", raw_length)
            last_modified = None
            raw_date = response.headers.get("Last-Modified")
            if raw_date:
                # S3 sends RFC 1123 dates in HTTP headers, unlike in XML bodies
                last_modified = _parse_http_date(raw_date)
            return ObjectStat(size_bytes=size, last_modified=last_modified)
        finally:
            response.close()

    def _open_stream(
        self,
        response: requests.Response,
        target: Target,
        *,
        accepted: tuple[int, ...],
    ) -> ObjectStream:
        if response.status_code not in accepted:
            try:
                if response.status_code == 404:
                    raise ObjectNotFoundError(target.bucket, target.object_key)
                raise _protocol_error(response)
            finally:
                response.close()
        raw_length = response.headers.get("Content-Length")
        size = _parse_length(raw_length)
        if raw_length is not None and size is None:
            response.close()
            raise MalformedResponseError("Content-Length", raw_length)
        # ETags arrive wrapped in double quotes
        etag = (response.headers.get("ETag") or "").strip('"')
        return ObjectStream(
            response.raw,
            size=-1 if size is None else size,
            etag=etag,
            on_close=response.close,
        )

    def _send(
        self,
        method: str,
        target: Target,
        *,
        headers: Mapping[str, str] | None = None,
        body: Any = None,
    ) -> requests.Response:
        url = self.object_url(target)
        prepared = self._builder.build(method, url, headers=headers, body=body)
        logger.debug("request method=%s url=%s", method, url)
        try:
            return self._session.send(
                prepared,
                stream=True,
                timeout=self._timeout,
                allow_redirects=False,
            )
        except requests.RequestException as exc:
            raise TransportError(f"{method} {url} failed: {exc}") from exc


def _encode_content_md5(md5_hex: str) -> str:
    try:
        digest = bytes.fromhex(md5_hex)
    except ValueError as exc:
        raise InvalidArgumentError(f"Invalid MD5 hex digest: {md5_hex!r}") from exc
    return base64.b64encode(digest).decode("ascii")


def _parse_length(value: str | None) -> int | None:
    if value is None:
        return None
    value = value.strip()
    if not value.isdigit():
        return None
    return int(value, 10)


def _parse_http_date(value: str) -> datetime:
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError) as exc:
        raise MalformedResponseError("Last-Modified", value) from exc
    if parsed is None:
        raise MalformedResponseError("Last-Modified", value)
    return parsed


def _protocol_error(response: requests.Response) -> ProtocolError:
    """Build a ProtocolError from a response, using the S3 XML error if any."""
    fields: dict[str, str | None] = {
        "Code": None,
        "Message": None,
        "RequestId": response.headers.get("x-amz-request-id"),
        "Resource": None,
    }
    body = b""
    if response.request is None or response.request.method != "HEAD":
        try:
            body = next(response.iter_content(_ERROR_BODY_LIMIT), b"")
        except requests.RequestException:
            body = b""
    if body:
        try:
            root = ElementTree.fromstring(body)
        except ElementTree.ParseError:
            root = None
        if root is not None:
            for name in fields:
                text = root.findtext(name)
                if text:
                    fields[name] = text
    return ProtocolError(
        response.status_code,
        code=fields["Code"] or response.reason or None,
        message=fields["Message"],
        request_id=fields["RequestId"],
        resource=fields["Resource"],
        response=response,
    )


def _record(operation: str, start: float, error: BaseException | None) -> None:
    TRANSFER_OPERATIONS.labels(operation, "error" if error else "success").inc()
    TRANSFER_DURATION.labels(operation).observe(time.perf_counter() - start)
