"""Tests for S3 storage client."""

import base64
import hashlib
import threading
from datetime import datetime, timezone

import pytest
import requests

from s3pipe.infra.storage.client import (
    InvalidArgumentError,
    InvalidRangeError,
    MalformedResponseError,
    ObjectNotFoundError,
    ProtocolError,
    Target,
    TransportError,
)
from s3pipe.infra.storage.s3_client import S3StorageClient
from s3pipe.infra.storage.signing import RequestSigner
from tests.infra.mock_transport import MockTransport, make_response, mount, s3_error

ENDPOINT = "http://localhost:9000"
TARGET = Target("test-bucket", "test/key")
PIPE_CAPACITY = 1024


def ok(request, body):
    return make_response(request, 200, headers={"ETag": '"etag-1"'})


def build_client(handler=ok, *, drain=True, signer=None):
    transport = MockTransport(handler, drain=drain)
    client = S3StorageClient(
        endpoint_url=ENDPOINT,
        signer=signer,
        session=mount(transport),
        user_agent="s3pipe-tests",
        pipe_capacity=PIPE_CAPACITY,
    )
    return client, transport


def write_all(handle, payload, step=700):
    for start in range(0, len(payload), step):
        handle.write(payload[start : start + step])


class TestPut:
    """Test streaming uploads."""

    @pytest.mark.parametrize("size", [0, 1, 5 * PIPE_CAPACITY + 3])
    def test_declared_size_is_sent_as_content_length(self, size):
        client, transport = build_client()
        payload = bytes(i % 251 for i in range(size))

        handle = client.put(TARGET, size=size)
        write_all(handle, payload)
        handle.close()

        (call,) = transport.calls
        assert call.method == "PUT"
        assert call.url == f"{ENDPOINT}/test-bucket/test/key"
        assert call.body == payload
        assert call.headers["Content-Length"] == str(size)
        assert "Transfer-Encoding" not in call.headers

    @pytest.mark.parametrize("size", [0, 3 * PIPE_CAPACITY])
    def test_unknown_size_streams_without_content_length(self, size):
        client, transport = build_client()
        payload = b"z" * size

        handle = client.put(TARGET)
        write_all(handle, payload)
        handle.close()

        (call,) = transport.calls
        assert call.body == payload
        assert "Content-Length" not in call.headers
        assert call.headers["Transfer-Encoding"] == "chunked"

    def test_request_starts_before_close(self):
        client, transport = build_client()

        handle = client.put(TARGET)

        assert transport.started.wait(timeout=2)
        handle.close()

    def test_close_before_write_waits_for_outcome(self):
        gate = threading.Event()

        def slow(request, body):
            gate.wait(timeout=5)
            return make_response(request, 200)

        client, transport = build_client(slow)
        handle = client.put(TARGET)
        errors = []

        def close():
            try:
                handle.close()
            except Exception as exc:
                errors.append(exc)

        closer = threading.Thread(target=close, daemon=True)
        closer.start()
        closer.join(timeout=0.2)
        assert closer.is_alive()

        gate.set()
        closer.join(timeout=2)
        assert not closer.is_alive()
        assert errors == []
        assert transport.calls[0].body == b""

    def test_content_md5_is_sent_base64(self):
        client, transport = build_client()
        payload = b"hello world"
        md5_hex = hashlib.md5(payload).hexdigest()

        handle = client.put(TARGET, content_md5=md5_hex, size=len(payload))
        handle.write(payload)
        handle.close()

        expected = base64.b64encode(hashlib.md5(payload).digest()).decode("ascii")
        assert transport.calls[0].headers["Content-MD5"] == expected

    def test_invalid_md5_fails_at_close(self):
        client, transport = build_client()

        handle = client.put(TARGET, content_md5="not-hex")

        with pytest.raises(InvalidArgumentError, match="Invalid MD5"):
            handle.close()
        assert transport.calls == []

    def test_error_status_is_reported_at_close(self):
        def fail(request, body):
            return make_response(
                request, 500, body=s3_error("InternalError", "We encountered an internal error")
            )

        client, _ = build_client(fail)
        handle = client.put(TARGET)
        handle.write(b"payload")

        with pytest.raises(ProtocolError) as excinfo:
            handle.close()

        error = excinfo.value
        assert error.status_code == 500
        assert error.code == "InternalError"
        assert error.message == "We encountered an internal error"
        assert error.request_id == "req-123"
        # a second close neither blocks nor raises again
        handle.close()

    def test_error_without_body_uses_reason(self):
        client, _ = build_client(lambda request, body: make_response(request, 403))
        handle = client.put(TARGET)

        with pytest.raises(ProtocolError) as excinfo:
            handle.close()
        assert excinfo.value.code == "Forbidden"

    def test_transport_failure_unblocks_writer(self):
        def refuse(request, body):
            return requests.ConnectionError("connection refused")

        client, _ = build_client(refuse, drain=False)
        handle = client.put(TARGET)

        with pytest.raises(TransportError, match="connection refused"):
            handle.write(b"x" * (4 * PIPE_CAPACITY))
        with pytest.raises(TransportError):
            handle.close()

    def test_context_manager_closes(self):
        client, transport = build_client()

        with client.put(TARGET) as handle:
            handle.write(b"abc")

        assert handle.closed
        assert transport.calls[0].body == b"abc"

    def test_context_manager_aborts_on_error(self):
        handled = []

        def record(request, body):
            handled.append(body)
            return make_response(request, 200)

        client, transport = build_client(record)

        with pytest.raises(RuntimeError, match="boom"):
            with client.put(TARGET) as handle:
                handle.write(b"partial")
                raise RuntimeError("boom")

        assert handle.done
        assert handled == []
        assert transport.calls == []

    def test_empty_key_is_rejected_synchronously(self):
        client, transport = build_client()

        with pytest.raises(InvalidArgumentError):
            client.put(Target("test-bucket", ""))
        assert transport.calls == []

    def test_requests_are_signed(self):
        signer = RequestSigner(
            access_key_id="AKIDEXAMPLE", secret_access_key="secret", region="eu-west-1"
        )
        client, transport = build_client(signer=signer)

        handle = client.put(TARGET, size=3)
        handle.write(b"abc")
        handle.close()

        headers = transport.calls[0].headers
        assert headers["Authorization"].startswith("AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/")
        assert "/eu-west-1/s3/aws4_request" in headers["Authorization"]
        assert headers["X-Amz-Content-SHA256"] == "UNSIGNED-PAYLOAD"
        assert headers["User-Agent"] == "s3pipe-tests"


class TestGet:
    """Test full object downloads."""

    def test_get_returns_body_size_and_etag(self):
        def serve(request, body):
            return make_response(
                request,
                200,
                headers={"Content-Length": "11", "ETag": '"d41d8cd9"'},
                body=b"hello world",
            )

        client, transport = build_client(serve)

        with client.get(TARGET) as stream:
            assert stream.read() == b"hello world"
            assert stream.size == 11
            assert stream.etag == "d41d8cd9"
        assert stream.closed
        assert transport.calls[0].method == "GET"
        assert "Range" not in transport.calls[0].headers

    def test_get_without_content_length(self):
        client, _ = build_client(lambda request, body: make_response(request, 200, body=b"abc"))

        stream = client.get(TARGET)

        assert stream.size == -1
        assert b"".join(stream.iter_chunks(2)) == b"abc"
        stream.close()

    def test_get_missing_object(self):
        client, _ = build_client(
            lambda request, body: make_response(request, 404, body=s3_error("NoSuchKey", "missing"))
        )

        with pytest.raises(ObjectNotFoundError) as excinfo:
            client.get(TARGET)
        assert excinfo.value.bucket == "test-bucket"
        assert excinfo.value.object_key == "test/key"

    def test_get_error_status(self):
        client, _ = build_client(
            lambda request, body: make_response(request, 403, body=s3_error("AccessDenied", "Access Denied"))
        )

        with pytest.raises(ProtocolError) as excinfo:
            client.get(TARGET)
        assert excinfo.value.status_code == 403
        assert excinfo.value.code == "AccessDenied"
        assert excinfo.value.resource == "/bucket/key"

    def test_get_malformed_length(self):
        client, _ = build_client(
            lambda request, body: make_response(request, 200, headers={"Content-Length": "eleven"})
        )

        with pytest.raises(MalformedResponseError) as excinfo:
            client.get(TARGET)
        assert excinfo.value.header == "Content-Length"

    def test_get_transport_failure(self):
        client, _ = build_client(lambda request, body: requests.Timeout("read timed out"))

        with pytest.raises(TransportError, match="read timed out"):
            client.get(TARGET)


class TestGetPartial:
    """Test ranged downloads."""

    @pytest.mark.parametrize("length", [-1, 0, 5, 1 << 40])
    def test_negative_offset_sends_nothing(self, length):
        client, transport = build_client()

        with pytest.raises(InvalidRangeError) as excinfo:
            client.get_partial(TARGET, offset=-1, length=length)

        assert excinfo.value.offset == -1
        assert transport.calls == []

    def test_bounded_range(self):
        def serve(request, body):
            return make_response(
                request, 206, headers={"Content-Length": "5", "ETag": '"abc"'}, body=b"01234"
            )

        client, transport = build_client(serve)

        with client.get_partial(TARGET, offset=10, length=5) as stream:
            assert stream.read() == b"01234"
            assert stream.size == 5
            assert stream.etag == "abc"
        assert transport.calls[0].headers["Range"] == "bytes=10-14"

    def test_open_ended_range(self):
        client, transport = build_client(
            lambda request, body: make_response(request, 200, headers={"Content-Length": "3"}, body=b"xyz")
        )

        with client.get_partial(TARGET, offset=10, length=-1) as stream:
            assert stream.read() == b"xyz"
        assert transport.calls[0].headers["Range"] == "bytes=10-"

    def test_unsatisfiable_range(self):
        client, _ = build_client(
            lambda request, body: make_response(
                request, 416, body=s3_error("InvalidRange", "The requested range is not satisfiable")
            )
        )

        with pytest.raises(ProtocolError) as excinfo:
            client.get_partial(TARGET, offset=100, length=10)
        assert excinfo.value.status_code == 416
        assert excinfo.value.code == "InvalidRange"


class TestStatObject:
    """Test HEAD metadata probes."""

    @pytest.mark.parametrize("bucket,key", [("", "key"), ("bucket", ""), ("", "")])
    def test_missing_bucket_or_key(self, bucket, key):
        client, transport = build_client()

        with pytest.raises(InvalidArgumentError):
            client.stat_object(Target(bucket, key))
        assert transport.calls == []

    def test_not_found(self):
        client, transport = build_client(lambda request, body: make_response(request, 404))

        with pytest.raises(ObjectNotFoundError) as excinfo:
            client.stat_object(TARGET)

        assert excinfo.value.bucket == "test-bucket"
        assert excinfo.value.object_key == "test/key"
        assert transport.calls[0].method == "HEAD"

    def test_size_and_last_modified(self):
        def serve(request, body):
            return make_response(
                request,
                200,
                headers={
                    "Content-Length": "123",
                    "Last-Modified": "Wed, 21 Oct 2015 07:28:00 GMT",
                },
            )

        client, _ = build_client(serve)

        stat = client.stat_object(TARGET)

        assert stat.size_bytes == 123
        assert stat.last_modified == datetime(2015, 10, 21, 7, 28, tzinfo=timezone.utc)

    def test_missing_last_modified_is_tolerated(self):
        client, _ = build_client(
            lambda request, body: make_response(request, 200, headers={"Content-Length": "7"})
        )

        stat = client.stat_object(TARGET)

        assert stat.size_bytes == 7
        assert stat.last_modified is None

    @pytest.mark.parametrize(
        "headers,bad_header",
        [
            ({"Content-Length": "12abc"}, "Content-Length"),
            ({}, "Content-Length"),
            ({"Content-Length": "1", "Last-Modified": "yesterday"}, "Last-Modified"),
        ],
    )
    def test_unparsable_headers(self, headers, bad_header):
        client, _ = build_client(lambda request, body: make_response(request, 200, headers=headers))

        with pytest.raises(MalformedResponseError) as excinfo:
            client.stat_object(TARGET)
        assert excinfo.value.header == bad_header

    def test_other_status(self):
        client, _ = build_client(lambda request, body: make_response(request, 500))

        with pytest.raises(ProtocolError) as excinfo:
            client.stat_object(TARGET)
        assert excinfo.value.status_code == 500
        assert excinfo.value.code == "Internal Server Error"


class TestClientConfiguration:
    """Test URL building and construction from settings."""

    def test_object_url_quotes_key(self):
        client, _ = build_client()

        url = client.object_url(Target("bucket", "dir/file name+1.txt"))

        assert url == f"{ENDPOINT}/bucket/dir/file%20name%2B1.txt"

    def test_from_settings_requires_endpoint(self):
        from s3pipe.common.config import Settings

        with pytest.raises(InvalidArgumentError):
            S3StorageClient.from_settings(Settings())

    def test_from_settings_uses_endpoint_override(self):
        from s3pipe.common.config import Settings

        client = S3StorageClient.from_settings(
            Settings(S3_ENDPOINT_URL="https://s3.example.com"),
            endpoint_url="http://minio.local:9000/",
        )

        assert client.endpoint_url == "http://minio.local:9000"
