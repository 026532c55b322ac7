"""Request signing for S3-compatible endpoints.

Dependencies:
    - botocore (Signature Version 4)
    - requests (prepared requests)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping

import requests
from botocore.auth import S3SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.config import Config
from botocore.credentials import Credentials

if TYPE_CHECKING:
    from s3pipe.common.config import Settings

# Streamed bodies cannot be hashed up front, so the payload is never signed.
_UNSIGNED_PAYLOAD_CONFIG = Config(s3={"payload_signing_enabled": False})


class RequestSigner:
    """Applies AWS Signature Version 4 headers to S3 requests.

    Without credentials requests are sent anonymously.
    """

    def __init__(
        self,
        *,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        session_token: str | None = None,
        region: str = "us-east-1",
    ) -> None:
        self._region = region
        self._credentials: Credentials | None = None
        if access_key_id and secret_access_key:
            self._credentials = Credentials(
                access_key_id, secret_access_key, session_token
            )

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RequestSigner":
        return cls(
            access_key_id=settings.S3_ACCESS_KEY_ID,
            secret_access_key=settings.S3_SECRET_ACCESS_KEY,
            session_token=settings.S3_SESSION_TOKEN,
            region=settings.S3_REGION,
        )

    @property
    def anonymous(self) -> bool:
        return self._credentials is None

    def sign(self, method: str, url: str, headers: Mapping[str, str]) -> dict[str, str]:
        """Return ``headers`` plus the authentication headers for this request."""
        if self._credentials is None:
            return dict(headers)
        aws_request = AWSRequest(method=method, url=url, headers=dict(headers))
        aws_request.context["client_config"] = _UNSIGNED_PAYLOAD_CONFIG
        S3SigV4Auth(self._credentials, "s3", self._region).add_auth(aws_request)
        return dict(aws_request.headers.items())


class SignedRequestBuilder:
    """Builds authenticated requests ready to be sent by a requests.Session."""

    def __init__(self, signer: RequestSigner, *, user_agent: str | None = None) -> None:
        self._signer = signer
        self._user_agent = user_agent

    def build(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        body: Any = None,
    ) -> requests.PreparedRequest:
        request_headers = dict(headers or {})
        if self._user_agent:
            request_headers.setdefault("User-Agent", self._user_agent)
        signed = self._signer.sign(method, url, request_headers)
        prepared = requests.Request(
            method=method, url=url, headers=signed, data=body
        ).prepare()
        if body is not None and "Content-Length" in request_headers:
            # A declared length wins over the chunked encoding requests picks
            # for bodies it cannot measure.
            prepared.headers.pop("Transfer-Encoding", None)
            prepared.headers["Content-Length"] = request_headers["Content-Length"]
        return prepared
