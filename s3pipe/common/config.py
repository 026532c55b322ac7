from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from s3pipe import __version__

ENV_FILE = Path(".env")

LOG_FORMATS: tuple[str, ...] = ("json", "plain")
LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _load_env_file() -> None:
    if not ENV_FILE.exists():
        return
    for raw_line in ENV_FILE.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "y", "on"}


def _as_optional(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass
class Settings:
    S3_ENDPOINT_URL: str | None = None
    S3_REGION: str = "us-east-1"
    S3_ACCESS_KEY_ID: str | None = None
    S3_SECRET_ACCESS_KEY: str | None = None
    S3_SESSION_TOKEN: str | None = None
    S3_USE_SSL: bool = True
    HTTP_CONNECT_TIMEOUT: float = 10.0
    HTTP_READ_TIMEOUT: float = 300.0
    USER_AGENT: str = f"s3pipe/{__version__}"
    PIPE_BUFFER_SIZE: int = 64 * 1024
    COPY_CHUNK_SIZE: int = 32 * 1024
    LOG_LEVEL: str = "WARNING"
    LOG_FORMAT: str = "plain"
    METRICS_TEXTFILE: str | None = None

    def __post_init__(self) -> None:
        if self.S3_ENDPOINT_URL:
            scheme = self.S3_ENDPOINT_URL.split(":", 1)[0].lower()
            if scheme not in {"http", "https"}:
                raise ValueError(
                    "S3_ENDPOINT_URL must be an http:// or https:// URL."
                )
            self.S3_ENDPOINT_URL = self.S3_ENDPOINT_URL.rstrip("/")
        if self.PIPE_BUFFER_SIZE <= 0:
            raise ValueError("PIPE_BUFFER_SIZE must be a positive number of bytes.")
        if self.COPY_CHUNK_SIZE <= 0:
            raise ValueError("COPY_CHUNK_SIZE must be a positive number of bytes.")
        if self.HTTP_CONNECT_TIMEOUT <= 0 or self.HTTP_READ_TIMEOUT <= 0:
            raise ValueError("HTTP timeouts must be positive.")
        self.LOG_LEVEL = self.LOG_LEVEL.upper()
        if self.LOG_LEVEL not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}.")
        self.LOG_FORMAT = self.LOG_FORMAT.lower()
        if self.LOG_FORMAT not in LOG_FORMATS:
            raise ValueError(f"LOG_FORMAT must be one of {', '.join(LOG_FORMATS)}.")

    @property
    def has_credentials(self) -> bool:
        return bool(self.S3_ACCESS_KEY_ID and self.S3_SECRET_ACCESS_KEY)

    @property
    def default_scheme(self) -> str:
        return "https" if self.S3_USE_SSL else "http"

    @classmethod
    def from_environment(cls) -> "Settings":
        _load_env_file()
        return cls(
            S3_ENDPOINT_URL=_as_optional(os.environ.get("S3_ENDPOINT_URL")),
            S3_REGION=os.environ.get("S3_REGION", cls.S3_REGION),
            S3_ACCESS_KEY_ID=_as_optional(os.environ.get("S3_ACCESS_KEY_ID")),
            S3_SECRET_ACCESS_KEY=_as_optional(
                os.environ.get("S3_SECRET_ACCESS_KEY")
            ),
            S3_SESSION_TOKEN=_as_optional(os.environ.get("S3_SESSION_TOKEN")),
            S3_USE_SSL=_as_bool(os.environ.get("S3_USE_SSL"), cls.S3_USE_SSL),
            HTTP_CONNECT_TIMEOUT=float(
                os.environ.get("HTTP_CONNECT_TIMEOUT", cls.HTTP_CONNECT_TIMEOUT)
            ),
            HTTP_READ_TIMEOUT=float(
                os.environ.get("HTTP_READ_TIMEOUT", cls.HTTP_READ_TIMEOUT)
            ),
            USER_AGENT=os.environ.get("USER_AGENT", cls.USER_AGENT),
            PIPE_BUFFER_SIZE=int(
                os.environ.get("PIPE_BUFFER_SIZE", cls.PIPE_BUFFER_SIZE)
            ),
            COPY_CHUNK_SIZE=int(
                os.environ.get("COPY_CHUNK_SIZE", cls.COPY_CHUNK_SIZE)
            ),
            LOG_LEVEL=os.environ.get("LOG_LEVEL", cls.LOG_LEVEL),
            LOG_FORMAT=os.environ.get("LOG_FORMAT", cls.LOG_FORMAT),
            METRICS_TEXTFILE=_as_optional(os.environ.get("METRICS_TEXTFILE")),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_environment()
