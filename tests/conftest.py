from __future__ import annotations

import dataclasses
import os

import pytest

from s3pipe.common import config
from s3pipe.common.config import Settings, get_settings


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """Keep the developer's environment and .env file out of every test."""
    for item in dataclasses.fields(Settings):
        monkeypatch.delenv(item.name, raising=False)
    monkeypatch.setattr(config, "ENV_FILE", tmp_path / ".env")
    get_settings.cache_clear()  # type: ignore[attr-defined]
    yield
    # .env loading writes straight into os.environ
    for item in dataclasses.fields(Settings):
        os.environ.pop(item.name, None)
    get_settings.cache_clear()  # type: ignore[attr-defined]
