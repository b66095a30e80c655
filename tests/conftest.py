"""Shared fixtures for Berth unit tests."""

from __future__ import annotations

import pytest

from berth.config import Settings
from tests.fakes import FakeDriver


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer BERTH_* variables out of test settings."""
    import os

    for key in list(os.environ):
        if key.startswith("BERTH_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def settings() -> Settings:
    """Default settings with a test-scoped archive root."""
    return Settings(session={"archive_root": "/tmp/berth-test-archives"})


@pytest.fixture
def fake_driver() -> FakeDriver:
    return FakeDriver()
