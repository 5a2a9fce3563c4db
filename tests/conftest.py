"""Pytest configuration for nfslock tests."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
PROJECT_ROOT_STR = str(PROJECT_ROOT)

if PROJECT_ROOT_STR not in sys.path:
    sys.path.insert(0, PROJECT_ROOT_STR)

from nfslock import config as config_module  # noqa: E402
from nfslock.config import LockSettings  # noqa: E402
from nfslock.errors import clear_last_error  # noqa: E402


@pytest.fixture
def fast_settings() -> LockSettings:
    """Settings with short polls so blocking tests finish quickly."""

    return LockSettings(
        poll_interval=0.01,
        max_poll_interval=0.05,
        guard_blocking_timeout=5.0,
        guard_stale_timeout=5.0,
    )


@pytest.fixture(autouse=True)
def _isolated_settings(fast_settings, monkeypatch):
    for name in list(os.environ):
        if name.startswith("NFSLOCK_"):
            monkeypatch.delenv(name, raising=False)
    config_module.configure(fast_settings)
    clear_last_error()
    yield
    config_module.reset_settings()
    clear_last_error()


@pytest.fixture
def target(tmp_path) -> Path:
    return tmp_path / "T"
