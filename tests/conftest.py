"""
Pytest configuration and fixtures for the test suite.
"""
import asyncio
import tempfile
from pathlib import Path
from typing import List

import pytest
from hypothesis import settings

from libro_realtime.storage.database import OfflineDatabase
from libro_realtime.sync.config import SyncConfig
from libro_realtime.sync.interfaces import StreamHandle

# Configure Hypothesis settings for all tests
# Disable deadline to avoid flaky failures with DuckDB-backed examples
settings.register_profile("default", deadline=None)
settings.load_profile("default")


@pytest.fixture
def db_path():
    """Path to a DuckDB file in a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "offline.duckdb"


@pytest.fixture
def offline_db(db_path):
    """An open offline database, closed after the test."""
    with OfflineDatabase(db_path) as db:
        yield db


@pytest.fixture
def fast_config(db_path):
    """Configuration with short timers for async tests."""
    return SyncConfig(
        heartbeat_interval_seconds=0.02,
        reconnect_delay_seconds=0.05,
        stream_read_timeout_seconds=1.0,
        sync_interval_seconds=0.05,
        cache_sweep_interval_seconds=0.05,
        db_path=str(db_path),
    )


class RecordingHandle(StreamHandle):
    """Stream handle that keeps written frames and can be made to fail."""

    def __init__(self, fail: bool = False):
        self.frames: List[str] = []
        self.fail = fail
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, frame: str) -> None:
        if self.fail or self._closed:
            raise ConnectionResetError("client went away")
        self.frames.append(frame)

    def close(self) -> None:
        self._closed = True


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll until ``predicate()`` is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
