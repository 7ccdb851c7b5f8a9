"""Shared fixtures for the multifetch tests."""

import asyncio
import sys
from typing import Callable

import pytest

from multifetch.config import Settings


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with short timers so engine scenarios finish quickly."""
    return Settings(
        download_dir=tmp_path / 'downloads',
        save_metadata=False,
        retry_delay=0.01,
        stall_timeout=5.0,
        cancel_grace_period=1.0,
        broadcast_interval=0.0,
        progress_interval=0.0,
        save_debounce=0.01,
        magnet_metadata_timeout=0.3,
        torrent_idle_timeout=0.3,
    )


@pytest.fixture
def wait_until() -> Callable:
    """Polls a predicate on the running loop until it holds."""
    async def _wait(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("Condition not met in time")
            await asyncio.sleep(interval)
    return _wait


@pytest.fixture
def fake_tool(tmp_path) -> Callable:
    """
    Builds a command prefix that runs a small Python script in place of an
    external tool. The script sees the real tool arguments in ``sys.argv``.
    """
    def _make(source: str, name: str = 'tool.py'):
        script = tmp_path / name
        script.write_text(source, encoding='utf-8')
        return [sys.executable, str(script)]
    return _make
