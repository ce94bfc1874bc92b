"""Pytest configuration for the Cadence tests.

Adds the repo root to ``sys.path`` so the ``Services`` namespace imports
without an install.
"""

import asyncio
import pathlib
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


@pytest.fixture
def wait_until():
    """Poll a predicate from inside a coroutine until it holds."""

    async def _wait(predicate, timeout: float = 2.0, interval: float = 0.005):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(interval)

    return _wait
