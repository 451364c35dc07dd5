"""Unit tests for the shutdown-aware backoff."""

from __future__ import annotations

import asyncio
import time

import pytest

from bqsink.bigquery.backoff import backoff
from bqsink.errors import ShutdownRequested


@pytest.mark.asyncio
class TestBackoff:
    async def test_sleeps_without_shutdown_event(self):
        t0 = time.monotonic()
        await backoff(0.05)
        assert time.monotonic() - t0 >= 0.04

    async def test_completes_when_not_signalled(self):
        await backoff(0.01, asyncio.Event())

    async def test_already_set_raises_immediately(self):
        shutdown = asyncio.Event()
        shutdown.set()
        t0 = time.monotonic()
        with pytest.raises(ShutdownRequested):
            await backoff(30, shutdown)
        assert time.monotonic() - t0 < 1

    async def test_interrupted_by_shutdown(self):
        shutdown = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, shutdown.set)

        with pytest.raises(ShutdownRequested, match="shutdown requested"):
            await asyncio.wait_for(backoff(30, shutdown), timeout=2)
