"""Shutdown-aware backoff sleep."""

from __future__ import annotations

import asyncio
import contextlib

from bqsink.errors import ShutdownRequested


async def backoff(seconds: float, shutdown: asyncio.Event | None = None) -> None:
    """Sleep for *seconds*, or raise :class:`ShutdownRequested` once *shutdown* is set."""
    if shutdown is None:
        await asyncio.sleep(seconds)
        return
    if shutdown.is_set():
        raise ShutdownRequested
    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(shutdown.wait(), timeout=seconds)
    if shutdown.is_set():
        raise ShutdownRequested
