"""Abstract loader protocol and per-batch outcome.

New destination types implement this protocol to plug into the host
pipeline without modifying core code.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from bqsink.errors import ShutdownRequested


@dataclass(frozen=True, slots=True)
class LoadResult:
    """Outcome of loading one batch.

    ``error is None`` means the whole batch was written. Otherwise
    ``retryable`` tells the host whether replaying the same batch may succeed.
    """

    resource_id: str = ""
    error: Exception | None = None
    retryable: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def shutdown_requested(self) -> bool:
        return isinstance(self.error, ShutdownRequested)


@runtime_checkable
class Loader(Protocol):
    """Protocol that every sink loader must satisfy."""

    @property
    def sink_id(self) -> str:
        """Unique identifier for this loader instance."""
        ...

    async def start(self) -> None:
        """Provision destination resources; raise on fatal errors."""
        ...

    async def load(self, events: Sequence[Mapping[str, Any]]) -> LoadResult:
        """Write one batch of transformed events."""
        ...

    async def shutdown(self) -> None:
        """Release resources held by the loader."""
        ...

    async def health(self) -> dict[str, Any]:
        """Return a health-check status dict."""
        ...
