"""Loader factory — maps SinkType to concrete loader classes."""

from __future__ import annotations

import asyncio
import weakref
from typing import Any

import structlog
from google.cloud import bigquery

from bqsink.bigquery.adapter import GoogleBigQueryClient
from bqsink.bigquery.client import RemoteTableClient
from bqsink.bigquery.loader import BigQueryLoader
from bqsink.config.models import SinkConfig, SinkType
from bqsink.sinks.base import Loader

logger = structlog.get_logger()

_LOADER_REGISTRY: dict[SinkType, type] = {
    SinkType.BIGQUERY: BigQueryLoader,
}

_METADATA_LOCKS: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock] = (
    weakref.WeakKeyDictionary()
)


def metadata_lock() -> asyncio.Lock:
    """Return the process-wide metadata lock for the running event loop.

    Every loader, whichever factory built it, provisions and alters tables
    under this lock.
    """
    loop = asyncio.get_running_loop()
    lock = _METADATA_LOCKS.get(loop)
    if lock is None:
        lock = _METADATA_LOCKS[loop] = asyncio.Lock()
    return lock


class LoaderFactory:
    """Creates loaders that share one BigQuery client and one metadata lock.

    Several loaders may provision or alter the same table at once (one per
    stream replica). The shared :func:`metadata_lock` keeps loaders in this
    process from repeating each other's metadata calls; peers in other
    processes are handled by the "already exists" tolerance of each step.
    """

    sink_type = SinkType.BIGQUERY

    def __init__(
        self,
        project_id: str,
        client: RemoteTableClient | None = None,
    ) -> None:
        if not project_id:
            msg = "no project id set"
            raise ValueError(msg)
        self._project_id = project_id
        self._client = client
        self._bq_client: Any = None

    def _remote_client(self, sink_id: str) -> RemoteTableClient:
        if self._client is not None:
            return self._client
        if self._bq_client is None:
            self._bq_client = bigquery.Client(project=self._project_id)
            logger.info("loader_factory.client_created", project_id=self._project_id)
        return GoogleBigQueryClient(self._bq_client, sink_id=sink_id)

    async def create_loader(
        self,
        config: SinkConfig,
        shutdown: asyncio.Event | None = None,
    ) -> Loader:
        """Create and start a loader; provisioning errors propagate."""
        cls = _LOADER_REGISTRY.get(config.sink_type)
        if cls is None:
            msg = f"Unknown sink type: {config.sink_type}"
            raise ValueError(msg)
        loader = cls(
            config,
            self._remote_client(config.sink_id),
            metadata_lock(),
            shutdown=shutdown,
        )
        await loader.start()
        return loader  # type: ignore[no-any-return]

    def close(self) -> None:
        if self._bq_client is not None:
            self._bq_client.close()
            self._bq_client = None
