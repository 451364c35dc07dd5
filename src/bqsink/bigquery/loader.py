"""BigQuery sink loader — per-batch orchestration."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

import structlog

from bqsink.bigquery.backoff import backoff
from bqsink.bigquery.client import (
    RemoteError,
    RemoteErrorKind,
    RemoteTableClient,
    TableMetadata,
    WriteHandle,
)
from bqsink.bigquery.evolver import SchemaEvolver
from bqsink.bigquery.provisioner import SchemaProvisioner
from bqsink.bigquery.rows import RowMaterializer, TransformedEvent, utcnow
from bqsink.config.models import BigQuerySinkConfig, SinkConfig
from bqsink.errors import SchemaUpdateError, ShutdownRequested
from bqsink.sinks.base import LoadResult

logger = structlog.get_logger()


class BigQueryLoader:
    """Streams transformed events into the first table of a BigQuery sink spec.

    Call :meth:`start` once before loading. Batches are all-or-nothing: any
    failure is reported for the whole batch, which the host replays.
    """

    def __init__(
        self,
        config: SinkConfig,
        client: RemoteTableClient,
        lock: asyncio.Lock,
        *,
        shutdown: asyncio.Event | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config
        if config.bigquery is None:
            msg = "BigQueryLoader requires a bigquery sub-config"
            raise ValueError(msg)
        self._bq_config: BigQuerySinkConfig = config.bigquery
        self._client = client
        self._shutdown = shutdown
        table = self._bq_config.table
        self._provisioner = SchemaProvisioner(
            client,
            table,
            lock,
            default_location=self._bq_config.default_dataset_location,
            sink_id=config.sink_id,
        )
        self._evolver = SchemaEvolver(
            client,
            self._provisioner.table_ref,
            lock,
            backoff_seconds=self._bq_config.table_update_backoff_seconds,
            shutdown=shutdown,
            sink_id=config.sink_id,
        )
        self._materializer = RowMaterializer(table, sink_id=config.sink_id, clock=clock)
        self._metadata: TableMetadata | None = None
        self._handle: WriteHandle | None = None

    @property
    def sink_id(self) -> str:
        return self._config.sink_id

    @property
    def metadata(self) -> TableMetadata | None:
        """The live schema snapshot."""
        return self._metadata

    async def start(self) -> None:
        self._metadata = await self._provisioner.provision()
        self._handle = self._client.get_write_handle(self._provisioner.table_ref)
        logger.info(
            "bigquery_loader.started",
            sink_id=self.sink_id,
            table=self._provisioner.table_ref.full_name,
        )

    async def load(self, events: Sequence[TransformedEvent]) -> LoadResult:
        if self._handle is None:
            msg = f"loader '{self.sink_id}' used before start()"
            return LoadResult(error=RuntimeError(msg), retryable=False)

        batch = self._materializer.materialize(events, self._metadata)
        if batch.discarded:
            logger.warning(
                "bigquery_loader.events_discarded",
                sink_id=self.sink_id,
                discarded=batch.discarded,
                events=len(events),
            )
        if not batch.rows:
            logger.warning(
                "bigquery_loader.no_rows",
                sink_id=self.sink_id,
                events=len(events),
                hint="no event matched the column specs; check the sink spec",
            )
            return LoadResult()

        if batch.new_columns:
            try:
                self._metadata = await self._evolver.add_columns(batch.new_columns)
            except (SchemaUpdateError, ShutdownRequested) as exc:
                logger.warning(
                    "bigquery_loader.schema_update_failed",
                    sink_id=self.sink_id,
                    error=str(exc),
                )
                return LoadResult(error=exc, retryable=True)

        t0 = time.monotonic()
        try:
            await self._handle.insert(batch.rows)
        except RemoteError as exc:
            return await self._insert_failed(exc)
        except Exception as exc:
            logger.exception(
                "bigquery_loader.insert_error",
                sink_id=self.sink_id,
                rows=len(batch.rows),
            )
            return LoadResult(error=exc, retryable=True)
        elapsed_ms = (time.monotonic() - t0) * 1000

        if self._bq_config.log_event_data:
            logger.debug(
                "bigquery_loader.rows_inserted",
                sink_id=self.sink_id,
                table=self._provisioner.table_ref.full_name,
                rows=len(batch.rows),
                latency_ms=round(elapsed_ms, 2),
            )
        return LoadResult()

    async def _insert_failed(self, exc: RemoteError) -> LoadResult:
        if exc.kind != RemoteErrorKind.NO_SUCH_FIELD:
            logger.warning(
                "bigquery_loader.insert_failed",
                sink_id=self.sink_id,
                error=str(exc),
            )
            return LoadResult(error=exc, retryable=True)

        # New columns are not writable until the schema change propagates.
        logger.warning(
            "bigquery_loader.table_not_ready",
            sink_id=self.sink_id,
            backoff_seconds=self._bq_config.table_update_backoff_seconds,
            error=str(exc),
        )
        try:
            await backoff(self._bq_config.table_update_backoff_seconds, self._shutdown)
        except ShutdownRequested as shutdown_exc:
            return LoadResult(error=shutdown_exc, retryable=True)
        return LoadResult(error=exc, retryable=True)

    async def shutdown(self) -> None:
        logger.info("bigquery_loader.stopped", sink_id=self.sink_id)

    async def health(self) -> dict[str, Any]:
        return {
            "sink_id": self.sink_id,
            "type": "bigquery",
            "status": "running" if self._handle is not None else "stopped",
            "table": self._provisioner.table_ref.full_name,
            "provisioning": self._provisioner.state.value,
            "columns": len(self._metadata.schema) if self._metadata else 0,
        }
