"""SchemaEvolver — appends newly observed columns to the live table schema."""

from __future__ import annotations

import asyncio

import structlog

from bqsink.bigquery.backoff import backoff
from bqsink.bigquery.client import (
    RemoteError,
    RemoteErrorKind,
    RemoteTableClient,
    TableMetadata,
    TableRef,
)
from bqsink.bigquery.schema import appended_field
from bqsink.config.models import DEFAULT_TABLE_UPDATE_BACKOFF_SECONDS, ColumnSpec
from bqsink.errors import SchemaUpdateError

logger = structlog.get_logger()


class SchemaEvolver:
    """Extends a table's schema additively under optimistic concurrency.

    Columns are only ever appended; existing columns are never removed or
    retyped.
    """

    def __init__(
        self,
        client: RemoteTableClient,
        table: TableRef,
        lock: asyncio.Lock,
        *,
        backoff_seconds: float = DEFAULT_TABLE_UPDATE_BACKOFF_SECONDS,
        shutdown: asyncio.Event | None = None,
        sink_id: str = "",
    ) -> None:
        self._client = client
        self._table = table
        self._lock = lock
        self._backoff_seconds = backoff_seconds
        self._shutdown = shutdown
        self._sink_id = sink_id

    async def add_columns(self, new_columns: dict[str, ColumnSpec]) -> TableMetadata:
        """Append *new_columns* and return the table's updated metadata.

        After a successful update this waits ``backoff_seconds`` while the
        new columns propagate, still holding the metadata lock.

        Raises:
            SchemaUpdateError: the fetch or update failed (retryable).
            ShutdownRequested: shutdown was signalled during the wait.
        """
        logger.info(
            "bigquery_evolver.new_columns",
            sink_id=self._sink_id,
            table=self._table.full_name,
            columns=sorted(new_columns),
        )
        async with self._lock:
            # The etag must be fresh; a cached one is rejected after any peer update.
            current = await self._fetch()
            additions = [
                appended_field(name, col)
                for name, col in new_columns.items()
                if not current.has_column(name)
            ]
            if not additions:
                logger.info(
                    "bigquery_evolver.columns_present",
                    sink_id=self._sink_id,
                    table=self._table.full_name,
                )
                return current

            schema = [*current.schema, *additions]
            try:
                updated = await self._client.update_table_schema(
                    self._table, schema, current.etag
                )
            except RemoteError as exc:
                if exc.kind != RemoteErrorKind.ALREADY_EXISTS:
                    msg = f"could not update schema of '{self._table.full_name}': {exc}"
                    raise SchemaUpdateError(msg) from exc
                logger.info(
                    "bigquery_evolver.columns_added_by_peer",
                    sink_id=self._sink_id,
                    table=self._table.full_name,
                )
                updated = await self._fetch()

            logger.info(
                "bigquery_evolver.columns_added",
                sink_id=self._sink_id,
                table=self._table.full_name,
                columns=[f.name for f in additions],
            )
            await backoff(self._backoff_seconds, self._shutdown)
        return updated

    async def _fetch(self) -> TableMetadata:
        try:
            metadata, _ = await self._client.get_table_metadata(self._table)
        except RemoteError as exc:
            msg = f"could not fetch metadata of '{self._table.full_name}': {exc}"
            raise SchemaUpdateError(msg) from exc
        if metadata is None:
            msg = f"table '{self._table.full_name}' not found while updating schema"
            raise SchemaUpdateError(msg)
        return metadata
