"""Shared fixtures: an in-memory BigQuery stand-in and config builders."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from typing import Any

import pytest

from bqsink.bigquery.client import (
    DatasetMetadata,
    ExistenceStatus,
    RemoteError,
    RemoteErrorKind,
    SchemaField,
    TableMetadata,
    TableRef,
)
from bqsink.bigquery.rows import Row
from bqsink.config.models import (
    BigQuerySinkConfig,
    ColumnSpec,
    SinkConfig,
    SinkType,
    TableSpec,
)


class FakeWriteHandle:
    """Records inserted rows; raises scripted failures first."""

    def __init__(self) -> None:
        self.inserted: list[Row] = []
        self.calls = 0
        self.failures: list[Exception] = []

    async def insert(self, rows: Sequence[Row]) -> None:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        self.inserted.extend(rows)


class FakeBigQueryClient:
    """In-memory remote table client.

    Creating an existing dataset/table raises ``ALREADY_EXISTS`` like a raw
    race would. Schema updates require the current etag. Every call yields to
    the event loop so concurrent callers interleave.
    """

    def __init__(self) -> None:
        self.datasets: dict[str, DatasetMetadata] = {}
        self.tables: dict[TableRef, TableMetadata] = {}
        self.calls: list[str] = []
        self.handle = FakeWriteHandle()
        self.dataset_lookup: tuple[DatasetMetadata | None, ExistenceStatus] | None = None
        self.dataset_lookup_error: Exception | None = None
        self.table_lookup_error: Exception | None = None
        self.create_dataset_error: Exception | None = None
        self.create_table_error: Exception | None = None
        self.update_errors: list[Exception] = []
        self._etag = 0

    def _next_etag(self) -> str:
        self._etag += 1
        return f"etag-{self._etag}"

    def add_table(self, table: TableRef, fields: Sequence[SchemaField]) -> TableMetadata:
        self.datasets.setdefault(table.dataset_id, DatasetMetadata(location="EU"))
        metadata = TableMetadata(schema=tuple(fields), etag=self._next_etag())
        self.tables[table] = metadata
        return metadata

    def count(self, name: str) -> int:
        return self.calls.count(name)

    async def get_dataset_metadata(
        self, dataset_id: str
    ) -> tuple[DatasetMetadata | None, ExistenceStatus]:
        self.calls.append("get_dataset_metadata")
        await asyncio.sleep(0)
        if self.dataset_lookup_error is not None:
            raise self.dataset_lookup_error
        if self.dataset_lookup is not None:
            return self.dataset_lookup
        if dataset_id in self.datasets:
            return self.datasets[dataset_id], ExistenceStatus.EXISTENT
        return None, ExistenceStatus.NON_EXISTENT

    async def create_dataset(self, dataset_id: str, metadata: DatasetMetadata) -> None:
        self.calls.append("create_dataset")
        await asyncio.sleep(0)
        if self.create_dataset_error is not None:
            raise self.create_dataset_error
        if dataset_id in self.datasets:
            raise RemoteError(RemoteErrorKind.ALREADY_EXISTS, "Already Exists: Dataset")
        self.datasets[dataset_id] = metadata

    async def get_table_metadata(
        self, table: TableRef
    ) -> tuple[TableMetadata | None, ExistenceStatus]:
        self.calls.append("get_table_metadata")
        await asyncio.sleep(0)
        if self.table_lookup_error is not None:
            raise self.table_lookup_error
        if table in self.tables:
            return self.tables[table], ExistenceStatus.EXISTENT
        return None, ExistenceStatus.NON_EXISTENT

    async def create_table(self, table: TableRef, metadata: TableMetadata) -> TableMetadata:
        self.calls.append("create_table")
        await asyncio.sleep(0)
        if self.create_table_error is not None:
            raise self.create_table_error
        if table in self.tables:
            raise RemoteError(RemoteErrorKind.ALREADY_EXISTS, "Already Exists: Table")
        created = TableMetadata(
            schema=metadata.schema,
            etag=self._next_etag(),
            description=metadata.description,
            time_partitioning=metadata.time_partitioning,
            require_partition_filter=metadata.require_partition_filter,
            clustering=metadata.clustering,
        )
        self.tables[table] = created
        return created

    async def update_table_schema(
        self,
        table: TableRef,
        schema: Sequence[SchemaField],
        etag: str | None,
    ) -> TableMetadata:
        self.calls.append("update_table_schema")
        await asyncio.sleep(0)
        if self.update_errors:
            raise self.update_errors.pop(0)
        current = self.tables[table]
        if etag != current.etag:
            raise RemoteError(RemoteErrorKind.OTHER, "Precondition Failed: etag mismatch")
        updated = TableMetadata(schema=tuple(schema), etag=self._next_etag())
        self.tables[table] = updated
        return updated

    def get_write_handle(self, table: TableRef) -> FakeWriteHandle:
        self.calls.append("get_write_handle")
        return self.handle


@pytest.fixture
def fake_client() -> FakeBigQueryClient:
    return FakeBigQueryClient()


@pytest.fixture
def table_ref() -> TableRef:
    return TableRef("events", "raw")


def _columns() -> list[dict[str, Any]]:
    return [
        {
            "name": "eventName",
            "type": "STRING",
            "mode": "REQUIRED",
            "description": "name of the event",
            "value_from_id": "eventNameId",
        },
        {
            "name": "dateIngested",
            "type": "TIMESTAMP",
            "value_from_id": "@IngestionTime",
        },
    ]


@pytest.fixture
def make_table() -> Callable[..., TableSpec]:
    def _make(columns: list[dict[str, Any]] | None = None, **kwargs: Any) -> TableSpec:
        return TableSpec(
            dataset=kwargs.pop("dataset", "events"),
            name=kwargs.pop("name", "raw"),
            columns=[ColumnSpec(**c) for c in (columns or _columns())],
            **kwargs,
        )

    return _make


@pytest.fixture
def make_config(make_table: Callable[..., TableSpec]) -> Callable[..., SinkConfig]:
    def _make(
        columns: list[dict[str, Any]] | None = None,
        *,
        backoff: float = 0.0,
        log_event_data: bool = False,
        **table_kwargs: Any,
    ) -> SinkConfig:
        return SinkConfig(
            sink_id="test-bq",
            sink_type=SinkType.BIGQUERY,
            bigquery=BigQuerySinkConfig(
                project_id="proj",
                tables=[make_table(columns, **table_kwargs)],
                table_update_backoff_seconds=backoff,
                log_event_data=log_event_data,
            ),
        )

    return _make
