"""google-cloud-bigquery implementation of the remote table client."""

from __future__ import annotations

import asyncio
import base64
import functools
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any, TypeVar

import structlog
from google.api_core.exceptions import AlreadyExists, GoogleAPIError, NotFound
from google.cloud import bigquery

from bqsink.bigquery.client import (
    DatasetMetadata,
    ExistenceStatus,
    RemoteError,
    RemoteErrorKind,
    SchemaField,
    TableMetadata,
    TableRef,
)
from bqsink.bigquery.rows import FieldValue, Row
from bqsink.config.models import PartitioningType, TimePartitioning

logger = structlog.get_logger()

T = TypeVar("T")

_MS_PER_HOUR = 3600 * 1000


def classify_error(exc: Exception) -> RemoteErrorKind:
    """Map a vendor exception onto :class:`RemoteErrorKind`.

    BigQuery does not expose a structured code for every conflict, so
    "already exists" and "no such field" are recognized by message as well.
    """
    text = str(exc).lower()
    if isinstance(exc, AlreadyExists) or "already exists" in text:
        return RemoteErrorKind.ALREADY_EXISTS
    if "no such field" in text:
        return RemoteErrorKind.NO_SUCH_FIELD
    if isinstance(exc, NotFound):
        return RemoteErrorKind.NOT_FOUND
    return RemoteErrorKind.OTHER


def _remote_error(exc: Exception) -> RemoteError:
    return RemoteError(classify_error(exc), str(exc))


def _to_json_value(value: FieldValue) -> Any:
    """Convert a row value into what ``insertAll`` accepts, element by element."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bytes | bytearray):
        return base64.b64encode(value).decode("ascii")
    if isinstance(value, list | tuple):
        return [_to_json_value(item) for item in value]
    if isinstance(value, dict):
        return {key: _to_json_value(item) for key, item in value.items()}
    return value


def _to_bq_field(f: SchemaField) -> bigquery.SchemaField:
    return bigquery.SchemaField(
        f.name,
        f.type,
        mode=f.mode,
        description=f.description or None,
    )


def _from_bq_field(f: bigquery.SchemaField) -> SchemaField:
    return SchemaField(
        name=f.name,
        type=f.field_type,
        mode=f.mode or "NULLABLE",
        description=f.description or "",
    )


def _table_metadata(table: bigquery.Table) -> TableMetadata:
    partitioning: TimePartitioning | None = None
    if table.time_partitioning is not None:
        expiration_ms = table.time_partitioning.expiration_ms or 0
        partitioning = TimePartitioning(
            type=PartitioningType(table.time_partitioning.type_),
            field=table.time_partitioning.field,
            expiration_hours=int(expiration_ms // _MS_PER_HOUR),
        )
    return TableMetadata(
        schema=tuple(_from_bq_field(f) for f in table.schema),
        etag=table.etag,
        description=table.description or "",
        time_partitioning=partitioning,
        require_partition_filter=bool(table.require_partition_filter),
        clustering=tuple(table.clustering_fields or ()),
    )


class BigQueryWriteHandle:
    """Streaming inserts into one table via ``insertAll``."""

    def __init__(self, client: bigquery.Client, table: TableRef) -> None:
        self._client = client
        self._table = table

    async def insert(self, rows: Sequence[Row]) -> None:
        table_id = f"{self._client.project}.{self._table.full_name}"
        json_rows = [
            {name: _to_json_value(value) for name, value in row.values.items()}
            for row in rows
        ]
        # Rows without an insert id get a random one, as the insert API expects.
        row_ids = [row.insert_id or str(uuid.uuid4()) for row in rows]

        loop = asyncio.get_running_loop()
        try:
            errors = await loop.run_in_executor(
                None,
                functools.partial(
                    self._client.insert_rows_json, table_id, json_rows, row_ids=row_ids
                ),
            )
        except GoogleAPIError as exc:
            raise _remote_error(exc) from exc
        except (TypeError, ValueError) as exc:
            # Raised while the request body is JSON-encoded.
            msg = f"could not encode rows for {table_id}: {exc}"
            raise RemoteError(RemoteErrorKind.OTHER, msg) from exc
        except OSError as exc:
            msg = f"insert into {table_id} failed: {exc}"
            raise RemoteError(RemoteErrorKind.OTHER, msg) from exc
        if errors:
            messages = [
                err.get("message", "")
                for entry in errors
                for err in entry.get("errors", [])
            ]
            text = f"insert into {table_id} failed for {len(errors)} row(s): {messages}"
            kind = (
                RemoteErrorKind.NO_SUCH_FIELD
                if any("no such field" in m.lower() for m in messages)
                else RemoteErrorKind.OTHER
            )
            raise RemoteError(kind, text)


class GoogleBigQueryClient:
    """Remote table client backed by ``google.cloud.bigquery.Client``.

    Blocking vendor calls run in the default executor.
    """

    def __init__(self, client: bigquery.Client, sink_id: str = "") -> None:
        self._client = client
        self._sink_id = sink_id

    @property
    def project(self) -> str:
        return self._client.project  # type: ignore[no-any-return]

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    def _dataset_ref(self, dataset_id: str) -> bigquery.DatasetReference:
        return bigquery.DatasetReference(self.project, dataset_id)

    def _table_ref(self, table: TableRef) -> bigquery.TableReference:
        return self._dataset_ref(table.dataset_id).table(table.table_id)

    async def get_dataset_metadata(
        self, dataset_id: str
    ) -> tuple[DatasetMetadata | None, ExistenceStatus]:
        try:
            dataset = await self._call(self._client.get_dataset, self._dataset_ref(dataset_id))
        except NotFound:
            return None, ExistenceStatus.NON_EXISTENT
        except GoogleAPIError as exc:
            raise _remote_error(exc) from exc
        metadata = DatasetMetadata(
            location=dataset.location or "",
            description=dataset.description or "",
        )
        return metadata, ExistenceStatus.EXISTENT

    async def create_dataset(self, dataset_id: str, metadata: DatasetMetadata) -> None:
        dataset = bigquery.Dataset(self._dataset_ref(dataset_id))
        dataset.location = metadata.location
        if metadata.description:
            dataset.description = metadata.description
        try:
            await self._call(self._client.create_dataset, dataset)
        except GoogleAPIError as exc:
            if classify_error(exc) != RemoteErrorKind.ALREADY_EXISTS:
                raise _remote_error(exc) from exc
            logger.warning(
                "bigquery_client.dataset_create_disregarded",
                sink_id=self._sink_id,
                dataset=dataset_id,
                error=str(exc),
            )

    async def get_table_metadata(
        self, table: TableRef
    ) -> tuple[TableMetadata | None, ExistenceStatus]:
        try:
            bq_table = await self._call(self._client.get_table, self._table_ref(table))
        except NotFound:
            return None, ExistenceStatus.NON_EXISTENT
        except GoogleAPIError as exc:
            raise _remote_error(exc) from exc
        return _table_metadata(bq_table), ExistenceStatus.EXISTENT

    async def create_table(self, table: TableRef, metadata: TableMetadata) -> TableMetadata:
        bq_table = bigquery.Table(
            self._table_ref(table),
            schema=[_to_bq_field(f) for f in metadata.schema],
        )
        if metadata.description:
            bq_table.description = metadata.description
        if metadata.clustering:
            bq_table.clustering_fields = list(metadata.clustering)
        if metadata.time_partitioning is not None:
            tp = metadata.time_partitioning
            bq_table.time_partitioning = bigquery.TimePartitioning(
                type_=tp.type.value,
                field=tp.field,
                expiration_ms=tp.expiration_hours * _MS_PER_HOUR or None,
            )
            bq_table.require_partition_filter = metadata.require_partition_filter
        try:
            created = await self._call(self._client.create_table, bq_table)
        except GoogleAPIError as exc:
            if classify_error(exc) != RemoteErrorKind.ALREADY_EXISTS:
                logger.error(
                    "bigquery_client.table_create_failed",
                    sink_id=self._sink_id,
                    table=table.full_name,
                    error=str(exc),
                )
                raise _remote_error(exc) from exc
            logger.warning(
                "bigquery_client.table_create_disregarded",
                sink_id=self._sink_id,
                table=table.full_name,
                error=str(exc),
            )
            return await self._fetch_table(table)
        return _table_metadata(created)

    async def update_table_schema(
        self,
        table: TableRef,
        schema: Sequence[SchemaField],
        etag: str | None,
    ) -> TableMetadata:
        ref = self._table_ref(table)
        resource: dict[str, Any] = {"tableReference": ref.to_api_repr()}
        if etag:
            # update_table sends the etag as If-Match
            resource["etag"] = etag
        bq_table = bigquery.Table.from_api_repr(resource)
        bq_table.schema = [_to_bq_field(f) for f in schema]
        try:
            updated = await self._call(self._client.update_table, bq_table, ["schema"])
        except GoogleAPIError as exc:
            if classify_error(exc) != RemoteErrorKind.ALREADY_EXISTS:
                raise _remote_error(exc) from exc
            logger.warning(
                "bigquery_client.table_update_disregarded",
                sink_id=self._sink_id,
                table=table.full_name,
                error=str(exc),
            )
            return await self._fetch_table(table)
        return _table_metadata(updated)

    async def _fetch_table(self, table: TableRef) -> TableMetadata:
        try:
            bq_table = await self._call(self._client.get_table, self._table_ref(table))
        except GoogleAPIError as exc:
            raise _remote_error(exc) from exc
        return _table_metadata(bq_table)

    def get_write_handle(self, table: TableRef) -> BigQueryWriteHandle:
        return BigQueryWriteHandle(self._client, table)

    def close(self) -> None:
        self._client.close()
