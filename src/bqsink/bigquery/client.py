"""Remote table client protocol and the vendor-neutral metadata it speaks.

The loader only talks to BigQuery through :class:`RemoteTableClient`, so the
provisioning and schema-evolution logic can run against an in-memory fake.
Adapters classify vendor failures into :class:`RemoteErrorKind`; nothing past
this boundary inspects error text.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from bqsink.config.models import ColumnMode, TimePartitioning

if TYPE_CHECKING:
    from bqsink.bigquery.rows import Row


class ExistenceStatus(StrEnum):
    """Outcome of a dataset/table metadata lookup."""

    UNKNOWN = "unknown"
    EXISTENT = "existent"
    NON_EXISTENT = "non_existent"


class RemoteErrorKind(StrEnum):
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    NO_SUCH_FIELD = "no_such_field"
    OTHER = "other"


class RemoteError(Exception):
    """A classified failure returned by the remote warehouse."""

    def __init__(self, kind: RemoteErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    def __repr__(self) -> str:
        return f"RemoteError(kind={self.kind.value!r}, message={str(self)!r})"


@dataclass(frozen=True, slots=True)
class TableRef:
    dataset_id: str
    table_id: str

    @property
    def full_name(self) -> str:
        return f"{self.dataset_id}.{self.table_id}"


@dataclass(frozen=True, slots=True)
class SchemaField:
    """One column of a live table schema."""

    name: str
    type: str
    mode: str = ColumnMode.NULLABLE.value
    description: str = ""

    @property
    def repeated(self) -> bool:
        return self.mode == ColumnMode.REPEATED


@dataclass(frozen=True, slots=True)
class DatasetMetadata:
    location: str
    description: str = ""


@dataclass(frozen=True)
class TableMetadata:
    """Table metadata; as held by a loader this is its live schema snapshot.

    ``etag`` is the concurrency token required for schema updates. A cached
    snapshot is never authoritative across loaders; always re-fetch before
    updating.
    """

    schema: tuple[SchemaField, ...] = ()
    etag: str | None = None
    description: str = ""
    time_partitioning: TimePartitioning | None = None
    require_partition_filter: bool = False
    clustering: tuple[str, ...] = field(default_factory=tuple)

    @property
    def column_names(self) -> frozenset[str]:
        return frozenset(f.name for f in self.schema)

    def has_column(self, name: str) -> bool:
        return any(f.name == name for f in self.schema)


@runtime_checkable
class WriteHandle(Protocol):
    """Streaming-insert handle bound to one table."""

    async def insert(self, rows: Sequence[Row]) -> None:
        """Insert all rows or raise :class:`RemoteError`."""
        ...


@runtime_checkable
class RemoteTableClient(Protocol):
    """Capabilities the loader needs from the warehouse.

    ``get_*_metadata`` return ``(None, NON_EXISTENT)`` for missing resources
    and raise :class:`RemoteError` when existence cannot be determined.
    ``create_*`` treat "already exists" as success.
    """

    async def get_dataset_metadata(
        self, dataset_id: str
    ) -> tuple[DatasetMetadata | None, ExistenceStatus]: ...

    async def create_dataset(self, dataset_id: str, metadata: DatasetMetadata) -> None: ...

    async def get_table_metadata(
        self, table: TableRef
    ) -> tuple[TableMetadata | None, ExistenceStatus]: ...

    async def create_table(self, table: TableRef, metadata: TableMetadata) -> TableMetadata: ...

    async def update_table_schema(
        self,
        table: TableRef,
        schema: Sequence[SchemaField],
        etag: str | None,
    ) -> TableMetadata: ...

    def get_write_handle(self, table: TableRef) -> WriteHandle: ...
