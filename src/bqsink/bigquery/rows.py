"""Row materialization: transformed events → BigQuery rows.

Each column spec is matched against the event in order. Rows whose values
fail validation (in discard mode) or whose dynamic column name cannot be
resolved are dropped; the rest of the batch proceeds.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from bqsink.bigquery.client import TableMetadata
from bqsink.config.models import INGESTION_TIME, ColumnMode, ColumnSpec, TableSpec

logger = structlog.get_logger()

FieldValue = str | int | float | bool | bytes | datetime | list[Any] | dict[str, Any] | None
TransformedEvent = Mapping[str, FieldValue]

STRING_TYPES = frozenset({"STRING"})
INTEGER_TYPES = frozenset({"INTEGER", "INT64"})
FLOAT_TYPES = frozenset({"FLOAT", "FLOAT64", "NUMERIC"})
BOOLEAN_TYPES = frozenset({"BOOLEAN", "BOOL"})
BYTES_TYPES = frozenset({"BYTES"})
TIMESTAMP_TYPES = frozenset({"TIMESTAMP"})

_ZERO_TIME = datetime.min


class ColumnNameError(ValueError):
    """A dynamic column name could not be built from the event."""


class InvalidValueError(ValueError):
    """A value does not fit its column's declared type or mode."""


@dataclass(slots=True)
class Row:
    """Column values for one insert, plus an optional dedup insert id."""

    values: dict[str, FieldValue] = field(default_factory=dict)
    insert_id: str | None = None

    def add(self, name: str, value: FieldValue) -> None:
        self.values[name] = value

    def __len__(self) -> int:
        return len(self.values)


@dataclass(slots=True)
class MaterializedBatch:
    rows: list[Row] = field(default_factory=list)
    new_columns: dict[str, ColumnSpec] = field(default_factory=dict)
    discarded: int = 0
    empty: int = 0


def utcnow() -> datetime:
    return datetime.now(UTC)


def resolve_column_name(col: ColumnSpec, event: TransformedEvent) -> str:
    """Return the fixed column name, or ``prefix + event[suffix_from_id]``."""
    if col.name:
        return col.name
    assert col.name_from_id is not None
    rule = col.name_from_id
    if rule.suffix_from_id not in event:
        msg = f"field '{rule.suffix_from_id}' for dynamic column name not in event"
        raise ColumnNameError(msg)
    suffix = event[rule.suffix_from_id]
    if not isinstance(suffix, str):
        msg = (
            f"field '{rule.suffix_from_id}' for dynamic column name must be a "
            f"string, got {type(suffix).__name__}"
        )
        raise ColumnNameError(msg)
    name = rule.prefix + suffix
    if not name:
        msg = f"dynamic column name from '{rule.suffix_from_id}' is empty"
        raise ColumnNameError(msg)
    return name


def value_matches_type(type_tag: str, value: FieldValue) -> bool:
    """Check a native value against a column type tag. Null matches any type."""
    if value is None:
        return True
    # bool is an int subclass, so it must be excluded from numeric types
    if type_tag in STRING_TYPES:
        return isinstance(value, str)
    if type_tag in INTEGER_TYPES:
        return isinstance(value, int) and not isinstance(value, bool)
    if type_tag in FLOAT_TYPES:
        return isinstance(value, int | float) and not isinstance(value, bool)
    if type_tag in BOOLEAN_TYPES:
        return isinstance(value, bool)
    if type_tag in BYTES_TYPES:
        return isinstance(value, bytes | bytearray)
    if type_tag in TIMESTAMP_TYPES:
        return isinstance(value, datetime)
    # RECORD, JSON, DATE, etc. are not validated
    return True


def validate_value(col: ColumnSpec, value: FieldValue) -> None:
    """Raise :class:`InvalidValueError` if *value* can't be stored in *col*.

    A list in a REPEATED column is checked element by element; arrays may
    not hold nulls.
    """
    if col.mode == ColumnMode.REQUIRED and value is None:
        msg = "column mode is REQUIRED but value is null"
        raise InvalidValueError(msg)
    if col.mode == ColumnMode.REPEATED and isinstance(value, list | tuple):
        for item in value:
            if item is None:
                msg = "REPEATED column value contains a null element"
                raise InvalidValueError(msg)
            _validate_scalar(col, item)
        return
    _validate_scalar(col, value)


def _validate_scalar(col: ColumnSpec, value: FieldValue) -> None:
    if not value_matches_type(col.type, value):
        msg = f"column type is {col.type} but value is {type(value).__name__}"
        raise InvalidValueError(msg)
    if isinstance(value, datetime) and value.replace(tzinfo=None) == _ZERO_TIME:
        msg = f"invalid timestamp value: {value!r}"
        raise InvalidValueError(msg)


class RowMaterializer:
    """Builds rows for one table spec against a live schema snapshot."""

    def __init__(
        self,
        table: TableSpec,
        *,
        sink_id: str = "",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._table = table
        self._sink_id = sink_id
        self._clock = clock

    def materialize(
        self,
        events: Sequence[TransformedEvent],
        snapshot: TableMetadata | None,
    ) -> MaterializedBatch:
        """Build rows for a batch, in event order."""
        batch = MaterializedBatch()
        for event in events:
            row, new_columns = self.materialize_event(event, snapshot)
            if row is None:
                batch.discarded += 1
                continue
            if len(row) == 0:
                batch.empty += 1
                continue
            batch.new_columns.update(new_columns)
            batch.rows.append(row)
        return batch

    def materialize_event(
        self,
        event: TransformedEvent,
        snapshot: TableMetadata | None,
    ) -> tuple[Row | None, dict[str, ColumnSpec]]:
        """Build one row and the columns it uses that *snapshot* lacks.

        Returns ``(None, {})`` when the event must be dropped.
        """
        row = Row()
        new_columns: dict[str, ColumnSpec] = {}
        discard_invalid = self._table.discard_invalid_data

        for col in self._table.columns:
            if col.value_from_id == INGESTION_TIME:
                value: FieldValue = self._clock()
            elif col.value_from_id in event:
                value = event[col.value_from_id]
            else:
                if discard_invalid and col.mode == ColumnMode.REQUIRED:
                    logger.warning(
                        "bigquery_rows.invalid_data_discarded",
                        sink_id=self._sink_id,
                        field=col.value_from_id,
                        error="column mode is REQUIRED but field is absent",
                    )
                    return None, {}
                continue

            try:
                name = resolve_column_name(col, event)
            except ColumnNameError as exc:
                logger.error(
                    "bigquery_rows.column_name_unresolved",
                    sink_id=self._sink_id,
                    field=col.value_from_id,
                    error=str(exc),
                )
                return None, {}

            if discard_invalid and col.value_from_id != INGESTION_TIME:
                try:
                    validate_value(col, value)
                except InvalidValueError as exc:
                    logger.warning(
                        "bigquery_rows.invalid_data_discarded",
                        sink_id=self._sink_id,
                        column=name,
                        error=str(exc),
                    )
                    return None, {}

            if snapshot is None or not snapshot.has_column(name):
                new_columns[name] = col
            row.add(name, value)

        if len(row) > 0:
            self._set_insert_id(row, event)
        return row, new_columns

    def _set_insert_id(self, row: Row, event: TransformedEvent) -> None:
        field_id = self._table.insert_id_from_id
        if not field_id or field_id not in event:
            return
        insert_id = event[field_id]
        if isinstance(insert_id, str):
            row.insert_id = insert_id
            return
        # Row is still written; only best-effort dedup is lost for it.
        logger.error(
            "bigquery_rows.invalid_insert_id",
            sink_id=self._sink_id,
            field=field_id,
            value_type=type(insert_id).__name__,
        )
