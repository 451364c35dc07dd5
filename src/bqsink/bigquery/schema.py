"""Column spec → schema field conversion."""

from __future__ import annotations

from bqsink.bigquery.client import SchemaField
from bqsink.config.models import ColumnMode, ColumnSpec, TableSpec
from bqsink.errors import SpecificationError


def column_field(name: str, col: ColumnSpec) -> SchemaField:
    """Schema field for a column created together with its table."""
    return SchemaField(
        name=name,
        type=col.type,
        mode=col.mode.value,
        description=col.description,
    )


def appended_field(name: str, col: ColumnSpec) -> SchemaField:
    """Schema field for a column added to an existing table.

    BigQuery rejects REQUIRED columns added to a live table, so only the
    repeated flag carries over.
    """
    mode = ColumnMode.REPEATED if col.mode == ColumnMode.REPEATED else ColumnMode.NULLABLE
    return SchemaField(
        name=name,
        type=col.type,
        mode=mode.value,
        description=col.description,
    )


def initial_schema(table: TableSpec) -> list[SchemaField]:
    """Schema for a new table; dynamic columns expand to ``prefix + preset[i]``.

    Raises :class:`SpecificationError` when no column can be derived.
    """
    fields: list[SchemaField] = []
    seen: set[str] = set()
    for col in table.columns:
        if col.name:
            names = [col.name]
        else:
            assert col.name_from_id is not None
            rule = col.name_from_id
            names = [rule.prefix + suffix for suffix in rule.preset]
        for name in names:
            if name in seen:
                continue
            seen.add(name)
            fields.append(column_field(name, col))

    if not fields:
        msg = (
            f"no columns could be generated for table '{table.full_name}'; "
            "dynamic columns need a 'preset' list to create the table"
        )
        raise SpecificationError(msg)
    return fields
