"""Pydantic configuration models for BigQuery sinks."""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Reserved value_from_id meaning "use the current UTC time at ingestion".
INGESTION_TIME = "@IngestionTime"

DEFAULT_DATASET_LOCATION = "EU"
DEFAULT_TABLE_UPDATE_BACKOFF_SECONDS = 8.0


class _SpecModel(BaseModel):
    """Accepts both snake_case and camelCase keys (``valueFromId``)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ColumnMode(StrEnum):
    """BigQuery column modes."""

    NULLABLE = "NULLABLE"
    REQUIRED = "REQUIRED"
    REPEATED = "REPEATED"


class PartitioningType(StrEnum):
    """Time partitioning granularity."""

    HOUR = "HOUR"
    DAY = "DAY"
    MONTH = "MONTH"
    YEAR = "YEAR"


class NameFromId(_SpecModel):
    """Dynamic column naming: ``prefix`` + value of the event field ``suffix_from_id``.

    ``preset`` lists concrete column names to create up front, since no event
    data exists yet when the table is first created.
    """

    prefix: str = ""
    suffix_from_id: str = Field(min_length=1)
    preset: list[str] = Field(default_factory=list)


class ColumnSpec(_SpecModel):
    """One destination column and where its value comes from."""

    name: str | None = None
    name_from_id: NameFromId | None = None
    type: str = Field(min_length=1)
    mode: ColumnMode = ColumnMode.NULLABLE
    description: str = ""
    value_from_id: str = Field(min_length=1)

    @field_validator("type")
    @classmethod
    def normalize_type(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def check_single_name_rule(self) -> Self:
        """Exactly one of ``name`` / ``name_from_id`` must be set."""
        if bool(self.name) == (self.name_from_id is not None):
            msg = "exactly one of 'name' or 'name_from_id' must be set in a column spec"
            raise ValueError(msg)
        return self

    @property
    def is_dynamic(self) -> bool:
        return self.name_from_id is not None


class DatasetCreation(_SpecModel):
    """Metadata used when the sink has to create the dataset."""

    description: str = ""
    location: str = ""


class TimePartitioning(_SpecModel):
    type: PartitioningType = PartitioningType.DAY
    field: str | None = None
    expiration_hours: int = Field(default=0, ge=0)


class TableCreation(_SpecModel):
    """Metadata used when the sink has to create the table."""

    description: str = ""
    time_partitioning: TimePartitioning | None = None
    require_partition_filter: bool = False
    clustering: list[str] = Field(default_factory=list, max_length=4)


class TableSpec(_SpecModel):
    """Destination table, its columns and its creation policy."""

    dataset: str
    name: str
    columns: list[ColumnSpec] = Field(min_length=1)
    dataset_creation: DatasetCreation | None = None
    table_creation: TableCreation | None = None
    insert_id_from_id: str | None = None
    discard_invalid_data: bool = False

    @field_validator("dataset", "name")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        if not re.match(r"^[A-Za-z0-9_]+$", v):
            msg = f"'{v}' is not a valid BigQuery dataset/table identifier"
            raise ValueError(msg)
        return v

    @property
    def full_name(self) -> str:
        return f"{self.dataset}.{self.name}"


class RetryConfig(_SpecModel):
    """Retry / backoff configuration for provisioning from the CLI."""

    max_attempts: int = Field(default=5, ge=1)
    initial_wait_seconds: float = Field(default=1.0, gt=0)
    max_wait_seconds: float = Field(default=60.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1.0)


class BigQuerySinkConfig(_SpecModel):
    """Configuration for a BigQuery streaming-insert sink.

    Only the first entry of ``tables`` is loaded into.
    """

    project_id: str
    tables: list[TableSpec] = Field(min_length=1)
    table_update_backoff_seconds: float = Field(
        default=DEFAULT_TABLE_UPDATE_BACKOFF_SECONDS, ge=0.0
    )
    default_dataset_location: str = DEFAULT_DATASET_LOCATION
    log_event_data: bool = False

    @property
    def table(self) -> TableSpec:
        return self.tables[0]


class SinkType(StrEnum):
    """Supported sink types."""

    BIGQUERY = "bigquery"


class SinkConfig(_SpecModel, extra="forbid"):
    """Configuration for a single sink destination."""

    sink_id: str
    sink_type: SinkType = SinkType.BIGQUERY
    retry: RetryConfig = RetryConfig()
    bigquery: BigQuerySinkConfig | None = None

    @model_validator(mode="after")
    def check_matching_sub_config(self) -> Self:
        """Ensure the sub-config matching sink_type is provided."""
        if self.sink_type == SinkType.BIGQUERY and self.bigquery is None:
            msg = "bigquery config is required when sink_type is 'bigquery'"
            raise ValueError(msg)
        return self
