"""SchemaProvisioner — ensures the destination dataset and table exist."""

from __future__ import annotations

import asyncio
from enum import StrEnum

import structlog

from bqsink.bigquery.client import (
    DatasetMetadata,
    ExistenceStatus,
    RemoteError,
    RemoteErrorKind,
    RemoteTableClient,
    TableMetadata,
    TableRef,
)
from bqsink.bigquery.schema import initial_schema
from bqsink.config.models import DEFAULT_DATASET_LOCATION, TableSpec
from bqsink.errors import ProvisioningError

logger = structlog.get_logger()


class ProvisioningState(StrEnum):
    UNPROVISIONED = "unprovisioned"
    DATASET_CHECKED = "dataset_checked"
    DATASET_ENSURED = "dataset_ensured"
    TABLE_CHECKED = "table_checked"
    READY = "ready"


class SchemaProvisioner:
    """Creates the dataset and table on first use.

    Safe to run from several loaders at once: *lock* serializes loaders in
    this process, and "already exists" from peers elsewhere counts as success.
    """

    def __init__(
        self,
        client: RemoteTableClient,
        table: TableSpec,
        lock: asyncio.Lock,
        *,
        default_location: str = DEFAULT_DATASET_LOCATION,
        sink_id: str = "",
    ) -> None:
        self._client = client
        self._table = table
        self._lock = lock
        self._default_location = default_location
        self._sink_id = sink_id
        self._ref = TableRef(table.dataset, table.name)
        self.state = ProvisioningState.UNPROVISIONED

    @property
    def table_ref(self) -> TableRef:
        return self._ref

    async def provision(self) -> TableMetadata:
        """Return the table's metadata, creating dataset and table if missing.

        Raises:
            ProvisioningError: existence could not be determined, or creation
                failed for a reason other than a concurrent create.
            SpecificationError: the column specs yield no columns.
        """
        async with self._lock:
            await self._ensure_dataset()
            metadata = await self._ensure_table()
        self.state = ProvisioningState.READY
        logger.info(
            "bigquery_provisioner.ready",
            sink_id=self._sink_id,
            table=self._ref.full_name,
            columns=len(metadata.schema),
        )
        return metadata

    async def _ensure_dataset(self) -> None:
        dataset_id = self._ref.dataset_id
        try:
            _, status = await self._client.get_dataset_metadata(dataset_id)
        except RemoteError as exc:
            msg = f"could not determine whether dataset '{dataset_id}' exists: {exc}"
            raise ProvisioningError(msg) from exc
        if status == ExistenceStatus.UNKNOWN:
            msg = f"existence of dataset '{dataset_id}' is unknown"
            raise ProvisioningError(msg)
        self.state = ProvisioningState.DATASET_CHECKED

        if status == ExistenceStatus.NON_EXISTENT:
            metadata = self._dataset_metadata()
            try:
                await self._client.create_dataset(dataset_id, metadata)
                logger.info(
                    "bigquery_provisioner.dataset_created",
                    sink_id=self._sink_id,
                    dataset=dataset_id,
                    location=metadata.location,
                )
            except RemoteError as exc:
                if exc.kind != RemoteErrorKind.ALREADY_EXISTS:
                    msg = f"could not create dataset '{dataset_id}': {exc}"
                    raise ProvisioningError(msg) from exc
                logger.info(
                    "bigquery_provisioner.dataset_exists",
                    sink_id=self._sink_id,
                    dataset=dataset_id,
                )
        self.state = ProvisioningState.DATASET_ENSURED

    async def _ensure_table(self) -> TableMetadata:
        try:
            metadata, status = await self._client.get_table_metadata(self._ref)
        except RemoteError as exc:
            msg = f"could not determine whether table '{self._ref.full_name}' exists: {exc}"
            raise ProvisioningError(msg) from exc
        if status == ExistenceStatus.UNKNOWN:
            msg = f"existence of table '{self._ref.full_name}' is unknown"
            raise ProvisioningError(msg)
        self.state = ProvisioningState.TABLE_CHECKED

        if status == ExistenceStatus.EXISTENT and metadata is not None:
            return metadata

        new_metadata = self.table_metadata()
        try:
            created = await self._client.create_table(self._ref, new_metadata)
        except RemoteError as exc:
            if exc.kind != RemoteErrorKind.ALREADY_EXISTS:
                msg = f"could not create table '{self._ref.full_name}': {exc}"
                raise ProvisioningError(msg) from exc
            logger.info(
                "bigquery_provisioner.table_exists",
                sink_id=self._sink_id,
                table=self._ref.full_name,
            )
            return await self._fetch_existing()

        logger.info(
            "bigquery_provisioner.table_created",
            sink_id=self._sink_id,
            table=self._ref.full_name,
            columns=[f.name for f in created.schema],
        )
        return created

    async def _fetch_existing(self) -> TableMetadata:
        try:
            metadata, status = await self._client.get_table_metadata(self._ref)
        except RemoteError as exc:
            msg = f"could not fetch metadata of table '{self._ref.full_name}': {exc}"
            raise ProvisioningError(msg) from exc
        if status != ExistenceStatus.EXISTENT or metadata is None:
            msg = f"table '{self._ref.full_name}' reported as existing but not found"
            raise ProvisioningError(msg)
        return metadata

    def _dataset_metadata(self) -> DatasetMetadata:
        creation = self._table.dataset_creation
        if creation is None:
            return DatasetMetadata(location=self._default_location)
        return DatasetMetadata(
            location=creation.location or self._default_location,
            description=creation.description,
        )

    def table_metadata(self) -> TableMetadata:
        """Metadata for creating the table from the column specs."""
        schema = tuple(initial_schema(self._table))
        creation = self._table.table_creation
        if creation is None:
            return TableMetadata(schema=schema)
        return TableMetadata(
            schema=schema,
            description=creation.description,
            time_partitioning=creation.time_partitioning,
            require_partition_filter=creation.require_partition_filter,
            clustering=tuple(creation.clustering),
        )
