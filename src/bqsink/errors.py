"""Exception hierarchy for the BigQuery sink.

Fatal errors (``SpecificationError``, ``ProvisioningError``) need a config or
infrastructure fix. ``SchemaUpdateError`` is retryable. ``ShutdownRequested``
signals host cancellation rather than a malfunction.
"""

from __future__ import annotations


class BigQuerySinkError(Exception):
    """Base class for all sink errors."""


class SpecificationError(BigQuerySinkError):
    """The sink spec cannot produce a usable table or row layout."""


class ProvisioningError(BigQuerySinkError):
    """Dataset or table existence could not be established."""


class SchemaUpdateError(BigQuerySinkError):
    """Adding newly observed columns to the live table failed."""


class ShutdownRequested(BigQuerySinkError):
    """A backoff wait was interrupted by the host's shutdown signal."""

    def __init__(self, msg: str = "shutdown requested") -> None:
        super().__init__(msg)
