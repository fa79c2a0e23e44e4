# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Managed ingestion operations namespace."""

from __future__ import annotations

import io
import threading
from typing import Optional, Union, TYPE_CHECKING

from ..ingest._router import DEFAULT_POLL_INTERVAL, DEFAULT_POLL_TIMEOUT, Duration
from ..ingest.models import (
    CompressionType,
    DataFormat,
    IngestionOperation,
    IngestionSource,
    IngestRequestProperties,
    StatusResponse,
)

if TYPE_CHECKING:
    from ..client import KustoClient


class IngestOperations:
    """
    Managed ingestion.

    Accessed via ``client.ingest``. Each call streams the data to the engine when
    the payload is small enough and streaming is available for the table, and
    falls back to queued ingestion otherwise.

    Example::

        op = client.ingest.from_file("Samples", "Events", "events.csv.gz", DataFormat.CSV)
        status = client.ingest.poll_for_completion(op, interval=timedelta(seconds=5))
        print(status.summary.succeeded, status.summary.failed)
    """

    def __init__(self, client: "KustoClient") -> None:
        self._client = client

    def from_source(
        self,
        database: str,
        table: str,
        source: IngestionSource,
        properties: Optional[IngestRequestProperties] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> IngestionOperation:
        """
        Ingest a prepared :class:`~kusto_sdk.ingest.models.IngestionSource`.

        :return: Operation handle. Its ``kind`` tells whether the data was streamed
            (already committed) or queued (poll for completion).
        :rtype: ~kusto_sdk.ingest.models.IngestionOperation
        """
        return self._client._get_router().ingest(database, table, source, properties, cancel_event=cancel_event)

    def from_bytes(
        self,
        database: str,
        table: str,
        data: bytes,
        data_format: Union[DataFormat, str] = DataFormat.CSV,
        properties: Optional[IngestRequestProperties] = None,
        *,
        compression: Union[CompressionType, str] = CompressionType.NONE,
        cancel_event: Optional[threading.Event] = None,
    ) -> IngestionOperation:
        """Ingest in-memory ``data``."""
        source = IngestionSource.from_bytes(data, data_format, compression)
        return self.from_source(database, table, source, properties, cancel_event=cancel_event)

    def from_stream(
        self,
        database: str,
        table: str,
        stream: io.IOBase,
        data_format: Union[DataFormat, str] = DataFormat.CSV,
        properties: Optional[IngestRequestProperties] = None,
        *,
        compression: Union[CompressionType, str] = CompressionType.NONE,
        cancel_event: Optional[threading.Event] = None,
    ) -> IngestionOperation:
        """Read ``stream`` to the end and ingest it. The stream is left open."""
        source = IngestionSource.from_stream(stream, data_format, compression)
        return self.from_source(database, table, source, properties, cancel_event=cancel_event)

    def from_file(
        self,
        database: str,
        table: str,
        path: str,
        data_format: Union[DataFormat, str] = DataFormat.CSV,
        properties: Optional[IngestRequestProperties] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> IngestionOperation:
        """Ingest a local file. ``.gz`` and ``.zip`` files are sent as is."""
        source = IngestionSource.from_file(path, data_format)
        return self.from_source(database, table, source, properties, cancel_event=cancel_event)

    def get_status(self, operation: IngestionOperation) -> StatusResponse:
        """Fetch the current status of ``operation``."""
        return self._client._get_router().get_status(operation)

    def poll_for_completion(
        self,
        operation: IngestionOperation,
        interval: Duration = DEFAULT_POLL_INTERVAL,
        timeout: Duration = DEFAULT_POLL_TIMEOUT,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> StatusResponse:
        """
        Wait for a queued operation to finish.

        Returns as soon as no blob is in progress. When ``timeout`` elapses first
        the last status seen is returned.

        :param interval: Delay between status fetches (timedelta or seconds).
        :param timeout: Upper bound on the total wait (timedelta or seconds).
        :param cancel_event: Raises :class:`~kusto_sdk.core.errors.OperationCancelledError`
            at the next wait when set.
        """
        return self._client._get_router().poll_for_completion(
            operation, interval, timeout, cancel_event=cancel_event
        )


__all__ = ["IngestOperations"]
