# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Managed ingestion: stream when possible, queue otherwise.

:class:`IngestionRouter` compresses the payload when appropriate, asks the
:class:`~kusto_sdk.ingest._policy.ManagedStreamingPolicy` which path to take,
tries streaming first when chosen and falls back to queued ingestion when the
service reports that streaming is unavailable, the payload is too large or
streaming keeps failing transiently.
"""

from __future__ import annotations

import dataclasses
import datetime as _dt
import gzip
import logging
import threading
import time
from typing import Optional, Union

from ..core._error_codes import VALIDATION_BLANK_ARGUMENT, VALIDATION_CANCELLED, VALIDATION_INVALID_SOURCE
from ..core.errors import ClientError, KustoError, OperationCancelledError
from ..data._executor import EndpointKind, RequestExecutor, StreamingIngestPayload
from ..data._properties import ClientRequestProperties
from ._policy import ManagedStreamingPolicy, classify_streaming_failure
from ._queued import QueuedIngestClient
from .models import (
    CompressionType,
    IngestionKind,
    IngestionOperation,
    IngestionSource,
    IngestRequestProperties,
    StatusResponse,
    StatusSummary,
)

logger = logging.getLogger(__name__)

Duration = Union[_dt.timedelta, float, int]

DEFAULT_POLL_INTERVAL = _dt.timedelta(seconds=10)
DEFAULT_POLL_TIMEOUT = _dt.timedelta(minutes=15)


class IngestionRouter:
    """
    Route ingest calls to streaming or queued ingestion.

    :param streaming_executor: Executor bound to the engine endpoint.
    :type streaming_executor: ~kusto_sdk.data._executor.RequestExecutor
    :param queued: Queued ingestion client bound to the data management endpoint.
    :type queued: ~kusto_sdk.ingest._queued.QueuedIngestClient
    :param policy: Streaming policy. A default :class:`ManagedStreamingPolicy` when omitted.
    :param compress: Gzip uncompressed text payloads before sending them. Default is True.
    :type compress: :class:`bool`

    Example::

        op = router.ingest("Samples", "Events", IngestionSource.from_bytes(data, DataFormat.CSV))
        if op.kind is IngestionKind.QUEUED:
            status = router.poll_for_completion(op, interval=timedelta(seconds=5), timeout=timedelta(minutes=5))
    """

    def __init__(
        self,
        streaming_executor: RequestExecutor,
        queued: QueuedIngestClient,
        policy: Optional[ManagedStreamingPolicy] = None,
        compress: bool = True,
    ) -> None:
        self._streaming = streaming_executor
        self._queued = queued
        self.policy = policy or ManagedStreamingPolicy()
        self.compress = compress

    def ingest(
        self,
        database: str,
        table: str,
        source: IngestionSource,
        properties: Optional[IngestRequestProperties] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> IngestionOperation:
        """
        Ingest ``source`` into ``database.table``.

        :return: A handle of kind :attr:`IngestionKind.STREAMING` when the data was
            committed synchronously, otherwise of kind :attr:`IngestionKind.QUEUED`.
        :raises ~kusto_sdk.core.errors.ClientError: On a blank target or missing source.
        :raises ~kusto_sdk.core.errors.KustoError: When streaming fails permanently for a
            reason that does not allow falling back, or when queued ingestion fails.
        """
        for name, value in (("database", database), ("table", table)):
            if not value or not value.strip():
                raise ClientError(f"{name} is required", subcode=VALIDATION_BLANK_ARGUMENT)
        if source is None:
            raise ClientError("source is required", subcode=VALIDATION_INVALID_SOURCE)

        if properties is None:
            properties = IngestRequestProperties(database=database, table=table)
        else:
            properties = dataclasses.replace(properties, database=database, table=table)

        source = self._prepare_source(source)
        kind = self.policy.choose(source, properties)
        if source.compression is CompressionType.ZIP:
            kind = IngestionKind.QUEUED

        if kind is IngestionKind.STREAMING:
            try:
                return self._ingest_streaming(source, properties, cancel_event)
            except KustoError as e:
                category = classify_streaming_failure(e)
                self.policy.on_streaming_error(database, table, category)
                if not self.policy.should_fall_back(category):
                    raise
                logger.info(
                    "Streaming ingestion into %s.%s failed (%s), falling back to queued ingestion: %s",
                    database,
                    table,
                    category.value,
                    e,
                )
        else:
            logger.debug("Using queued ingestion for %s.%s (%d bytes)", database, table, source.size_bytes)

        return self._queued.ingest(source, properties, cancel_event=cancel_event)

    def get_status(self, operation: IngestionOperation) -> StatusResponse:
        """Fetch the current status. Streaming operations are always complete."""
        if operation.kind is IngestionKind.STREAMING:
            return _completed_streaming_status()
        return self._queued.get_status(operation)

    def poll_for_completion(
        self,
        operation: IngestionOperation,
        interval: Duration = DEFAULT_POLL_INTERVAL,
        timeout: Duration = DEFAULT_POLL_TIMEOUT,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> StatusResponse:
        """
        Poll until no blob of ``operation`` is in progress or ``timeout`` elapses.

        Reaching the timeout is not an error: the last status seen is returned.

        :param interval: Delay between status fetches.
        :param timeout: Upper bound on the total polling time.
        :param cancel_event: When set, polling stops with
            :class:`~kusto_sdk.core.errors.OperationCancelledError` at the next wait.
        """
        if operation.kind is IngestionKind.STREAMING:
            return _completed_streaming_status()

        interval_s = _seconds(interval)
        deadline = time.monotonic() + _seconds(timeout)
        while True:
            _check_cancelled(cancel_event)
            status = self._queued.get_status(operation, cancel_event=cancel_event)
            if status.is_completed:
                return status
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.info(
                    "Polling for %s timed out with %d blob(s) in progress",
                    operation.operation_id,
                    status.summary.in_progress,
                )
                return status
            wait = min(interval_s, remaining)
            if cancel_event is None:
                time.sleep(wait)
            elif cancel_event.wait(wait):
                _check_cancelled(cancel_event)

    def _prepare_source(self, source: IngestionSource) -> IngestionSource:
        if not self.compress or source.compression.is_compressed or not source.format.compressible:
            return source
        data = gzip.compress(source.data)
        return IngestionSource(
            data=data,
            format=source.format,
            compression=CompressionType.GZIP,
            size_bytes=len(data),
            source_id=source.source_id,
            name=source.name,
        )

    def _ingest_streaming(
        self,
        source: IngestionSource,
        properties: IngestRequestProperties,
        cancel_event: Optional[threading.Event],
    ) -> IngestionOperation:
        request_properties = ClientRequestProperties()
        if properties.timeout_hint is not None:
            request_properties.set_server_timeout(properties.timeout_hint)
        payload = StreamingIngestPayload(
            database=properties.database,
            table=properties.table,
            data=source.data,
            data_format=source.format.value,
            mapping_name=properties.mapping_reference,
            compressed=source.compression is CompressionType.GZIP,
        )
        result = self._streaming.execute(
            EndpointKind.STREAMING_INGEST,
            payload,
            request_properties,
            cancel_event=cancel_event,
        )
        logger.info("Streamed %d bytes into %s.%s", source.size_bytes, properties.database, properties.table)
        return IngestionOperation(
            operation_id=result.client_request_id or source.source_id,
            database=properties.database,
            table=properties.table,
            kind=IngestionKind.STREAMING,
        )


def _completed_streaming_status() -> StatusResponse:
    return StatusResponse(summary=StatusSummary(succeeded=1))


def _seconds(value: Duration) -> float:
    if isinstance(value, _dt.timedelta):
        return value.total_seconds()
    return float(value)


def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledError("Operation was cancelled", subcode=VALIDATION_CANCELLED)


__all__ = ["IngestionRouter"]
