# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Queued ingestion: upload to transient storage, then enqueue a notification.
"""

from __future__ import annotations

import datetime as _dt
import logging
import threading
from typing import Any, Dict, Optional
from urllib.parse import quote

from ..common.constants import (
    INGESTION_CONFIGURATION_ENDPOINT_PATH,
    QUEUED_INGEST_ENDPOINT_PATH,
    QUEUED_STATUS_ENDPOINT_PATH,
)
from ..core._error_codes import PROTOCOL_UNEXPECTED_SHAPE
from ..core.errors import ProtocolError
from ..data._executor import RequestExecutor
from ._uploader import BlobUploader, ContainerBlobUploader
from .models import (
    IngestionKind,
    IngestionOperation,
    IngestionSource,
    IngestRequestProperties,
    StatusResponse,
)

logger = logging.getLogger(__name__)

_EXTENSIONS = {"gzip": ".gz", "zip": ".zip"}


class QueuedIngestClient:
    """
    Queued ingestion against the data management endpoint.

    :param executor: Executor bound to the ingestion (data management) endpoint.
    :type executor: ~kusto_sdk.data._executor.RequestExecutor
    :param uploader: Transient storage for payloads. When omitted, the first container
        advertised by the ingestion configuration endpoint is used.
    :type uploader: ~kusto_sdk.ingest._uploader.BlobUploader or None
    """

    def __init__(self, executor: RequestExecutor, uploader: Optional[BlobUploader] = None) -> None:
        self._executor = executor
        self._uploader = uploader
        self._owns_uploader = False
        self._lock = threading.Lock()

    def ingest(
        self,
        source: IngestionSource,
        properties: IngestRequestProperties,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> IngestionOperation:
        """
        Upload ``source`` and enqueue it for ingestion.

        :return: Handle of kind :attr:`IngestionKind.QUEUED`.
        :raises ~kusto_sdk.core.errors.ProtocolError: If the service does not return an operation id.
        """
        blob_name = _blob_name(properties, source)
        url = self._get_uploader(cancel_event).upload(source.data, blob_name)
        logger.debug("Uploaded source %s for %s.%s", source.source_id, properties.database, properties.table)

        body = {
            "timestamp": _dt.datetime.now(_dt.timezone.utc).isoformat(),
            "blobs": [{"url": url, "sourceId": source.source_id, "rawSize": source.size_bytes}],
            "properties": _ingest_properties(source, properties),
        }
        path = QUEUED_INGEST_ENDPOINT_PATH.format(
            database=quote(properties.database, safe=""),
            table=quote(properties.table, safe=""),
        )
        response = self._executor.request_json(
            "POST",
            path,
            body,
            operation="ingest.queued",
            database=properties.database,
            timeout=properties.timeout_hint,
            cancel_event=cancel_event,
        )
        operation_id = response.get("ingestionOperationId") if isinstance(response, dict) else None
        if not operation_id:
            raise ProtocolError(
                "Queued ingestion response has no ingestionOperationId",
                subcode=PROTOCOL_UNEXPECTED_SHAPE,
            )
        logger.info("Queued ingestion %s accepted for %s.%s", operation_id, properties.database, properties.table)
        return IngestionOperation(
            operation_id=str(operation_id),
            database=properties.database,
            table=properties.table,
            kind=IngestionKind.QUEUED,
        )

    def get_status(
        self,
        operation: IngestionOperation,
        *,
        details: bool = True,
        cancel_event: Optional[threading.Event] = None,
    ) -> StatusResponse:
        """Fetch the current status of a queued operation."""
        path = QUEUED_STATUS_ENDPOINT_PATH.format(
            database=quote(operation.database, safe=""),
            table=quote(operation.table, safe=""),
            operation_id=quote(operation.operation_id, safe=""),
        )
        if details:
            path += "?details=true"
        response = self._executor.request_json(
            "GET",
            path,
            operation="ingest.status",
            database=operation.database,
            cancel_event=cancel_event,
        )
        if not isinstance(response, dict):
            raise ProtocolError("Status response is not a JSON object", subcode=PROTOCOL_UNEXPECTED_SHAPE)
        return StatusResponse.from_json(response)

    def _get_uploader(self, cancel_event: Optional[threading.Event]) -> BlobUploader:
        with self._lock:
            if self._uploader is None:
                response = self._executor.request_json(
                    "GET",
                    INGESTION_CONFIGURATION_ENDPOINT_PATH,
                    operation="ingest.configuration",
                    cancel_event=cancel_event,
                )
                self._uploader = ContainerBlobUploader(_first_container_url(response))
                self._owns_uploader = True
                logger.debug("Resolved transient storage from the ingestion configuration")
            return self._uploader

    def close(self) -> None:
        """Close the uploader if this client created it."""
        if self._owns_uploader and self._uploader is not None:
            self._uploader.close()
            self._uploader = None
            self._owns_uploader = False


def _first_container_url(response: Any) -> str:
    settings = response.get("containerSettings") if isinstance(response, dict) else None
    containers = (settings or {}).get("containers") or []
    for container in containers:
        if isinstance(container, dict) and container.get("path"):
            return container["path"]
    raise ProtocolError(
        "Ingestion configuration does not list any storage container",
        subcode=PROTOCOL_UNEXPECTED_SHAPE,
    )


def _blob_name(properties: IngestRequestProperties, source: IngestionSource) -> str:
    ext = _EXTENSIONS.get(source.compression.value, "")
    return f"{properties.database}__{properties.table}__{source.source_id}.{source.format.value}{ext}"


def _ingest_properties(source: IngestionSource, properties: IngestRequestProperties) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "format": source.format.value,
        "enableTracking": properties.enable_tracking,
    }
    if properties.mapping_reference:
        out["ingestionMappingReference"] = properties.mapping_reference
    if properties.inline_mapping:
        out["ingestionMapping"] = properties.inline_mapping
    out.update(properties.additional_properties)
    return out


__all__ = ["QueuedIngestClient"]
