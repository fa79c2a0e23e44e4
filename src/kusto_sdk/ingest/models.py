# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Ingestion data models.

- :class:`DataFormat` / :class:`CompressionType`: Describe a payload
- :class:`IngestionSource`: The payload plus its format, compression and size
- :class:`IngestRequestProperties`: Target table, mapping and tracking options
- :class:`IngestionOperation`: Handle returned by an accepted ingest call
- :class:`StatusResponse`: Result of one status poll
"""

from __future__ import annotations

import datetime as _dt
import enum
import io
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from ..core._error_codes import VALIDATION_INVALID_SOURCE
from ..core.errors import ClientError


class DataFormat(str, enum.Enum):
    """
    Ingestion data formats.

    ``compressible`` is False for binary formats, which are never gzip compressed
    by the client.
    """

    CSV = "csv"
    TSV = "tsv"
    SCSV = "scsv"
    SOHSV = "sohsv"
    PSV = "psv"
    TXT = "txt"
    TSVE = "tsve"
    JSON = "json"
    SINGLEJSON = "singlejson"
    MULTIJSON = "multijson"
    AVRO = "avro"
    APACHEAVRO = "apacheavro"
    PARQUET = "parquet"
    SSTREAM = "sstream"
    ORC = "orc"
    RAW = "raw"
    W3CLOGFILE = "w3clogfile"

    @property
    def compressible(self) -> bool:
        return self not in _BINARY_FORMATS

    @property
    def is_json(self) -> bool:
        return self in (DataFormat.JSON, DataFormat.SINGLEJSON, DataFormat.MULTIJSON)


_BINARY_FORMATS = frozenset(
    {DataFormat.AVRO, DataFormat.APACHEAVRO, DataFormat.PARQUET, DataFormat.SSTREAM, DataFormat.ORC}
)


class CompressionType(str, enum.Enum):
    NONE = "none"
    GZIP = "gzip"
    ZIP = "zip"

    @property
    def is_compressed(self) -> bool:
        return self is not CompressionType.NONE


class IngestionKind(str, enum.Enum):
    STREAMING = "Streaming"
    QUEUED = "Queued"


@dataclass(frozen=True)
class IngestionSource:
    """
    A payload to ingest.

    ``size_bytes`` is the size of ``data`` as it will be sent, i.e. after the
    source's own compression. ``source_id`` correlates status details with the
    source and is generated when not given.

    Example::

        source = IngestionSource.from_bytes(b"a,1\\nb,2\\n", DataFormat.CSV)
    """

    data: bytes
    format: DataFormat = DataFormat.CSV
    compression: CompressionType = CompressionType.NONE
    size_bytes: int = 0
    source_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: Optional[str] = None

    def __post_init__(self) -> None:
        if self.data is None:
            raise ClientError("Ingestion source has no data", subcode=VALIDATION_INVALID_SOURCE)
        if not isinstance(self.data, (bytes, bytearray)):
            raise ClientError("Ingestion source data must be bytes", subcode=VALIDATION_INVALID_SOURCE)
        if not self.size_bytes:
            object.__setattr__(self, "size_bytes", len(self.data))

    @classmethod
    def from_bytes(
        cls,
        data: bytes,
        data_format: Union[DataFormat, str] = DataFormat.CSV,
        compression: Union[CompressionType, str] = CompressionType.NONE,
        source_id: Optional[str] = None,
    ) -> "IngestionSource":
        if data is None:
            raise ClientError("data is required", subcode=VALIDATION_INVALID_SOURCE)
        kwargs: Dict[str, Any] = {}
        if source_id:
            kwargs["source_id"] = source_id
        return cls(
            data=bytes(data),
            format=DataFormat(data_format),
            compression=CompressionType(compression),
            **kwargs,
        )

    @classmethod
    def from_stream(
        cls,
        stream: io.IOBase,
        data_format: Union[DataFormat, str] = DataFormat.CSV,
        compression: Union[CompressionType, str] = CompressionType.NONE,
        source_id: Optional[str] = None,
    ) -> "IngestionSource":
        """Read ``stream`` to the end. The stream is left open."""
        if stream is None:
            raise ClientError("stream is required", subcode=VALIDATION_INVALID_SOURCE)
        return cls.from_bytes(stream.read(), data_format, compression, source_id)

    @classmethod
    def from_file(
        cls,
        path: str,
        data_format: Union[DataFormat, str] = DataFormat.CSV,
        source_id: Optional[str] = None,
    ) -> "IngestionSource":
        """Read a local file. ``.gz`` and ``.zip`` extensions set the compression."""
        lowered = path.lower()
        if lowered.endswith(".gz"):
            compression = CompressionType.GZIP
        elif lowered.endswith(".zip"):
            compression = CompressionType.ZIP
        else:
            compression = CompressionType.NONE
        with open(path, "rb") as fh:
            data = fh.read()
        kwargs: Dict[str, Any] = {"source_id": source_id} if source_id else {}
        return cls(data=data, format=DataFormat(data_format), compression=compression, name=path, **kwargs)


@dataclass(frozen=True)
class IngestRequestProperties:
    """
    Target and options of an ingest call.

    :param database: Target database.
    :param table: Target table.
    :param mapping_reference: Name of a pre-created ingestion mapping.
    :param inline_mapping: JSON text of an inline mapping. Inline mappings are not
        sent to the streaming endpoint, so such sources always use queued ingestion.
    :param timeout_hint: How long the caller is prepared to wait for the service.
    :param enable_tracking: Ask the service to keep per-blob status for queued ingestion.
    :param additional_properties: Extra properties forwarded to the queued ingestion request.
    """

    database: str
    table: str
    mapping_reference: Optional[str] = None
    inline_mapping: Optional[str] = None
    timeout_hint: Optional[_dt.timedelta] = None
    enable_tracking: bool = True
    additional_properties: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IngestionOperation:
    """
    Handle for an accepted ingest call.

    Status is never cached here; use the router's polling to read it.
    """

    operation_id: str
    database: str
    table: str
    kind: IngestionKind
    created_at: _dt.datetime = field(default_factory=lambda: _dt.datetime.now(_dt.timezone.utc))


@dataclass(frozen=True)
class StatusSummary:
    in_progress: int = 0
    succeeded: int = 0
    failed: int = 0
    canceled: int = 0

    @classmethod
    def from_json(cls, obj: Optional[Dict[str, Any]]) -> "StatusSummary":
        obj = obj or {}
        return cls(
            in_progress=int(obj.get("inProgress") or 0),
            succeeded=int(obj.get("succeeded") or 0),
            failed=int(obj.get("failed") or 0),
            canceled=int(obj.get("canceled") or 0),
        )


@dataclass(frozen=True)
class BlobStatus:
    source_id: Optional[str] = None
    url: Optional[str] = None
    status: Optional[str] = None
    started_at: Optional[str] = None
    last_update_time: Optional[str] = None
    error_code: Optional[str] = None
    failure_status: Optional[str] = None
    details: Optional[str] = None

    @classmethod
    def from_json(cls, obj: Dict[str, Any]) -> "BlobStatus":
        return cls(
            source_id=obj.get("sourceId"),
            url=obj.get("url"),
            status=obj.get("status"),
            started_at=obj.get("startedAt"),
            last_update_time=obj.get("lastUpdateTime"),
            error_code=obj.get("errorCode"),
            failure_status=obj.get("failureStatus"),
            details=obj.get("details"),
        )


@dataclass(frozen=True)
class StatusResponse:
    """Outcome of one status fetch."""

    summary: StatusSummary = field(default_factory=StatusSummary)
    details: List[BlobStatus] = field(default_factory=list)

    @property
    def is_completed(self) -> bool:
        return self.summary.in_progress == 0

    @classmethod
    def from_json(cls, obj: Dict[str, Any]) -> "StatusResponse":
        return cls(
            summary=StatusSummary.from_json(obj.get("status")),
            details=[BlobStatus.from_json(d) for d in obj.get("details") or [] if isinstance(d, dict)],
        )


__all__ = [
    "DataFormat",
    "CompressionType",
    "IngestionKind",
    "IngestionSource",
    "IngestRequestProperties",
    "IngestionOperation",
    "StatusSummary",
    "BlobStatus",
    "StatusResponse",
]
