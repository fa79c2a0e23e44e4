# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Streaming versus queued ingestion decisions.

:func:`choose_ingestion_kind` is a pure function of the payload size, format and
eligibility. :class:`ManagedStreamingPolicy` adds the tunables and the per-table
state that keeps a table on queued ingestion for a while after the service
reported that streaming is unavailable for it.
"""

from __future__ import annotations

import datetime as _dt
import enum
import logging
import threading
from typing import Callable, Dict, Optional, Tuple

from ..core._error_codes import is_payload_too_large
from ..core.errors import KustoError, ServiceError, ThrottleError
from .models import DataFormat, IngestionKind, IngestionSource, IngestRequestProperties

logger = logging.getLogger(__name__)

MAX_STREAMING_UNCOMPRESSED_RAW_SIZE_BYTES = 4 * 1024 * 1024
# Never stream more than this, whatever the format.
MAX_STREAMING_STREAM_SIZE_BYTES = 10 * 1024 * 1024

JSON_UNCOMPRESSED_FACTOR = 1.5
NON_BINARY_FACTOR = 2.0
BINARY_COMPRESSED_FACTOR = 2.0
BINARY_UNCOMPRESSED_FACTOR = 1.5

DEFAULT_RESUME_STREAMING_AFTER = _dt.timedelta(minutes=15)
DEFAULT_THROTTLE_BACKOFF = _dt.timedelta(seconds=10)

STREAMING_OFF_CODES = frozenset({"StreamingIngestionPolicyNotEnabled", "StreamingIngestionDisabledForCluster"})
TABLE_CONFIGURATION_CODES = frozenset({"UpdatePolicyIncompatible", "QuerySchemaDoesNotMatchTableSchema"})

StreamingEligibility = Callable[[IngestionSource, IngestRequestProperties], bool]


def default_streaming_eligibility(source: IngestionSource, properties: IngestRequestProperties) -> bool:
    """Every format is eligible unless the mapping is inline rather than a reference."""
    return not properties.inline_mapping


def exceeds_streaming_limit(
    size_bytes: int,
    data_format: DataFormat = DataFormat.CSV,
    compressed: bool = False,
    size_factor: float = 1.0,
) -> bool:
    """
    Whether a payload of ``size_bytes`` is estimated to be too large to stream.

    The estimate scales the sent size by a per-format expansion factor and compares
    it with the raw-size ceiling. An unknown size (zero or negative) never exceeds.
    """
    if size_bytes <= 0:
        return False
    if size_bytes > size_factor * MAX_STREAMING_STREAM_SIZE_BYTES:
        return True

    limit = size_factor * MAX_STREAMING_UNCOMPRESSED_RAW_SIZE_BYTES
    if not data_format.compressible:
        factor = BINARY_COMPRESSED_FACTOR if compressed else BINARY_UNCOMPRESSED_FACTOR
        return size_bytes * factor > limit
    if compressed:
        return size_bytes * NON_BINARY_FACTOR > limit
    if data_format.is_json:
        return size_bytes / JSON_UNCOMPRESSED_FACTOR > limit
    return size_bytes / NON_BINARY_FACTOR > limit


def choose_ingestion_kind(
    size_bytes: int,
    eligible: bool,
    *,
    data_format: DataFormat = DataFormat.CSV,
    compressed: bool = False,
    size_factor: float = 1.0,
) -> IngestionKind:
    """
    Decide between streaming and queued ingestion.

    :param size_bytes: Size of the payload as it will be sent.
    :param eligible: Whether the format and mapping allow streaming at all.
    :return: :attr:`IngestionKind.STREAMING` only for eligible payloads under the ceiling.
    """
    if not eligible:
        return IngestionKind.QUEUED
    if exceeds_streaming_limit(size_bytes, data_format, compressed, size_factor):
        return IngestionKind.QUEUED
    return IngestionKind.STREAMING


class StreamingErrorCategory(str, enum.Enum):
    STREAMING_OFF = "streaming_off"
    TABLE_CONFIGURATION = "table_configuration"
    OVERSIZED = "oversized"
    THROTTLED = "throttled"
    TRANSIENT = "transient"
    OTHER = "other"


def classify_streaming_failure(error: BaseException) -> StreamingErrorCategory:
    """Map a failed streaming attempt onto a :class:`StreamingErrorCategory`."""
    if isinstance(error, ThrottleError):
        return StreamingErrorCategory.THROTTLED
    if isinstance(error, ServiceError):
        code = error.failure_subcode
        if code in STREAMING_OFF_CODES:
            return StreamingErrorCategory.STREAMING_OFF
        if code in TABLE_CONFIGURATION_CODES:
            return StreamingErrorCategory.TABLE_CONFIGURATION
        if is_payload_too_large(code) or error.status_code == 413:
            return StreamingErrorCategory.OVERSIZED
    if isinstance(error, KustoError) and error.is_transient:
        return StreamingErrorCategory.TRANSIENT
    return StreamingErrorCategory.OTHER


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


class ManagedStreamingPolicy:
    """
    Tunables and per-table state for managed streaming ingestion.

    :param size_factor: Scales the streaming size ceiling. Must be positive.
    :type size_factor: :class:`float`
    :param eligibility: Predicate deciding whether a source may be streamed.
        Defaults to :func:`default_streaming_eligibility`.
    :param continue_when_streaming_unavailable: Fall back to queued ingestion when
        streaming is disabled for the table or cluster. When False such errors propagate.
    :type continue_when_streaming_unavailable: :class:`bool`
    :param resume_streaming_after: How long a table stays on queued ingestion after
        a streaming-off or table-configuration error.
    :param throttle_backoff: How long a table stays on queued ingestion after throttling.
    """

    def __init__(
        self,
        size_factor: float = 1.0,
        eligibility: Optional[StreamingEligibility] = None,
        continue_when_streaming_unavailable: bool = True,
        resume_streaming_after: _dt.timedelta = DEFAULT_RESUME_STREAMING_AFTER,
        throttle_backoff: _dt.timedelta = DEFAULT_THROTTLE_BACKOFF,
    ) -> None:
        if size_factor <= 0:
            raise ValueError("size_factor must be greater than 0")
        self.size_factor = size_factor
        self.eligibility = eligibility or default_streaming_eligibility
        self.continue_when_streaming_unavailable = continue_when_streaming_unavailable
        self.resume_streaming_after = resume_streaming_after
        self.throttle_backoff = throttle_backoff
        self._lock = threading.Lock()
        self._queued_until: Dict[Tuple[str, str], _dt.datetime] = {}

    def choose(self, source: IngestionSource, properties: IngestRequestProperties) -> IngestionKind:
        """Pick the ingestion kind for ``source``, honoring any active per-table back-off."""
        if self.should_default_to_queued(properties.database, properties.table):
            logger.info(
                "Streaming is paused for %s.%s, using queued ingestion",
                properties.database,
                properties.table,
            )
            return IngestionKind.QUEUED
        return choose_ingestion_kind(
            source.size_bytes,
            self.eligibility(source, properties),
            data_format=source.format,
            compressed=source.compression.is_compressed,
            size_factor=self.size_factor,
        )

    def should_default_to_queued(self, database: str, table: str) -> bool:
        key = (database, table)
        with self._lock:
            until = self._queued_until.get(key)
            if until is None:
                return False
            if until > _utcnow():
                return True
            del self._queued_until[key]
            return False

    def should_fall_back(self, category: StreamingErrorCategory) -> bool:
        """Whether a streaming failure of ``category`` should be retried as queued ingestion."""
        if category is StreamingErrorCategory.STREAMING_OFF:
            return self.continue_when_streaming_unavailable
        return category is not StreamingErrorCategory.OTHER

    def on_streaming_error(self, database: str, table: str, category: StreamingErrorCategory) -> None:
        """Record a streaming failure, pausing streaming for the table where appropriate."""
        if category in (StreamingErrorCategory.STREAMING_OFF, StreamingErrorCategory.TABLE_CONFIGURATION):
            period = self.resume_streaming_after
        elif category is StreamingErrorCategory.THROTTLED:
            period = self.throttle_backoff
        else:
            return
        with self._lock:
            self._queued_until[(database, table)] = _utcnow() + period
        logger.info("Pausing streaming ingestion for %s.%s for %s (%s)", database, table, period, category.value)


__all__ = [
    "ManagedStreamingPolicy",
    "StreamingEligibility",
    "StreamingErrorCategory",
    "choose_ingestion_kind",
    "classify_streaming_failure",
    "default_streaming_eligibility",
    "exceeds_streaming_limit",
]
