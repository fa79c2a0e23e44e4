# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Request telemetry for Kusto calls.

Every HTTP attempt made by :class:`~kusto_sdk.data._executor.RequestExecutor`
runs inside :meth:`TelemetryManager.trace_request`. Depending on
:class:`TelemetryConfig` this opens an OpenTelemetry client span, records
request metrics, writes a one-line summary per attempt and calls user hooks.
OpenTelemetry is optional; without it only logging and hooks are active.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Protocol, Union, runtime_checkable

from ..common.constants import (
    OTEL_ATTR_DB_NAME,
    OTEL_ATTR_DB_OPERATION,
    OTEL_ATTR_DB_SYSTEM,
    OTEL_ATTR_HTTP_METHOD,
    OTEL_ATTR_HTTP_STATUS_CODE,
    OTEL_ATTR_HTTP_URL,
    OTEL_ATTR_KUSTO_ACTIVITY_ID,
    OTEL_ATTR_KUSTO_CLIENT_REQUEST_ID,
)

# Optional OpenTelemetry imports
try:
    from opentelemetry import metrics, trace
    from opentelemetry.trace import Status, StatusCode

    _OTEL_AVAILABLE = True
except ImportError:
    _OTEL_AVAILABLE = False
    trace = None  # type: ignore
    metrics = None  # type: ignore
    Status = None  # type: ignore
    StatusCode = None  # type: ignore

_INSTRUMENTATION_NAME = "kusto_sdk"

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TelemetryConfig:
    """
    Opt-in observability settings, passed as ``KustoConfig(telemetry=...)``.

    :param enable_tracing: Open a client span per HTTP attempt (requires ``opentelemetry-api``).
    :param enable_metrics: Record duration, request, error and retry instruments
        (requires ``opentelemetry-api``).
    :param enable_logging: Log one summary line per attempt on ``logger_name``.
    :param log_level: Level set on ``logger_name`` when logging is enabled.
    :param logger_name: Logger receiving the summaries.
    :param hooks: Objects implementing any subset of :class:`TelemetryHook`.

    Example::

        config = KustoConfig(telemetry=TelemetryConfig(enable_logging=True, hooks=[AuditHook()]))
    """

    enable_tracing: bool = False
    enable_metrics: bool = False
    enable_logging: bool = False
    log_level: str = "WARNING"
    logger_name: str = "kusto_sdk"
    hooks: List["TelemetryHook"] = field(default_factory=list)

    @property
    def enabled(self) -> bool:
        return bool(self.enable_tracing or self.enable_metrics or self.enable_logging or self.hooks)


@dataclass
class RequestContext:
    """
    One HTTP attempt as seen by hooks.

    ``operation`` names the logical call, e.g. ``"query"``, ``"mgmt"``,
    ``"streaming_ingest"`` or ``"ingest.status"``.
    """

    client_request_id: str
    method: str
    url: str
    operation: str
    database: Optional[str] = None
    start_time: float = field(default_factory=time.perf_counter)
    custom_data: Dict[str, Any] = field(default_factory=dict)
    _span: Any = field(default=None, repr=False)


@dataclass
class ResponseContext:
    status_code: int
    duration_ms: float
    activity_id: Optional[str] = None
    error: Optional[Exception] = None
    retry_count: int = 0


@runtime_checkable
class TelemetryHook(Protocol):
    """Callbacks around each HTTP attempt. Implement only the ones you need."""

    def on_request_start(self, context: RequestContext) -> None: ...

    def on_request_end(self, request: RequestContext, response: ResponseContext) -> None: ...

    def on_request_error(self, request: RequestContext, error: Exception) -> None:
        """Called when the attempt raised before a response was recorded."""
        ...

    def get_additional_headers(self) -> Dict[str, str]:
        """Extra headers merged into every request, e.g. correlation ids."""
        ...


class TelemetryManager:
    """Tracing, metrics, summary logging and hook fan-out. Internal."""

    def __init__(self, config: Optional[TelemetryConfig] = None) -> None:
        self._config = config or TelemetryConfig()
        self._hooks = list(self._config.hooks)
        self._tracer: Optional[Any] = None
        self._instruments: Dict[str, Any] = {}
        self._logger: Optional[logging.Logger] = None

        if self.is_tracing_enabled:
            self._tracer = trace.get_tracer(_INSTRUMENTATION_NAME)
        if self.is_metrics_enabled:
            self._create_instruments(metrics.get_meter(_INSTRUMENTATION_NAME))
        if self._config.enable_logging:
            self._logger = logging.getLogger(self._config.logger_name)
            self._logger.setLevel(getattr(logging, self._config.log_level.upper()))

    @property
    def is_tracing_enabled(self) -> bool:
        return self._config.enable_tracing and _OTEL_AVAILABLE

    @property
    def is_metrics_enabled(self) -> bool:
        return self._config.enable_metrics and _OTEL_AVAILABLE

    def _create_instruments(self, meter: Any) -> None:
        self._instruments = {
            "duration": meter.create_histogram(
                name="kusto.client.request.duration",
                description="Duration of one HTTP attempt against a Kusto endpoint",
                unit="ms",
            ),
            "requests": meter.create_counter(
                name="kusto.client.request.count",
                description="HTTP attempts against Kusto endpoints",
                unit="1",
            ),
            "errors": meter.create_counter(
                name="kusto.client.error.count",
                description="HTTP attempts answered with a 4xx or 5xx status",
                unit="1",
            ),
            "retries": meter.create_counter(
                name="kusto.client.retry.count",
                description="Attempts that were retries of an earlier failure",
                unit="1",
            ),
        }

    @contextmanager
    def trace_request(
        self,
        operation: str,
        method: str,
        url: str,
        client_request_id: str,
        database: Optional[str] = None,
    ) -> Iterator[RequestContext]:
        """
        Wrap one HTTP attempt.

        Exceptions escaping the block mark the span as failed, reach
        :meth:`TelemetryHook.on_request_error` and are re-raised.
        """
        ctx = RequestContext(
            client_request_id=client_request_id,
            method=method,
            url=url,
            operation=operation,
            database=database,
        )
        self._dispatch("on_request_start", ctx)
        if self._tracer:
            ctx._span = self._tracer.start_span(
                f"kusto.{operation}",
                kind=trace.SpanKind.CLIENT,
                attributes=_span_attributes(ctx),
            )
        try:
            yield ctx
        except Exception as e:
            if ctx._span:
                ctx._span.set_status(Status(StatusCode.ERROR, str(e)))
                ctx._span.record_exception(e)
            self._dispatch("on_request_error", ctx, e)
            raise
        finally:
            if ctx._span:
                ctx._span.end()

    def record_response(
        self,
        ctx: RequestContext,
        status_code: int,
        activity_id: Optional[str] = None,
        error: Optional[Exception] = None,
        retry_count: int = 0,
    ) -> None:
        """Record the outcome of the attempt wrapped by ``ctx``."""
        response = ResponseContext(
            status_code=status_code,
            duration_ms=(time.perf_counter() - ctx.start_time) * 1000,
            activity_id=activity_id,
            error=error,
            retry_count=retry_count,
        )

        if ctx._span:
            ctx._span.set_attribute(OTEL_ATTR_HTTP_STATUS_CODE, status_code)
            if activity_id:
                ctx._span.set_attribute(OTEL_ATTR_KUSTO_ACTIVITY_ID, activity_id)

        if self._instruments:
            attributes = {"operation": ctx.operation, "method": ctx.method, "status_code": status_code}
            self._instruments["duration"].record(response.duration_ms, attributes)
            self._instruments["requests"].add(1, attributes)
            if status_code >= 400:
                self._instruments["errors"].add(1, attributes)
            if retry_count:
                self._instruments["retries"].add(1, attributes)

        if self._logger:
            self._logger.log(
                logging.WARNING if status_code >= 400 else logging.DEBUG,
                "%s %s %d %.1fms ClientRequestId='%s' ActivityId='%s'",
                ctx.operation,
                ctx.method,
                status_code,
                response.duration_ms,
                ctx.client_request_id,
                activity_id or "",
            )

        self._dispatch("on_request_end", ctx, response)

    def get_additional_headers(self) -> Dict[str, str]:
        """Merge the headers returned by every hook. Later hooks win."""
        headers: Dict[str, str] = {}
        for extra in self._dispatch("get_additional_headers"):
            if extra:
                headers.update(extra)
        return headers

    def _dispatch(self, name: str, *args: Any) -> List[Any]:
        results = []
        for hook in self._hooks:
            callback = getattr(hook, name, None)
            if callback is None:
                continue
            try:
                results.append(callback(*args))
            except Exception:
                _logger.warning("Telemetry hook %r failed in %s", hook, name, exc_info=True)
        return results


class NoOpTelemetryManager:
    """Used when telemetry is off. Still yields a context so callers need no branches."""

    @contextmanager
    def trace_request(
        self,
        operation: str,
        method: str,
        url: str,
        client_request_id: str,
        database: Optional[str] = None,
    ) -> Iterator[RequestContext]:
        yield RequestContext(
            client_request_id=client_request_id,
            method=method,
            url=url,
            operation=operation,
            database=database,
        )

    def record_response(self, *args: Any, **kwargs: Any) -> None:
        pass

    def get_additional_headers(self) -> Dict[str, str]:
        return {}


def _span_attributes(ctx: RequestContext) -> Dict[str, Any]:
    attributes: Dict[str, Any] = {
        OTEL_ATTR_DB_SYSTEM: "kusto",
        OTEL_ATTR_DB_OPERATION: ctx.operation,
        OTEL_ATTR_HTTP_METHOD: ctx.method,
        OTEL_ATTR_HTTP_URL: ctx.url,
        OTEL_ATTR_KUSTO_CLIENT_REQUEST_ID: ctx.client_request_id,
    }
    if ctx.database:
        attributes[OTEL_ATTR_DB_NAME] = ctx.database
    return attributes


def create_telemetry_manager(
    config: Optional[TelemetryConfig],
) -> Union[TelemetryManager, NoOpTelemetryManager]:
    if config is None or not config.enabled:
        return NoOpTelemetryManager()
    return TelemetryManager(config)


__all__ = [
    "TelemetryConfig",
    "TelemetryHook",
    "TelemetryManager",
    "NoOpTelemetryManager",
    "RequestContext",
    "ResponseContext",
    "create_telemetry_manager",
]
