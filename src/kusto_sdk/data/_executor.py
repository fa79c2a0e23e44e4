# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Request execution against a Kusto cluster.

:class:`RequestExecutor` builds the HTTP request for a query, management command
or streaming ingestion, attaches the bearer token and client identity headers,
sends it through :class:`~kusto_sdk.core._http._HttpClient` and decodes the
response. Every logical call is wrapped by :class:`~kusto_sdk.core._retry.RetryPolicy`.
"""

from __future__ import annotations

import datetime as _dt
import enum
import json
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional, Union
from urllib.parse import quote, urlencode

import requests

from .._version import VERSION
from ..common.constants import (
    HEADER_ACTIVITY_ID,
    HEADER_APP,
    HEADER_CLIENT_REQUEST_ID,
    HEADER_CLIENT_VERSION,
    HEADER_USER,
    HEADER_VERSION,
    KUSTO_API_VERSION,
    LOCALHOST,
    MGMT_COMMAND_PREFIX,
    MGMT_ENDPOINT_PATH,
    QUERY_V1_ENDPOINT_PATH,
    QUERY_V2_ENDPOINT_PATH,
    STREAMING_INGEST_ENDPOINT_PATH,
)
from ..core._auth import CredentialManager
from ..core._error_codes import (
    PROTOCOL_INVALID_JSON,
    SERVICE_TOO_MANY_REDIRECTS,
    VALIDATION_BLANK_ARGUMENT,
    VALIDATION_INSECURE_URL,
    VALIDATION_INVALID_URL,
    http_status_to_subcode,
    is_payload_too_large,
)
from ..core._http import _HttpClient
from ..core._retry import RetryPolicy
from ..core.config import (
    CLIENT_SERVER_DELTA,
    DEFAULT_MGMT_TIMEOUT,
    DEFAULT_QUERY_TIMEOUT,
    DEFAULT_STREAMING_INGEST_TIMEOUT,
    KustoConfig,
)
from ..core.errors import ClientError, OneApiError, ProtocolError, ServiceError, ThrottleError
from ..core.results import OperationResult
from ..core.telemetry import NoOpTelemetryManager, TelemetryManager
from ._decoder import ResponseDecoder, WireVersion
from ._properties import OPTION_SERVER_TIMEOUT, ClientRequestProperties, format_timespan

logger = logging.getLogger(__name__)

_REDIRECT_STATUSES = (302, 307)
_STREAM_CHUNK_SIZE = 64 * 1024


class EndpointKind(str, enum.Enum):
    """REST endpoint a request is sent to."""

    QUERY = "query"
    QUERY_V1 = "query_v1"
    MGMT = "mgmt"
    STREAMING_INGEST = "streaming_ingest"


@dataclass(frozen=True)
class CommandPayload:
    """A query or management command against ``database``."""

    database: str
    command: str


@dataclass(frozen=True)
class StreamingIngestPayload:
    """
    Data sent to the streaming ingestion endpoint.

    :param data: The (possibly compressed) payload.
    :param data_format: Value of the ``streamFormat`` query parameter (e.g. ``"csv"``).
    :param mapping_name: Name of a pre-created ingestion mapping.
    :param compressed: Whether ``data`` is gzip compressed.
    """

    database: str
    table: str
    data: bytes
    data_format: str
    mapping_name: Optional[str] = None
    compressed: bool = False


Payload = Union[CommandPayload, StreamingIngestPayload]


@dataclass
class _PreparedRequest:
    kind: Optional[EndpointKind]
    url: str
    headers: Dict[str, str]
    body: Optional[Union[str, bytes]]
    version: Optional[WireVersion]
    timeout: float
    client_request_id: str
    database: str
    operation: str
    follow_redirects: bool = False
    method: str = "POST"


def is_management_command(command: str) -> bool:
    """A command whose first non-blank character is ``.`` is a management command."""
    return (command or "").lstrip().startswith(MGMT_COMMAND_PREFIX)


def validate_endpoint_url(url: str) -> str:
    """
    Reject URLs that would send a bearer token over plaintext.

    :raises ~kusto_sdk.core.errors.ClientError: If the URL is not https (``http://localhost`` excepted).
    """
    text = (url or "").strip()
    if not text:
        raise ClientError("Cluster URL is required", subcode=VALIDATION_BLANK_ARGUMENT)
    lowered = text.lower()
    if lowered.startswith("https://"):
        if len(text) <= len("https://"):
            raise ClientError(f"Invalid URL '{url}'", subcode=VALIDATION_INVALID_URL)
        return text
    if lowered == LOCALHOST or lowered.startswith(LOCALHOST + ":") or lowered.startswith(LOCALHOST + "/"):
        return text
    raise ClientError(
        f"URL '{url}' is not secure; only https endpoints (or {LOCALHOST}) are allowed",
        subcode=VALIDATION_INSECURE_URL,
    )


class RequestExecutor:
    """
    Send requests to one cluster and decode the responses.

    :param cluster_url: Cluster URL, e.g. ``"https://help.kusto.windows.net"``.
    :type cluster_url: :class:`str`
    :param credentials: Token source for the ``Authorization`` header.
    :type credentials: ~kusto_sdk.core._auth.CredentialManager
    :param http: Transport used to send requests.
    :type http: ~kusto_sdk.core._http._HttpClient
    :param config: Timeouts, retries, redirect budget and client identity.
    :type config: ~kusto_sdk.core.config.KustoConfig or None
    :param telemetry: Telemetry manager wrapping each HTTP attempt.
    :param decoder: Response decoder. A new :class:`ResponseDecoder` by default.
    """

    def __init__(
        self,
        cluster_url: str,
        credentials: CredentialManager,
        http: _HttpClient,
        config: Optional[KustoConfig] = None,
        telemetry: Optional[Union[TelemetryManager, NoOpTelemetryManager]] = None,
        decoder: Optional[ResponseDecoder] = None,
    ) -> None:
        self.cluster_url = validate_endpoint_url(cluster_url).rstrip("/")
        self._credentials = credentials
        self._http = http
        self.config = config or KustoConfig.from_env()
        self._telemetry = telemetry or NoOpTelemetryManager()
        self._decoder = decoder or ResponseDecoder()
        self.max_redirects = self.config.max_redirects if self.config.max_redirects is not None else 1
        self.retry_policy = RetryPolicy(
            max_attempts=self.config.http_retries,
            base_delay=self.config.http_backoff,
            max_jitter=self.config.http_max_jitter,
        )

    # ------------------------------------------------------------------ public

    def execute(
        self,
        endpoint_kind: EndpointKind,
        payload: Payload,
        properties: Optional[ClientRequestProperties] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> OperationResult:
        """
        Send one logical request and return the decoded result.

        A :attr:`EndpointKind.QUERY` whose command starts with ``.`` is sent to the
        management endpoint.

        :param endpoint_kind: Target endpoint.
        :param payload: :class:`CommandPayload` or :class:`StreamingIngestPayload`.
        :param properties: Optional request options and parameters.
        :param cancel_event: Stops the retry loop at the next backoff delay when set.
        :return: The decoded tables.
        :raises ~kusto_sdk.core.errors.KustoError: On any failure, after retries where applicable.
        """
        request = self._prepare(endpoint_kind, payload, properties)

        def attempt(n: int) -> OperationResult:
            response = self._send(request, n)
            activity_id = response.headers.get(HEADER_ACTIVITY_ID)
            try:
                result = self._decoder.decode(response.content, request.version)
            except (ServiceError, ProtocolError) as e:
                _attach_response_info(e, request.url, activity_id)
                raise
            return result.with_request_info(request.client_request_id, activity_id)

        return self.retry_policy.execute(attempt, cancel_event=cancel_event)

    def execute_streaming(
        self,
        endpoint_kind: EndpointKind,
        payload: CommandPayload,
        properties: Optional[ClientRequestProperties] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> "ResponseStream":
        """
        Send a query and return the raw response body as a stream of byte chunks.

        The body is not decoded. Close the returned stream when done.
        """
        request = self._prepare(endpoint_kind, payload, properties)
        request.follow_redirects = True
        response = self.retry_policy.execute(lambda n: self._send(request, n, stream=True), cancel_event=cancel_event)
        return ResponseStream(response)

    def execute_command(
        self,
        database: str,
        command: str,
        properties: Optional[ClientRequestProperties] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> OperationResult:
        """Run ``command`` against the query or management endpoint based on its prefix."""
        kind = EndpointKind.MGMT if is_management_command(command) else EndpointKind.QUERY
        return self.execute(kind, CommandPayload(database, command), properties, cancel_event=cancel_event)

    def request_json(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        *,
        operation: str,
        database: Optional[str] = None,
        timeout: Optional[_dt.timedelta] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Any:
        """
        Send a JSON REST call relative to the cluster URL and return the parsed JSON body.

        Used for the queued ingestion endpoints, which do not return tables.
        """
        client_request_id = f"KPC.{operation};{uuid.uuid4()}"
        headers = self._base_headers(None, client_request_id)
        if body is not None:
            headers["Content-Type"] = "application/json; charset=utf-8"
        request = _PreparedRequest(
            kind=None,
            url=f"{self.cluster_url}{path}",
            headers=headers,
            body=json.dumps(body) if body is not None else None,
            version=None,
            timeout=_client_timeout(timeout or self._query_timeout()),
            client_request_id=client_request_id,
            database=database or "",
            operation=operation,
            method=method.upper(),
        )

        def attempt(n: int) -> Any:
            response = self._send(request, n)
            try:
                return response.json() if response.content else {}
            except ValueError as e:
                raise ProtocolError(
                    f"Response from {request.url} is not valid JSON: {e}",
                    subcode=PROTOCOL_INVALID_JSON,
                    endpoint=request.url,
                    activity_id=response.headers.get(HEADER_ACTIVITY_ID),
                ) from e

        return self.retry_policy.execute(attempt, cancel_event=cancel_event)

    def close(self) -> None:
        """Release the credential manager. The HTTP transport belongs to the caller."""
        self._credentials.close()

    # ---------------------------------------------------------------- internal

    def _prepare(
        self,
        endpoint_kind: EndpointKind,
        payload: Payload,
        properties: Optional[ClientRequestProperties],
    ) -> _PreparedRequest:
        kind = EndpointKind(endpoint_kind)
        if kind is EndpointKind.STREAMING_INGEST:
            if not isinstance(payload, StreamingIngestPayload):
                raise ClientError("Streaming ingestion requires a StreamingIngestPayload")
            return self._prepare_streaming_ingest(payload, properties)
        if not isinstance(payload, CommandPayload):
            raise ClientError("Queries and commands require a CommandPayload")
        _require(payload.database, "database")
        _require(payload.command, "command")
        if kind is EndpointKind.QUERY and is_management_command(payload.command):
            kind = EndpointKind.MGMT

        if kind is EndpointKind.MGMT:
            path, version, default_timeout = MGMT_ENDPOINT_PATH, WireVersion.V1, self._mgmt_timeout()
        elif kind is EndpointKind.QUERY_V1:
            path, version, default_timeout = QUERY_V1_ENDPOINT_PATH, WireVersion.V1, self._query_timeout()
        else:
            path, version, default_timeout = QUERY_V2_ENDPOINT_PATH, WireVersion.V2, self._query_timeout()

        server_timeout = (properties.get_server_timeout() if properties else None) or default_timeout
        props_dict = properties.to_dict() if properties else {}
        options = props_dict.setdefault("Options", {})
        options.setdefault(OPTION_SERVER_TIMEOUT, format_timespan(server_timeout))

        client_request_id = _client_request_id(properties, "KPC.execute")
        body = json.dumps(
            {
                "db": payload.database,
                "csl": payload.command,
                "properties": json.dumps(props_dict),
            }
        )
        headers = self._base_headers(properties, client_request_id)
        headers["Content-Type"] = "application/json; charset=utf-8"
        return _PreparedRequest(
            kind=kind,
            url=f"{self.cluster_url}{path}",
            headers=headers,
            body=body,
            version=version,
            timeout=_client_timeout(server_timeout),
            client_request_id=client_request_id,
            database=payload.database,
            operation="mgmt.execute" if kind is EndpointKind.MGMT else "query.execute",
        )

    def _prepare_streaming_ingest(
        self,
        payload: StreamingIngestPayload,
        properties: Optional[ClientRequestProperties],
    ) -> _PreparedRequest:
        _require(payload.database, "database")
        _require(payload.table, "table")
        _require(payload.data_format, "data_format")
        if payload.data is None:
            raise ClientError("data is required", subcode=VALIDATION_BLANK_ARGUMENT)

        path = STREAMING_INGEST_ENDPOINT_PATH.format(
            database=quote(payload.database, safe=""),
            table=quote(payload.table, safe=""),
        )
        query = {"streamFormat": payload.data_format}
        if payload.mapping_name:
            query["mappingName"] = payload.mapping_name

        client_request_id = _client_request_id(properties, "KPC.executeStreamingIngest")
        headers = self._base_headers(properties, client_request_id)
        headers["Content-Type"] = "application/octet-stream"
        if payload.compressed:
            headers["Content-Encoding"] = "gzip"
        if properties is not None:
            for name, value in properties.to_dict().get("Options", {}).items():
                headers[name] = str(value)

        server_timeout = (properties.get_server_timeout() if properties else None) or self._streaming_ingest_timeout()
        return _PreparedRequest(
            kind=EndpointKind.STREAMING_INGEST,
            url=f"{self.cluster_url}{path}?{urlencode(query)}",
            headers=headers,
            body=payload.data,
            version=WireVersion.V1,
            timeout=_client_timeout(server_timeout),
            client_request_id=client_request_id,
            database=payload.database,
            operation="ingest.streaming",
            follow_redirects=True,
        )

    def _base_headers(self, properties: Optional[ClientRequestProperties], client_request_id: str) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            HEADER_CLIENT_VERSION: self.config.client_version or f"Kusto.Python.Client:{VERSION}",
            HEADER_CLIENT_REQUEST_ID: client_request_id,
            HEADER_VERSION: KUSTO_API_VERSION,
        }
        app = (properties.application if properties else None) or self.config.application_name
        if app:
            headers[HEADER_APP] = app
        user = (properties.user if properties else None) or self.config.user_name
        if user:
            headers[HEADER_USER] = user
        return headers

    def _send(self, request: _PreparedRequest, attempt: int, *, stream: bool = False) -> requests.Response:
        """Send one attempt, following redirects on the streaming endpoints while the budget allows."""
        url = request.url
        redirects = 0
        while True:
            headers = dict(request.headers)
            headers.update(self._telemetry.get_additional_headers())
            headers["Authorization"] = f"Bearer {self._credentials.get_access_token()}"

            with self._telemetry.trace_request(
                request.operation, request.method, url, request.client_request_id, request.database
            ) as ctx:
                response = self._http._request(
                    request.method,
                    url,
                    headers=headers,
                    data=request.body,
                    timeout=request.timeout,
                    stream=stream,
                )
                activity_id = response.headers.get(HEADER_ACTIVITY_ID)
                self._telemetry.record_response(ctx, response.status_code, activity_id=activity_id, retry_count=attempt)

            status = response.status_code
            if status == 200:
                return response

            if status == 429:
                response.close()
                raise ThrottleError(url, activity_id=activity_id, retry_after=_retry_after(response))

            if status in _REDIRECT_STATUSES and request.follow_redirects:
                location = response.headers.get("Location")
                if location and location != url and redirects < self.max_redirects:
                    response.close()
                    redirects += 1
                    logger.info("Following redirect %d of %d to %s", redirects, self.max_redirects, location)
                    url = validate_endpoint_url(location)
                    continue
                raise _error_from_response(url, response, redirect_exhausted=True)

            raise _error_from_response(url, response)

    def _query_timeout(self) -> _dt.timedelta:
        return self.config.query_timeout or DEFAULT_QUERY_TIMEOUT

    def _mgmt_timeout(self) -> _dt.timedelta:
        return self.config.mgmt_timeout or DEFAULT_MGMT_TIMEOUT

    def _streaming_ingest_timeout(self) -> _dt.timedelta:
        return self.config.streaming_ingest_timeout or DEFAULT_STREAMING_INGEST_TIMEOUT


class ResponseStream:
    """
    Raw response body of a streaming query.

    Iterating yields byte chunks. Use as a context manager or call :meth:`close`.
    """

    def __init__(self, response: requests.Response) -> None:
        self._response = response
        self.activity_id = response.headers.get(HEADER_ACTIVITY_ID)

    def __iter__(self) -> Iterator[bytes]:
        return self._response.iter_content(chunk_size=_STREAM_CHUNK_SIZE)

    def read(self) -> bytes:
        return b"".join(self)

    def close(self) -> None:
        self._response.close()

    def __enter__(self) -> "ResponseStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _require(value: Optional[str], name: str) -> None:
    if value is None or not str(value).strip():
        raise ClientError(f"{name} is required", subcode=VALIDATION_BLANK_ARGUMENT)


def _client_request_id(properties: Optional[ClientRequestProperties], prefix: str) -> str:
    if properties is not None and properties.client_request_id:
        return properties.client_request_id
    return f"{prefix};{uuid.uuid4()}"


def _client_timeout(server_timeout: _dt.timedelta) -> float:
    return (server_timeout + CLIENT_SERVER_DELTA).total_seconds()


def _retry_after(response: requests.Response) -> Optional[int]:
    value = response.headers.get("Retry-After")
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _attach_response_info(
    error: Union[ServiceError, ProtocolError], url: str, activity_id: Optional[str]
) -> None:
    """Fill in where a successful response that failed to decode came from."""
    if error.endpoint is None:
        error.endpoint = url
        error.details["endpoint"] = url
    if activity_id and not error.activity_id:
        error.activity_id = activity_id
        error.details["activity_id"] = activity_id


def _error_from_response(url: str, response: requests.Response, *, redirect_exhausted: bool = False) -> ServiceError:
    """Build a :class:`ServiceError` from a non-success response."""
    status = response.status_code
    activity_id = response.headers.get(HEADER_ACTIVITY_ID) or ""
    text = response.text or ""
    response.close()

    message = text
    is_permanent = False
    one_api_errors = []
    if text.strip():
        try:
            body = json.loads(text)
        except ValueError:
            body = None
        if isinstance(body, dict):
            if isinstance(body.get("error"), dict):
                err = OneApiError.from_json(body["error"])
                one_api_errors.append(err)
                message = err.description or err.message or text
                is_permanent = err.permanent
            elif "message" in body:
                message = str(body["message"])
    else:
        message = f"Http StatusCode='{status}'"

    if status == 413 or any(is_payload_too_large(err.code) for err in one_api_errors):
        is_permanent = True

    subcode = http_status_to_subcode(status)
    if redirect_exhausted:
        # The redirect budget is per attempt; retrying would loop.
        is_permanent = True
        subcode = SERVICE_TOO_MANY_REDIRECTS

    return ServiceError(
        f"{message}, ActivityId='{activity_id}'",
        is_permanent=is_permanent,
        status_code=status,
        subcode=subcode,
        endpoint=url,
        activity_id=activity_id or None,
        one_api_errors=one_api_errors,
    )


__all__ = [
    "RequestExecutor",
    "EndpointKind",
    "CommandPayload",
    "StreamingIngestPayload",
    "ResponseStream",
    "is_management_command",
    "validate_endpoint_url",
]
