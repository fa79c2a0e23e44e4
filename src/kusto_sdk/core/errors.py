# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Structured exception hierarchy for the Kusto SDK.

Every public operation either returns a decoded result / operation handle or
raises one of the types defined here. Each error carries an ``is_permanent``
flag that the retry policy uses to decide whether an attempt may be repeated:

- :class:`ClientError`: caller misuse, never retried.
- :class:`AuthError`: no usable credential, always permanent.
- :class:`ServiceError`: failure reported by the service, permanence read from the body.
- :class:`ThrottleError`: HTTP 429, always transient.
- :class:`ProtocolError`: malformed or unexpected response body, permanent.
- :class:`RequestTimeoutError` / :class:`NetworkError`: transport failures, transient.
"""

from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


class KustoError(Exception):
    """
    Base structured error for the Kusto SDK.

    :param message: Human readable message.
    :type message: :class:`str`
    :param code: Error category code (e.g. ``"service_error"``).
    :type code: :class:`str`
    :param subcode: Optional finer grained code, see :mod:`~kusto_sdk.core._error_codes`.
    :type subcode: :class:`str` | None
    :param status_code: HTTP status code when the error originates from a response.
    :type status_code: :class:`int` | None
    :param details: Additional diagnostic values.
    :type details: :class:`dict` | None
    :param source: ``"client"`` or ``"server"``.
    :type source: :class:`str` | None
    :param is_permanent: Whether retrying the same request could ever succeed.
    :type is_permanent: :class:`bool`
    """

    def __init__(
        self,
        message: str,
        *,
        code: str,
        subcode: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        source: Optional[str] = None,
        is_permanent: bool = True,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.subcode = subcode
        self.status_code = status_code
        self.details = details or {}
        self.source = source or "client"
        self.is_permanent = is_permanent
        # Set by RetryPolicy when it gives up on a transient error.
        self.retries_exhausted = False
        self.attempts = 0
        self.timestamp = _dt.datetime.now(_dt.timezone.utc).isoformat()

    @property
    def is_transient(self) -> bool:
        return not self.is_permanent

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "subcode": self.subcode,
            "status_code": self.status_code,
            "details": self.details,
            "source": self.source,
            "is_permanent": self.is_permanent,
            "retries_exhausted": self.retries_exhausted,
            "attempts": self.attempts,
            "timestamp": self.timestamp,
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"{self.__class__.__name__}(code={self.code!r}, subcode={self.subcode!r}, message={self.message!r})"


class ClientError(KustoError):
    """Caller misuse: blank required argument, missing stream, invalid source."""

    def __init__(self, message: str, *, subcode: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="client_error", subcode=subcode, details=details, source="client")


class OperationCancelledError(ClientError):
    """Raised at the next suspension point after the caller requested cancellation."""


class AuthError(KustoError):
    """No access token could be obtained. Always permanent."""

    def __init__(self, message: str, *, subcode: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="auth_error", subcode=subcode, details=details, source="client")


@dataclass(frozen=True)
class OneApiError:
    """
    Structured error payload returned by the service inside ``{"error": {...}}``.

    :param code: Service error code (e.g. ``"General_BadRequest"``).
    :param message: Short message.
    :param description: Long description (``@message``), used as the error text.
    :param type: Service exception type (``@type``).
    :param context: Raw ``@context`` object.
    :param permanent: Value of ``@permanent``.
    """

    code: Optional[str] = None
    message: Optional[str] = None
    description: Optional[str] = None
    type: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    permanent: bool = False

    @classmethod
    def from_json(cls, obj: Dict[str, Any], *, default_permanent: bool = False) -> "OneApiError":
        """
        :param default_permanent: Permanence assumed when the payload has no ``@permanent`` key.
        """
        return cls(
            code=obj.get("code"),
            message=obj.get("message"),
            description=obj.get("@message") or obj.get("message"),
            type=obj.get("@type"),
            context=obj.get("@context"),
            permanent=bool(obj.get("@permanent", default_permanent)),
        )


class ServiceError(KustoError):
    """
    The remote engine reported a failure.

    :param endpoint: URL the request was sent to.
    :type endpoint: :class:`str` | None
    :param activity_id: Value of the ``x-ms-activity-id`` response header when available.
    :type activity_id: :class:`str` | None
    :param one_api_errors: Structured errors parsed from the body, if any.
    :type one_api_errors: :class:`list` of :class:`OneApiError` | None
    """

    def __init__(
        self,
        message: str,
        *,
        is_permanent: bool = False,
        status_code: Optional[int] = None,
        subcode: Optional[str] = None,
        endpoint: Optional[str] = None,
        activity_id: Optional[str] = None,
        one_api_errors: Optional[List[OneApiError]] = None,
        details: Optional[Dict[str, Any]] = None,
        code: str = "service_error",
    ) -> None:
        d = details or {}
        if endpoint is not None:
            d["endpoint"] = endpoint
        if activity_id:
            d["activity_id"] = activity_id
        super().__init__(
            message,
            code=code,
            subcode=subcode,
            status_code=status_code,
            details=d,
            source="server",
            is_permanent=is_permanent,
        )
        self.endpoint = endpoint
        self.activity_id = activity_id
        self.one_api_errors = list(one_api_errors or [])

    @property
    def failure_subcode(self) -> Optional[str]:
        """The service error code of the first structured error, if any."""
        for err in self.one_api_errors:
            if err.code:
                return err.code
        return None


class ThrottleError(ServiceError):
    """HTTP 429 from the service. Always transient."""

    def __init__(
        self,
        endpoint: Optional[str] = None,
        *,
        activity_id: Optional[str] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        d: Dict[str, Any] = {}
        if retry_after is not None:
            d["retry_after"] = retry_after
        super().__init__(
            f"Request was throttled, too many requests. ActivityId='{activity_id or ''}'",
            is_permanent=False,
            status_code=429,
            subcode="http_429",
            endpoint=endpoint,
            activity_id=activity_id,
            details=d,
            code="throttle_error",
        )
        self.retry_after = retry_after


class ProtocolError(KustoError):
    """The response body does not parse as the expected wire format."""

    def __init__(
        self,
        message: str,
        *,
        subcode: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        endpoint: Optional[str] = None,
        activity_id: Optional[str] = None,
    ):
        d = details or {}
        if endpoint is not None:
            d["endpoint"] = endpoint
        if activity_id:
            d["activity_id"] = activity_id
        super().__init__(message, code="protocol_error", subcode=subcode, details=d, source="client")
        self.endpoint = endpoint
        self.activity_id = activity_id


class RequestTimeoutError(KustoError):
    """A network call exceeded its deadline."""

    def __init__(self, message: str, *, endpoint: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        d = details or {}
        if endpoint is not None:
            d["endpoint"] = endpoint
        super().__init__(
            message,
            code="timeout_error",
            subcode="transport_timeout",
            details=d,
            source="client",
            is_permanent=False,
        )
        self.endpoint = endpoint


class NetworkError(KustoError):
    """The request could not be sent or the response could not be read."""

    def __init__(self, message: str, *, endpoint: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        d = details or {}
        if endpoint is not None:
            d["endpoint"] = endpoint
        super().__init__(
            message,
            code="network_error",
            subcode="transport_connection",
            details=d,
            source="client",
            is_permanent=False,
        )
        self.endpoint = endpoint


__all__ = [
    "KustoError",
    "ClientError",
    "OperationCancelledError",
    "AuthError",
    "OneApiError",
    "ServiceError",
    "ThrottleError",
    "ProtocolError",
    "RequestTimeoutError",
    "NetworkError",
]
