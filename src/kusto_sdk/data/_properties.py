# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Per-request options and query parameters.
"""

from __future__ import annotations

import datetime as _dt
import json
import re
import uuid
from typing import Any, Dict, Optional, Union

from ..core._error_codes import (
    VALIDATION_BLANK_ARGUMENT,
    VALIDATION_INVALID_PROPERTIES,
    VALIDATION_INVALID_TIMESPAN,
)
from ..core.errors import ClientError

OPTION_SERVER_TIMEOUT = "servertimeout"
OPTIONS_KEY = "Options"
PARAMETERS_KEY = "Parameters"

MIN_SERVER_TIMEOUT = _dt.timedelta(minutes=1)
MAX_SERVER_TIMEOUT = _dt.timedelta(hours=1)

# [-][d.][hh:]mm:ss[.fffffff]
_TIMESPAN_RE = re.compile(r"^(-?)(?:(\d+)\.)?(?:([0-2]?\d):)?([0-5]?\d):([0-5]?\d)(?:\.(\d+))?$")

TimeoutValue = Union[_dt.timedelta, int, float, str]


def parse_timespan(text: str) -> _dt.timedelta:
    """
    Parse a KQL timespan such as ``"00:04:00"``, ``"1.02:03:04.5"`` or ``"30:00"``.

    :raises ~kusto_sdk.core.errors.ClientError: If the text is not a valid timespan.
    """
    m = _TIMESPAN_RE.match((text or "").strip())
    if not m:
        raise ClientError(
            f"Failed to parse '{text}' as a timespan",
            subcode=VALIDATION_INVALID_TIMESPAN,
        )
    sign, days, hours, minutes, seconds, fraction = m.groups()
    # Fractions are in ticks (100ns); anything finer than a microsecond is dropped.
    micros = int((fraction or "0").ljust(7, "0")[:7]) // 10
    value = _dt.timedelta(
        days=int(days or 0),
        hours=int(hours or 0),
        minutes=int(minutes),
        seconds=int(seconds),
        microseconds=micros,
    )
    return -value if sign == "-" else value


def format_timespan(value: _dt.timedelta) -> str:
    """Encode ``value`` as ``d.hh:mm:ss[.fffffff]``."""
    sign = "-" if value < _dt.timedelta(0) else ""
    value = abs(value)
    hours, rem = divmod(value.seconds, 3600)
    minutes, seconds = divmod(rem, 60)
    out = f"{sign}{value.days}.{hours:02d}:{minutes:02d}:{seconds:02d}"
    if value.microseconds:
        out += f".{value.microseconds * 10:07d}"
    return out


def _coerce_timeout(value: TimeoutValue) -> _dt.timedelta:
    if isinstance(value, _dt.timedelta):
        return value
    if isinstance(value, bool):
        raise ClientError(f"Invalid server timeout: {value!r}", subcode=VALIDATION_INVALID_TIMESPAN)
    if isinstance(value, (int, float)):
        return _dt.timedelta(seconds=value)
    if isinstance(value, str):
        return parse_timespan(value)
    raise ClientError(f"Invalid server timeout: {value!r}", subcode=VALIDATION_INVALID_TIMESPAN)


def clamp_server_timeout(value: _dt.timedelta) -> _dt.timedelta:
    """Clamp a server timeout into the range the service accepts (1 minute to 1 hour)."""
    return max(MIN_SERVER_TIMEOUT, min(MAX_SERVER_TIMEOUT, value))


def _to_csl_literal(value: Any) -> Any:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return f"bool({'true' if value else 'false'})"
    if isinstance(value, int):
        return f"long({value})"
    if isinstance(value, float):
        return f"real({value!r})"
    if isinstance(value, _dt.datetime):
        if value.tzinfo is not None:
            value = value.astimezone(_dt.timezone.utc).replace(tzinfo=None)
        return f"datetime({value.isoformat()}Z)"
    if isinstance(value, _dt.date):
        return f"datetime({value.isoformat()})"
    if isinstance(value, _dt.timedelta):
        return f"time({format_timespan(value)})"
    if isinstance(value, uuid.UUID):
        return f"guid({value})"
    raise ClientError(f"Unsupported parameter type: {type(value).__name__}")


class ClientRequestProperties:
    """
    Options and query parameters sent with a single request.

    Options control how the service executes the request (e.g. ``servertimeout``,
    ``notruncation``). Parameters bind values to ``declare query_parameters``
    names and are encoded as KQL literals.

    :param client_request_id: Overrides the generated ``x-ms-client-request-id``.
    :param application: Overrides ``x-ms-app`` for this request.
    :param user: Overrides ``x-ms-user`` for this request.

    Example::

        props = ClientRequestProperties()
        props.set_server_timeout(timedelta(minutes=10))
        props.set_parameter("state", "TEXAS")
        client.query.execute("Samples", "declare query_parameters(state:string); StormEvents | where State == state", props)
    """

    def __init__(
        self,
        *,
        client_request_id: Optional[str] = None,
        application: Optional[str] = None,
        user: Optional[str] = None,
    ) -> None:
        self.options: Dict[str, Any] = {}
        self.parameters: Dict[str, Any] = {}
        self.client_request_id = client_request_id
        self.application = application
        self.user = user

    def set_option(self, name: str, value: Any) -> None:
        _require_name(name)
        if name == OPTION_SERVER_TIMEOUT:
            self.set_server_timeout(value)
            return
        self.options[name] = value

    def get_option(self, name: str, default: Any = None) -> Any:
        return self.options.get(name, default)

    def remove_option(self, name: str) -> None:
        self.options.pop(name, None)

    def set_parameter(self, name: str, value: Any) -> None:
        """Bind a query parameter. Non-string values are encoded as KQL literals."""
        _require_name(name)
        if value is None:
            raise ClientError(f"Parameter '{name}' must not be None", subcode=VALIDATION_BLANK_ARGUMENT)
        self.parameters[name] = _to_csl_literal(value)

    def get_parameter(self, name: str, default: Any = None) -> Any:
        return self.parameters.get(name, default)

    def remove_parameter(self, name: str) -> None:
        self.parameters.pop(name, None)

    def set_server_timeout(self, value: TimeoutValue) -> None:
        """
        Set the ``servertimeout`` option.

        Accepts a :class:`~datetime.timedelta`, a number of seconds or a KQL timespan
        string. The value is clamped to the range 1 minute to 1 hour.

        :raises ~kusto_sdk.core.errors.ClientError: If the value is negative or unparseable.
        """
        td = _coerce_timeout(value)
        if td < _dt.timedelta(0):
            raise ClientError(f"Negative timeouts are invalid: {value!r}", subcode=VALIDATION_INVALID_TIMESPAN)
        self.options[OPTION_SERVER_TIMEOUT] = clamp_server_timeout(td)

    def get_server_timeout(self) -> Optional[_dt.timedelta]:
        return self.options.get(OPTION_SERVER_TIMEOUT)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.options:
            options = dict(self.options)
            timeout = options.get(OPTION_SERVER_TIMEOUT)
            if isinstance(timeout, _dt.timedelta):
                options[OPTION_SERVER_TIMEOUT] = format_timespan(timeout)
            out[OPTIONS_KEY] = options
        if self.parameters:
            out[PARAMETERS_KEY] = dict(self.parameters)
        return out

    def to_json(self) -> str:
        """Encode as the JSON string carried in the ``properties`` field of a request body."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str) -> Optional["ClientRequestProperties"]:
        """
        Decode the output of :meth:`to_json`. Blank input yields ``None``.

        :raises ~kusto_sdk.core.errors.ClientError: If ``text`` is not a JSON object
            with object-valued ``Options`` and ``Parameters``.
        """
        if not text or not text.strip():
            return None
        try:
            obj = json.loads(text)
        except ValueError as e:
            raise ClientError(f"Invalid request properties JSON: {e}", subcode=VALIDATION_INVALID_PROPERTIES) from e
        options = (obj.get(OPTIONS_KEY) or {}) if isinstance(obj, dict) else None
        parameters = (obj.get(PARAMETERS_KEY) or {}) if isinstance(obj, dict) else None
        if not isinstance(options, dict) or not isinstance(parameters, dict):
            raise ClientError(
                f"Request properties must be a JSON object with '{OPTIONS_KEY}' and '{PARAMETERS_KEY}' objects",
                subcode=VALIDATION_INVALID_PROPERTIES,
            )
        props = cls()
        for name, value in options.items():
            props.set_option(name, value)
        for name, value in parameters.items():
            props.parameters[name] = value
        return props

    def __repr__(self) -> str:
        return f"ClientRequestProperties({self.to_json()})"


def _require_name(name: str) -> None:
    if not name or not str(name).strip():
        raise ClientError("name is required", subcode=VALIDATION_BLANK_ARGUMENT)


__all__ = [
    "ClientRequestProperties",
    "parse_timespan",
    "format_timespan",
    "clamp_server_timeout",
    "OPTION_SERVER_TIMEOUT",
]
