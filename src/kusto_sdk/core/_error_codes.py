# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

from typing import Optional

# HTTP subcode constants
HTTP_400 = "http_400"
HTTP_401 = "http_401"
HTTP_403 = "http_403"
HTTP_404 = "http_404"
HTTP_409 = "http_409"
HTTP_413 = "http_413"
HTTP_429 = "http_429"
HTTP_500 = "http_500"
HTTP_502 = "http_502"
HTTP_503 = "http_503"
HTTP_504 = "http_504"

_HTTP_STATUS_TO_SUBCODE = {
    400: HTTP_400,
    401: HTTP_401,
    403: HTTP_403,
    404: HTTP_404,
    409: HTTP_409,
    413: HTTP_413,
    429: HTTP_429,
    500: HTTP_500,
    502: HTTP_502,
    503: HTTP_503,
    504: HTTP_504,
}

# Validation subcodes
VALIDATION_BLANK_ARGUMENT = "validation_blank_argument"
VALIDATION_INSECURE_URL = "validation_insecure_url"
VALIDATION_INVALID_URL = "validation_invalid_url"
VALIDATION_INVALID_TIMESPAN = "validation_invalid_timespan"
VALIDATION_INVALID_SOURCE = "validation_invalid_source"
VALIDATION_INVALID_PROPERTIES = "validation_invalid_properties"
VALIDATION_CANCELLED = "validation_cancelled"

# Auth subcodes
AUTH_INVALID_AUTHORITY = "auth_invalid_authority"
AUTH_ACQUISITION_FAILED = "auth_acquisition_failed"
AUTH_CALLBACK_FAILED = "auth_callback_failed"
AUTH_CALLBACK_IN_RUNNING_LOOP = "auth_callback_in_running_loop"
AUTH_CALLBACK_TIMEOUT = "auth_callback_timeout"

# Protocol subcodes
PROTOCOL_INVALID_JSON = "protocol_invalid_json"
PROTOCOL_UNEXPECTED_SHAPE = "protocol_unexpected_shape"

# Service subcodes
SERVICE_INLINE_EXCEPTION = "service_inline_exception"
SERVICE_TOO_MANY_REDIRECTS = "service_too_many_redirects"

# Service error codes rejecting a payload for its size
PAYLOAD_TOO_LARGE_CODES = frozenset({"FileTooLarge", "InputStreamTooLarge"})

# Transport subcodes
TRANSPORT_TIMEOUT = "transport_timeout"
TRANSPORT_CONNECTION = "transport_connection"


def http_status_to_subcode(status_code: int) -> str:
    """Map an HTTP status code to a subcode, falling back to ``http_<status>``."""
    return _HTTP_STATUS_TO_SUBCODE.get(status_code, f"http_{status_code}")


def is_payload_too_large(code: Optional[str]) -> bool:
    """Whether a service error code (e.g. ``BadRequest_FileTooLarge``) rejects the payload size."""
    lowered = (code or "").lower()
    return any(c.lower() in lowered for c in PAYLOAD_TOO_LARGE_CODES)
