# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from .telemetry import TelemetryConfig

DEFAULT_QUERY_TIMEOUT = timedelta(minutes=4)
DEFAULT_MGMT_TIMEOUT = timedelta(minutes=10)
DEFAULT_STREAMING_INGEST_TIMEOUT = timedelta(minutes=15)
# Added to the server timeout to obtain the client side deadline.
CLIENT_SERVER_DELTA = timedelta(seconds=30)


@dataclass(frozen=True)
class KustoConfig:
    """
    Configuration settings for Kusto client operations.

    :param http_retries: Maximum number of attempts per logical operation (default: 3).
    :type http_retries: int or None
    :param http_backoff: Base delay in seconds for exponential backoff (default: 1.0).
    :type http_backoff: float or None
    :param http_max_jitter: Upper bound of the random jitter added to each delay, in seconds (default: 1.0).
    :type http_max_jitter: float or None
    :param query_timeout: Default server timeout for queries (default: 4 minutes).
    :type query_timeout: ~datetime.timedelta or None
    :param mgmt_timeout: Default server timeout for management commands (default: 10 minutes).
    :type mgmt_timeout: ~datetime.timedelta or None
    :param streaming_ingest_timeout: Default timeout for streaming ingestion (default: 15 minutes).
    :type streaming_ingest_timeout: ~datetime.timedelta or None
    :param max_redirects: Redirects followed by the streaming ingestion endpoint (default: 1).
    :type max_redirects: int or None
    :param application_name: Sent as ``x-ms-app``.
    :type application_name: str or None
    :param user_name: Sent as ``x-ms-user``.
    :type user_name: str or None
    :param client_version: Sent as ``x-ms-client-version``.
    :type client_version: str or None
    :param token_timeout: Timeout in seconds for non-interactive token acquisition (default: 20).
    :type token_timeout: float or None
    :param interactive_timeout: Timeout in seconds for interactive login (default: 300).
    :type interactive_timeout: float or None
    :param callback_timeout: Timeout in seconds for asynchronous token callbacks (default: 30).
    :type callback_timeout: float or None
    :param telemetry: Optional telemetry configuration.
    :type telemetry: ~kusto_sdk.core.telemetry.TelemetryConfig or None
    """

    http_retries: Optional[int] = None
    http_backoff: Optional[float] = None
    http_max_jitter: Optional[float] = None

    query_timeout: Optional[timedelta] = None
    mgmt_timeout: Optional[timedelta] = None
    streaming_ingest_timeout: Optional[timedelta] = None
    max_redirects: Optional[int] = None

    application_name: Optional[str] = None
    user_name: Optional[str] = None
    client_version: Optional[str] = None

    token_timeout: Optional[float] = None
    interactive_timeout: Optional[float] = None
    callback_timeout: Optional[float] = None

    telemetry: Optional[TelemetryConfig] = None

    @classmethod
    def from_env(cls) -> "KustoConfig":
        """
        Create a configuration instance with default settings.

        :return: Configuration instance with default values.
        :rtype: ~kusto_sdk.core.config.KustoConfig
        """
        return cls(
            http_retries=None,  # Will default to 3 in RetryPolicy
            http_backoff=None,  # Will default to 1.0 in RetryPolicy
            http_max_jitter=None,  # Will default to 1.0 in RetryPolicy
            query_timeout=None,  # Will default to DEFAULT_QUERY_TIMEOUT
            mgmt_timeout=None,  # Will default to DEFAULT_MGMT_TIMEOUT
            streaming_ingest_timeout=None,  # Will default to DEFAULT_STREAMING_INGEST_TIMEOUT
            max_redirects=None,  # Will default to 1 in RequestExecutor
        )
