# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Single-shot HTTP transport.

:class:`_HttpClient` sends exactly one request per call and maps transport
failures onto the SDK error taxonomy. Retries belong to
:class:`~kusto_sdk.core._retry.RetryPolicy` and redirects to
:class:`~kusto_sdk.data._executor.RequestExecutor`, so neither happens here.
"""

from __future__ import annotations

from typing import Any, Optional

import requests

from ..common.constants import DEFAULT_HTTP_TIMEOUT
from .errors import NetworkError, RequestTimeoutError


class _HttpClient:
    """
    Thin wrapper over ``requests``.

    :param timeout: Timeout in seconds for calls that do not pass one.
    :type timeout: :class:`float` | None
    :param session: Shared ``requests.Session`` for connection pooling. The caller
        keeps ownership; :meth:`close` only drops the reference.
    :type session: :class:`requests.Session` | None
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.default_timeout = timeout if timeout is not None else DEFAULT_HTTP_TIMEOUT
        self._session = session

    @property
    def session(self) -> Optional[requests.Session]:
        return self._session

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """
        Send one request.

        :param kwargs: Passed to ``session.request()`` / ``requests.request()``
            (``headers``, ``data``, ``stream``, ``timeout``).
        :raises ~kusto_sdk.core.errors.RequestTimeoutError: If connecting or reading times out.
        :raises ~kusto_sdk.core.errors.NetworkError: On any other ``requests`` failure.
        """
        kwargs.setdefault("timeout", self.default_timeout)
        kwargs["allow_redirects"] = False

        send = self._session.request if self._session is not None else requests.request
        try:
            return send(method, url, **kwargs)
        except requests.exceptions.Timeout as e:
            raise RequestTimeoutError(f"{method.upper()} {url} timed out: {e}", endpoint=url) from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"{method.upper()} {url} failed: {e}", endpoint=url) from e

    def close(self) -> None:
        self._session = None
