# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

import requests

from .common.constants import INGEST_HOST_PREFIX, LOCALHOST
from .core._auth import AuthMode, CredentialManager
from .core._http import _HttpClient
from .core.config import KustoConfig
from .core.telemetry import create_telemetry_manager
from .data._executor import RequestExecutor, validate_endpoint_url
from .ingest._policy import ManagedStreamingPolicy
from .ingest._queued import QueuedIngestClient
from .ingest._router import IngestionRouter
from .ingest._uploader import BlobUploader
from .operations.ingest import IngestOperations
from .operations.query import QueryOperations


class KustoClient:
    """
    High-level client for Azure Data Explorer (Kusto).

    The client runs queries and management commands against the engine endpoint
    and ingests data through managed ingestion: streaming to the engine when the
    payload allows it, queued through the data management endpoint otherwise.

    The client creates one ``requests.Session`` on first use, shared by every
    request (token endpoints included), and closes it in :meth:`close`.

    **Context Manager Support (Recommended)**:
        Using the client as a context manager creates the session up front and
        closes everything on exit::

            with KustoClient("https://help.kusto.windows.net", Interactive()) as client:
                result = client.query.execute("Samples", "StormEvents | take 10")
                for row in result.primary_result:
                    print(row)

    **Without Context Manager**:
        Resources are created lazily on first use. Call ``close()`` when done::

            client = KustoClient(cluster_url, SharedSecret(app_id, secret, tenant))
            try:
                client.query.management("Samples", ".show tables")
            finally:
                client.close()

    Operations are organized under namespaces:

    - ``client.query``: Queries, management commands and raw streaming queries
    - ``client.ingest``: Managed ingestion and status polling

    :param cluster_url: Engine URL, for example ``"https://mycluster.westus.kusto.windows.net"``.
        Must be https (``http://localhost`` excepted).
    :type cluster_url: :class:`str`
    :param auth: How bearer tokens are obtained.
    :type auth: ~kusto_sdk.core._auth.AuthMode
    :param config: Optional configuration. Defaults to :meth:`KustoConfig.from_env`.
    :type config: ~kusto_sdk.core.config.KustoConfig or None
    :param ingestion_url: Data management URL for queued ingestion. Derived from
        ``cluster_url`` by prefixing the host with ``ingest-`` when omitted.
    :type ingestion_url: :class:`str` or None
    :param uploader: Transient storage for queued ingestion. Resolved from the data
        management endpoint when omitted.
    :type uploader: ~kusto_sdk.ingest._uploader.BlobUploader or None
    :param streaming_policy: Managed streaming tunables.
    :type streaming_policy: ~kusto_sdk.ingest._policy.ManagedStreamingPolicy or None

    :raises ~kusto_sdk.core.errors.ClientError: If a URL is blank or not secure.
    """

    def __init__(
        self,
        cluster_url: str,
        auth: AuthMode,
        config: Optional[KustoConfig] = None,
        *,
        ingestion_url: Optional[str] = None,
        uploader: Optional[BlobUploader] = None,
        streaming_policy: Optional[ManagedStreamingPolicy] = None,
    ) -> None:
        self._cluster_url = validate_endpoint_url(cluster_url).rstrip("/")
        self._ingestion_url = validate_endpoint_url(ingestion_url or ingestion_url_for(self._cluster_url)).rstrip("/")
        self._auth = auth
        self._config = config or KustoConfig.from_env()
        self._uploader = uploader
        self._streaming_policy = streaming_policy

        self._session: Optional[requests.Session] = None
        self._http: Optional[_HttpClient] = None
        self._engine: Optional[RequestExecutor] = None
        self._dm: Optional[RequestExecutor] = None
        self._queued: Optional[QueuedIngestClient] = None
        self._router: Optional[IngestionRouter] = None
        self._telemetry = create_telemetry_manager(self._config.telemetry)

        self.query = QueryOperations(self)
        self.ingest = IngestOperations(self)

    @property
    def cluster_url(self) -> str:
        return self._cluster_url

    @property
    def ingestion_url(self) -> str:
        return self._ingestion_url

    def __enter__(self) -> "KustoClient":
        """
        Enter the context manager.

        Creates the HTTP session used for connection pooling.

        :return: The client instance.
        :rtype: KustoClient
        """
        self._get_session()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        """
        Close the client and release resources.

        Safe to call multiple times. Executors are rebuilt lazily if the client is
        used again.
        """
        if self._queued is not None:
            self._queued.close()
        self._queued = None
        self._router = None
        for executor in (self._engine, self._dm):
            if executor is not None:
                executor.close()
        self._engine = None
        self._dm = None
        if self._http is not None:
            self._http.close()
            self._http = None
        if self._session is not None:
            self._session.close()
            self._session = None

    def _get_session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def _get_http(self) -> _HttpClient:
        if self._http is None:
            self._http = _HttpClient(session=self._get_session())
        return self._http

    def _build_executor(self, url: str) -> RequestExecutor:
        credentials = CredentialManager(
            url,
            self._auth,
            session=self._get_session(),
            token_timeout=self._config.token_timeout,
            interactive_timeout=self._config.interactive_timeout,
            callback_timeout=self._config.callback_timeout,
        )
        return RequestExecutor(url, credentials, self._get_http(), self._config, telemetry=self._telemetry)

    def _get_engine(self) -> RequestExecutor:
        """
        Get or create the executor bound to the engine endpoint.

        :rtype: ~kusto_sdk.data._executor.RequestExecutor
        """
        if self._engine is None:
            self._engine = self._build_executor(self._cluster_url)
        return self._engine

    def _get_router(self) -> IngestionRouter:
        """
        Get or create the ingestion router.

        The data management executor has its own token cache since its token
        audience is the data management URL.
        """
        if self._router is None:
            if self._dm is None:
                self._dm = self._build_executor(self._ingestion_url)
            self._queued = QueuedIngestClient(self._dm, self._uploader)
            self._router = IngestionRouter(self._get_engine(), self._queued, self._streaming_policy)
        return self._router


def ingestion_url_for(cluster_url: str) -> str:
    """
    Derive the data management URL from an engine URL.

    ``https://mycluster.kusto.windows.net`` becomes ``https://ingest-mycluster.kusto.windows.net``.
    Local endpoints and URLs that already carry the prefix are returned unchanged.
    """
    if cluster_url.lower().startswith(LOCALHOST):
        return cluster_url
    parsed = urlparse(cluster_url)
    host = parsed.netloc
    if host.lower().startswith(INGEST_HOST_PREFIX):
        return cluster_url
    return urlunparse(parsed._replace(netloc=INGEST_HOST_PREFIX + host))


__all__ = ["KustoClient", "ingestion_url_for"]
