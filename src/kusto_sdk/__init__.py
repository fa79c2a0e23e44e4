# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Python client for Azure Data Explorer (Kusto).

Queries, management commands and managed (streaming or queued) ingestion.
"""

from ._version import VERSION as __version__
from .client import KustoClient
from .core._auth import (
    AuthMode,
    Certificate,
    CredentialManager,
    Interactive,
    ManagedIdentity,
    SharedSecret,
    StaticToken,
    TokenCallback,
    TokenCredentialMode,
)
from .core.config import KustoConfig
from .core.errors import (
    AuthError,
    ClientError,
    KustoError,
    NetworkError,
    OperationCancelledError,
    ProtocolError,
    RequestTimeoutError,
    ServiceError,
    ThrottleError,
)
from .core.results import Column, OperationResult, ResultTable, TableKind
from .data._properties import ClientRequestProperties
from .ingest import (
    CompressionType,
    DataFormat,
    IngestionKind,
    IngestionOperation,
    IngestionSource,
    IngestRequestProperties,
    ManagedStreamingPolicy,
    StatusResponse,
)

__all__ = [
    "__version__",
    "KustoClient",
    "KustoConfig",
    "AuthMode",
    "Certificate",
    "CredentialManager",
    "Interactive",
    "ManagedIdentity",
    "SharedSecret",
    "StaticToken",
    "TokenCallback",
    "TokenCredentialMode",
    "KustoError",
    "ClientError",
    "OperationCancelledError",
    "AuthError",
    "ServiceError",
    "ThrottleError",
    "ProtocolError",
    "RequestTimeoutError",
    "NetworkError",
    "TableKind",
    "Column",
    "ResultTable",
    "OperationResult",
    "ClientRequestProperties",
    "CompressionType",
    "DataFormat",
    "IngestionKind",
    "IngestionOperation",
    "IngestionSource",
    "IngestRequestProperties",
    "ManagedStreamingPolicy",
    "StatusResponse",
]
