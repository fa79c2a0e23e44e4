# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Ingestion for the Kusto SDK.

This module contains the managed ingestion router, the streaming policy,
queued ingestion and the ingestion data models.
"""

from ._policy import ManagedStreamingPolicy, StreamingErrorCategory, choose_ingestion_kind
from ._router import IngestionRouter
from ._uploader import BlobUploader, ContainerBlobUploader
from .models import (
    BlobStatus,
    CompressionType,
    DataFormat,
    IngestionKind,
    IngestionOperation,
    IngestionSource,
    IngestRequestProperties,
    StatusResponse,
    StatusSummary,
)

__all__ = [
    "IngestionRouter",
    "ManagedStreamingPolicy",
    "StreamingErrorCategory",
    "choose_ingestion_kind",
    "BlobUploader",
    "ContainerBlobUploader",
    "BlobStatus",
    "CompressionType",
    "DataFormat",
    "IngestionKind",
    "IngestionOperation",
    "IngestionSource",
    "IngestRequestProperties",
    "StatusResponse",
    "StatusSummary",
]
