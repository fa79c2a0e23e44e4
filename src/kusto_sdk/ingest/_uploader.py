# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Blob upload for queued ingestion.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol, runtime_checkable

from azure.core.exceptions import AzureError, HttpResponseError
from azure.storage.blob import ContainerClient

from ..core.errors import NetworkError, ServiceError

logger = logging.getLogger(__name__)


@runtime_checkable
class BlobUploader(Protocol):
    """Stores a payload in transient storage the ingestion service can read."""

    def upload(self, data: bytes, blob_name: str) -> str:
        """Upload ``data`` as ``blob_name`` and return a URL the service can read it from."""
        ...


class ContainerBlobUploader:
    """
    :class:`BlobUploader` backed by one Azure Storage container.

    :param container_url: Container URL, typically carrying a SAS token.
    :type container_url: :class:`str`
    :param credential: Optional credential when the URL carries no SAS token.
    :param container_client: Pre-built client, mainly for tests.
    """

    def __init__(
        self,
        container_url: Optional[str] = None,
        credential: Any = None,
        *,
        container_client: Optional[ContainerClient] = None,
    ) -> None:
        if container_client is None:
            if not container_url:
                raise ValueError("container_url or container_client is required")
            container_client = ContainerClient.from_container_url(container_url, credential=credential)
        self._container = container_client

    def upload(self, data: bytes, blob_name: str) -> str:
        try:
            blob = self._container.upload_blob(name=blob_name, data=data, overwrite=True)
        except HttpResponseError as e:
            raise ServiceError(
                f"Blob upload of '{blob_name}' failed: {e.message}",
                status_code=e.status_code,
                endpoint=self._container.url,
                is_permanent=e.status_code is not None and 400 <= e.status_code < 500 and e.status_code != 429,
            ) from e
        except AzureError as e:
            raise NetworkError(f"Blob upload of '{blob_name}' failed: {e}", endpoint=self._container.url) from e
        logger.debug("Uploaded %d bytes to blob %s", len(data), blob_name)
        return blob.url

    def close(self) -> None:
        self._container.close()


__all__ = ["BlobUploader", "ContainerBlobUploader"]
