# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Operation namespace classes for the Kusto SDK.

This module contains the operation namespace classes that organize
related operations under intuitive namespaces:
- QueryOperations: Queries and management commands
- IngestOperations: Managed ingestion and status polling
"""

__all__ = []
