# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Core infrastructure components for the Kusto SDK.

This module contains the foundational components including authentication,
configuration, retry, HTTP transport, and error handling.
"""

from .results import (
    TableKind,
    Column,
    ResultTable,
    OperationResult,
)

__all__ = [
    "TableKind",
    "Column",
    "ResultTable",
    "OperationResult",
]
