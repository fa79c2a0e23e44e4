# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Data access layer for the Kusto SDK.

This module contains request execution, request properties and response decoding.
"""

__all__ = []
