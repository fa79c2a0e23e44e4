# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Shared pytest fixtures and configuration for Kusto SDK tests.

This module provides common test fixtures, fake transports and configuration
that can be used across all test modules.
"""

import json

import pytest
from unittest.mock import Mock

from kusto_sdk.core._auth import CredentialManager, StaticToken
from kusto_sdk.core.config import KustoConfig
from kusto_sdk.data._executor import RequestExecutor


def _make_response(status_code=200, body=None, headers=None):
    """Build a Mock that looks like a ``requests.Response``."""
    if body is None:
        text = ""
    elif isinstance(body, (bytes, str)):
        text = body.decode("utf-8") if isinstance(body, bytes) else body
    else:
        text = json.dumps(body)
    response = Mock()
    response.status_code = status_code
    response.headers = headers or {}
    response.text = text
    response.content = text.encode("utf-8")
    response.json.side_effect = lambda: json.loads(text)
    response.iter_content.side_effect = lambda chunk_size=1: iter([response.content])
    return response


class FakeHttp:
    """Stand-in for ``_HttpClient`` that replays canned responses and records calls."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def _request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self):
        pass


@pytest.fixture
def make_response():
    """Factory for fake ``requests.Response`` objects."""
    return _make_response


@pytest.fixture
def test_config():
    """Test configuration with safe defaults."""
    return KustoConfig(
        http_retries=3,
        http_backoff=0.01,
        http_max_jitter=0.0,
        application_name="unit-tests",
    )


@pytest.fixture
def sample_cluster_url():
    """Standard test cluster URL."""
    return "https://mycluster.kusto.windows.net"


@pytest.fixture
def static_credentials(sample_cluster_url):
    """Credential manager returning a fixed token."""
    return CredentialManager(sample_cluster_url, StaticToken("test_token_12345"))


@pytest.fixture
def make_executor(sample_cluster_url, static_credentials, test_config):
    """Factory building a RequestExecutor on top of a FakeHttp."""

    def _make(*responses, config=None, telemetry=None):
        http = FakeHttp(*responses)
        executor = RequestExecutor(
            sample_cluster_url, static_credentials, http, config or test_config, telemetry=telemetry
        )
        return executor, http

    return _make


@pytest.fixture
def v1_body():
    """A two table V1 response."""
    return {
        "Tables": [
            {
                "TableName": "Table_0",
                "Columns": [
                    {"ColumnName": "Name", "DataType": "String", "ColumnType": "string"},
                    {"ColumnName": "Count", "DataType": "Int64", "ColumnType": "long"},
                ],
                "Rows": [["a", 1], ["b", None]],
            },
            {
                "TableName": "Table_1",
                "Columns": [{"ColumnName": "Value", "DataType": "String"}],
                "Rows": [["{}"]],
            },
        ]
    }


@pytest.fixture
def v2_body():
    """A V2 frame array with a single primary result."""
    return [
        {"FrameType": "DataSetHeader", "IsProgressive": False, "Version": "v2.0"},
        {
            "FrameType": "DataTable",
            "TableId": 0,
            "TableKind": "PrimaryResult",
            "TableName": "PrimaryResult",
            "Columns": [
                {"ColumnName": "State", "ColumnType": "string"},
                {"ColumnName": "Events", "ColumnType": "long"},
            ],
            "Rows": [["TEXAS", 4701], ["KANSAS", None]],
        },
        {"FrameType": "DataSetCompletion", "HasErrors": False, "Cancelled": False},
    ]
