# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Constants for the Kusto REST surface and telemetry attributes.
"""

# REST endpoint paths, relative to the cluster URL
MGMT_ENDPOINT_PATH = "/v1/rest/mgmt"
QUERY_V1_ENDPOINT_PATH = "/v1/rest/query"
QUERY_V2_ENDPOINT_PATH = "/v2/rest/query"
STREAMING_INGEST_ENDPOINT_PATH = "/v1/rest/ingest/{database}/{table}"
QUEUED_INGEST_ENDPOINT_PATH = "/v1/rest/ingestion/{database}/{table}"
QUEUED_STATUS_ENDPOINT_PATH = "/v1/rest/ingestion/{database}/{table}/{operation_id}"
INGESTION_CONFIGURATION_ENDPOINT_PATH = "/v1/rest/ingestion/configuration"
INGEST_HOST_PREFIX = "ingest-"

# Commands whose first non-blank character is this prefix are management commands
MGMT_COMMAND_PREFIX = "."

# Request headers
HEADER_CLIENT_VERSION = "x-ms-client-version"
HEADER_APP = "x-ms-app"
HEADER_USER = "x-ms-user"
HEADER_CLIENT_REQUEST_ID = "x-ms-client-request-id"
HEADER_VERSION = "x-ms-version"
HEADER_ACTIVITY_ID = "x-ms-activity-id"
KUSTO_API_VERSION = "2019-02-13"

# Authentication
DEFAULT_PUBLIC_LOGIN_URL = "https://login.microsoftonline.com"
AUTHORITY_ENV_VARIABLE = "AadAuthorityUri"
DEFAULT_AUTHORITY_ID = "organizations"
DEFAULT_KUSTO_CLIENT_APP_ID = "db662dc1-0cfe-4e1c-a843-19a68e65be58"
LOCALHOST = "http://localhost"

# Transport timeout (seconds) for calls that do not carry their own
DEFAULT_HTTP_TIMEOUT = 60.0

# OpenTelemetry semantic convention attribute names
OTEL_ATTR_DB_SYSTEM = "db.system"
OTEL_ATTR_DB_OPERATION = "db.operation"
OTEL_ATTR_DB_NAME = "db.name"
OTEL_ATTR_HTTP_METHOD = "http.request.method"
OTEL_ATTR_HTTP_URL = "url.full"
OTEL_ATTR_HTTP_STATUS_CODE = "http.response.status_code"
OTEL_ATTR_KUSTO_CLIENT_REQUEST_ID = "kusto.client_request_id"
OTEL_ATTR_KUSTO_ACTIVITY_ID = "kusto.activity_id"
