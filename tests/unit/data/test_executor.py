# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

import datetime as dt
import json

import pytest
from unittest.mock import MagicMock, patch

from kusto_sdk.core._error_codes import PROTOCOL_INVALID_JSON, SERVICE_TOO_MANY_REDIRECTS, VALIDATION_INSECURE_URL
from kusto_sdk.core.config import KustoConfig
from kusto_sdk.core.errors import ClientError, NetworkError, ProtocolError, ServiceError, ThrottleError
from kusto_sdk.core.results import TableKind
from kusto_sdk.core.telemetry import TelemetryConfig, TelemetryManager
from kusto_sdk.data._executor import (
    CommandPayload,
    EndpointKind,
    RequestExecutor,
    StreamingIngestPayload,
    is_management_command,
    validate_endpoint_url,
)
from kusto_sdk.data._properties import ClientRequestProperties

CLUSTER = "https://mycluster.kusto.windows.net"


def _sent_body(call):
    body = json.loads(call[2]["data"])
    body["properties"] = json.loads(body["properties"])
    return body


class TestEndpointValidation:
    def test_https_allowed(self):
        assert validate_endpoint_url("https://c.kusto.windows.net") == "https://c.kusto.windows.net"

    @pytest.mark.parametrize("url", ["http://localhost", "http://localhost:8080", "http://localhost/db"])
    def test_localhost_allowed(self, url):
        assert validate_endpoint_url(url) == url

    @pytest.mark.parametrize("url", ["http://c.kusto.windows.net", "http://localhost.evil.com", "ftp://c"])
    def test_plaintext_rejected(self, url):
        with pytest.raises(ClientError) as exc_info:
            validate_endpoint_url(url)
        assert exc_info.value.subcode == VALIDATION_INSECURE_URL

    def test_blank_rejected(self):
        with pytest.raises(ClientError):
            validate_endpoint_url("")

    def test_management_detection(self):
        assert is_management_command(".show tables")
        assert is_management_command("  \n.create table T (a:int)")
        assert not is_management_command("T | take 1")


class TestCommandRequests:
    def test_query_goes_to_v2_endpoint(self, make_executor, make_response, v2_body):
        executor, http = make_executor(make_response(200, v2_body, {"x-ms-activity-id": "act-1"}))

        result = executor.execute(EndpointKind.QUERY, CommandPayload("Samples", "StormEvents | take 2"))

        method, url, kwargs = http.calls[0]
        assert method == "POST"
        assert url == f"{CLUSTER}/v2/rest/query"
        headers = kwargs["headers"]
        assert headers["Authorization"] == "Bearer test_token_12345"
        assert headers["x-ms-app"] == "unit-tests"
        assert headers["x-ms-client-version"].startswith("Kusto.Python.Client:")
        assert headers["x-ms-client-request-id"].startswith("KPC.execute;")
        assert headers["Content-Type"] == "application/json; charset=utf-8"
        assert kwargs["timeout"] == 270.0

        body = _sent_body(http.calls[0])
        assert body["db"] == "Samples"
        assert body["csl"] == "StormEvents | take 2"
        assert body["properties"] == {"Options": {"servertimeout": "0.00:04:00"}}

        assert result.primary_result.kind is TableKind.PRIMARY_RESULT
        assert result.activity_id == "act-1"
        assert result.client_request_id == headers["x-ms-client-request-id"]

    def test_dot_command_is_routed_to_management(self, make_executor, make_response, v1_body):
        executor, http = make_executor(make_response(200, v1_body))

        result = executor.execute(EndpointKind.QUERY, CommandPayload("Samples", ".show tables"))

        assert http.calls[0][1] == f"{CLUSTER}/v1/rest/mgmt"
        assert _sent_body(http.calls[0])["properties"]["Options"]["servertimeout"] == "0.00:10:00"
        assert [t.kind for t in result] == [TableKind.PRIMARY_RESULT, TableKind.QUERY_PROPERTIES]

    def test_execute_command_routes_by_prefix(self, make_executor, make_response, v1_body, v2_body):
        executor, http = make_executor(make_response(200, v1_body), make_response(200, v2_body))

        executor.execute_command("Samples", ".show version")
        executor.execute_command("Samples", "print 1")

        assert http.calls[0][1].endswith("/v1/rest/mgmt")
        assert http.calls[1][1].endswith("/v2/rest/query")

    def test_v1_query_endpoint(self, make_executor, make_response, v1_body):
        executor, http = make_executor(make_response(200, v1_body))
        executor.execute(EndpointKind.QUERY_V1, CommandPayload("Samples", "print 1"))
        assert http.calls[0][1] == f"{CLUSTER}/v1/rest/query"

    def test_request_properties_are_applied(self, make_executor, make_response, v2_body):
        executor, http = make_executor(make_response(200, v2_body))
        props = ClientRequestProperties(client_request_id="MyApp;42", application="override-app", user="alice")
        props.set_server_timeout(dt.timedelta(minutes=2))
        props.set_parameter("state", "TEXAS")

        result = executor.execute(EndpointKind.QUERY, CommandPayload("Samples", "T"), props)

        kwargs = http.calls[0][2]
        assert kwargs["headers"]["x-ms-client-request-id"] == "MyApp;42"
        assert kwargs["headers"]["x-ms-app"] == "override-app"
        assert kwargs["headers"]["x-ms-user"] == "alice"
        assert kwargs["timeout"] == 150.0
        assert _sent_body(http.calls[0])["properties"] == {
            "Options": {"servertimeout": "0.00:02:00"},
            "Parameters": {"state": "TEXAS"},
        }
        assert result.client_request_id == "MyApp;42"

    @pytest.mark.parametrize("database,command", [("", "T"), ("Samples", "  "), (None, "T")])
    def test_blank_arguments_rejected_before_sending(self, make_executor, database, command):
        executor, http = make_executor()
        with pytest.raises(ClientError):
            executor.execute(EndpointKind.QUERY, CommandPayload(database, command))
        assert http.calls == []

    def test_insecure_cluster_rejected(self, static_credentials):
        with pytest.raises(ClientError):
            RequestExecutor("http://mycluster.kusto.windows.net", static_credentials, MagicMock())


class TestErrorResponses:
    @patch("time.sleep")
    def test_throttling_is_retried(self, mock_sleep, make_executor, make_response, v2_body):
        executor, http = make_executor(
            make_response(429, "", {"Retry-After": "3"}),
            make_response(200, v2_body),
        )
        result = executor.execute(EndpointKind.QUERY, CommandPayload("Samples", "T"))
        assert len(http.calls) == 2
        assert mock_sleep.call_count == 1
        assert len(result) == 1

    @patch("time.sleep")
    def test_throttling_exhausts_retries(self, mock_sleep, make_executor, make_response):
        executor, http = make_executor(*[make_response(429, "") for _ in range(3)])
        with pytest.raises(ThrottleError) as exc_info:
            executor.execute(EndpointKind.QUERY, CommandPayload("Samples", "T"))
        assert exc_info.value.retries_exhausted is True
        assert exc_info.value.attempts == 3
        assert len(http.calls) == 3

    @patch("time.sleep")
    def test_permanent_one_api_error_is_not_retried(self, mock_sleep, make_executor, make_response):
        body = {
            "error": {
                "code": "General_BadRequest",
                "message": "Request is invalid and cannot be executed.",
                "@message": "Semantic error: 'Nope' could not be resolved",
                "@permanent": True,
            }
        }
        executor, http = make_executor(make_response(400, body, {"x-ms-activity-id": "act-9"}))

        with pytest.raises(ServiceError) as exc_info:
            executor.execute(EndpointKind.QUERY, CommandPayload("Samples", "Nope"))

        err = exc_info.value
        assert len(http.calls) == 1
        assert err.is_permanent
        assert err.status_code == 400
        assert err.message == "Semantic error: 'Nope' could not be resolved, ActivityId='act-9'"
        assert err.activity_id == "act-9"
        assert err.endpoint == f"{CLUSTER}/v2/rest/query"
        assert err.failure_subcode == "General_BadRequest"
        mock_sleep.assert_not_called()

    @patch("time.sleep")
    def test_transient_service_error_is_retried(self, mock_sleep, make_executor, make_response, v2_body):
        executor, http = make_executor(
            make_response(503, {"error": {"code": "ServiceUnavailable", "message": "busy", "@permanent": False}}),
            make_response(200, v2_body),
        )
        executor.execute(EndpointKind.QUERY, CommandPayload("Samples", "T"))
        assert len(http.calls) == 2

    @patch("time.sleep")
    def test_generic_message_body(self, mock_sleep, make_executor, make_response):
        config = KustoConfig(http_retries=1)
        executor, _ = make_executor(make_response(500, {"message": "Something broke"}), config=config)
        with pytest.raises(ServiceError) as exc_info:
            executor.execute(EndpointKind.QUERY, CommandPayload("Samples", "T"))
        assert exc_info.value.message == "Something broke, ActivityId=''"

    @patch("time.sleep")
    def test_empty_body_uses_status_code(self, mock_sleep, make_executor, make_response):
        config = KustoConfig(http_retries=1)
        executor, _ = make_executor(make_response(404, ""), config=config)
        with pytest.raises(ServiceError) as exc_info:
            executor.execute(EndpointKind.QUERY, CommandPayload("Samples", "T"))
        assert exc_info.value.message == "Http StatusCode='404', ActivityId=''"
        assert exc_info.value.subcode == "http_404"

    @patch("time.sleep")
    def test_network_error_is_retried(self, mock_sleep, make_executor, make_response, v2_body):
        executor, http = make_executor(NetworkError("reset"), make_response(200, v2_body))
        executor.execute(EndpointKind.QUERY, CommandPayload("Samples", "T"))
        assert len(http.calls) == 2

    def test_malformed_success_body_is_protocol_error(self, make_executor, make_response):
        executor, http = make_executor(make_response(200, "not json", {"x-ms-activity-id": "act-2"}))
        with pytest.raises(ProtocolError) as exc_info:
            executor.execute(EndpointKind.QUERY, CommandPayload("Samples", "T"))
        assert len(http.calls) == 1
        err = exc_info.value
        assert err.endpoint == f"{CLUSTER}/v2/rest/query"
        assert err.activity_id == "act-2"
        assert err.details["endpoint"] == f"{CLUSTER}/v2/rest/query"
        assert err.details["activity_id"] == "act-2"

    @patch("time.sleep")
    def test_inline_exception_in_success_response(self, mock_sleep, make_executor, make_response):
        body = {
            "Tables": [
                {
                    "TableName": "Table_0",
                    "Columns": [{"ColumnName": "A", "DataType": "String"}],
                    "Rows": [{"Exceptions": ["boom"]}],
                }
            ]
        }
        executor, http = make_executor(make_response(200, body, {"x-ms-activity-id": "act-1"}))

        with pytest.raises(ServiceError) as exc_info:
            executor.execute(EndpointKind.MGMT, CommandPayload("Samples", ".show tables"))

        err = exc_info.value
        assert len(http.calls) == 1
        assert err.is_permanent
        assert err.message == "boom"
        assert err.endpoint == f"{CLUSTER}/v1/rest/mgmt"
        assert err.activity_id == "act-1"
        assert err.details["endpoint"] == f"{CLUSTER}/v1/rest/mgmt"
        assert err.details["activity_id"] == "act-1"
        mock_sleep.assert_not_called()

    @patch("time.sleep")
    def test_inline_one_api_error_marked_transient_is_retried(self, mock_sleep, make_executor, make_response, v1_body):
        inner = {"error": {"code": "ServiceBusy", "message": "Try later", "@permanent": False}}
        body = {
            "Tables": [
                {
                    "TableName": "Table_0",
                    "Columns": [{"ColumnName": "A", "DataType": "String"}],
                    "Rows": [{"OneApiErrors": [inner]}],
                }
            ]
        }
        executor, http = make_executor(make_response(200, body), make_response(200, v1_body))

        executor.execute(EndpointKind.MGMT, CommandPayload("Samples", ".show tables"))

        assert len(http.calls) == 2


class TestStreamingIngest:
    def _payload(self, **overrides):
        values = dict(
            database="Samples",
            table="My Events",
            data=b"\x1f\x8b...",
            data_format="csv",
            mapping_name="events_mapping",
            compressed=True,
        )
        values.update(overrides)
        return StreamingIngestPayload(**values)

    def test_request_shape(self, make_executor, make_response):
        executor, http = make_executor(make_response(200, {"Tables": []}))

        executor.execute(EndpointKind.STREAMING_INGEST, self._payload())

        method, url, kwargs = http.calls[0]
        assert method == "POST"
        assert url == f"{CLUSTER}/v1/rest/ingest/Samples/My%20Events?streamFormat=csv&mappingName=events_mapping"
        assert kwargs["data"] == b"\x1f\x8b..."
        assert kwargs["headers"]["Content-Encoding"] == "gzip"
        assert kwargs["headers"]["Content-Type"] == "application/octet-stream"
        assert kwargs["headers"]["x-ms-client-request-id"].startswith("KPC.executeStreamingIngest;")
        assert kwargs["timeout"] == 930.0

    def test_uncompressed_payload_has_no_content_encoding(self, make_executor, make_response):
        executor, http = make_executor(make_response(200, {"Tables": []}))
        executor.execute(EndpointKind.STREAMING_INGEST, self._payload(compressed=False, mapping_name=None))
        _, url, kwargs = http.calls[0]
        assert "Content-Encoding" not in kwargs["headers"]
        assert "mappingName" not in url

    def test_follows_one_redirect(self, make_executor, make_response):
        target = "https://other.kusto.windows.net/v1/rest/ingest/Samples/T?streamFormat=csv"
        executor, http = make_executor(
            make_response(307, "", {"Location": target}),
            make_response(200, {"Tables": []}),
        )

        executor.execute(EndpointKind.STREAMING_INGEST, self._payload())

        assert len(http.calls) == 2
        assert http.calls[1][1] == target
        assert http.calls[1][2]["data"] == b"\x1f\x8b..."

    def test_redirect_budget_exhausted_fails(self, make_executor, make_response):
        executor, http = make_executor(
            make_response(302, "", {"Location": "https://a.kusto.windows.net/x"}),
            make_response(302, "", {"Location": "https://b.kusto.windows.net/x"}),
            make_response(200, {"Tables": []}),
        )

        with pytest.raises(ServiceError) as exc_info:
            executor.execute(EndpointKind.STREAMING_INGEST, self._payload())

        assert len(http.calls) == 2
        assert exc_info.value.subcode == SERVICE_TOO_MANY_REDIRECTS
        assert exc_info.value.is_permanent

    def test_redirect_to_same_url_is_not_followed(self, make_executor, make_response):
        executor, http = make_executor(make_response(302, "", {"Location": "placeholder"}))
        url = executor._prepare(EndpointKind.STREAMING_INGEST, self._payload(), None).url
        http.responses[0].headers["Location"] = url

        with pytest.raises(ServiceError):
            executor.execute(EndpointKind.STREAMING_INGEST, self._payload())
        assert len(http.calls) == 1

    @patch("time.sleep")
    def test_payload_too_large_status_is_permanent(self, mock_sleep, make_executor, make_response):
        executor, http = make_executor(make_response(413, ""))
        with pytest.raises(ServiceError) as exc_info:
            executor.execute(EndpointKind.STREAMING_INGEST, self._payload())
        assert len(http.calls) == 1
        assert exc_info.value.is_permanent
        assert exc_info.value.status_code == 413

    @patch("time.sleep")
    def test_input_stream_too_large_code_is_permanent(self, mock_sleep, make_executor, make_response):
        body = {"error": {"code": "Stream_InputStreamTooLarge", "message": "Too big", "@permanent": False}}
        executor, http = make_executor(make_response(400, body))
        with pytest.raises(ServiceError) as exc_info:
            executor.execute(EndpointKind.STREAMING_INGEST, self._payload())
        assert len(http.calls) == 1
        assert exc_info.value.is_permanent
        mock_sleep.assert_not_called()

    def test_redirect_to_plaintext_is_rejected(self, make_executor, make_response):
        executor, http = make_executor(make_response(302, "", {"Location": "http://evil.example.com/"}))
        with pytest.raises(ClientError):
            executor.execute(EndpointKind.STREAMING_INGEST, self._payload())
        assert len(http.calls) == 1

    def test_wrong_payload_type(self, make_executor):
        executor, _ = make_executor()
        with pytest.raises(ClientError):
            executor.execute(EndpointKind.STREAMING_INGEST, CommandPayload("Samples", "T"))


class TestStreamingQueryAndJson:
    def test_execute_streaming_returns_raw_chunks(self, make_executor, make_response, v2_body):
        response = make_response(200, v2_body)
        executor, http = make_executor(response)

        with executor.execute_streaming(EndpointKind.QUERY, CommandPayload("Samples", "T")) as stream:
            assert json.loads(stream.read()) == v2_body

        assert http.calls[0][2]["stream"] is True
        response.close.assert_called()

    def test_request_json(self, make_executor, make_response):
        executor, http = make_executor(make_response(200, {"ingestionOperationId": "op-1"}))

        body = executor.request_json("POST", "/v1/rest/ingestion/Samples/T", {"a": 1}, operation="ingest.queued")

        assert body == {"ingestionOperationId": "op-1"}
        method, url, kwargs = http.calls[0]
        assert (method, url) == ("POST", f"{CLUSTER}/v1/rest/ingestion/Samples/T")
        assert json.loads(kwargs["data"]) == {"a": 1}
        assert kwargs["headers"]["x-ms-client-request-id"].startswith("KPC.ingest.queued;")

    def test_request_json_get_without_body(self, make_executor, make_response):
        executor, http = make_executor(make_response(200, ""))
        assert executor.request_json("GET", "/v1/rest/ingestion/configuration", operation="ingest.configuration") == {}
        assert http.calls[0][2]["data"] is None
        assert "Content-Type" not in http.calls[0][2]["headers"]

    def test_request_json_invalid_body(self, make_executor, make_response):
        executor, _ = make_executor(make_response(200, "<xml/>", {"x-ms-activity-id": "act-3"}))
        with pytest.raises(ProtocolError) as exc_info:
            executor.request_json("GET", "/x", operation="ingest.status")
        assert exc_info.value.subcode == PROTOCOL_INVALID_JSON
        assert exc_info.value.endpoint == f"{CLUSTER}/x"
        assert exc_info.value.activity_id == "act-3"
        assert exc_info.value.details["endpoint"] == f"{CLUSTER}/x"


class TestTelemetryIntegration:
    @patch("time.sleep")
    def test_each_attempt_is_reported(self, mock_sleep, make_executor, make_response, v2_body):
        hook = MagicMock()
        hook.get_additional_headers.return_value = {"x-custom": "1"}
        telemetry = TelemetryManager(TelemetryConfig(hooks=[hook]))
        executor, http = make_executor(
            make_response(503, ""),
            make_response(200, v2_body, {"x-ms-activity-id": "act-2"}),
            telemetry=telemetry,
        )

        executor.execute(EndpointKind.QUERY, CommandPayload("Samples", "T"))

        assert hook.on_request_start.call_count == 2
        ends = [c.args[1] for c in hook.on_request_end.call_args_list]
        assert [r.status_code for r in ends] == [503, 200]
        assert ends[1].retry_count == 1
        assert ends[1].activity_id == "act-2"
        assert hook.on_request_start.call_args[0][0].operation == "query.execute"
        assert http.calls[0][2]["headers"]["x-custom"] == "1"
