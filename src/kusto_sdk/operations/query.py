# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Query and management command operations namespace."""

from __future__ import annotations

import threading
from typing import Optional, TYPE_CHECKING

from ..core.results import OperationResult
from ..data._executor import CommandPayload, EndpointKind, ResponseStream
from ..data._properties import ClientRequestProperties

if TYPE_CHECKING:
    from ..client import KustoClient


class QueryOperations:
    """
    Query operations against the engine endpoint.

    Accessed via ``client.query``.

    Example:
        Run a query::

            result = client.query.execute("Samples", "StormEvents | take 10")
            for row in result.primary_result.to_dicts():
                print(row["State"])

        Run a management command::

            tables = client.query.management("Samples", ".show tables")

        With request properties::

            props = ClientRequestProperties()
            props.set_server_timeout(timedelta(minutes=2))
            props.set_parameter("state", "TEXAS")
            client.query.execute("Samples", "declare query_parameters(state:string); StormEvents | where State == state", props)
    """

    def __init__(self, client: "KustoClient") -> None:
        self._client = client

    def execute(
        self,
        database: str,
        query: str,
        properties: Optional[ClientRequestProperties] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> OperationResult:
        """
        Run a query, or a management command when ``query`` starts with ``.``.

        :param database: Database the query runs against.
        :type database: str
        :param query: KQL query text.
        :type query: str
        :param properties: Optional options and parameters.
        :type properties: ~kusto_sdk.data._properties.ClientRequestProperties or None
        :param cancel_event: Stops retrying at the next backoff delay when set.
        :return: Decoded tables.
        :rtype: ~kusto_sdk.core.results.OperationResult

        :raises ~kusto_sdk.core.errors.ClientError: If ``database`` or ``query`` is blank.
        :raises ~kusto_sdk.core.errors.ServiceError: If the service rejects the query.
        """
        return self._client._get_engine().execute_command(database, query, properties, cancel_event=cancel_event)

    def management(
        self,
        database: str,
        command: str,
        properties: Optional[ClientRequestProperties] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> OperationResult:
        """Run a management command (``.show``, ``.create`` ...) against the management endpoint."""
        return self._client._get_engine().execute(
            EndpointKind.MGMT,
            CommandPayload(database, command),
            properties,
            cancel_event=cancel_event,
        )

    def execute_v1(
        self,
        database: str,
        query: str,
        properties: Optional[ClientRequestProperties] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> OperationResult:
        """Run a query against the v1 query endpoint and decode the v1 response."""
        return self._client._get_engine().execute(
            EndpointKind.QUERY_V1,
            CommandPayload(database, query),
            properties,
            cancel_event=cancel_event,
        )

    def stream(
        self,
        database: str,
        query: str,
        properties: Optional[ClientRequestProperties] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> ResponseStream:
        """
        Run a query and return the undecoded response body as byte chunks.

        The caller must close the returned stream.

        Example::

            with client.query.stream("Samples", "StormEvents") as body:
                for chunk in body:
                    sink.write(chunk)
        """
        return self._client._get_engine().execute_streaming(
            EndpointKind.QUERY,
            CommandPayload(database, query),
            properties,
            cancel_event=cancel_event,
        )


__all__ = ["QueryOperations"]
