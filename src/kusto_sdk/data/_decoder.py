# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Decoding of the two Kusto JSON wire formats into :class:`~kusto_sdk.core.results.OperationResult`.

- V1 (``/v1/rest/mgmt``, ``/v1/rest/query``, streaming ingest): an object with a
  ``Tables`` array. With three or more tables the last one is a table of contents
  that names and classifies the others.
- V2 (``/v2/rest/query``): an array of frames; only ``DataTable`` frames carry rows
  and each one states its own kind.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from ..core._error_codes import (
    PROTOCOL_INVALID_JSON,
    PROTOCOL_UNEXPECTED_SHAPE,
    SERVICE_INLINE_EXCEPTION,
)
from ..core.errors import OneApiError, ProtocolError, ServiceError
from ..core.results import Column, OperationResult, ResultTable, Row, TableKind

logger = logging.getLogger(__name__)

_TOC_KIND_MAP = {
    "QueryResult": TableKind.PRIMARY_RESULT,
    "QueryProperties": TableKind.QUERY_PROPERTIES,
    "QueryStatus": TableKind.QUERY_COMPLETION_INFORMATION,
}

_MULTIPLE_EXCEPTIONS_MESSAGE = "Query execution failed with multiple inner exceptions:\n"


class WireVersion(str, enum.Enum):
    V1 = "v1"
    V2 = "v2"


@dataclass
class _RawTable:
    """A table whose name, id and kind may still be assigned by the table of contents."""

    name: str = ""
    id: str = ""
    kind: Optional[TableKind] = None
    columns: List[Column] = field(default_factory=list)
    rows: List[Row] = field(default_factory=list)

    def cell(self, row: Row, column: str) -> Any:
        for c in self.columns:
            if c.name == column:
                return row[c.ordinal]
        raise ProtocolError(
            f"Table of contents is missing the '{column}' column",
            subcode=PROTOCOL_UNEXPECTED_SHAPE,
        )

    def freeze(self) -> ResultTable:
        return ResultTable(
            name=self.name,
            id=self.id,
            kind=self.kind or TableKind.UNKNOWN,
            columns=tuple(self.columns),
            rows=tuple(self.rows),
        )


class ResponseDecoder:
    """
    Stateless decoder for V1 and V2 response bodies.

    Example::

        decoder = ResponseDecoder()
        result = decoder.decode(response.content, WireVersion.V2)
        print(result.primary_result.rows)
    """

    def decode(self, raw_body: Union[bytes, str], version: WireVersion) -> OperationResult:
        """
        Parse a response body.

        :param raw_body: The response body.
        :param version: Wire format of the body.
        :return: All decoded tables.
        :raises ~kusto_sdk.core.errors.ProtocolError: If the body is not valid JSON or has the wrong shape.
        :raises ~kusto_sdk.core.errors.ServiceError: If a table row carries service exceptions.
        """
        doc = _load_json(raw_body)
        if WireVersion(version) is WireVersion.V2:
            tables = self._decode_v2(doc)
        else:
            tables = self._decode_v1(doc)
        return OperationResult(tables=tuple(t.freeze() for t in tables))

    def _decode_v1(self, doc: Any) -> List[_RawTable]:
        if not isinstance(doc, dict) or not isinstance(doc.get("Tables"), list):
            raise ProtocolError(
                "Tables property missing from V1 response",
                subcode=PROTOCOL_UNEXPECTED_SHAPE,
            )
        tables = [_read_table(t) for t in doc["Tables"]]
        if not tables:
            return tables

        if len(tables) <= 2:
            tables[0].kind = TableKind.PRIMARY_RESULT
            tables[0].id = "0"
            if len(tables) == 2:
                tables[1].kind = TableKind.QUERY_PROPERTIES
                tables[1].id = "1"
            return tables

        toc = tables[-1]
        toc.kind = TableKind.TABLE_OF_CONTENTS
        toc.id = str(len(tables) - 1)
        if len(toc.rows) < len(tables) - 1:
            raise ProtocolError(
                f"Table of contents has {len(toc.rows)} rows for {len(tables) - 1} tables",
                subcode=PROTOCOL_UNEXPECTED_SHAPE,
            )
        for table, entry in zip(tables[:-1], toc.rows):
            table.name = _as_text(toc.cell(entry, "Name"))
            table.id = _as_text(toc.cell(entry, "Id"))
            table.kind = _TOC_KIND_MAP.get(toc.cell(entry, "Kind"), TableKind.UNKNOWN)
        return tables

    def _decode_v2(self, doc: Any) -> List[_RawTable]:
        if not isinstance(doc, list):
            raise ProtocolError(
                "V2 response is not an array of frames",
                subcode=PROTOCOL_UNEXPECTED_SHAPE,
            )
        tables: List[_RawTable] = []
        for frame in doc:
            if not isinstance(frame, dict) or frame.get("FrameType") != "DataTable":
                continue
            raw = _read_table(frame)
            raw.kind = TableKind.parse(frame.get("TableKind"))
            tables.append(raw)
        return tables


def _load_json(raw_body: Union[bytes, str]) -> Any:
    if isinstance(raw_body, (bytes, bytearray)):
        try:
            raw_body = raw_body.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Response body is not valid UTF-8: {e}", subcode=PROTOCOL_INVALID_JSON) from e
    try:
        return json.loads(raw_body)
    except ValueError as e:
        logger.error("Failed to parse response body as JSON: %s", e)
        raise ProtocolError(f"Response body is not valid JSON: {e}", subcode=PROTOCOL_INVALID_JSON) from e


def _as_text(value: Any) -> str:
    return "" if value is None else str(value)


def _read_table(obj: Any) -> _RawTable:
    if not isinstance(obj, dict):
        raise ProtocolError("Table is not a JSON object", subcode=PROTOCOL_UNEXPECTED_SHAPE)

    columns: List[Column] = []
    for i, col in enumerate(obj.get("Columns") or []):
        if not isinstance(col, dict) or "ColumnName" not in col:
            raise ProtocolError("Column name is missing", subcode=PROTOCOL_UNEXPECTED_SHAPE)
        col_type = col.get("ColumnType") or col.get("DataType") or ""
        columns.append(Column(name=_as_text(col["ColumnName"]), type=col_type, ordinal=i))

    rows: List[Row] = []
    raw_rows = obj.get("Rows") or []
    if not isinstance(raw_rows, list):
        raise ProtocolError("Rows is not an array", subcode=PROTOCOL_UNEXPECTED_SHAPE)
    for row in raw_rows:
        if isinstance(row, dict):
            raise _service_error_from_row(row)
        if not isinstance(row, list):
            raise ProtocolError("Row is not an array", subcode=PROTOCOL_UNEXPECTED_SHAPE)
        if columns and len(row) != len(columns):
            raise ProtocolError(
                f"Row has {len(row)} cells but the table has {len(columns)} columns",
                subcode=PROTOCOL_UNEXPECTED_SHAPE,
            )
        rows.append(tuple(row))

    return _RawTable(
        name=_as_text(obj.get("TableName")),
        id=_as_text(obj.get("TableId")),
        columns=columns,
        rows=rows,
    )


# Inline failures are permanent unless a structured payload sets "@permanent": false.
def _service_error_from_row(row: Dict[str, Any]) -> ServiceError:
    if "Exceptions" in row:
        entries = row.get("Exceptions") or []
        one_api = len(entries) == 1
    else:
        entries = row.get("OneApiErrors") or []
        one_api = True

    if not entries:
        return ServiceError(
            "No exceptions were returned from the service.", is_permanent=True, subcode=SERVICE_INLINE_EXCEPTION
        )

    messages: List[str] = []
    errors: List[OneApiError] = []
    for entry in entries:
        text = entry if isinstance(entry, str) else json.dumps(entry)
        message = text
        if one_api:
            parsed = _parse_one_api(entry)
            if parsed is not None:
                errors.append(parsed)
                message = f"{parsed.code}: {parsed.message}"
        messages.append(message)

    if len(messages) == 1:
        message = messages[0]
    else:
        message = _MULTIPLE_EXCEPTIONS_MESSAGE + "".join(m + "\n" for m in messages)

    return ServiceError(
        message,
        is_permanent=errors[0].permanent if errors else True,
        subcode=SERVICE_INLINE_EXCEPTION,
        one_api_errors=errors,
        details={"exceptions": list(entries)} if len(entries) > 1 else None,
    )


def _parse_one_api(entry: Any) -> Optional[OneApiError]:
    obj = entry
    if isinstance(entry, str):
        try:
            obj = json.loads(entry)
        except ValueError:
            return None
    if not isinstance(obj, dict):
        return None
    inner = obj.get("error", obj)
    if not isinstance(inner, dict) or not inner.get("code"):
        return None
    return OneApiError.from_json(inner, default_permanent=True)


__all__ = ["ResponseDecoder", "WireVersion"]
