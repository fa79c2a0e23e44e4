# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Result types for Kusto query and command execution.

- :class:`TableKind`: Role of a table within a response
- :class:`Column`: Name, type and ordinal of a result column
- :class:`ResultTable`: One decoded table (immutable)
- :class:`OperationResult`: All tables of one response plus the derived primary result

Example::

    result = client.query.execute("Samples", "StormEvents | take 10")
    for row in result.primary_result:
        print(row[0])

    for table in result:
        print(table.name, table.kind, len(table))
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

Row = Tuple[Any, ...]


class TableKind(str, enum.Enum):
    """Role of a table within a response."""

    PRIMARY_RESULT = "PrimaryResult"
    QUERY_PROPERTIES = "QueryProperties"
    QUERY_COMPLETION_INFORMATION = "QueryCompletionInformation"
    TABLE_OF_CONTENTS = "TableOfContents"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "TableKind":
        """Map a wire value onto a kind; unrecognized values become :attr:`UNKNOWN`."""
        for kind in cls:
            if kind.value == value:
                return kind
        return cls.UNKNOWN


@dataclass(frozen=True)
class Column:
    """
    A result column.

    :param name: Column name.
    :param type: Kusto type name as reported by the service (e.g. ``"string"``, ``"long"``).
    :param ordinal: Zero based position within the table.
    """

    name: str
    type: str
    ordinal: int


@dataclass(frozen=True)
class ResultTable:
    """
    One decoded result table.

    Rows are tuples with one cell per column. A JSON ``null`` cell is ``None``.

    :param name: Table name.
    :type name: :class:`str`
    :param id: Table id within the response.
    :type id: :class:`str`
    :param kind: Role of the table.
    :type kind: :class:`TableKind`
    :param columns: Ordered columns.
    :type columns: :class:`tuple` of :class:`Column`
    :param rows: Ordered rows.
    :type rows: :class:`tuple` of :class:`tuple`

    Example::

        table = result.primary_result
        idx = table.column_index("State")
        states = [row[idx] for row in table]
    """

    name: str
    id: str
    kind: TableKind
    columns: Tuple[Column, ...] = field(default_factory=tuple)
    rows: Tuple[Row, ...] = field(default_factory=tuple)

    def __iter__(self) -> Iterator[Row]:
        return iter(self.rows)

    def __len__(self) -> int:
        return len(self.rows)

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    def column_index(self, name: str) -> int:
        """Return the ordinal of the column called ``name``."""
        for c in self.columns:
            if c.name == name:
                return c.ordinal
        raise KeyError(name)

    def to_dicts(self) -> List[Dict[str, Any]]:
        """Return the rows as dictionaries keyed by column name."""
        names = self.column_names
        return [dict(zip(names, row)) for row in self.rows]

    def to_json(self) -> str:
        """Re-encode the table in the shape of a V1 table; absent cells become ``null``."""
        return json.dumps(
            {
                "TableName": self.name,
                "Columns": [{"ColumnName": c.name, "ColumnType": c.type} for c in self.columns],
                "Rows": [list(r) for r in self.rows],
            }
        )


@dataclass(frozen=True)
class OperationResult:
    """
    Decoded response of a query or management command.

    Built once by the response decoder and never mutated. Iterating yields the
    tables in wire order.

    :param tables: All decoded tables, in order.
    :type tables: :class:`tuple` of :class:`ResultTable`
    :param client_request_id: Value sent in ``x-ms-client-request-id``.
    :type client_request_id: :class:`str` | None
    :param activity_id: Value of the ``x-ms-activity-id`` response header, if any.
    :type activity_id: :class:`str` | None
    """

    tables: Tuple[ResultTable, ...] = field(default_factory=tuple)
    client_request_id: Optional[str] = None
    activity_id: Optional[str] = None

    def __iter__(self) -> Iterator[ResultTable]:
        return iter(self.tables)

    def __len__(self) -> int:
        return len(self.tables)

    @property
    def primary_result(self) -> Optional[ResultTable]:
        """
        The table the caller is primarily interested in.

        The single table when exactly one exists, otherwise the first table of
        kind :attr:`TableKind.PRIMARY_RESULT`, or ``None``.
        """
        if len(self.tables) == 1:
            return self.tables[0]
        for t in self.tables:
            if t.kind is TableKind.PRIMARY_RESULT:
                return t
        return None

    def tables_of_kind(self, kind: TableKind) -> List[ResultTable]:
        return [t for t in self.tables if t.kind is kind]

    def with_request_info(
        self, client_request_id: Optional[str], activity_id: Optional[str]
    ) -> "OperationResult":
        return OperationResult(tables=self.tables, client_request_id=client_request_id, activity_id=activity_id)


__all__ = ["TableKind", "Column", "ResultTable", "OperationResult", "Row"]
