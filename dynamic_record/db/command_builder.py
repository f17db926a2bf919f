"""
Command builder: turns criteria into dialect-specific SQL commands.

Identifier quoting comes from the connection's SQLAlchemy dialect. Conditions,
orders and joins inside criteria are passed through verbatim; they reference
the table alias (``t`` by default) or relation aliases.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.dialects import sqlite
from sqlalchemy.engine import Dialect

from ..criteria import UNSET, QueryCriteria, next_param_name
from ..exceptions import SchemaError
from .executor import Command
from .schema import TableSchema

logger = logging.getLogger(__name__)


class CommandBuilder:
    """Builds SELECT/INSERT/UPDATE/DELETE commands for one dialect."""

    def __init__(self, dialect: Optional[Dialect] = None):
        self.dialect = dialect or sqlite.dialect()

    # Quoting

    def quote_table_name(self, name: str) -> str:
        return ".".join(self.dialect.identifier_preparer.quote(part) for part in name.split("."))

    def quote_column_name(self, name: str) -> str:
        if name == "*":
            return name
        return self.dialect.identifier_preparer.quote(name)

    def qualify(self, alias: str, column: str) -> str:
        return f"{alias}.{self.quote_column_name(column)}" if alias else self.quote_column_name(column)

    # Clauses

    def build_select(self, table: TableSchema, select: Any, alias: str, distinct: bool = False) -> str:
        if not select or select == "*":
            columns = f"{alias}.*" if alias else "*"
        else:
            if isinstance(select, str):
                select = [part.strip() for part in select.split(",") if part.strip()]
            columns = ", ".join(
                self.qualify(alias, part) if part in table.columns else part for part in select
            )
        return f"SELECT {'DISTINCT ' if distinct else ''}{columns}"

    def apply_limit(self, sql: str, limit: int, offset: int) -> str:
        if limit is not None and limit >= 0:
            sql += f" LIMIT {int(limit)}"
        elif offset is not None and offset > 0:
            if self.dialect.name == "sqlite":
                sql += " LIMIT -1"
            elif self.dialect.name == "mysql":
                sql += " LIMIT 18446744073709551615"
        if offset is not None and offset > 0:
            sql += f" OFFSET {int(offset)}"
        return sql

    def apply_clauses(self, sql: str, criteria: QueryCriteria, with_limit: bool = True) -> str:
        if criteria.join:
            sql += f" {criteria.join}"
        if criteria.condition:
            sql += f" WHERE {criteria.condition}"
        if criteria.group:
            sql += f" GROUP BY {criteria.group}"
        if criteria.having:
            sql += f" HAVING {criteria.having}"
        if criteria.order:
            sql += f" ORDER BY {criteria.order}"
        if with_limit:
            sql = self.apply_limit(sql, criteria.limit, criteria.offset)
        return sql

    # Commands

    def create_find_command(self, table: TableSchema, criteria: QueryCriteria, alias: str = "t") -> Command:
        alias = criteria.alias or alias
        sql = self.build_select(table, criteria.select, alias, criteria.distinct)
        sql += f" FROM {self.quote_table_name(table.name)} {alias}"
        sql = self.apply_clauses(sql, criteria)
        return Command(sql, dict(criteria.params))

    def create_count_command(self, table: TableSchema, criteria: QueryCriteria, alias: str = "t") -> Command:
        alias = criteria.alias or alias
        if criteria.group or criteria.having:
            inner = self.build_select(table, criteria.select, alias, criteria.distinct)
            inner += f" FROM {self.quote_table_name(table.name)} {alias}"
            inner = self.apply_clauses(inner, criteria)
            return Command(f"SELECT COUNT(*) FROM ({inner}) sq", dict(criteria.params))

        if criteria.distinct and table.primary_key:
            keys = ", ".join(self.qualify(alias, column) for column in table.primary_key)
            select = f"SELECT COUNT(DISTINCT {keys})"
        else:
            select = "SELECT COUNT(*)"
        sql = f"{select} FROM {self.quote_table_name(table.name)} {alias}"
        sql = self.apply_clauses(sql, criteria, with_limit=False)
        return Command(sql, dict(criteria.params))

    def create_insert_command(self, table: TableSchema, data: Mapping[str, Any]) -> Command:
        columns: List[str] = []
        placeholders: List[str] = []
        params: Dict[str, Any] = {}
        for name, value in data.items():
            column = table.get_column(name)
            if column is None:
                continue
            if value is None and column.auto_increment:
                continue
            param = next_param_name()
            columns.append(self.quote_column_name(name))
            placeholders.append(f":{param}")
            params[param] = column.typecast(value)

        table_name = self.quote_table_name(table.name)
        if columns:
            sql = f"INSERT INTO {table_name} ({', '.join(columns)}) VALUES ({', '.join(placeholders)})"
        else:
            sql = f"INSERT INTO {table_name} DEFAULT VALUES"

        key = table.generated_key
        if key is not None and data.get(key) is None and self.dialect.insert_returning:
            # The generated key comes back with the row, e.g. a PostgreSQL serial
            return Command(f"{sql} RETURNING {self.quote_column_name(key)}", params, returning=key)
        return Command(sql, params)

    def create_update_command(
        self, table: TableSchema, data: Mapping[str, Any], criteria: QueryCriteria
    ) -> Command:
        assignments: List[str] = []
        params: Dict[str, Any] = dict(criteria.params)
        for name, value in data.items():
            column = table.get_column(name)
            if column is None:
                continue
            param = next_param_name()
            assignments.append(f"{self.quote_column_name(name)}=:{param}")
            params[param] = column.typecast(value)
        if not assignments:
            raise SchemaError(table.name, f"No columns are being updated for table '{table.name}'.")
        sql = f"UPDATE {self.quote_table_name(table.name)} SET {', '.join(assignments)}"
        sql = self.apply_clauses(sql, _where_only(criteria), with_limit=False)
        return Command(sql, params)

    def create_update_counter_command(
        self, table: TableSchema, counters: Mapping[str, int], criteria: QueryCriteria
    ) -> Command:
        assignments: List[str] = []
        params: Dict[str, Any] = dict(criteria.params)
        for name, value in counters.items():
            if table.get_column(name) is None:
                raise SchemaError(table.name, f"Table '{table.name}' does not have a column named '{name}'.")
            param = next_param_name()
            column = self.quote_column_name(name)
            assignments.append(f"{column}={column}+:{param}")
            params[param] = value
        if not assignments:
            raise SchemaError(table.name, f"No counter columns are being updated for table '{table.name}'.")
        sql = f"UPDATE {self.quote_table_name(table.name)} SET {', '.join(assignments)}"
        sql = self.apply_clauses(sql, _where_only(criteria), with_limit=False)
        return Command(sql, params)

    def create_delete_command(self, table: TableSchema, criteria: QueryCriteria) -> Command:
        sql = f"DELETE FROM {self.quote_table_name(table.name)}"
        sql = self.apply_clauses(sql, _where_only(criteria), with_limit=False)
        return Command(sql, dict(criteria.params))

    def create_sql_command(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> Command:
        return Command(sql, {str(name).lstrip(":"): value for name, value in (params or {}).items()})

    # Criteria

    def create_criteria(self, condition: Any = "", params: Optional[Mapping[str, Any]] = None) -> QueryCriteria:
        """Build criteria from a condition string, a mapping or existing criteria."""
        if isinstance(condition, (QueryCriteria, Mapping)):
            criteria = QueryCriteria.coerce(condition)
        else:
            criteria = QueryCriteria(condition=condition or "")
        if params:
            criteria.params.update({str(name).lstrip(":"): value for name, value in params.items()})
        return criteria

    def create_in_condition(
        self, columns: Sequence[str], values: Iterable[Sequence[Any]]
    ) -> Tuple[str, Dict[str, Any]]:
        """
        Build an IN condition over already-qualified column expressions.

        Composite keys become ``(a=:p AND b=:q) OR ...``.
        """
        values = [tuple(value) for value in values]
        params: Dict[str, Any] = {}
        if not values:
            return "0=1", params
        if len(columns) == 1:
            placeholders = []
            for (value,) in values:
                name = next_param_name()
                params[name] = value
                placeholders.append(f":{name}")
            if len(placeholders) == 1:
                return f"{columns[0]}={placeholders[0]}", params
            return f"{columns[0]} IN ({', '.join(placeholders)})", params

        groups = []
        for value in values:
            parts = []
            for column, item in zip(columns, value):
                name = next_param_name()
                params[name] = item
                parts.append(f"{column}=:{name}")
            groups.append(f"({' AND '.join(parts)})")
        return " OR ".join(groups), params

    def create_pk_criteria(
        self,
        table: TableSchema,
        pk: Any,
        condition: Any = "",
        params: Optional[Mapping[str, Any]] = None,
        prefix: str = "",
    ) -> QueryCriteria:
        """
        Criteria matching one or several primary key values.

        A single-column key accepts a scalar or a list of scalars; a composite
        key accepts a ``{column: value}`` mapping or a list of them.
        """
        criteria = self.create_criteria(condition, params)
        primary_key = table.primary_key
        if not primary_key:
            raise SchemaError(table.name, f"The table '{table.name}' does not have a primary key.")

        if len(primary_key) == 1:
            values = list(pk) if isinstance(pk, (list, tuple, set)) else [pk]
            rows = [(value,) for value in values]
        else:
            entries = [pk] if isinstance(pk, Mapping) else list(pk)
            rows = [tuple(entry[column] for column in primary_key) for entry in entries]

        columns = [f"{prefix}{self.quote_column_name(column)}" for column in primary_key]
        pk_condition, pk_params = self.create_in_condition(columns, rows)
        criteria.params.update(pk_params)
        if criteria.condition:
            criteria.condition = [pk_condition] + criteria.conditions
        else:
            criteria.condition = pk_condition
        return criteria

    def create_column_criteria(
        self,
        table: TableSchema,
        columns: Mapping[str, Any],
        condition: Any = "",
        params: Optional[Mapping[str, Any]] = None,
        prefix: str = "",
    ) -> QueryCriteria:
        """Criteria matching column values; list values become IN conditions."""
        criteria = self.create_criteria(condition, params)
        parts: List[str] = []
        for name, value in columns.items():
            column = table.get_column(name)
            if column is None:
                raise SchemaError(table.name, f"Table '{table.name}' does not have a column named '{name}'.")
            quoted = f"{prefix}{self.quote_column_name(name)}"
            if isinstance(value, (list, tuple, set)):
                in_condition, in_params = self.create_in_condition(
                    [quoted], [(column.typecast(item),) for item in value]
                )
                parts.append(in_condition if len(value) < 2 else f"({in_condition})")
                criteria.params.update(in_params)
            elif value is None:
                parts.append(f"{quoted} IS NULL")
            else:
                param = next_param_name()
                criteria.params[param] = column.typecast(value)
                parts.append(f"{quoted}=:{param}")
        if parts:
            criteria.condition = [" AND ".join(parts)] + criteria.conditions
        return criteria


def _where_only(criteria: QueryCriteria) -> QueryCriteria:
    """Strip clauses that UPDATE and DELETE statements do not take."""
    return QueryCriteria(condition=criteria.conditions, params=criteria.params, join=criteria.join)
