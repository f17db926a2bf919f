"""
Finder: query and bulk-write operations of an entity class.

Every method runs against the connection the record (usually a model
prototype) is bound to. Pending criteria built by chaining ``with_``, ``scope``
and ``together`` are folded into the next query and then cleared.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

from .criteria import QueryCriteria
from .lifecycle import RecordState
from .resolver import RelationResolver
from .scopes import apply_scopes

if TYPE_CHECKING:
    from .record import DynamicRecord

logger = logging.getLogger(__name__)

Params = Optional[Mapping[str, Any]]


class FinderMixin:
    """find/count/exists and bulk update/delete."""

    # Pending criteria

    def get_db_criteria(self, create_if_null: bool = True) -> Optional[QueryCriteria]:
        """
        Return the pending criteria of this record.

        The default scope is not part of it: it is applied when the next query
        runs, once the table alias of that query is known.
        """
        if self._criteria is None and create_if_null:
            self._criteria = QueryCriteria()
        return self._criteria

    def set_db_criteria(self, criteria: Any) -> None:
        self._criteria = QueryCriteria.coerce(criteria) if criteria is not None else None

    def default_criteria(self, alias: str = "") -> Optional[QueryCriteria]:
        """The default scope as criteria; a callable default scope is applied like a modifier scope."""
        default = self.default_scope()
        if not default:
            return None
        if callable(default) and not isinstance(default, (Mapping, QueryCriteria)):
            criteria = QueryCriteria(alias=alias)
            default(criteria)
            return criteria
        return QueryCriteria.coerce(default)

    def _chain_target(self) -> "DynamicRecord":
        if self._is_prototype:
            return self._spawn_finder()
        return self

    def reset_scope(self, reset_default: bool = True) -> "DynamicRecord":
        """Drop pending criteria; with ``reset_default`` the default scope is skipped too."""
        target = self._chain_target()
        target._criteria = None
        target._use_default_scope = not reset_default
        return target

    def with_(self, *specs: Any) -> "DynamicRecord":
        """Eager-load relations in the next query, e.g. ``with_("author", "comments.author")``."""
        target = self._chain_target()
        if specs:
            spec = specs[0] if len(specs) == 1 else list(specs)
            target.get_db_criteria().merge_with(QueryCriteria(with_=spec))
        return target

    def together(self) -> "DynamicRecord":
        """Load every eager relation of the next query with joins in a single statement."""
        target = self._chain_target()
        target.get_db_criteria().together = True
        return target

    def scope(self, name: str, *args: Any) -> "DynamicRecord":
        """Apply a named scope to the next query; it runs once the query alias is known."""
        target = self._chain_target()
        target.get_metadata().scopes.get(name)
        target.get_db_criteria().scopes.append((name, args))
        return target

    def get_table_alias(self, quote: bool = False) -> str:
        criteria = self._criteria
        alias = (criteria.alias if criteria is not None and criteria.alias else None) or self.settings.default_table_alias
        return self.connection().command_builder.quote_column_name(alias) if quote else alias

    def apply_scopes(self, criteria: Any) -> QueryCriteria:
        """Fold the pending criteria and named scopes under ``criteria`` and clear them."""
        criteria = QueryCriteria.coerce(criteria)
        if self._is_prototype:
            pending, use_default = None, True
        else:
            pending, use_default = self._criteria, self._use_default_scope
            self._clear_pending()

        accumulator = None
        if use_default:
            alias = criteria.alias or (pending.alias if pending is not None else "") or self.settings.default_table_alias
            accumulator = self.default_criteria(alias)
        if pending is not None:
            accumulator = pending if accumulator is None else accumulator.merge_with(pending)
        if accumulator is not None and accumulator.scopes:
            criteria.scopes = accumulator.scopes + criteria.scopes
            accumulator.scopes = []
        return apply_scopes(criteria, self.get_metadata().scopes, accumulator)

    def _clear_pending(self) -> None:
        self._criteria = None
        self._use_default_scope = True

    # Internals

    def _builder(self):
        return self.connection().command_builder

    def _executor(self):
        return self.connection().executor

    def _table(self):
        return self.get_metadata().table_schema

    def _prefix(self) -> str:
        return f"{self.get_table_alias(quote=True)}."

    def _query(self, criteria: QueryCriteria, all_: bool = False) -> Union["DynamicRecord", List["DynamicRecord"], Dict, None]:
        if not self.before_find(criteria):
            if not self._is_prototype:
                self._clear_pending()
            return [] if all_ else None

        alias = self.get_table_alias()
        criteria = self.apply_scopes(criteria)
        alias = criteria.alias or alias

        if criteria.with_:
            records = RelationResolver(self, criteria.with_, alias=alias).query(criteria, all_)
            if all_:
                return self._index_records(records, criteria.index)
            return records[0] if records else None

        if not all_:
            criteria.limit = 1
        command = self._builder().create_find_command(self._table(), criteria, alias=alias)
        rows = self._executor().query_all(command)
        if all_:
            return self.populate_records(rows, True, criteria.index)
        return self.populate_record(rows[0]) if rows else None

    def _index_records(self, records: List["DynamicRecord"], index: Optional[str]):
        if not index:
            return records
        return {record.get_attribute(index): record for record in records}

    # Finders

    def find(self, condition: Any = "", params: Params = None) -> Optional["DynamicRecord"]:
        """First record matching a condition string, mapping or criteria."""
        return self._query(self._builder().create_criteria(condition, params))

    def find_all(self, condition: Any = "", params: Params = None) -> Union[List["DynamicRecord"], Dict]:
        """All records matching a condition; a dict when the criteria sets ``index``."""
        return self._query(self._builder().create_criteria(condition, params), all_=True)

    def find_by_pk(self, pk: Any, condition: Any = "", params: Params = None) -> Optional["DynamicRecord"]:
        criteria = self._builder().create_pk_criteria(self._table(), pk, condition, params, self._prefix())
        return self._query(criteria)

    def find_all_by_pk(self, pk: Any, condition: Any = "", params: Params = None):
        criteria = self._builder().create_pk_criteria(self._table(), pk, condition, params, self._prefix())
        return self._query(criteria, all_=True)

    def find_by_attributes(
        self, attributes: Mapping[str, Any], condition: Any = "", params: Params = None
    ) -> Optional["DynamicRecord"]:
        criteria = self._builder().create_column_criteria(self._table(), attributes, condition, params, self._prefix())
        return self._query(criteria)

    def find_all_by_attributes(self, attributes: Mapping[str, Any], condition: Any = "", params: Params = None):
        criteria = self._builder().create_column_criteria(self._table(), attributes, condition, params, self._prefix())
        return self._query(criteria, all_=True)

    def _query_by_sql(self, sql: str, params: Params, all_: bool):
        if not self.before_find(None):
            return [] if all_ else None
        if self._is_prototype:
            pending = None
        else:
            pending = self._criteria
            self._clear_pending()

        command = self._builder().create_sql_command(sql, params)
        rows = self._executor().query_all(command)
        if not all_:
            rows = rows[:1]
        records = self.populate_records(rows)
        if records and pending is not None and pending.with_:
            RelationResolver(self, pending.with_, alias=pending.alias or None).populate(records)
        if all_:
            return records
        return records[0] if records else None

    def find_by_sql(self, sql: str, params: Params = None) -> Optional["DynamicRecord"]:
        """First record of a raw SQL query; pending ``with_`` relations are loaded afterwards."""
        return self._query_by_sql(sql, params, all_=False)

    def find_all_by_sql(self, sql: str, params: Params = None) -> List["DynamicRecord"]:
        return self._query_by_sql(sql, params, all_=True)

    # Counting

    def count(self, condition: Any = "", params: Params = None) -> int:
        alias = self.get_table_alias()
        criteria = self.apply_scopes(self._builder().create_criteria(condition, params))
        alias = criteria.alias or alias
        if criteria.with_:
            return RelationResolver(self, criteria.with_, alias=alias).count(criteria)
        command = self._builder().create_count_command(self._table(), criteria, alias=alias)
        return int(self._executor().query_scalar(command) or 0)

    def count_by_attributes(self, attributes: Mapping[str, Any], condition: Any = "", params: Params = None) -> int:
        criteria = self._builder().create_column_criteria(self._table(), attributes, condition, params, self._prefix())
        return self.count(criteria)

    def count_by_sql(self, sql: str, params: Params = None) -> int:
        return int(self._executor().query_scalar(self._builder().create_sql_command(sql, params)) or 0)

    def exists(self, condition: Any = "", params: Params = None) -> bool:
        alias = self.get_table_alias()
        criteria = self.apply_scopes(self._builder().create_criteria(condition, params))
        alias = criteria.alias or alias
        if criteria.with_:
            return RelationResolver(self, criteria.with_, alias=alias).count(criteria) > 0
        criteria.select = "1"
        criteria.limit = 1
        command = self._builder().create_find_command(self._table(), criteria, alias=alias)
        return self._executor().query_row(command) is not None

    # Bulk writes

    def update_by_pk(self, pk: Any, attributes: Mapping[str, Any], condition: Any = "", params: Params = None) -> int:
        """Update rows by primary key; returns the number of affected rows."""
        table = self._table()
        criteria = self._builder().create_pk_criteria(table, pk, condition, params)
        command = self._builder().create_update_command(table, attributes, criteria)
        return self._executor().execute(command).rowcount

    def update_all(self, attributes: Mapping[str, Any], condition: Any = "", params: Params = None) -> int:
        table = self._table()
        criteria = self._builder().create_criteria(condition, params)
        command = self._builder().create_update_command(table, attributes, criteria)
        return self._executor().execute(command).rowcount

    def update_counters(self, counters: Mapping[str, int], condition: Any = "", params: Params = None) -> int:
        table = self._table()
        criteria = self._builder().create_criteria(condition, params)
        command = self._builder().create_update_counter_command(table, counters, criteria)
        return self._executor().execute(command).rowcount

    def delete_by_pk(self, pk: Any, condition: Any = "", params: Params = None) -> int:
        table = self._table()
        criteria = self._builder().create_pk_criteria(table, pk, condition, params)
        return self._executor().execute(self._builder().create_delete_command(table, criteria)).rowcount

    def delete_all(self, condition: Any = "", params: Params = None) -> int:
        table = self._table()
        criteria = self._builder().create_criteria(condition, params)
        return self._executor().execute(self._builder().create_delete_command(table, criteria)).rowcount

    def delete_all_by_attributes(self, attributes: Mapping[str, Any], condition: Any = "", params: Params = None) -> int:
        table = self._table()
        criteria = self._builder().create_column_criteria(table, attributes, condition, params)
        return self._executor().execute(self._builder().create_delete_command(table, criteria)).rowcount

    # Population

    def instantiate(self, attributes: Mapping[str, Any]) -> "DynamicRecord":
        """Create the empty instance a row is loaded into; override for single-table inheritance."""
        cls = type(self)
        return cls.__new__(cls)

    def populate_record(self, attributes: Optional[Mapping[str, Any]], call_after_find: bool = True):
        """Create a persisted record from a row and capture its primary key."""
        if attributes is None:
            return None
        record = self.instantiate(attributes)
        record._bind(self.connection_identity, self._registry, self.get_metadata(), "update")
        record._state = RecordState.PERSISTED
        record.attribute_store.populate(dict(attributes))
        record._old_pk = record.primary_key
        if call_after_find:
            record.after_find()
        return record

    def populate_records(self, rows, call_after_find: bool = True, index: Optional[str] = None):
        """Create records from rows; a dict keyed by the ``index`` attribute when given."""
        records = [self.populate_record(row, call_after_find) for row in rows]
        return self._index_records([record for record in records if record is not None], index)
