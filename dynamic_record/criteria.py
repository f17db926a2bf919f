"""
Criteria Composer: composable query criteria and their merge rules.

A :class:`QueryCriteria` keeps its condition as a list of conjuncts that are
AND-ed together when rendered, so merging criteria is associative on
conditions: ``merge(merge(a, b), c)`` and ``merge(a, merge(b, c))`` render the
same WHERE clause.

Merge rules (``incoming`` merged on top of ``base``):

- conditions are AND-combined, an empty side is absorbed
- params are unioned, incoming wins on name collision
- select, order, group, having, alias and index: incoming wins when set
- limit and offset: incoming wins when not ``-1``
- join clauses and scope lists are concatenated
- distinct and together are OR-combined
- eager-load specs are unioned; a relation named on both sides has its option
  bag merged recursively with these same rules
"""

from __future__ import annotations

import copy
import itertools
import re
from collections.abc import Mapping
from typing import Any, Dict, Iterable, List, Optional, Union

PARAM_PREFIX = "dcp"

_param_counter = itertools.count()

UNSET = -1

_COMPARE_PATTERN = re.compile(r"^(?:\s*(<>|<=|>=|<|>|=))?(.*)$", re.DOTALL)


def next_param_name() -> str:
    """Return a process-unique bind parameter name (without the leading colon)."""
    return f"{PARAM_PREFIX}{next(_param_counter)}"


def _normalize_params(params: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    return {str(name).lstrip(":"): value for name, value in (params or {}).items()}


def _is_set(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, tuple, dict)) and not value:
        return False
    return True


def _and(left: str, right: str) -> str:
    if not left:
        return right
    if not right:
        return left
    return f"({left}) AND ({right})"


def _scope_list(scopes: Any) -> List[Any]:
    if not scopes:
        return []
    if isinstance(scopes, (str, Mapping)):
        return [scopes]
    return list(scopes)


def _coerce_options(options: Any) -> Dict[str, Any]:
    if options is None:
        return {}
    if isinstance(options, QueryCriteria):
        return options.to_dict()
    return dict(options)


def merge_options(base: Mapping[str, Any], incoming: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge two relation option bags with the criteria merge rules."""
    merged = dict(base)
    for key, value in incoming.items():
        if key not in merged:
            merged[key] = normalize_with(value) if key == "with" else value
            continue
        existing = merged[key]
        if key == "condition":
            merged[key] = _and(existing, value)
        elif key == "params":
            merged[key] = {**_normalize_params(existing), **_normalize_params(value)}
        elif key == "with":
            merged[key] = merge_with_specs(normalize_with(existing), normalize_with(value))
        elif key == "scopes":
            merged[key] = _scope_list(existing) + _scope_list(value)
        elif key in ("together", "distinct"):
            merged[key] = value if existing is None else (existing or value)
        elif key == "join":
            merged[key] = " ".join(part for part in (existing, value) if part)
        elif key in ("limit", "offset"):
            merged[key] = value if value is not None and value != UNSET else existing
        elif _is_set(value):
            merged[key] = value
    return merged


def merge_with_specs(
    base: Mapping[str, Dict[str, Any]], incoming: Mapping[str, Dict[str, Any]]
) -> Dict[str, Dict[str, Any]]:
    """Union two normalized eager-load specs."""
    merged = {name: dict(options) for name, options in base.items()}
    for name, options in incoming.items():
        if name in merged:
            merged[name] = merge_options(merged[name], options)
        else:
            merged[name] = dict(options)
    return merged


def _insert_path(tree: Dict[str, Dict[str, Any]], path: str, options: Dict[str, Any]) -> None:
    head, _, rest = path.strip().partition(".")
    name, *scopes = [part.strip() for part in head.split(":")]
    if not name:
        raise ValueError(f"Invalid eager-load path '{path}'")

    node: Dict[str, Any] = {}
    if scopes:
        node["scopes"] = scopes
    if rest:
        child: Dict[str, Dict[str, Any]] = {}
        _insert_path(child, rest, options)
        node["with"] = child
    else:
        options = dict(options)
        if "with" in options:
            options["with"] = normalize_with(options["with"])
        node = merge_options(node, options)

    tree[name] = merge_options(tree[name], node) if name in tree else node


def normalize_with(spec: Any) -> Dict[str, Dict[str, Any]]:
    """
    Normalize an eager-load spec into a nested mapping.

    Accepts ``"author"``, ``"author.profile"``, ``"comments:approved"``, lists of
    those, and mappings of relation name (or path) to an option bag.

    Returns:
        ``{relation_name: options}`` where nested relations live under the
        ``"with"`` key of their parent's options.
    """
    tree: Dict[str, Dict[str, Any]] = {}
    if not spec:
        return tree
    if isinstance(spec, str):
        spec = [spec]
    if isinstance(spec, Mapping):
        items = list(spec.items())
    else:
        items = []
        for entry in spec:
            if isinstance(entry, str):
                items.append((entry, {}))
            elif isinstance(entry, Mapping):
                items.extend(entry.items())
            else:
                raise TypeError(f"Unsupported eager-load entry: {entry!r}")
    for path, options in items:
        _insert_path(tree, path, _coerce_options(options))
    return tree


class QueryCriteria:
    """A mutable set of query constraints."""

    def __init__(
        self,
        condition: Union[str, Iterable[str]] = "",
        params: Optional[Mapping[str, Any]] = None,
        select: Union[str, List[str]] = "*",
        distinct: bool = False,
        order: str = "",
        group: str = "",
        having: str = "",
        join: str = "",
        limit: int = UNSET,
        offset: int = UNSET,
        with_: Any = None,
        alias: str = "",
        scopes: Any = None,
        together: Optional[bool] = None,
        index: Optional[str] = None,
        **options: Any,
    ):
        if "with" in options:
            with_ = options.pop("with")
        if options:
            raise TypeError(f"Unknown criteria options: {', '.join(sorted(options))}")

        self._conditions: List[str] = []
        self.condition = condition
        self.params: Dict[str, Any] = _normalize_params(params)
        self.select = select
        self.distinct = distinct
        self.order = order
        self.group = group
        self.having = having
        self.join = join
        self.limit = UNSET if limit is None else limit
        self.offset = UNSET if offset is None else offset
        self.with_: Dict[str, Dict[str, Any]] = normalize_with(with_)
        self.alias = alias
        self.scopes: List[Any] = _scope_list(scopes)
        self.together = together
        self.index = index

    @classmethod
    def coerce(cls, value: Any) -> "QueryCriteria":
        """Build criteria from None, a mapping or existing criteria (copied)."""
        if value is None:
            return cls()
        if isinstance(value, QueryCriteria):
            return value.copy()
        return cls(**dict(value))

    @property
    def condition(self) -> str:
        if len(self._conditions) == 1:
            return self._conditions[0]
        return " AND ".join(f"({part})" for part in self._conditions)

    @condition.setter
    def condition(self, value: Union[str, Iterable[str]]) -> None:
        if isinstance(value, str):
            self._conditions = [value] if value else []
        else:
            self._conditions = [part for part in value if part]

    @property
    def conditions(self) -> List[str]:
        """The AND-ed conjuncts of the condition."""
        return list(self._conditions)

    def add_condition(self, condition: Union[str, Iterable[str]], operator: str = "AND") -> "QueryCriteria":
        """Append a condition; a list of conditions is joined with the operator first."""
        if not isinstance(condition, str):
            parts = [part for part in condition if part]
            if not parts:
                return self
            condition = f" {operator} ".join(f"({part})" for part in parts) if len(parts) > 1 else parts[0]
        if not condition:
            return self
        if operator.upper() == "AND" or not self._conditions:
            self._conditions.append(condition)
        else:
            self._conditions = [f"({self.condition}) {operator} ({condition})"]
        return self

    def add_search_condition(
        self,
        column: str,
        keyword: str,
        escape: bool = True,
        operator: str = "AND",
        like: str = "LIKE",
    ) -> "QueryCriteria":
        """Match a column against a keyword with LIKE."""
        if keyword == "":
            return self
        if escape:
            keyword = "%" + keyword.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
        name = next_param_name()
        self.params[name] = keyword
        return self.add_condition(f"{column} {like} :{name}", operator)

    def add_in_condition(self, column: str, values: Iterable[Any], operator: str = "AND") -> "QueryCriteria":
        """Match a column against a list of values."""
        values = list(values)
        if not values:
            return self.add_condition("0=1", operator)
        if len(values) == 1:
            value = values[0]
            if value is None:
                return self.add_condition(f"{column} IS NULL", operator)
            name = next_param_name()
            self.params[name] = value
            return self.add_condition(f"{column}=:{name}", operator)
        placeholders = []
        for value in values:
            name = next_param_name()
            self.params[name] = value
            placeholders.append(f":{name}")
        return self.add_condition(f"{column} IN ({', '.join(placeholders)})", operator)

    def add_not_in_condition(self, column: str, values: Iterable[Any], operator: str = "AND") -> "QueryCriteria":
        """Exclude a list of values for a column."""
        values = list(values)
        if not values:
            return self
        if len(values) == 1:
            name = next_param_name()
            self.params[name] = values[0]
            return self.add_condition(f"{column}<>:{name}", operator)
        placeholders = []
        for value in values:
            name = next_param_name()
            self.params[name] = value
            placeholders.append(f":{name}")
        return self.add_condition(f"{column} NOT IN ({', '.join(placeholders)})", operator)

    def add_column_condition(
        self,
        columns: Mapping[str, Any],
        column_operator: str = "AND",
        operator: str = "AND",
    ) -> "QueryCriteria":
        """Match several columns against values, e.g. ``{"status": 1, "type": "a"}``."""
        parts = []
        for column, value in columns.items():
            if value is None:
                parts.append(f"{column} IS NULL")
                continue
            name = next_param_name()
            self.params[name] = value
            parts.append(f"{column}=:{name}")
        if not parts:
            return self
        return self.add_condition(f" {column_operator} ".join(parts), operator)

    def add_between_condition(self, column: str, start: Any, end: Any, operator: str = "AND") -> "QueryCriteria":
        """Match a column between two values, inclusive."""
        if start is None or end is None:
            return self
        start_name, end_name = next_param_name(), next_param_name()
        self.params[start_name] = start
        self.params[end_name] = end
        return self.add_condition(f"{column} BETWEEN :{start_name} AND :{end_name}", operator)

    def compare(
        self,
        column: str,
        value: Any,
        partial_match: bool = False,
        operator: str = "AND",
        escape: bool = True,
    ) -> "QueryCriteria":
        """
        Add a comparison condition parsed from user input.

        A string value may start with ``<``, ``<=``, ``>``, ``>=``, ``<>`` or ``=``.
        Lists become IN conditions; empty values are ignored.
        """
        if isinstance(value, (list, tuple, set)):
            if not value:
                return self
            return self.add_in_condition(column, value, operator)
        value = "" if value is None else str(value)
        match = _COMPARE_PATTERN.match(value)
        op, value = match.group(1) or "", match.group(2)
        if value == "":
            return self
        if partial_match:
            if op == "":
                return self.add_search_condition(column, value, escape, operator)
            if op == "<>":
                return self.add_search_condition(column, value, escape, operator, "NOT LIKE")
        elif op == "":
            op = "="
        name = next_param_name()
        self.params[name] = value
        return self.add_condition(f"{column}{op}:{name}", operator)

    def merge_with(self, criteria: Any, operator: str = "AND") -> "QueryCriteria":
        """Merge another criteria (or mapping) into this one, in place."""
        if criteria is self:
            return self
        incoming = criteria if isinstance(criteria, QueryCriteria) else QueryCriteria.coerce(criteria)

        if operator.upper() == "AND" or not self._conditions or not incoming._conditions:
            self._conditions.extend(incoming._conditions)
        else:
            self._conditions = [f"({self.condition}) {operator} ({incoming.condition})"]

        self.params.update(incoming.params)
        if _is_set(incoming.select) and incoming.select != "*":
            self.select = incoming.select
        self.distinct = self.distinct or incoming.distinct
        for name in ("order", "group", "having", "alias", "index"):
            value = getattr(incoming, name)
            if _is_set(value):
                setattr(self, name, value)
        if incoming.join:
            self.join = f"{self.join} {incoming.join}" if self.join else incoming.join
        if incoming.limit != UNSET:
            self.limit = incoming.limit
        if incoming.offset != UNSET:
            self.offset = incoming.offset
        if incoming.with_:
            self.with_ = merge_with_specs(self.with_, incoming.with_)
        self.scopes = self.scopes + incoming.scopes
        if incoming.together is not None:
            self.together = bool(self.together) or incoming.together
        return self

    def copy(self) -> "QueryCriteria":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        """Return the criteria as an option bag, omitting unset values."""
        values = {
            "condition": self.condition,
            "params": dict(self.params),
            "select": self.select if self.select != "*" else "",
            "distinct": self.distinct,
            "order": self.order,
            "group": self.group,
            "having": self.having,
            "join": self.join,
            "limit": self.limit if self.limit != UNSET else None,
            "offset": self.offset if self.offset != UNSET else None,
            "with": copy.deepcopy(self.with_),
            "alias": self.alias,
            "scopes": list(self.scopes),
            "together": self.together,
            "index": self.index,
        }
        if not self.distinct:
            del values["distinct"]
        return {key: value for key, value in values.items() if _is_set(value)}

    def __repr__(self) -> str:
        return f"QueryCriteria({self.to_dict()!r})"


def merge(base: Any, incoming: Any) -> QueryCriteria:
    """Return a new criteria with ``incoming`` merged on top of ``base``."""
    merged = QueryCriteria.coerce(base)
    merged.merge_with(incoming)
    return merged
