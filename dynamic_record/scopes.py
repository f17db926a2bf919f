"""
Named scopes.

A scope is either a predefined criteria fragment (:class:`CriteriaScope`) or a
callable modifier that receives the accumulating criteria plus call arguments
and mutates it (:class:`ModifierScope`). Entity classes declare scopes in
``scopes()``; lookup is an explicit table, not method interception.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Callable, Dict, Iterator, Optional, Tuple, Union

from .criteria import QueryCriteria
from .exceptions import ScopeNotFoundError


class CriteriaScope:
    """A scope backed by a fixed criteria fragment."""

    def __init__(self, name: str, fragment: Any):
        self.name = name
        self.fragment = QueryCriteria.coerce(fragment)

    def apply(self, criteria: QueryCriteria, args: Tuple[Any, ...] = ()) -> None:
        if args:
            raise TypeError(f'Scope "{self.name}" does not take arguments')
        criteria.merge_with(self.fragment.copy())


class ModifierScope:
    """A scope backed by a callable ``fn(criteria, *args)``."""

    def __init__(self, name: str, fn: Callable[..., Any]):
        self.name = name
        self.fn = fn

    def apply(self, criteria: QueryCriteria, args: Tuple[Any, ...] = ()) -> None:
        self.fn(criteria, *args)


Scope = Union[CriteriaScope, ModifierScope]


class ScopeRegistry:
    """Scope table of one entity class."""

    def __init__(self, entity_class: str, declarations: Optional[Mapping[str, Any]] = None):
        self.entity_class = entity_class
        self._scopes: Dict[str, Scope] = {}
        for name, declaration in (declarations or {}).items():
            self.register(name, declaration)

    def register(self, name: str, declaration: Any) -> Scope:
        if isinstance(declaration, (CriteriaScope, ModifierScope)):
            scope = declaration
        elif callable(declaration) and not isinstance(declaration, QueryCriteria):
            scope = ModifierScope(name, declaration)
        else:
            scope = CriteriaScope(name, declaration)
        self._scopes[name] = scope
        return scope

    def get(self, name: str) -> Scope:
        try:
            return self._scopes[name]
        except KeyError:
            raise ScopeNotFoundError(self.entity_class, name) from None

    def apply(self, criteria: QueryCriteria, name: str, args: Tuple[Any, ...] = ()) -> None:
        self.get(name).apply(criteria, args)

    def __contains__(self, name: object) -> bool:
        return name in self._scopes

    def names(self):
        return list(self._scopes)


def _as_args(value: Any) -> Tuple[Any, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return (value,)


def iter_scope_refs(scopes: Any) -> Iterator[Tuple[str, Tuple[Any, ...]]]:
    """
    Yield ``(name, args)`` for every scope reference.

    References may be bare names, ``(name, args)`` pairs or ``{name: args}``
    mappings, alone or in a list.
    """
    if not scopes:
        return
    if isinstance(scopes, (str, Mapping)):
        scopes = [scopes]
    for entry in scopes:
        if isinstance(entry, str):
            yield entry, ()
        elif isinstance(entry, Mapping):
            for name, args in entry.items():
                yield name, _as_args(args)
        else:
            name, args = entry
            yield name, _as_args(args)


def apply_scopes(
    criteria: Any,
    registry: ScopeRegistry,
    accumulator: Optional[QueryCriteria] = None,
) -> QueryCriteria:
    """
    Fold scopes and pending criteria under the caller's criteria.

    Scopes named in ``criteria.scopes`` are applied in order to the accumulator
    (the owner's pending criteria, default scope first), then the caller's
    criteria is merged on top so its non-empty values win.

    Returns:
        The criteria to execute. The accumulator itself is returned when one
        was used, so callers must drop their reference to it afterwards.
    """
    criteria = QueryCriteria.coerce(criteria)
    refs = list(iter_scope_refs(criteria.scopes))
    if refs and accumulator is None:
        accumulator = QueryCriteria()
    if accumulator is not None and not accumulator.alias:
        # Modifier scopes qualify columns with the alias of the query they join
        accumulator.alias = criteria.alias
    for name, args in refs:
        registry.apply(accumulator, name, args)

    if accumulator is None:
        return criteria

    criteria.scopes = []
    accumulator.merge_with(criteria)
    accumulator.scopes = []
    return accumulator
