"""
Metadata Registry.

Caches one :class:`EntityMetadata` and one model prototype per
(entity class, connection identity). The cache is read-mostly: lookups take a
shared lock, while builds and refreshes take an exclusive lock so no reader
ever observes half-built metadata. A failed build is never cached.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, Iterator, Mapping, Optional, Tuple, Type

import structlog
from pydantic import ValidationError

from .db.schema import ColumnSchema, TableSchema
from .exceptions import InvalidRelationError
from .relations import RelationDeclaration, RelationKind
from .router import ConnectionRouter
from .scopes import ScopeRegistry

if TYPE_CHECKING:
    from .record import DynamicRecord

logger = structlog.get_logger()

_entity_classes: Dict[str, type] = {}


def register_entity_class(entity_class: type) -> None:
    """Make an entity class resolvable by name in relation declarations."""
    _entity_classes[getattr(entity_class, "__entity_name__", None) or entity_class.__name__] = entity_class


def resolve_entity_class(target: Any) -> type:
    """Return the entity class a relation target refers to."""
    if isinstance(target, type):
        return target
    try:
        return _entity_classes[target]
    except KeyError:
        raise LookupError(f"Entity class '{target}' is not defined") from None


class ReadWriteLock:
    """Many concurrent readers or one writer; waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read_lock(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write_lock(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass(frozen=True)
class EntityMetadata:
    """Immutable metadata of an entity class against one connection."""

    entity_class: type
    identity: str
    table_schema: TableSchema
    relations: Mapping[str, RelationDeclaration]
    attribute_defaults: Mapping[str, Any]
    scopes: ScopeRegistry

    @property
    def columns(self) -> Mapping[str, ColumnSchema]:
        return self.table_schema.columns

    @property
    def primary_key(self) -> Tuple[str, ...]:
        return self.table_schema.primary_key


def _build_relation(entity_class: type, name: str, declaration: Any) -> RelationDeclaration:
    try:
        if isinstance(declaration, RelationDeclaration):
            relation = declaration.model_copy(update={"name": name})
        else:
            relation = RelationDeclaration(name=name, **dict(declaration))
    except (ValidationError, ValueError, TypeError) as exc:
        raise InvalidRelationError(entity_class.__name__, name, str(exc)) from exc
    if relation.kind != RelationKind.MANY_MANY:
        # Composite keys must be consistently shaped
        relation.foreign_key_columns()
    return relation


def build_metadata(entity_class: Type["DynamicRecord"], identity: str, router: ConnectionRouter) -> EntityMetadata:
    """Build metadata from the table schema and the class declarations."""
    handle = router.resolve(entity_class, identity)
    table_schema = handle.schema_provider.get_table_schema(handle, entity_class.table_name())

    primary_key = entity_class.table_primary_key()
    if primary_key:
        if isinstance(primary_key, str):
            primary_key = (primary_key,)
        table_schema = table_schema.with_primary_key(tuple(primary_key))

    relations = {
        name: _build_relation(entity_class, name, declaration)
        for name, declaration in (entity_class.relations() or {}).items()
    }
    for name, relation in relations.items():
        try:
            resolve_entity_class(relation.target)
        except LookupError:
            raise InvalidRelationError(
                entity_class.__name__, name, f"the target entity '{relation.target}' is not defined"
            ) from None
        if relation.through is not None and relation.through not in relations:
            raise InvalidRelationError(
                entity_class.__name__, name, f"the bridge relation '{relation.through}' is not declared"
            )

    defaults = {
        name: column.default for name, column in table_schema.columns.items() if column.default is not None
    }
    return EntityMetadata(
        entity_class=entity_class,
        identity=identity,
        table_schema=table_schema,
        relations=MappingProxyType(relations),
        attribute_defaults=MappingProxyType(defaults),
        scopes=ScopeRegistry(entity_class.__name__, entity_class.scopes()),
    )


class MetadataRegistry:
    """Per (entity class, connection identity) cache of metadata and model prototypes."""

    def __init__(self, router: Optional[ConnectionRouter] = None):
        self.router = router or ConnectionRouter()
        self._metadata: Dict[Tuple[type, str], EntityMetadata] = {}
        self._models: Dict[Tuple[type, str], "DynamicRecord"] = {}
        self._lock = ReadWriteLock()

    def _key(self, entity_class: type, identity: Optional[str]) -> Tuple[type, str]:
        return entity_class, self.router.resolve_identity(entity_class, identity)

    def get_metadata(self, entity_class: Type["DynamicRecord"], identity: Optional[str] = None) -> EntityMetadata:
        """Return the cached metadata, building it on first use."""
        key = self._key(entity_class, identity)
        with self._lock.read_lock():
            metadata = self._metadata.get(key)
        if metadata is not None:
            return metadata

        with self._lock.write_lock():
            metadata = self._metadata.get(key)
            if metadata is None:
                metadata = build_metadata(entity_class, key[1], self.router)
                self._metadata[key] = metadata
                logger.info("metadata_built", entity=entity_class.__name__, identity=key[1])
        return metadata

    def refresh(self, entity_class: Type["DynamicRecord"], identity: Optional[str] = None) -> EntityMetadata:
        """Discard and rebuild the metadata; the live model prototype picks it up."""
        key = self._key(entity_class, identity)
        with self._lock.write_lock():
            self._metadata.pop(key, None)
            metadata = build_metadata(entity_class, key[1], self.router)
            self._metadata[key] = metadata
            prototype = self._models.get(key)
            if prototype is not None:
                prototype._metadata = metadata
        logger.info("metadata_refreshed", entity=entity_class.__name__, identity=key[1])
        return metadata

    def model(self, entity_class: Type["DynamicRecord"], identity: Optional[str] = None) -> "DynamicRecord":
        """Return the model prototype of an entity class for a connection identity."""
        key = self._key(entity_class, identity)
        with self._lock.read_lock():
            prototype = self._models.get(key)
        if prototype is not None:
            return prototype

        metadata = self.get_metadata(entity_class, key[1])
        with self._lock.write_lock():
            prototype = self._models.get(key)
            if prototype is None:
                prototype = entity_class._create_prototype(key[1], self, metadata)
                self._models[key] = prototype
        return prototype

    def is_cached(self, entity_class: type, identity: Optional[str] = None) -> bool:
        key = self._key(entity_class, identity)
        with self._lock.read_lock():
            return key in self._metadata

    def clear(self) -> None:
        """Drop every cached metadata object and prototype."""
        with self._lock.write_lock():
            self._metadata.clear()
            self._models.clear()


_default_registry: Optional[MetadataRegistry] = None
_default_registry_lock = threading.Lock()


def get_registry() -> MetadataRegistry:
    """
    Return the process-wide default registry, creating it on first use.

    Applications that route several databases may instead construct their own
    :class:`MetadataRegistry` and pass it to ``DynamicRecord.model``.
    """
    global _default_registry
    if _default_registry is None:
        with _default_registry_lock:
            if _default_registry is None:
                _default_registry = MetadataRegistry()
    return _default_registry


def set_registry(registry: Optional[MetadataRegistry]) -> None:
    """Replace the process-wide default registry (None resets it)."""
    global _default_registry
    with _default_registry_lock:
        _default_registry = registry
