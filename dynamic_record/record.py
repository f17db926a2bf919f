"""
DynamicRecord: the entity base class.

An entity class maps one table. Instances play one of two roles:

- the *model prototype*, one per (class, connection identity), obtained with
  ``Post.model("tenant_a")`` and used for finding;
- *data instances*, created with ``Post(identity="tenant_a")`` or returned by a
  finder.

Example:
    class Post(DynamicRecord):
        __tablename__ = "post"

        @classmethod
        def relations(cls):
            return {"author": belongs_to("User", "author_id")}

    post = Post.model("tenant_a").with_("author").find_by_pk(1)
    post.author.username
"""

from __future__ import annotations

import inspect
from typing import Any, ClassVar, Dict, FrozenSet, Iterable, List, Mapping, Optional, Type, Union

import structlog
from pydantic import BaseModel

from .attributes import AttributeStore
from .config import Settings
from .criteria import QueryCriteria
from .exceptions import RelationNotFoundError
from .finder import FinderMixin
from .lifecycle import LifecycleMixin, RecordState
from .metadata import EntityMetadata, MetadataRegistry, get_registry, register_entity_class
from .relations import RelationKind
from .resolver import RelationResolver, empty_value
from .router import ConnectionHandle
from .validation import PydanticValidator, Validator

logger = structlog.get_logger()


class DynamicRecord(FinderMixin, LifecycleMixin):
    """Base class of entities routed to a database by connection identity."""

    __tablename__: ClassVar[Optional[str]] = None
    __connection_identity__: ClassVar[Optional[str]] = None
    validation_model: ClassVar[Optional[Type[BaseModel]]] = None

    _declared_fields: ClassVar[FrozenSet[str]] = frozenset()

    def __init_subclass__(cls, **kwargs: Any):
        super().__init_subclass__(**kwargs)
        names = set()
        for klass in reversed(cls.__mro__):
            for name, annotation in inspect.get_annotations(klass).items():
                if name.startswith("_") or "ClassVar" in str(annotation):
                    continue
                names.add(name)
        cls._declared_fields = frozenset(names)
        register_entity_class(cls)

    def __init__(
        self,
        identity: Optional[str] = None,
        *,
        registry: Optional[MetadataRegistry] = None,
        scenario: str = "insert",
        **attributes: Any,
    ):
        self._bind(identity, registry, None, scenario)
        cls = type(self)
        for name, value in self.get_metadata().attribute_defaults.items():
            if name in cls._declared_fields and hasattr(cls, name):
                continue
            self._store.set_attribute(name, value)
        if attributes:
            self._store.set_attributes(attributes)

    def _bind(
        self,
        identity: Optional[str],
        registry: Optional[MetadataRegistry],
        metadata: Optional[EntityMetadata],
        scenario: str,
    ) -> None:
        self._registry = registry
        self._identity = self.registry.router.resolve_identity(type(self), identity)
        self._metadata = metadata
        self._store = AttributeStore(self)
        self._criteria: Optional[QueryCriteria] = None
        self._use_default_scope = True
        self._state = RecordState.NEW
        self._old_pk = None
        self._errors: Dict[str, List[str]] = {}
        self._handlers: Dict[str, list] = {}
        self._scenario = scenario
        self._is_prototype = False
        self._read_only = False

    # Class-level declarations

    @classmethod
    def declared_fields(cls) -> FrozenSet[str]:
        return cls._declared_fields

    @classmethod
    def table_name(cls) -> str:
        return cls.__tablename__ or cls.__name__.lower()

    @classmethod
    def table_primary_key(cls) -> Union[None, str, Iterable[str]]:
        """Override when the table has no primary key constraint, or a different one should be used."""
        return None

    @classmethod
    def relations(cls) -> Mapping[str, Any]:
        return {}

    @classmethod
    def scopes(cls) -> Mapping[str, Any]:
        return {}

    @classmethod
    def default_scope(cls) -> Any:
        """
        Criteria applied to every SELECT of this class.

        Either a criteria mapping, or a callable ``fn(criteria)`` that adds
        conditions qualified with ``criteria.alias`` so the scope also works
        when the class is joined under a relation alias.
        """
        return {}

    @classmethod
    def validators(cls) -> List[Validator]:
        return [PydanticValidator(cls.validation_model)] if cls.validation_model is not None else []

    # Prototypes and routing

    @classmethod
    def model(cls, identity: Optional[str] = None, registry: Optional[MetadataRegistry] = None) -> "DynamicRecord":
        """Return the cached model prototype of this class for a connection identity."""
        return (registry or get_registry()).model(cls, identity)

    @classmethod
    def _create_prototype(cls, identity: str, registry: MetadataRegistry, metadata: EntityMetadata) -> "DynamicRecord":
        prototype = cls.__new__(cls)
        prototype._bind(identity, registry, metadata, "")
        prototype._is_prototype = True
        prototype._read_only = True
        return prototype

    def _spawn_finder(self) -> "DynamicRecord":
        """A private copy of a prototype that can hold pending criteria."""
        finder = type(self).__new__(type(self))
        finder._bind(self._identity, self._registry, self._metadata, "")
        finder._handlers = {event: list(handlers) for event, handlers in self._handlers.items()}
        finder._read_only = True
        return finder

    @property
    def registry(self) -> MetadataRegistry:
        return self._registry or get_registry()

    @property
    def settings(self) -> Settings:
        return self.registry.router.settings

    @property
    def connection_identity(self) -> str:
        return self._identity

    @property
    def is_prototype(self) -> bool:
        return self._is_prototype

    @property
    def is_read_only(self) -> bool:
        """Model prototypes and the finders chained from them hold no row and are never written."""
        return self._read_only

    def connection(self) -> ConnectionHandle:
        return self.registry.router.resolve(type(self), self._identity)

    def get_metadata(self) -> EntityMetadata:
        if self._metadata is None:
            self._metadata = self.registry.get_metadata(type(self), self._identity)
        return self._metadata

    def refresh_metadata(self) -> EntityMetadata:
        """Rebuild the metadata of this class and identity, e.g. after a schema change."""
        metadata = self.registry.refresh(type(self), self._identity)
        self._metadata = metadata
        return metadata

    @property
    def scenario(self) -> str:
        return self._scenario

    @scenario.setter
    def scenario(self, value: str) -> None:
        self._scenario = value

    # Attribute access

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        if name in type(self).declared_fields():
            return None
        return self._store.get(name)

    def __setattr__(self, name: str, value: Any) -> None:
        cls = type(self)
        if name in cls._declared_fields and self._read_only:
            self._require_data_instance("modified")
        if name.startswith("_") or name in cls._declared_fields or hasattr(cls, name):
            object.__setattr__(self, name, value)
        else:
            self._store.set(name, value)

    def __delattr__(self, name: str) -> None:
        if name.startswith("_"):
            object.__delattr__(self, name)
        else:
            self._store.unset(name)

    def __getitem__(self, name: str) -> Any:
        return self._store.get(name)

    def __setitem__(self, name: str, value: Any) -> None:
        self._store.set(name, value)

    def __contains__(self, name: str) -> bool:
        return self._store.isset(name)

    @property
    def attribute_store(self) -> AttributeStore:
        return self._store

    def get(self, name: str) -> Any:
        return self._store.get(name)

    def set(self, name: str, value: Any) -> None:
        self._store.set(name, value)

    def isset(self, name: str) -> bool:
        return self._store.isset(name)

    def unset(self, name: str) -> None:
        self._store.unset(name)

    def has_attribute(self, name: str) -> bool:
        return self._store.has_attribute(name)

    def get_attribute(self, name: str) -> Any:
        return self._store.get_attribute(name)

    def set_attribute(self, name: str, value: Any) -> bool:
        return self._store.set_attribute(name, value)

    def get_attributes(self, names: Union[bool, None, Iterable[str]] = True) -> Dict[str, Any]:
        return self._store.get_attributes(names)

    def set_attributes(self, values: Mapping[str, Any]) -> None:
        self._store.set_attributes(dict(values))

    # Relations

    def has_related(self, name: str) -> bool:
        """Whether the relation has been loaded (possibly as empty)."""
        return self._store.has_related(name)

    def add_related_record(self, name: str, record: Any, index: Any) -> None:
        self._store.add_related_record(name, record, index)

    def get_related(self, name: str, refresh: bool = False, params: Any = None) -> Any:
        """
        Return a related object, loading it on first access.

        Args:
            name: Relation name
            refresh: Reload even when the relation is already loaded
            params: Extra relation options for this call only; the result is
                returned without replacing the cached value

        Returns:
            A record or None for single relations, a list (or dict when
            ``index`` is set) for collections, the aggregate for STAT.
        """
        store = self._store
        if not refresh and params is None and store.has_related(name):
            return store.peek_related(name)

        relation = self.get_metadata().relations.get(name)
        if relation is None:
            raise RelationNotFoundError(type(self).__name__, name)
        self._require_data_instance("used to load relations")

        if self.is_new_record and not refresh and relation.kind in (RelationKind.HAS_ONE, RelationKind.HAS_MANY):
            return empty_value(relation)

        options: Dict[str, Any] = {}
        if params is not None:
            options = params.to_dict() if isinstance(params, QueryCriteria) else dict(params)
            had_value, previous = store.has_related(name), store.peek_related(name)

        RelationResolver(self, {name: options}, lazy=True).populate([self])
        result = store.peek_related(name)

        if params is not None:
            if had_value:
                store.set_related(name, previous)
            else:
                store.discard_related(name)
        return result

    # Validation

    def validate(self, attributes: Optional[Iterable[str]] = None, clear_errors: bool = True) -> bool:
        """Run every validator; errors are available through ``get_errors``."""
        if clear_errors:
            self.clear_errors()
        names = list(attributes) if attributes is not None else None
        for validator in self.validators():
            validator.validate(self, names)
        return not self.has_errors()

    def add_error(self, attribute: str, message: str) -> None:
        self._errors.setdefault(attribute, []).append(message)

    def has_errors(self, attribute: Optional[str] = None) -> bool:
        if attribute is None:
            return bool(self._errors)
        return bool(self._errors.get(attribute))

    def get_errors(self, attribute: Optional[str] = None) -> Union[Dict[str, List[str]], List[str]]:
        if attribute is None:
            return {name: list(messages) for name, messages in self._errors.items()}
        return list(self._errors.get(attribute, []))

    def clear_errors(self, attribute: Optional[str] = None) -> None:
        if attribute is None:
            self._errors = {}
        else:
            self._errors.pop(attribute, None)

    # Pickling

    def __getstate__(self) -> Dict[str, Any]:
        state = dict(self.__dict__)
        state["_metadata"] = None
        state["_registry"] = None
        state["_handlers"] = {}
        return state

    def __setstate__(self, state: Dict[str, Any]) -> None:
        self.__dict__.update(state)
        self._store._owner = self

    def __repr__(self) -> str:
        if self._is_prototype:
            return f"<{type(self).__name__} model identity={self._identity!r}>"
        return f"<{type(self).__name__} {self._state.value} pk={self.primary_key!r}>"
