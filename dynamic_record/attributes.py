"""
Attribute Store: per-instance values of one entity.

Lookup order for ``get``/``set`` is fixed: declared attributes (class
annotations on the entity, stored as ordinary instance attributes), then
dynamic column values, then related objects. Anything else is an
:class:`UnknownAttributeError`.

The related-object map distinguishes "not loaded" (name absent) from "loaded
as empty" (name present with ``None``, ``[]`` or ``{}``).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Union

from .exceptions import LifecycleError, UnknownAttributeError

if TYPE_CHECKING:
    from .record import DynamicRecord


class _NotLoaded:
    def __repr__(self) -> str:
        return "NOT_LOADED"

    def __bool__(self) -> bool:
        return False


NOT_LOADED = _NotLoaded()


class AttributeStore:
    """Holds declared attributes, column attributes and related objects of a record."""

    def __init__(self, owner: "DynamicRecord"):
        self._owner = owner
        self._attributes: Dict[str, Any] = {}
        self._related: Dict[str, Any] = {}

    @property
    def _declared(self) -> frozenset:
        return type(self._owner).declared_fields()

    def _metadata(self):
        return self._owner.get_metadata()

    def _require_writable(self) -> None:
        if self._owner.is_read_only:
            raise LifecycleError(f"The {type(self._owner).__name__} model prototype cannot be modified; create a record instead.")

    def get(self, name: str) -> Any:
        if name in self._declared:
            return getattr(self._owner, name, None)
        if name in self._attributes:
            return self._attributes[name]
        metadata = self._metadata()
        if name in metadata.columns:
            return None
        if name in self._related:
            return self._related[name]
        if name in metadata.relations:
            return self._owner.get_related(name)
        raise UnknownAttributeError(type(self._owner).__name__, name)

    def set(self, name: str, value: Any) -> None:
        self._require_writable()
        if self.set_attribute(name, value):
            return
        if name in self._metadata().relations:
            self._related[name] = value
            return
        raise UnknownAttributeError(type(self._owner).__name__, name)

    def isset(self, name: str) -> bool:
        """Whether the name holds a non-null value, lazily loading relations."""
        if name in self._declared:
            return getattr(self._owner, name, None) is not None
        if self._attributes.get(name) is not None:
            return True
        metadata = self._metadata()
        if name in metadata.columns:
            return False
        if self._related.get(name) is not None:
            return True
        if name in metadata.relations:
            return self._owner.get_related(name) is not None
        return False

    def unset(self, name: str) -> None:
        self._require_writable()
        metadata = self._metadata()
        if name in metadata.columns:
            if name in self._declared:
                setattr(self._owner, name, None)
            self._attributes.pop(name, None)
        elif name in metadata.relations:
            self._related.pop(name, None)
        else:
            raise UnknownAttributeError(type(self._owner).__name__, name)

    # Column attributes

    def has_attribute(self, name: str) -> bool:
        return name in self._metadata().columns

    def get_attribute(self, name: str) -> Any:
        if name in self._declared:
            return getattr(self._owner, name, None)
        return self._attributes.get(name)

    def set_attribute(self, name: str, value: Any) -> bool:
        """Set a declared or column attribute; returns False if the name is neither."""
        self._require_writable()
        if name in self._declared:
            setattr(self._owner, name, value)
        elif name in self._metadata().columns:
            self._attributes[name] = value
        else:
            return False
        return True

    def get_attributes(self, names: Union[bool, None, Iterable[str]] = True) -> Dict[str, Any]:
        """
        Return column attribute values.

        Args:
            names: True for every column (None for values never loaded), None for
                loaded values only, or an explicit list of names.
        """
        attributes = dict(self._attributes)
        for name in self._metadata().columns:
            if name in self._declared:
                attributes[name] = getattr(self._owner, name, None)
            elif names is True and name not in attributes:
                attributes[name] = None
        if names is True or names is None:
            return attributes
        return {name: attributes.get(name) for name in names}

    def set_attributes(self, values: Dict[str, Any]) -> None:
        for name, value in values.items():
            if not self.set_attribute(name, value):
                raise UnknownAttributeError(type(self._owner).__name__, name)

    def populate(self, row: Dict[str, Any]) -> None:
        """Load a database row, ignoring values that are not columns."""
        columns = self._metadata().columns
        for name, value in row.items():
            if name in self._declared:
                setattr(self._owner, name, value)
            elif name in columns:
                self._attributes[name] = value

    def reset(self) -> None:
        self._attributes = {}
        self._related = {}

    # Related objects

    def has_related(self, name: str) -> bool:
        return name in self._related

    def peek_related(self, name: str) -> Any:
        """Return the cached related value, or NOT_LOADED."""
        return self._related.get(name, NOT_LOADED)

    def set_related(self, name: str, value: Any) -> None:
        self._related[name] = value

    def discard_related(self, name: Optional[str] = None) -> None:
        if name is None:
            self._related = {}
        else:
            self._related.pop(name, None)

    def add_related_record(self, name: str, record: Any, index: Union[bool, str, Any]) -> None:
        """
        Add a related record found by the resolver.

        Args:
            index: False for a single relation (first record wins), True to
                append to a list, or a key value to store under in a dict.
        """
        if index is False:
            if self._related.get(name) is None:
                self._related[name] = record
            return
        if index is True:
            collection = self._related.setdefault(name, [])
            if record is not None:
                collection.append(record)
            return
        collection = self._related.setdefault(name, {})
        if record is not None:
            collection[index] = record

    def related_names(self) -> List[str]:
        return list(self._related)

    def __getstate__(self) -> Dict[str, Any]:
        return {"_attributes": self._attributes, "_related": self._related}

    def __setstate__(self, state: Dict[str, Any]) -> None:
        self._attributes = state["_attributes"]
        self._related = state["_related"]
        self._owner = None
