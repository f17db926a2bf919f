"""
dynamic-record

An active-record ORM core with lazy and eager relation loading and
per-identity connection routing for multi-tenant and sharded databases.
"""

import importlib.metadata

__version__ = importlib.metadata.version("dynamic-record")

from .config import Settings, get_settings
from .criteria import QueryCriteria, merge
from .exceptions import (
    DynamicRecordError,
    InvalidRelationError,
    LifecycleError,
    RelationNotFoundError,
    RoutingError,
    SchemaError,
    ScopeNotFoundError,
    UnknownAttributeError,
)
from .lifecycle import ModelEvent, RecordState
from .logging_config import configure_logging
from .metadata import EntityMetadata, MetadataRegistry, get_registry, set_registry
from .record import DynamicRecord
from .relations import (
    RelationDeclaration,
    RelationKind,
    belongs_to,
    has_many,
    has_one,
    many_many,
    stat,
)
from .router import ConnectionHandle, ConnectionRouter
from .validation import PydanticValidator, Validator

__all__ = [
    "ConnectionHandle",
    "ConnectionRouter",
    "DynamicRecord",
    "DynamicRecordError",
    "EntityMetadata",
    "InvalidRelationError",
    "LifecycleError",
    "MetadataRegistry",
    "ModelEvent",
    "PydanticValidator",
    "QueryCriteria",
    "RecordState",
    "RelationDeclaration",
    "RelationKind",
    "RelationNotFoundError",
    "RoutingError",
    "SchemaError",
    "ScopeNotFoundError",
    "Settings",
    "UnknownAttributeError",
    "Validator",
    "belongs_to",
    "configure_logging",
    "get_registry",
    "get_settings",
    "has_many",
    "has_one",
    "many_many",
    "merge",
    "set_registry",
    "stat",
]
