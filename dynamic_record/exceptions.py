"""
Error taxonomy for dynamic-record.

Configuration and state-machine errors always raise. Operational failures
(validation, zero-row writes) are reported as boolean results by the record
API instead, and executor faults propagate as the driver raised them.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class DynamicRecordError(Exception):
    """
    Base class for every error raised by the ORM core.

    Attributes:
        code: Stable error code for programmatic handling
        message: Human-readable error description
    """

    code = "DYNAMIC_RECORD_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(f"{self.code}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
        }


class SchemaError(DynamicRecordError):
    """Raised when table or column metadata is unavailable."""

    code = "SCHEMA_UNAVAILABLE"

    def __init__(self, table_name: str, message: Optional[str] = None):
        self.table_name = table_name
        super().__init__(
            message or f"The table '{table_name}' does not exist in the database."
        )


class RelationNotFoundError(DynamicRecordError):
    """Raised when a caller references a relation the entity does not declare."""

    code = "RELATION_NOT_FOUND"

    def __init__(self, entity_class: str, relation_name: str):
        self.entity_class = entity_class
        self.relation_name = relation_name
        super().__init__(
            f'{entity_class} does not have relation "{relation_name}".'
        )


class InvalidRelationError(DynamicRecordError):
    """Raised when a relation declaration is malformed."""

    code = "INVALID_RELATION"

    def __init__(self, entity_class: str, relation_name: str, reason: str):
        self.entity_class = entity_class
        self.relation_name = relation_name
        super().__init__(
            f'The relation "{relation_name}" in {entity_class} is invalid: {reason}'
        )


class LifecycleError(DynamicRecordError):
    """Raised on insert of a persisted record, update/delete of a new one, or any write after delete."""

    code = "INVALID_LIFECYCLE_TRANSITION"


class RoutingError(DynamicRecordError):
    """Raised when no connection can be resolved for an entity class."""

    code = "ROUTING_FAILED"


class ScopeNotFoundError(DynamicRecordError):
    """Raised when a named scope is not declared on the entity class."""

    code = "SCOPE_NOT_FOUND"

    def __init__(self, entity_class: str, scope_name: str):
        self.entity_class = entity_class
        self.scope_name = scope_name
        super().__init__(f'{entity_class} does not have scope "{scope_name}".')


class UnknownAttributeError(DynamicRecordError, AttributeError):
    """Raised when a name is neither a declared attribute, a column nor a relation."""

    code = "UNKNOWN_ATTRIBUTE"

    def __init__(self, entity_class: str, name: str):
        self.entity_class = entity_class
        self.name = name
        super().__init__(f'Property "{entity_class}.{name}" is not defined.')
