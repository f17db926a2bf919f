"""
Record Lifecycle Manager.

State machine of a data instance::

    NEW --insert--> PERSISTED --update--> PERSISTED --delete--> DELETED

Illegal transitions raise :class:`LifecycleError` before any command is sent.
Every UPDATE and DELETE targets the primary key captured when the record was
loaded or inserted, so changing key attributes in memory never redirects a
write to another row.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Union

import structlog

from .exceptions import LifecycleError

if TYPE_CHECKING:
    from .criteria import QueryCriteria

logger = structlog.get_logger()


class RecordState(str, Enum):
    """Persistence state of a data instance."""

    NEW = "new"
    PERSISTED = "persisted"
    DELETED = "deleted"


class ModelEvent:
    """
    Event passed to lifecycle handlers.

    Setting ``is_valid`` to False in a ``before_*`` handler cancels the
    operation. Setting ``handled`` stops the remaining handlers from running.
    """

    def __init__(self, sender: Any, name: str, params: Optional[Dict[str, Any]] = None):
        self.sender = sender
        self.name = name
        self.params = params or {}
        self.is_valid = True
        self.handled = False


class LifecycleMixin:
    """Insert, update, delete and refresh of a single record."""

    # Events

    def on(self, event: str, handler: Callable[[ModelEvent], None]) -> "LifecycleMixin":
        """Attach a handler to ``before_save``, ``after_save``, ``before_delete``,
        ``after_delete``, ``before_find`` or ``after_find``."""
        self._handlers.setdefault(event, []).append(handler)
        return self

    def raise_event(self, name: str, **params: Any) -> ModelEvent:
        event = ModelEvent(self, name, params)
        for handler in self._handlers.get(name, ()):
            handler(event)
            if event.handled:
                break
        return event

    def before_save(self) -> bool:
        return self.raise_event("before_save").is_valid

    def after_save(self) -> None:
        self.raise_event("after_save")

    def before_delete(self) -> bool:
        return self.raise_event("before_delete").is_valid

    def after_delete(self) -> None:
        self.raise_event("after_delete")

    def before_find(self, criteria: Optional["QueryCriteria"] = None) -> bool:
        return self.raise_event("before_find", criteria=criteria).is_valid

    def after_find(self) -> None:
        self.raise_event("after_find")

    # State

    @property
    def state(self) -> RecordState:
        return self._state

    @property
    def is_new_record(self) -> bool:
        return self._state is RecordState.NEW

    @property
    def is_deleted(self) -> bool:
        return self._state is RecordState.DELETED

    def _require_data_instance(self, action: str) -> None:
        if self._read_only:
            raise LifecycleError(f"The {type(self).__name__} model prototype cannot be {action}; create a record instead.")

    def _require_not_deleted(self, action: str) -> None:
        self._require_data_instance(action)
        if self._state is RecordState.DELETED:
            raise LifecycleError(f"The {type(self).__name__} record cannot be {action} because it has been deleted.")

    def _require_persisted(self, action: str) -> None:
        self._require_not_deleted(action)
        if self._state is RecordState.NEW:
            raise LifecycleError(f"The {type(self).__name__} record cannot be {action} because it is new.")

    # Primary key

    @property
    def primary_key(self) -> Any:
        """Scalar for a single-column key, ``{column: value}`` for a composite key."""
        columns = self.get_metadata().primary_key
        if not columns:
            return None
        if len(columns) == 1:
            return self.get_attribute(columns[0])
        return {column: self.get_attribute(column) for column in columns}

    @primary_key.setter
    def primary_key(self, value: Any) -> None:
        columns = self.get_metadata().primary_key
        if len(columns) == 1:
            self.set_attribute(columns[0], value)
        else:
            for column in columns:
                self.set_attribute(column, value[column])

    @property
    def old_primary_key(self) -> Any:
        """The key captured at load or insert; every UPDATE and DELETE targets it."""
        return self._old_pk

    @old_primary_key.setter
    def old_primary_key(self, value: Any) -> None:
        self._old_pk = value

    def _write_key(self) -> Any:
        return self._old_pk if self._old_pk is not None else self.primary_key

    # Writes

    def save(self, run_validation: bool = True, attributes: Optional[Iterable[str]] = None) -> bool:
        """
        Validate, then insert a new record or update a persisted one.

        Returns:
            False when validation fails, a hook cancels the write, or no row was
            affected.
        """
        self._require_not_deleted("saved")
        if run_validation and not self.validate(attributes):
            return False
        if self.is_new_record:
            return self.insert(attributes)
        return self.update(attributes)

    def insert(self, attributes: Optional[Iterable[str]] = None) -> bool:
        """Insert the record as a new row; only the named attributes when given."""
        self._require_data_instance("inserted")
        if not self.is_new_record:
            self._require_not_deleted("inserted")
            raise LifecycleError(
                f"The {type(self).__name__} record cannot be inserted to database because it is not new."
            )
        if not self.before_save():
            return False

        table = self.get_metadata().table_schema
        handle = self.connection()
        values = self.get_attributes(list(attributes) if attributes is not None else True)
        result = handle.executor.execute(handle.command_builder.create_insert_command(table, values))
        if result.rowcount <= 0:
            return False

        key = table.generated_key
        if key is not None and self.get_attribute(key) is None and result.last_insert_id is not None:
            self.set_attribute(key, table.columns[key].typecast(result.last_insert_id))

        self._old_pk = self.primary_key
        self.after_save()
        self._state = RecordState.PERSISTED
        self._scenario = "update"
        logger.info("record_inserted", entity=type(self).__name__, identity=self.connection_identity, pk=self._old_pk)
        return True

    def update(self, attributes: Optional[Iterable[str]] = None) -> bool:
        """Update the row identified by the old primary key."""
        self._require_persisted("updated")
        if not self.before_save():
            return False

        key = self._write_key()
        values = self.get_attributes(list(attributes) if attributes is not None else True)
        rows = self.update_by_pk(key, values)
        if rows <= 0:
            logger.warning("record_update_missed", entity=type(self).__name__, pk=key)
            return False
        self._old_pk = self.primary_key
        self.after_save()
        return True

    def delete(self) -> bool:
        """Delete the row identified by the old primary key."""
        self._require_persisted("deleted")
        if not self.before_delete():
            return False

        key = self._write_key()
        if self.delete_by_pk(key) <= 0:
            return False
        self._state = RecordState.DELETED
        self.after_delete()
        logger.info("record_deleted", entity=type(self).__name__, identity=self.connection_identity, pk=key)
        return True

    def refresh(self) -> bool:
        """Reload the attributes from the database and forget loaded relations."""
        self._require_not_deleted("refreshed")
        if self.is_new_record:
            return False
        record = self.model(self.connection_identity, registry=self.registry).find_by_pk(self._write_key())
        if record is None:
            return False
        self.attribute_store.discard_related()
        for name in self.get_metadata().columns:
            self.set_attribute(name, record.get_attribute(name))
        self._old_pk = self.primary_key
        return True

    def save_attributes(self, attributes: Union[Mapping, List[str]]) -> bool:
        """
        Update only the given attributes, skipping validation and hooks.

        Args:
            attributes: ``{name: value}`` to assign and save, or a list of
                names whose current values are saved.
        """
        self._require_persisted("updated")
        values: Dict[str, Any] = {}
        if isinstance(attributes, Mapping):
            for name, value in attributes.items():
                self.set(name, value)
                values[name] = value
        else:
            values = {name: self.get_attribute(name) for name in attributes}

        key = self._write_key()
        rows = self.update_by_pk(key, values)
        self._old_pk = self.primary_key
        return rows > 0

    def save_counters(self, counters: Mapping[str, int]) -> bool:
        """Atomically add to counter columns of this row and mirror the change in memory."""
        self._require_persisted("updated")
        handle = self.connection()
        table = self.get_metadata().table_schema
        criteria = handle.command_builder.create_pk_criteria(table, self._write_key())
        command = handle.command_builder.create_update_counter_command(table, counters, criteria)
        if handle.executor.execute(command).rowcount <= 0:
            return False
        for name, value in counters.items():
            self.set_attribute(name, (self.get_attribute(name) or 0) + value)
        return True

    def equals(self, record: Any) -> bool:
        """Whether both records point at the same row of the same database."""
        if record is self:
            return True
        if record is None or not isinstance(record, LifecycleMixin):
            return False
        return (
            record.table_name() == self.table_name()
            and record.connection_identity == self.connection_identity
            and record.primary_key == self.primary_key
        )
