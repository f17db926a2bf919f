"""
Schema Provider: table and column metadata read from the database catalog.

The core only depends on :class:`SchemaProvider`. :class:`SQLAlchemySchemaProvider`
reads the catalog through ``sqlalchemy.inspect`` so every dialect SQLAlchemy
ships can back a routed connection.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict
from sqlalchemy import inspect
from sqlalchemy.types import Integer

from ..exceptions import SchemaError

if TYPE_CHECKING:
    from ..router import ConnectionHandle

logger = logging.getLogger(__name__)

_NEXTVAL = re.compile(r"nextval\('([^']+)'")


class ColumnSchema(BaseModel):
    """Metadata of one table column."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    db_type: str = ""
    python_type: Optional[Any] = None
    allow_null: bool = True
    default: Any = None
    is_primary_key: bool = False
    auto_increment: bool = False

    def typecast(self, value: Any) -> Any:
        """Convert a value to the column's python type when that is unambiguous."""
        if value is None or self.python_type is None:
            return value
        if not isinstance(self.python_type, type) or isinstance(value, self.python_type):
            return value
        if value == "" and self.allow_null and self.python_type is not str:
            return None
        if self.python_type in (int, float, str):
            try:
                return self.python_type(value)
            except (TypeError, ValueError):
                return value
        return value


class TableSchema(BaseModel):
    """
    Metadata of one table: ordered columns, primary key and key sequence.

    ``sequence_name`` is the sequence backing the generated key when the
    catalog names one (PostgreSQL ``serial`` columns); SQLite and MySQL keys
    have none.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    columns: Dict[str, ColumnSchema]
    primary_key: Tuple[str, ...] = ()
    sequence_name: Optional[str] = None

    @property
    def column_names(self) -> List[str]:
        return list(self.columns)

    def get_column(self, name: str) -> Optional[ColumnSchema]:
        return self.columns.get(name)

    @property
    def generated_key(self) -> Optional[str]:
        """The single primary key column the database generates on insert, if any."""
        for name in self.primary_key:
            column = self.columns.get(name)
            if column is not None and column.auto_increment:
                return name
        return None

    def with_primary_key(self, primary_key: Tuple[str, ...]) -> "TableSchema":
        """Return a copy whose primary key is overridden by the entity class."""
        columns = {
            name: column.model_copy(update={"is_primary_key": name in primary_key})
            for name, column in self.columns.items()
        }
        return self.model_copy(update={"primary_key": tuple(primary_key), "columns": columns})


class SchemaProvider(ABC):
    """Supplies table metadata for a connection handle."""

    @abstractmethod
    def get_table_schema(self, handle: "ConnectionHandle", table_name: str) -> TableSchema:
        """Return the schema of a table, raising SchemaError when it is absent."""
        pass


def _sequence_from_default(raw: Any) -> Optional[str]:
    """Return the sequence of a ``nextval('post_id_seq'::regclass)`` default."""
    match = _NEXTVAL.search(str(raw)) if raw is not None else None
    return match.group(1).replace('"', "") if match else None


def _parse_default(raw: Any, python_type: Optional[type]) -> Any:
    """Turn a catalog default expression into a python value.

    Expressions evaluated by the database (``CURRENT_TIMESTAMP``, sequences)
    yield ``None`` so the database fills them in on insert.
    """
    if raw is None:
        return None
    value = str(raw).strip()
    while value.startswith("(") and value.endswith(")"):
        value = value[1:-1].strip()
    if "::" in value:
        # PostgreSQL casts, e.g. 'draft'::character varying
        value = value.split("::", 1)[0].strip()
    if len(value) >= 2 and value[0] == value[-1] == "'":
        return value[1:-1].replace("''", "'")
    if value.upper() == "NULL":
        return None
    if python_type is bool:
        return value.lower() in ("1", "true", "t")
    if python_type in (int, float):
        try:
            return python_type(value)
        except ValueError:
            return None
    return None


class SQLAlchemySchemaProvider(SchemaProvider):
    """Schema provider backed by the SQLAlchemy inspector."""

    def get_table_schema(self, handle: "ConnectionHandle", table_name: str) -> TableSchema:
        inspector = inspect(handle.engine)
        if not inspector.has_table(table_name):
            raise SchemaError(table_name)

        logger.debug(f"Reading schema of table '{table_name}' for '{handle.identity}'")
        primary_key = tuple(
            inspector.get_pk_constraint(table_name).get("constrained_columns") or ()
        )

        columns: Dict[str, ColumnSchema] = {}
        sequence_name: Optional[str] = None
        for info in inspector.get_columns(table_name):
            column_type = info["type"]
            try:
                python_type = column_type.python_type
            except NotImplementedError:
                python_type = None

            is_pk = info["name"] in primary_key
            auto_increment = (
                is_pk
                and len(primary_key) == 1
                and isinstance(column_type, Integer)
                and info.get("autoincrement", "auto") is not False
            )
            if auto_increment:
                sequence_name = _sequence_from_default(info.get("default"))
            columns[info["name"]] = ColumnSchema(
                name=info["name"],
                db_type=str(column_type),
                python_type=python_type,
                allow_null=bool(info.get("nullable", True)),
                default=None if auto_increment else _parse_default(info.get("default"), python_type),
                is_primary_key=is_pk,
                auto_increment=auto_increment,
            )

        return TableSchema(
            name=table_name,
            columns=columns,
            primary_key=primary_key,
            sequence_name=sequence_name,
        )
