"""
Command Executor: runs built commands against a routed connection.

Every call is one blocking round-trip in its own transaction. Driver errors
(``sqlalchemy.exc.SQLAlchemyError``) are not caught here.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, NamedTuple, Optional

from sqlalchemy import Engine, text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Command:
    """
    A dialect-specific SQL statement with named parameters.

    ``returning`` names the generated key column an INSERT hands back through
    ``RETURNING``.
    """

    sql: str
    params: Dict[str, Any] = field(default_factory=dict)
    returning: Optional[str] = None


class ExecutionResult(NamedTuple):
    """Outcome of a write command."""

    rowcount: int
    last_insert_id: Optional[Any] = None


class CommandExecutor(ABC):
    """Executes commands and returns rows or affected row counts."""

    @abstractmethod
    def execute(self, command: Command) -> ExecutionResult:
        """Execute a write command."""
        pass

    @abstractmethod
    def query_row(self, command: Command) -> Optional[Dict[str, Any]]:
        """Return the first row of a query, or None."""
        pass

    @abstractmethod
    def query_all(self, command: Command) -> List[Dict[str, Any]]:
        """Return every row of a query."""
        pass

    @abstractmethod
    def query_scalar(self, command: Command) -> Any:
        """Return the first column of the first row of a query."""
        pass


class SQLAlchemyExecutor(CommandExecutor):
    """Command executor backed by a SQLAlchemy engine."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def execute(self, command: Command) -> ExecutionResult:
        logger.debug(f"Executing SQL: {command.sql} {command.params}")
        with self.engine.begin() as conn:
            result = conn.execute(text(command.sql), command.params)
            if command.returning is not None:
                row = result.first()
                return ExecutionResult(0) if row is None else ExecutionResult(1, row[0])
            return ExecutionResult(result.rowcount, getattr(result, "lastrowid", None))

    def query_row(self, command: Command) -> Optional[Dict[str, Any]]:
        logger.debug(f"Querying row: {command.sql} {command.params}")
        with self.engine.connect() as conn:
            row = conn.execute(text(command.sql), command.params).mappings().first()
            return dict(row) if row is not None else None

    def query_all(self, command: Command) -> List[Dict[str, Any]]:
        logger.debug(f"Querying all: {command.sql} {command.params}")
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(text(command.sql), command.params).mappings()]

    def query_scalar(self, command: Command) -> Any:
        logger.debug(f"Querying scalar: {command.sql} {command.params}")
        with self.engine.connect() as conn:
            return conn.execute(text(command.sql), command.params).scalar()
