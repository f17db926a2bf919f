"""
Database collaborators: engine construction, schema provider, command builder
and command executor.
"""

from .base import create_routed_engine, get_database_url
from .command_builder import CommandBuilder
from .executor import Command, CommandExecutor, ExecutionResult, SQLAlchemyExecutor
from .schema import ColumnSchema, SchemaProvider, SQLAlchemySchemaProvider, TableSchema

__all__ = [
    "ColumnSchema",
    "Command",
    "CommandBuilder",
    "CommandExecutor",
    "ExecutionResult",
    "SchemaProvider",
    "SQLAlchemyExecutor",
    "SQLAlchemySchemaProvider",
    "TableSchema",
    "create_routed_engine",
    "get_database_url",
]
