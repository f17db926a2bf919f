"""Test configuration and fixtures."""

from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from dynamic_record.config import Settings
from dynamic_record.db import CommandBuilder, SQLAlchemyExecutor, SQLAlchemySchemaProvider
from dynamic_record.db.executor import Command, ExecutionResult
from dynamic_record.metadata import MetadataRegistry, set_registry
from dynamic_record.router import ConnectionHandle, ConnectionRouter

SCHEMA = [
    """CREATE TABLE users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username VARCHAR(64) NOT NULL,
        email VARCHAR(128),
        status INTEGER NOT NULL DEFAULT 1
    )""",
    """CREATE TABLE profile (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        bio TEXT
    )""",
    """CREATE TABLE post (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        author_id INTEGER,
        title VARCHAR(128) NOT NULL,
        status VARCHAR(16) NOT NULL DEFAULT 'draft',
        views INTEGER NOT NULL DEFAULT 0
    )""",
    """CREATE TABLE comment (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        post_id INTEGER NOT NULL,
        author_id INTEGER,
        content TEXT NOT NULL,
        approved INTEGER NOT NULL DEFAULT 0
    )""",
    """CREATE TABLE tag (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name VARCHAR(32) NOT NULL
    )""",
    """CREATE TABLE post_tag (
        post_id INTEGER NOT NULL,
        tag_id INTEGER NOT NULL,
        PRIMARY KEY (post_id, tag_id)
    )""",
]

SEED = [
    "INSERT INTO users (id, username, email, status) VALUES (1, 'alice', 'alice@example.com', 1)",
    "INSERT INTO users (id, username, email, status) VALUES (2, 'bob', 'bob@example.com', 1)",
    "INSERT INTO users (id, username, email, status) VALUES (3, 'carol', NULL, 0)",
    "INSERT INTO profile (id, user_id, bio) VALUES (1, 1, 'Writes about databases')",
    "INSERT INTO post (id, author_id, title, status, views) VALUES (1, 1, 'Hello', 'published', 10)",
    "INSERT INTO post (id, author_id, title, status, views) VALUES (2, 1, 'Second', 'published', 5)",
    "INSERT INTO post (id, author_id, title, status, views) VALUES (3, 2, 'Draft', 'draft', 0)",
    "INSERT INTO post (id, author_id, title, status, views) VALUES (4, NULL, 'Orphan', 'published', 1)",
    "INSERT INTO comment (id, post_id, author_id, content, approved) VALUES (1, 1, 2, 'Nice', 1)",
    "INSERT INTO comment (id, post_id, author_id, content, approved) VALUES (2, 1, 3, 'Meh', 0)",
    "INSERT INTO comment (id, post_id, author_id, content, approved) VALUES (3, 2, 2, 'Ok', 1)",
    "INSERT INTO tag (id, name) VALUES (1, 'python')",
    "INSERT INTO tag (id, name) VALUES (2, 'sql')",
    "INSERT INTO tag (id, name) VALUES (3, 'orm')",
    "INSERT INTO post_tag (post_id, tag_id) VALUES (1, 1)",
    "INSERT INTO post_tag (post_id, tag_id) VALUES (1, 3)",
    "INSERT INTO post_tag (post_id, tag_id) VALUES (2, 2)",
]


class RecordingExecutor(SQLAlchemyExecutor):
    """Executor that remembers every command it ran."""

    def __init__(self, engine):
        super().__init__(engine)
        self.commands: List[Command] = []

    def execute(self, command: Command) -> ExecutionResult:
        self.commands.append(command)
        return super().execute(command)

    def query_row(self, command: Command) -> Optional[Dict[str, Any]]:
        self.commands.append(command)
        return super().query_row(command)

    def query_all(self, command: Command) -> List[Dict[str, Any]]:
        self.commands.append(command)
        return super().query_all(command)

    def query_scalar(self, command: Command) -> Any:
        self.commands.append(command)
        return super().query_scalar(command)

    @property
    def count(self) -> int:
        return len(self.commands)

    def reset(self) -> None:
        self.commands.clear()


def make_engine(seed: bool = True):
    """Create a fresh in-memory database with the blog schema."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    with engine.begin() as conn:
        for statement in SCHEMA + (SEED if seed else []):
            conn.execute(text(statement))
    return engine


def make_handle(identity: str, engine) -> ConnectionHandle:
    return ConnectionHandle(
        identity=identity,
        engine=engine,
        executor=RecordingExecutor(engine),
        schema_provider=SQLAlchemySchemaProvider(),
        command_builder=CommandBuilder(engine.dialect),
    )


@pytest.fixture
def engine():
    """Create a fresh seeded in-memory database for each test."""
    engine = make_engine()
    yield engine
    engine.dispose()


@pytest.fixture
def handle(engine) -> ConnectionHandle:
    return make_handle("main", engine)


@pytest.fixture
def executor(handle) -> RecordingExecutor:
    return handle.executor


@pytest.fixture
def router(handle) -> ConnectionRouter:
    router = ConnectionRouter(Settings(default_connection_identity="main"))
    router.register("main", handle)
    yield router
    router.dispose()


@pytest.fixture
def registry(router) -> MetadataRegistry:
    """Install a registry bound to the test router as the process default."""
    registry = MetadataRegistry(router)
    set_registry(registry)
    yield registry
    set_registry(None)
