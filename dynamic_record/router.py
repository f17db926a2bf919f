"""
Connection Router.

Maps a connection identity (tenant or shard token) to a
:class:`ConnectionHandle` bundling the engine, command executor, schema
provider and command builder for that database. Handles are passed explicitly
into every metadata and query call; the router never rewrites a shared
connection configuration.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Union

import structlog
from sqlalchemy import Engine

from .config import Settings, get_settings
from .db.base import create_routed_engine, render_identity_url
from .db.command_builder import CommandBuilder
from .db.executor import CommandExecutor, SQLAlchemyExecutor
from .db.schema import SchemaProvider, SQLAlchemySchemaProvider
from .exceptions import RoutingError

logger = structlog.get_logger()

_override_identity: ContextVar[Optional[str]] = ContextVar("dynamic_record_identity", default=None)


@dataclass(frozen=True)
class ConnectionHandle:
    """Everything needed to talk to one routed database."""

    identity: str
    engine: Optional[Engine]
    executor: CommandExecutor
    schema_provider: SchemaProvider
    command_builder: CommandBuilder

    @classmethod
    def from_engine(cls, identity: str, engine: Engine) -> "ConnectionHandle":
        return cls(
            identity=identity,
            engine=engine,
            executor=SQLAlchemyExecutor(engine),
            schema_provider=SQLAlchemySchemaProvider(),
            command_builder=CommandBuilder(engine.dialect),
        )


class ConnectionRouter:
    """Resolves and caches connection handles per identity."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._routes: Dict[str, Union[str, ConnectionHandle]] = {}
        self._handles: Dict[str, ConnectionHandle] = {}
        self._lock = threading.Lock()

    def register(self, identity: str, target: Union[str, Engine, ConnectionHandle]) -> None:
        """Route an identity to a database URL, an engine or a ready handle."""
        with self._lock:
            stale = self._handles.pop(identity, None)
            if isinstance(target, Engine):
                target = ConnectionHandle.from_engine(identity, target)
            self._routes[identity] = target
        if stale is not None and stale.engine is not None and stale is not target:
            stale.engine.dispose()
        logger.info("connection_registered", identity=identity)

    def resolve_identity(self, entity_class: Optional[type] = None, identity: Optional[str] = None) -> str:
        """
        Pick the identity for a call.

        Order: explicit argument, the active ``override`` context, the entity
        class ``__connection_identity__``, then the configured default.
        """
        resolved = (
            identity
            or _override_identity.get()
            or getattr(entity_class, "__connection_identity__", None)
            or self.settings.default_connection_identity
        )
        if not resolved:
            name = entity_class.__name__ if entity_class is not None else "entity"
            raise RoutingError(f"{name} requires a connection identity before it can be used.")
        return resolved

    def resolve(self, entity_class: Optional[type] = None, identity: Optional[str] = None) -> ConnectionHandle:
        """Return the active connection handle for an entity class and identity."""
        identity = self.resolve_identity(entity_class, identity)
        handle = self._handles.get(identity)
        if handle is not None:
            return handle

        with self._lock:
            handle = self._handles.get(identity)
            if handle is None:
                handle = self._build_handle(identity)
                self._handles[identity] = handle
        return handle

    def _build_handle(self, identity: str) -> ConnectionHandle:
        route = self._routes.get(identity)
        if isinstance(route, ConnectionHandle):
            return route
        url = route or render_identity_url(identity, self.settings)
        logger.info("connection_opened", identity=identity)
        return ConnectionHandle.from_engine(identity, create_routed_engine(url, self.settings))

    @contextmanager
    def override(self, identity: str) -> Iterator[ConnectionHandle]:
        """
        Make ``identity`` the default for the current context.

        The previous default is restored on exit. The override is context-local
        (threads and asyncio tasks each see their own), so concurrent callers
        routed to different identities never observe each other's choice.
        """
        handle = self.resolve(None, identity)
        token = _override_identity.set(identity)
        try:
            yield handle
        finally:
            _override_identity.reset(token)

    def dispose(self) -> None:
        """Close every engine opened by this router."""
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            if handle.engine is not None:
                handle.engine.dispose()
