"""
Tests for the connection router and per-identity routing.
"""

import threading

import pytest
from sqlalchemy import create_engine

from dynamic_record.config import Settings
from dynamic_record.db.base import get_database_url, render_identity_url
from dynamic_record.exceptions import RoutingError
from dynamic_record.router import ConnectionHandle, ConnectionRouter

from conftest import make_engine, make_handle
from entities import Post


class TestIdentityResolution:
    """Tests for ConnectionRouter.resolve_identity()."""

    def test_explicit_identity_wins(self):
        router = ConnectionRouter(Settings(default_connection_identity="main"))
        assert router.resolve_identity(Post, "tenant_a") == "tenant_a"

    def test_default_identity_from_settings(self):
        router = ConnectionRouter(Settings(default_connection_identity="main"))
        assert router.resolve_identity(Post) == "main"

    def test_class_identity(self):
        class Pinned:
            __connection_identity__ = "archive"

        router = ConnectionRouter(Settings(default_connection_identity="main"))
        assert router.resolve_identity(Pinned) == "archive"

    def test_missing_identity(self):
        router = ConnectionRouter(Settings(default_connection_identity=None))
        with pytest.raises(RoutingError) as exc_info:
            router.resolve_identity(Post)
        assert exc_info.value.code == "ROUTING_FAILED"
        assert "Post" in exc_info.value.message


class TestHandles:
    """Tests for handle construction and caching."""

    def test_url_template(self):
        settings = Settings(database_url_template="sqlite:///./data/{identity}.db")
        assert render_identity_url("shard_7", settings) == "sqlite:///./data/shard_7.db"

    def test_custom_placeholder(self):
        settings = Settings(database_url_template="postgresql://db/app_%ID%", connection_placeholder="%ID%")
        assert render_identity_url("acme", settings) == "postgresql://db/app_acme"

    def test_async_drivers_are_normalized(self):
        assert get_database_url("sqlite+aiosqlite:///x.db") == "sqlite:///x.db"
        assert get_database_url("postgresql+asyncpg://u:p@h/db").startswith("postgresql+psycopg://u:p@")

    def test_registered_url_builds_handle_once(self):
        router = ConnectionRouter(Settings())
        router.register("mem", "sqlite://")

        first = router.resolve(None, "mem")
        second = router.resolve(None, "mem")

        assert first is second
        assert first.identity == "mem"
        assert first.command_builder.dialect.name == "sqlite"
        router.dispose()

    def test_register_engine(self):
        router = ConnectionRouter(Settings())
        router.register("mem", create_engine("sqlite://"))
        assert isinstance(router.resolve(None, "mem"), ConnectionHandle)
        router.dispose()

    def test_template_used_for_unregistered_identity(self, tmp_path):
        router = ConnectionRouter(Settings(database_url_template=f"sqlite:///{tmp_path}/{{identity}}.db"))
        handle = router.resolve(None, "tenant_x")
        assert str(handle.engine.url).endswith("tenant_x.db")
        router.dispose()


class TestOverride:
    """Tests for the context-local identity override."""

    def test_override_routes_and_restores(self, registry, router):
        router.register("tenant_b", make_handle("tenant_b", make_engine(seed=False)))

        with router.override("tenant_b") as handle:
            assert handle.identity == "tenant_b"
            assert Post.model().connection_identity == "tenant_b"
            assert Post.model().find_all() == []

        assert Post.model().connection_identity == "main"
        assert len(Post.model().find_all()) == 4

    def test_override_is_context_local(self, registry, router):
        router.register("tenant_b", make_handle("tenant_b", make_engine(seed=False)))
        seen = []
        entered = threading.Event()
        release = threading.Event()

        def worker():
            with router.override("tenant_b"):
                entered.set()
                release.wait(timeout=5)

        thread = threading.Thread(target=worker)
        thread.start()
        entered.wait(timeout=5)
        seen.append(router.resolve_identity(Post))
        release.set()
        thread.join()

        assert seen == ["main"]

    def test_records_keep_their_identity(self, registry, router):
        router.register("tenant_b", make_handle("tenant_b", make_engine(seed=False)))

        post = Post("tenant_b", title="Routed")
        assert post.save()

        assert Post.model("tenant_b").count() == 1
        assert Post.model("main").count() == 4
        assert Post.model("tenant_b").find_by_pk(post.id).connection_identity == "tenant_b"
