"""Engine construction for routed connections."""

from typing import Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.pool import StaticPool

from ..config import Settings, get_settings


def _ensure_sync_driver(url: URL) -> URL:
    """Force a synchronous driver; the core issues blocking round-trips only."""

    if url.drivername.startswith("postgresql+"):
        # Normalize any async driver variants to psycopg (sync)
        if any(token in url.drivername for token in ("async", "aiopg")):
            url = url.set(drivername="postgresql+psycopg")
    elif url.drivername.startswith("sqlite+"):
        # Align async SQLite drivers to the synchronous default
        if "aiosqlite" in url.drivername:
            url = url.set(drivername="sqlite")

    return url


def get_database_url(raw_url: str) -> str:
    """Return a database URL with a guaranteed synchronous driver."""

    url = make_url(raw_url)
    # str(url) would mask the password with *** which breaks authentication
    return _ensure_sync_driver(url).render_as_string(hide_password=False)


def render_identity_url(identity: str, settings: Optional[Settings] = None) -> str:
    """Build the database URL of a connection identity from the URL template."""
    settings = settings or get_settings()
    return settings.database_url_template.replace(
        settings.connection_placeholder, identity
    )


def create_routed_engine(raw_url: str, settings: Optional[Settings] = None) -> Engine:
    """Create the engine backing one connection identity."""
    settings = settings or get_settings()
    database_url = get_database_url(raw_url)

    if database_url.startswith("sqlite"):
        # SQLite configuration for development/testing
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=settings.sql_echo,
        )

    # Server databases
    return create_engine(
        database_url,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_pre_ping=True,
        pool_recycle=settings.pool_recycle,
        echo=settings.sql_echo,
    )
