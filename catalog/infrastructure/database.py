"""Database engine and session management.

Provides:
- Engine creation from ``DATABASE_URL`` (SQLite or any SQLAlchemy URL)
- A session factory and a transactional ``session_scope`` context manager
- A FastAPI ``get_db`` dependency
- Schema creation for the ``migrate`` and ``flush`` commands
"""
from contextlib import contextmanager
from typing import Generator, Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from catalog.core.config import settings
from catalog.core.logging import get_logger

logger = get_logger(__name__)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def _safe_url(url: str) -> str:
    """Return database URL with the password masked."""
    if "@" in url and "://" in url:
        scheme, rest = url.split("://", 1)
        credentials, host = rest.rsplit("@", 1)
        if ":" in credentials:
            user = credentials.split(":", 1)[0]
            return f"{scheme}://{user}:***@{host}"
    return url


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_db(database_url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """Create (or replace) the global engine and session factory.

    Args:
        database_url: SQLAlchemy URL; defaults to ``settings.database_url``
        echo: Log SQL statements; defaults to ``settings.database_echo``

    Returns:
        The new engine
    """
    global _engine, _session_factory

    url = database_url or settings.database_url
    echo = settings.database_echo if echo is None else echo

    kwargs = {"echo": echo, "future": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            # One shared connection so every session sees the same database.
            kwargs["poolclass"] = StaticPool

    if _engine is not None:
        _engine.dispose()

    _engine = create_engine(url, **kwargs)
    if url.startswith("sqlite"):
        event.listen(_engine, "connect", _enable_sqlite_foreign_keys)

    _session_factory = sessionmaker(bind=_engine, expire_on_commit=False, future=True)

    logger.info(f"Database initialized: {_safe_url(url)}")
    return _engine


def get_engine() -> Engine:
    """Return the global engine, initializing it from settings on first use."""
    if _engine is None:
        init_db()
    return _engine


def get_session_factory() -> sessionmaker:
    if _session_factory is None:
        init_db()
    return _session_factory


@contextmanager
def session_scope() -> Iterator[Session]:
    """Provide a transactional scope around a series of operations.

    Commits on success, rolls back and re-raises on failure.
    """
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a session that is closed after the request."""
    session = get_session_factory()()
    try:
        yield session
    finally:
        session.close()


def create_all() -> None:
    """Create every table known to the model metadata."""
    from catalog.domain.models import Base

    Base.metadata.create_all(get_engine())
    logger.info("Database schema created", extra={"operation": "create_all"})


def drop_all() -> None:
    from catalog.domain.models import Base

    Base.metadata.drop_all(get_engine())
    logger.info("Database schema dropped", extra={"operation": "drop_all"})


def flush_data() -> int:
    """Delete all rows from every table, children first.

    Returns:
        Number of tables emptied
    """
    from catalog.domain.models import Base

    tables = list(reversed(Base.metadata.sorted_tables))
    with get_engine().begin() as connection:
        for table in tables:
            connection.execute(table.delete())
    logger.info(f"Flushed {len(tables)} tables", extra={"operation": "flush"})
    return len(tables)


def check_connection() -> bool:
    """Return True if a trivial query succeeds."""
    try:
        with get_engine().connect() as connection:
            connection.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
