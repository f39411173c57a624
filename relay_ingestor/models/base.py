"""SQLAlchemy base declarations and session helpers."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from importlib import import_module
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, close_all_sessions, sessionmaker

from ..utils.config import GlobalSettings, get_settings

DEFAULT_DATABASE_URL = "sqlite:///./relay_ingestor.db"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""


_ENGINE: Engine | None = None
_SESSION_FACTORY: sessionmaker[Session] | None = None


def load_models() -> None:
    """Import model modules so metadata is aware of mapped classes."""

    import_module("relay_ingestor.models.records")


def build_engine(database_url: str | None = None, settings: GlobalSettings | None = None) -> Engine:
    """Create an engine for ``database_url`` and make sure every table exists."""

    settings = settings or get_settings()
    url = database_url or settings.database_url or DEFAULT_DATABASE_URL

    connect_args: dict[str, object] = {}
    pool_kwargs: dict[str, Any] = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    else:
        pool_config = settings.database
        pool_kwargs = {
            "pool_size": pool_config.pool_size,
            "max_overflow": pool_config.max_overflow,
            "pool_timeout": pool_config.timeout,
            "pool_pre_ping": pool_config.pre_ping,
        }
        if pool_config.recycle_seconds > 0:
            pool_kwargs["pool_recycle"] = pool_config.recycle_seconds

    engine = create_engine(url, echo=False, connect_args=connect_args, **pool_kwargs)
    load_models()
    Base.metadata.create_all(bind=engine)
    return engine


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_engine() -> Engine:
    """Return (and lazily initialize) the shared SQLAlchemy engine."""

    global _ENGINE
    if _ENGINE is None:
        _ENGINE = build_engine()
    return _ENGINE


def get_session_factory() -> sessionmaker[Session]:
    """Return the session factory bound to the global engine."""

    global _SESSION_FACTORY
    if _SESSION_FACTORY is None:
        _SESSION_FACTORY = build_session_factory(get_engine())
    return _SESSION_FACTORY


@contextmanager
def session_scope(factory: sessionmaker[Session] | None = None) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""

    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def reset_engine() -> None:
    """Reset cached engine and session factory (useful for testing)."""

    global _ENGINE, _SESSION_FACTORY
    if _SESSION_FACTORY is not None:
        close_all_sessions()
    if _ENGINE is not None:
        _ENGINE.dispose()
    _ENGINE = None
    _SESSION_FACTORY = None
