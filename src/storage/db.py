"""SQLAlchemy engine/session primitives and health checks."""

from __future__ import annotations

from contextlib import contextmanager
from functools import lru_cache
from typing import Callable, Generator, Iterator, Optional, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from src.core.config import get_settings


Base = declarative_base()

SessionFactory = Callable[[], Session]


@lru_cache(maxsize=1)
def get_engine():
    settings = get_settings()
    kwargs: dict[str, object] = {"pool_pre_ping": True, "future": True}

    if settings.database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        # Reconciliation workers each hold a connection while persisting results.
        kwargs["pool_size"] = settings.db_pool_size + settings.reconciler_max_workers
        kwargs["max_overflow"] = 10
        kwargs["pool_recycle"] = 300
        kwargs["pool_timeout"] = 10

    return create_engine(settings.database_url, **kwargs)


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    return sessionmaker(bind=get_engine(), autoflush=False, autocommit=False, expire_on_commit=False)


def get_session() -> Generator[Session, None, None]:
    session = get_session_factory()()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def session_scope(factory: Optional[SessionFactory] = None) -> Iterator[Session]:
    """Open a standalone session for work that outlives an HTTP request."""

    session = (factory or get_session_factory())()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def test_connection() -> Tuple[bool, Optional[str]]:
    try:
        with get_engine().connect() as connection:
            connection.execute(text("SELECT 1"))
        return True, None
    except Exception as exc:
        return False, str(exc)


def load_models() -> None:
    """Import ORM models so Base metadata contains all mapped tables."""

    # Import side effect is intentional here.
    import src.storage.models  # noqa: F401
