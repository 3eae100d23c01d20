# cbots/database.py
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Generator, TypeVar

from sqlalchemy import create_engine, text
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
)
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.orm.exc import StaleDataError

from cbots.core.config import settings
from cbots.errors import ConflictRetryable, LedgerError, StorageUnavailable
from cbots.models import Base  # keep import for ORM usage

logger = logging.getLogger(__name__)

T = TypeVar("T")

# serialization_failure / deadlock_detected
_RETRYABLE_SQLSTATES = {"40001", "40P01"}

_engine = None
_SessionLocal = None


def _normalize_url(url: str) -> str:
    # Railway/Heroku hand out postgres://; SQLAlchemy expects postgresql://
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def configure_engine(url: str | None = None, **engine_kwargs: Any):
    """(Re)bind the module to a database URL. Tests point this at SQLite."""
    global _engine, _SessionLocal
    url = _normalize_url(url or settings.DATABASE_URL)
    if not url:
        raise RuntimeError("DATABASE_URL is not set")
    if _engine is not None:
        _engine.dispose()
    engine_kwargs.setdefault("pool_pre_ping", True)
    _engine = create_engine(url, future=True, **engine_kwargs)
    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=_engine, future=True)
    return _engine


def get_engine():
    if _engine is None:
        configure_engine()
    return _engine


def get_sessionmaker():
    if _SessionLocal is None:
        get_engine()
    return _SessionLocal


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = getattr(exc, "orig", None)
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


def translate_error(exc: Exception) -> Exception:
    """Map SQLAlchemy failures onto the ledger error taxonomy."""
    if isinstance(exc, LedgerError):
        return exc
    if isinstance(exc, StaleDataError):
        return ConflictRetryable("record was modified concurrently")
    if isinstance(exc, IntegrityError):
        return ConflictRetryable("conflicting write rejected by the store")
    if isinstance(exc, OperationalError):
        if _sqlstate(exc) in _RETRYABLE_SQLSTATES:
            return ConflictRetryable("transaction aborted by the store")
        return StorageUnavailable("database unavailable")
    if isinstance(exc, InterfaceError):
        return StorageUnavailable("database unavailable")
    return exc


@contextmanager
def db_session() -> Generator[Session, None, None]:
    """One unit of work: commit on success, roll back everything on failure."""
    SessionLocal = get_sessionmaker()
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        translated = translate_error(e)
        if translated is e:
            raise
        logger.warning("Transaction aborted: %s (%s)", translated.__class__.__name__, e)
        raise translated from e
    finally:
        db.close()


def run_in_transaction(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run ``fn(db, *args, **kwargs)`` inside a fresh unit of work."""
    with db_session() as db:
        return fn(db, *args, **kwargs)


def get_db() -> Generator[Session, None, None]:
    # read-only projections; mutations go through run_in_transaction
    SessionLocal = get_sessionmaker()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def ping() -> None:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except (OperationalError, InterfaceError) as e:
        raise StorageUnavailable(f"database unreachable: {e}") from e


def init_db() -> None:
    """Create missing tables (idempotent). Fatal if the store is unreachable."""
    engine = get_engine()
    ping()
    Base.metadata.create_all(bind=engine, checkfirst=True)
