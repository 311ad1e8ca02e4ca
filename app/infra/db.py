from __future__ import annotations

import os
import zlib
from collections.abc import Callable, Generator
from typing import TypeVar

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlmodel import Session, create_engine

from app.domain.errors import ConcurrencyConflict, TransientStoreError
from app.infra.logging import get_logger

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql+psycopg://rms:rms@db:5432/rms_governance",
)

# serialization_failure, deadlock_detected, lock_not_available
CONFLICT_SQLSTATES = {"40001", "40P01", "55P03"}

engine = create_engine(DATABASE_URL, pool_pre_ping=True)

logger = get_logger(__name__)

T = TypeVar("T")


def get_engine() -> Engine:
    return engine


def get_session() -> Generator[Session, None, None]:
    with Session(get_engine()) as session:
        yield session


def check_db_ready() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def acquire_transaction_lock(session: Session, name: str) -> None:
    """Hold a named lock until the current transaction ends.

    PostgreSQL takes a transaction-scoped advisory lock. SQLite already allows
    a single writer at a time, so there is nothing to take.
    """
    if session.get_bind().dialect.name != "postgresql":
        return
    session.connection().execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": zlib.crc32(name.encode())})


def is_conflict_error(exc: DBAPIError) -> bool:
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in CONFLICT_SQLSTATES:
        return True
    # SQLite reports writer contention as a locked database.
    return "database is locked" in str(orig).lower()


def run_atomic(work: Callable[[Session], T], *, retries: int = 1) -> T:
    """Run ``work`` in one transaction and commit it.

    A write conflict rolls everything back and retries the whole unit up to
    ``retries`` times before surfacing ConcurrencyConflict. Connectivity
    failures surface as TransientStoreError. Domain errors raised by ``work``
    propagate unchanged after rollback.
    """
    attempt = 0
    while True:
        with Session(get_engine(), expire_on_commit=False) as session:
            try:
                result = work(session)
                session.commit()
                return result
            except (OperationalError, DBAPIError) as exc:
                session.rollback()
                if not is_conflict_error(exc):
                    if isinstance(exc, OperationalError) or exc.connection_invalidated:
                        raise TransientStoreError("persistence store unavailable") from exc
                    raise
                if attempt >= retries:
                    raise ConcurrencyConflict("concurrent write conflict, retry later") from exc
                attempt += 1
                logger.warning("transaction_conflict_retry", attempt=attempt)
