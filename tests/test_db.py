from __future__ import annotations

from collections.abc import Generator
from pathlib import Path
from types import SimpleNamespace

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, create_engine, select

from app.domain.errors import ConcurrencyConflict, NotFoundError, TransientStoreError
from app.domain.models import Permission
from app.infra import db


class _SerializationFailure(Exception):
    sqlstate = "40001"


@pytest.fixture()
def atomic_engine(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[Engine, None, None]:
    test_engine = create_engine(
        f"sqlite:///{tmp_path / 'atomic_test.db'}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    yield test_engine
    test_engine.dispose()


def _conflict() -> OperationalError:
    return OperationalError("UPDATE tenants", {}, _SerializationFailure("could not serialize access"))


def test_run_atomic_commits(atomic_engine: Engine) -> None:
    def _work(session: Session) -> str:
        permission = Permission(name="view_menu")
        session.add(permission)
        session.flush()
        return permission.id

    permission_id = db.run_atomic(_work)
    with Session(atomic_engine) as session:
        assert session.get(Permission, permission_id) is not None


def test_run_atomic_retries_conflict_once(atomic_engine: Engine) -> None:
    attempts: list[int] = []

    def _work(session: Session) -> str:
        attempts.append(1)
        if len(attempts) == 1:
            session.add(Permission(name="abandoned"))
            session.flush()
            raise _conflict()
        return "done"

    assert db.run_atomic(_work) == "done"
    assert len(attempts) == 2
    with Session(atomic_engine) as session:
        assert session.exec(select(Permission)).all() == []


def test_run_atomic_surfaces_persistent_conflict(atomic_engine: Engine) -> None:
    attempts: list[int] = []

    def _work(_session: Session) -> None:
        attempts.append(1)
        raise _conflict()

    with pytest.raises(ConcurrencyConflict):
        db.run_atomic(_work, retries=2)
    assert len(attempts) == 3


def test_run_atomic_maps_connectivity_failure(atomic_engine: Engine) -> None:
    def _work(_session: Session) -> None:
        raise OperationalError("SELECT 1", {}, Exception("server closed the connection unexpectedly"))

    with pytest.raises(TransientStoreError):
        db.run_atomic(_work)


def test_run_atomic_rolls_back_domain_errors(atomic_engine: Engine) -> None:
    def _work(session: Session) -> None:
        session.add(Permission(name="half-written"))
        session.flush()
        raise NotFoundError("tenant not found")

    with pytest.raises(NotFoundError):
        db.run_atomic(_work)
    with Session(atomic_engine) as session:
        assert session.exec(select(Permission)).all() == []


def test_sqlite_lock_counts_as_conflict() -> None:
    error = OperationalError("INSERT", {}, Exception("database is locked"))
    assert db.is_conflict_error(error) is True
    assert db.is_conflict_error(OperationalError("INSERT", {}, Exception("disk I/O error"))) is False


class _RecordingConnection:
    def __init__(self) -> None:
        self.statements: list[tuple[str, dict[str, object]]] = []

    def execute(self, statement: object, params: dict[str, object]) -> None:
        self.statements.append((str(statement), params))


class _PostgresSession:
    def __init__(self) -> None:
        self.conn = _RecordingConnection()

    def get_bind(self) -> SimpleNamespace:
        return SimpleNamespace(dialect=SimpleNamespace(name="postgresql"))

    def connection(self) -> _RecordingConnection:
        return self.conn


def test_transaction_lock_is_an_advisory_lock_on_postgres(atomic_engine: Engine) -> None:
    fake = _PostgresSession()
    for name in ("governance.bootstrap", "governance.bootstrap", "governance.seed_roles"):
        db.acquire_transaction_lock(fake, name)  # type: ignore[arg-type]

    assert all("pg_advisory_xact_lock" in sql for sql, _params in fake.conn.statements)
    keys = [params["key"] for _sql, params in fake.conn.statements]
    assert keys[0] == keys[1]
    assert keys[0] != keys[2]

    with Session(atomic_engine) as session:
        db.acquire_transaction_lock(session, "governance.bootstrap")
        assert session.in_transaction() is False
