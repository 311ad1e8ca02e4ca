from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, select

from app.domain.errors import QuotaExceeded, ValidationError
from app.domain.models import StagedFile, TenantSignupRequest, UploadedFile, UploadKind
from app.domain.plan_limits import KEY_STORAGE_QUOTA_GB
from app.infra import db, redis_state
from app.infra.storage import LocalFileStorage, validate_relative_path
from app.services.identity_service import IdentityService
from app.services.plan_catalog_service import PlanCatalogService
from app.services.quota_service import BYTES_PER_GB, QuotaService
from app.services.upload_service import UploadService


class RecordingStorage:
    def __init__(self) -> None:
        self.deleted: list[list[str]] = []

    def delete_files(self, paths: list[str]) -> list[str]:
        self.deleted.append(list(paths))
        return list(paths)


@pytest.fixture()
def upload_engine(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[Engine, None, None]:
    db_path = tmp_path / "uploads_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(redis_state, "PERMISSION_CACHE_TTL_SEC", 0)
    PlanCatalogService().seed_default_plans()
    yield test_engine
    test_engine.dispose()


def _signup(name: str) -> str:
    tenant, _admin = IdentityService().signup_tenant(
        TenantSignupRequest(name=name, admin_username=f"{name}-admin", admin_password="admin-pass")
    )
    return tenant.id


def _stage(root: Path, relative: str, size: int = 16) -> str:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * size)
    return relative


def test_register_uploads_records_storage_usage(upload_engine: Engine, tmp_path: Path) -> None:
    tenant_id = _signup("gallery")
    root = tmp_path / "uploads"
    service = UploadService(storage=LocalFileStorage(root))
    menu = _stage(root, "gallery/menu.jpg")

    rows = service.register_uploads(
        tenant_id,
        None,
        [StagedFile(path=menu, size_bytes=BYTES_PER_GB // 2, kind=UploadKind.MENU_ITEM)],
    )
    assert [row.path for row in rows] == [menu]
    usage = {row.quota_key: row.used for row in QuotaService().get_usage(tenant_id)}
    assert usage[KEY_STORAGE_QUOTA_GB] == pytest.approx(0.5)

    service.delete_upload(tenant_id, None, rows[0].id)
    assert not (root / menu).exists()
    usage = {row.quota_key: row.used for row in QuotaService().get_usage(tenant_id)}
    assert usage[KEY_STORAGE_QUOTA_GB] == pytest.approx(0)
    assert service.list_uploads(tenant_id) == []


def test_over_quota_batch_removes_staged_files(upload_engine: Engine, tmp_path: Path) -> None:
    tenant_id = _signup("video-heavy")
    root = tmp_path / "uploads"
    service = UploadService(storage=LocalFileStorage(root))
    clip = _stage(root, "video/promo.mp4")
    thumb = _stage(root, "video/promo.png")

    with pytest.raises(QuotaExceeded) as exc_info:
        service.register_uploads(
            tenant_id,
            None,
            [
                StagedFile(path=clip, size_bytes=10 * BYTES_PER_GB, kind=UploadKind.VIDEO),
                StagedFile(path=thumb, size_bytes=BYTES_PER_GB, kind=UploadKind.VIDEO_THUMBNAIL),
            ],
        )
    assert exc_info.value.quota_key == KEY_STORAGE_QUOTA_GB
    assert not (root / clip).exists()
    assert not (root / thumb).exists()
    with Session(upload_engine) as session:
        assert session.exec(select(UploadedFile)).all() == []
    assert QuotaService().get_usage(tenant_id) == []


def test_invalid_path_rejects_whole_batch(upload_engine: Engine) -> None:
    tenant_id = _signup("receipts")
    storage = RecordingStorage()
    service = UploadService(storage=storage)

    with pytest.raises(ValidationError):
        service.register_uploads(
            tenant_id,
            None,
            [
                StagedFile(path="receipts/ok.pdf", size_bytes=10, kind=UploadKind.RECEIPT),
                StagedFile(path="../etc/passwd", size_bytes=10, kind=UploadKind.RECEIPT),
            ],
        )
    assert storage.deleted == [["receipts/ok.pdf", "../etc/passwd"]]
    with pytest.raises(ValidationError):
        service.register_uploads(tenant_id, None, [])


def test_local_storage_never_leaves_root(tmp_path: Path) -> None:
    root = tmp_path / "uploads"
    outside = tmp_path / "keep.txt"
    outside.write_text("keep")
    kept = _stage(root, "menu/item.png")
    storage = LocalFileStorage(root)

    deleted = storage.delete_files(["../keep.txt", "/etc/hosts", kept, "menu/missing.png"])
    assert deleted == [kept]
    assert outside.exists()
    assert validate_relative_path("a/b.png").parts == ("a", "b.png")
    with pytest.raises(ValidationError):
        validate_relative_path("")
