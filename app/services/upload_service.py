from __future__ import annotations

from sqlmodel import Session, col, select

from app.domain.errors import NotFoundError, ValidationError
from app.domain.models import StagedFile, UploadedFile
from app.domain.plan_limits import KEY_STORAGE_QUOTA_GB
from app.infra.audit import record_audit
from app.infra.db import get_engine, run_atomic
from app.infra.logging import get_logger
from app.infra.storage import FileStorage, LocalFileStorage, validate_relative_path
from app.services.quota_service import QuotaService, bytes_to_gb
from app.services.subscription_service import lock_tenant

logger = get_logger(__name__)


class UploadService:
    """Registers files the transport layer has already staged on disk.

    The storage quota is checked for the whole batch. When registration fails
    for any reason the staged files are removed before the error propagates.
    """

    def __init__(self, storage: FileStorage | None = None, quota: QuotaService | None = None) -> None:
        self._storage = storage if storage is not None else LocalFileStorage()
        self._quota = quota or QuotaService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _cleanup(self, tenant_id: str, paths: list[str]) -> None:
        if not paths:
            return
        logger.info("upload_rollback_cleanup", tenant_id=tenant_id, files=len(paths))
        self._storage.delete_files(paths)

    def register_uploads(self, tenant_id: str, actor_id: str | None, files: list[StagedFile]) -> list[UploadedFile]:
        paths = [item.path for item in files]
        try:
            if not files:
                raise ValidationError("no files to register")
            for path in paths:
                validate_relative_path(path)
            requested_gb = bytes_to_gb(sum(item.size_bytes for item in files))

            def _work(session: Session) -> list[UploadedFile]:
                self._quota.enforce_quota(session, tenant_id, KEY_STORAGE_QUOTA_GB, requested_gb)
                rows = [
                    UploadedFile(
                        tenant_id=tenant_id,
                        path=item.path,
                        size_bytes=item.size_bytes,
                        kind=item.kind,
                        uploaded_by=actor_id,
                    )
                    for item in files
                ]
                session.add_all(rows)
                session.flush()
                self._quota.record_usage(tenant_id, KEY_STORAGE_QUOTA_GB, requested_gb, session=session)
                record_audit(
                    session,
                    tenant_id=tenant_id,
                    actor_id=actor_id,
                    action="upload.register",
                    resource="uploads",
                    detail={"files": len(rows), "size_gb": requested_gb},
                )
                return rows

            uploaded = run_atomic(_work)
        except Exception:
            self._cleanup(tenant_id, paths)
            raise
        logger.info("uploads_registered", tenant_id=tenant_id, files=len(uploaded))
        return uploaded

    def list_uploads(self, tenant_id: str) -> list[UploadedFile]:
        with self._session() as session:
            statement = (
                select(UploadedFile)
                .where(UploadedFile.tenant_id == tenant_id)
                .order_by(col(UploadedFile.created_at).desc())
            )
            return list(session.exec(statement).all())

    def delete_upload(self, tenant_id: str, actor_id: str | None, upload_id: str) -> None:
        def _work(session: Session) -> UploadedFile:
            lock_tenant(session, tenant_id)
            upload = session.exec(
                select(UploadedFile).where(UploadedFile.tenant_id == tenant_id).where(UploadedFile.id == upload_id)
            ).first()
            if upload is None:
                raise NotFoundError("upload not found")
            session.delete(upload)
            session.flush()
            self._quota.record_usage(tenant_id, KEY_STORAGE_QUOTA_GB, -bytes_to_gb(upload.size_bytes), session=session)
            record_audit(
                session,
                tenant_id=tenant_id,
                actor_id=actor_id,
                action="upload.delete",
                resource=f"uploads/{upload.id}",
                detail={"path": upload.path, "size_bytes": upload.size_bytes},
            )
            return upload

        upload = run_atomic(_work)
        self._storage.delete_files([upload.path])
