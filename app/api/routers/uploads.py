from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request, Response, status

from app.api.deps import (
    get_current_claims,
    handle_governance_error,
    require_active_tenant,
    require_perm,
    require_tenant,
)
from app.domain.errors import GovernanceError
from app.domain.models import UploadedFileRead, UploadRegisterRequest
from app.domain.permissions import PERM_UPLOAD_FILES
from app.infra.audit import set_audit_context
from app.services.upload_service import UploadService

router = APIRouter()


def get_upload_service() -> UploadService:
    return UploadService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[UploadService, Depends(get_upload_service)]


@router.post(
    "",
    response_model=list[UploadedFileRead],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_UPLOAD_FILES)), Depends(require_active_tenant)],
)
def register_uploads(
    payload: UploadRegisterRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> list[UploadedFileRead]:
    tenant_id = require_tenant(claims)
    try:
        rows = service.register_uploads(tenant_id, claims["sub"], payload.files)
    except GovernanceError as exc:
        handle_governance_error(exc)
    set_audit_context(
        request,
        action="uploads.register",
        detail={"what": {"files": len(rows), "size_bytes": sum(item.size_bytes for item in rows)}},
    )
    return [UploadedFileRead.model_validate(item) for item in rows]


@router.get("", response_model=list[UploadedFileRead], dependencies=[Depends(require_perm(PERM_UPLOAD_FILES))])
def list_uploads(claims: Claims, service: Service) -> list[UploadedFileRead]:
    tenant_id = require_tenant(claims)
    return [UploadedFileRead.model_validate(item) for item in service.list_uploads(tenant_id)]


@router.delete(
    "/{upload_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_UPLOAD_FILES)), Depends(require_active_tenant)],
)
def delete_upload(upload_id: str, request: Request, claims: Claims, service: Service) -> Response:
    tenant_id = require_tenant(claims)
    try:
        service.delete_upload(tenant_id, claims["sub"], upload_id)
    except GovernanceError as exc:
        handle_governance_error(exc)
    set_audit_context(request, action="uploads.delete", detail={"what": {"upload_id": upload_id}})
    return Response(status_code=status.HTTP_204_NO_CONTENT)
