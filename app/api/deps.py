from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any, NoReturn

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from app.domain.errors import (
    AuthError,
    AuthorityExceeded,
    ConcurrencyConflict,
    ConfigurationError,
    ConflictError,
    GovernanceError,
    NotFoundError,
    QuotaExceeded,
    SubscriptionRequired,
    TransientStoreError,
    ValidationError,
)
from app.domain.models import PermissionScope
from app.domain.permissions import PermissionScopeKind
from app.domain.plan_limits import KEY_STORAGE_QUOTA_GB
from app.infra.auth import decode_access_token
from app.infra.logging import get_logger
from app.infra.tenant import set_request_context
from app.services.authorization_service import AuthorizationService, tenant_scope
from app.services.subscription_service import SubscriptionService

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/identity/dev-login")

logger = get_logger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[GovernanceError], int], ...] = (
    (ValidationError, 422),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (AuthError, status.HTTP_401_UNAUTHORIZED),
    (AuthorityExceeded, status.HTTP_403_FORBIDDEN),
    (SubscriptionRequired, status.HTTP_402_PAYMENT_REQUIRED),
    (ConcurrencyConflict, status.HTTP_409_CONFLICT),
    (TransientStoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def handle_governance_error(exc: GovernanceError) -> NoReturn:
    if isinstance(exc, QuotaExceeded):
        status_code = 413 if exc.quota_key == KEY_STORAGE_QUOTA_GB else status.HTTP_402_PAYMENT_REQUIRED
        raise HTTPException(
            status_code=status_code,
            detail={"message": str(exc), "quota_key": exc.quota_key, "used": exc.used, "limit": exc.limit},
        ) from exc
    if isinstance(exc, ConfigurationError):
        logger.error("governance_configuration_error", error=str(exc))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            raise HTTPException(status_code=status_code, detail=str(exc)) from exc
    raise exc


def get_authorization_service() -> AuthorizationService:
    return AuthorizationService()


def get_current_claims(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> dict[str, Any]:
    try:
        claims = decode_access_token(token)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc
    request.state.claims = claims
    set_request_context(claims.get("tenant_id"), claims.get("sub"))
    return claims


def require_tenant(claims: dict[str, Any]) -> str:
    tenant_id = claims.get("tenant_id")
    if not tenant_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="tenant context required")
    return str(tenant_id)


def require_perm(
    permission: str,
    *,
    branch_param: str | None = None,
) -> Callable[..., dict[str, Any]]:
    """Dependency that resolves ``permission`` for the caller from the database.

    With ``branch_param`` the check runs at the scope of the branch named by
    that path parameter, so branch-level overrides apply.
    """

    def _checker(
        request: Request,
        claims: Annotated[dict[str, Any], Depends(get_current_claims)],
        authz: Annotated[AuthorizationService, Depends(get_authorization_service)],
    ) -> dict[str, Any]:
        scope = tenant_scope(claims.get("tenant_id"))
        branch_id = request.path_params.get(branch_param) if branch_param else None
        if branch_id:
            scope = PermissionScope(kind=PermissionScopeKind.BRANCH, scope_id=branch_id)
        if not authz.authorize(claims["sub"], permission, scope):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {permission}",
            )
        return claims

    return _checker


def get_tenant_gate() -> SubscriptionService:
    return SubscriptionService()


def require_active_tenant(
    claims: Annotated[dict[str, Any], Depends(get_current_claims)],
    gate: Annotated[SubscriptionService, Depends(get_tenant_gate)],
) -> dict[str, Any]:
    """Block tenant writes unless the tenant is active or in trial.

    Platform callers carry no tenant and pass through.
    """
    tenant_id = claims.get("tenant_id")
    if tenant_id:
        try:
            gate.require_writable_tenant(str(tenant_id))
        except GovernanceError as exc:
            handle_governance_error(exc)
    return claims
