from __future__ import annotations

from fastapi import FastAPI, HTTPException

from app.api.routers import branches, identity, permissions, plans, quotas, subscriptions, uploads
from app.infra.audit import AuditMiddleware
from app.infra.db import check_db_ready
from app.infra.logging import setup_logging
from app.infra.redis_state import check_redis_ready

setup_logging()

app = FastAPI(
    title="rms-governance",
    description="Tenant resource governance for the restaurant management platform.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)

app.include_router(identity.router, prefix="/api/identity", tags=["identity"])
app.include_router(plans.router, prefix="/api/plans", tags=["plans"])
app.include_router(subscriptions.router, prefix="/api/subscriptions", tags=["subscriptions"])
app.include_router(quotas.router, prefix="/api/quotas", tags=["quotas"])
app.include_router(permissions.router, prefix="/api/permissions", tags=["permissions"])
app.include_router(branches.router, prefix="/api/branches", tags=["branches"])
app.include_router(uploads.router, prefix="/api/uploads", tags=["uploads"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    redis_ok = check_redis_ready()
    checks = {
        "db": "ok" if db_ok else "fail",
        "redis": "ok" if redis_ok else "fail",
    }
    if not (db_ok and redis_ok):
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
