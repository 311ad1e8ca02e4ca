from __future__ import annotations

from datetime import UTC, date, datetime, time
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from app.domain.permissions import PermissionScopeKind, RoleTag
from app.domain.plan_limits import LimitDataType
from app.domain.state_machine import BranchStatus, SubscriptionStatus, TenantStatus


def now_utc() -> datetime:
    return datetime.now(UTC)


class BillingCycle(StrEnum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PaymentMethod(StrEnum):
    CARD = "card"
    WALLET = "wallet"
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    OTHER = "other"


class UploadKind(StrEnum):
    RESTAURANT = "restaurant"
    MENU_ITEM = "menu-item"
    GALLERY = "gallery"
    VIDEO = "video"
    CATERING_CARD = "catering-card"
    VIDEO_THUMBNAIL = "video-thumbnail"
    RECEIPT = "receipt"


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    tenant_id: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(index=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str = Field(index=True)
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Tenant(SQLModel, table=True):
    __tablename__ = "tenants"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    status: TenantStatus = Field(default=TenantStatus.TRIAL, index=True)
    # Points at the single active subscription; kept without a foreign key to
    # avoid a tenants <-> subscriptions reference cycle.
    active_subscription_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Plan(SQLModel, table=True):
    __tablename__ = "plans"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    description: str | None = None
    price_cents: int = Field(default=0, ge=0)
    billing_cycle: BillingCycle = Field(default=BillingCycle.MONTHLY, index=True)
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class PlanLimit(SQLModel, table=True):
    __tablename__ = "plan_limits"
    __table_args__ = (UniqueConstraint("plan_id", "key", name="uq_plan_limits_plan_key"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    plan_id: str = Field(foreign_key="plans.id", index=True)
    key: str = Field(index=True)
    value: str
    data_type: LimitDataType
    description: str | None = None
    updated_at: datetime = Field(default_factory=now_utc)


class Subscription(SQLModel, table=True):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_status_end_date", "status", "end_date"),
        Index("ix_subscriptions_tenant_status", "tenant_id", "status"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    plan_id: str = Field(foreign_key="plans.id", index=True)
    billing_cycle: BillingCycle = Field(index=True)
    start_date: date
    end_date: date
    status: SubscriptionStatus = Field(default=SubscriptionStatus.ACTIVE, index=True)
    payment_method: PaymentMethod | None = None
    created_by: str | None = Field(default=None, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Role(SQLModel, table=True):
    __tablename__ = "roles"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_roles_tenant_name"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str | None = Field(default=None, foreign_key="tenants.id", index=True)
    name: str = Field(index=True)
    role_tag: RoleTag = Field(index=True)
    description: str | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Permission(SQLModel, table=True):
    __tablename__ = "permissions"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    description: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class RolePermission(SQLModel, table=True):
    __tablename__ = "role_permissions"

    role_id: str = Field(foreign_key="roles.id", primary_key=True)
    permission_id: str = Field(foreign_key="permissions.id", primary_key=True)
    granted: bool = Field(default=True)
    granted_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("tenant_id", "username", name="uq_users_tenant_username"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str | None = Field(default=None, foreign_key="tenants.id", index=True)
    username: str = Field(index=True)
    password_hash: str
    role_id: str | None = Field(default=None, foreign_key="roles.id", index=True)
    is_active: bool = Field(default=True)
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class UserPermission(SQLModel, table=True):
    __tablename__ = "user_permissions"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "permission_id",
            "scope",
            "scope_id",
            name="uq_user_permissions_user_perm_scope",
        ),
        Index("ix_user_permissions_user_perm", "user_id", "permission_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    permission_id: str = Field(foreign_key="permissions.id", index=True)
    scope: PermissionScopeKind = Field(default=PermissionScopeKind.TENANT)
    scope_id: str = Field(index=True)
    granted: bool
    granted_by: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Branch(SQLModel, table=True):
    __tablename__ = "branches"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_branches_tenant_name"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    name: str
    opening_time: time
    closing_time: time
    status: BranchStatus = Field(default=BranchStatus.INACTIVE, index=True)
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class UploadedFile(SQLModel, table=True):
    __tablename__ = "uploaded_files"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    path: str
    size_bytes: int = Field(ge=0)
    kind: UploadKind = Field(index=True)
    uploaded_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class TenantUsage(SQLModel, table=True):
    __tablename__ = "tenant_usage"

    tenant_id: str = Field(foreign_key="tenants.id", primary_key=True)
    quota_key: str = Field(primary_key=True)
    used: float = Field(default=0)
    updated_at: datetime = Field(default_factory=now_utc)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    tenant_id: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    payload: dict[str, Any]


class PermissionScope(BaseModel):
    kind: PermissionScopeKind = PermissionScopeKind.TENANT
    scope_id: str


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class TenantSignupRequest(BaseModel):
    name: str
    admin_username: str
    admin_password: str


class TenantRead(ORMReadModel):
    id: str
    name: str
    status: TenantStatus
    active_subscription_id: str | None = None
    created_at: datetime


class UserCreate(BaseModel):
    username: str
    password: str
    role_id: str | None = None
    is_active: bool = True


class UserRoleAssignRequest(BaseModel):
    role_id: str


class UserRead(ORMReadModel):
    id: str
    tenant_id: str | None = None
    username: str
    role_id: str | None = None
    is_active: bool
    created_by: str | None = None
    created_at: datetime


class RoleCreate(BaseModel):
    name: str
    description: str | None = None
    permission_names: list[str] = PydanticField(default_factory=list)


class RoleRead(ORMReadModel):
    id: str
    tenant_id: str | None = None
    name: str
    role_tag: RoleTag
    description: str | None = None
    created_at: datetime


class PermissionCreate(BaseModel):
    name: str
    description: str | None = None


class PermissionRead(ORMReadModel):
    id: str
    name: str
    description: str | None = None
    created_at: datetime


class RolePermissionWrite(BaseModel):
    permission_name: str
    granted: bool = True


class RolePermissionRead(BaseModel):
    role_id: str
    permission_name: str
    granted: bool
    granted_by: str | None = None


class UserPermissionWrite(BaseModel):
    permission_name: str
    scope: PermissionScopeKind = PermissionScopeKind.TENANT
    scope_id: str | None = None
    granted: bool = True


class UserPermissionRead(BaseModel):
    id: str
    user_id: str
    permission_name: str
    scope: PermissionScopeKind
    scope_id: str
    granted: bool
    granted_by: str | None = None
    updated_at: datetime


class AuthorizationCheckRequest(BaseModel):
    user_id: str
    permission_name: str
    scope: PermissionScopeKind = PermissionScopeKind.TENANT
    scope_id: str | None = None


class AuthorizationCheckRead(BaseModel):
    user_id: str
    permission_name: str
    scope: PermissionScopeKind
    scope_id: str
    granted: bool


class EffectivePermissionsRead(BaseModel):
    user_id: str
    scope: PermissionScopeKind
    scope_id: str
    permissions: list[str]


class DevLoginRequest(BaseModel):
    tenant_id: str | None = None
    username: str
    password: str


class BootstrapPlatformRequest(BaseModel):
    username: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class PlanLimitWrite(BaseModel):
    key: str
    value: str
    data_type: LimitDataType
    description: str | None = None


class PlanLimitRead(ORMReadModel):
    key: str
    value: str
    data_type: LimitDataType
    description: str | None = None


class PlanCreate(BaseModel):
    name: str
    description: str | None = None
    price_cents: int = PydanticField(default=0, ge=0)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    is_active: bool = True
    limits: list[PlanLimitWrite] = PydanticField(default_factory=list)


class PlanRead(BaseModel):
    id: str
    name: str
    description: str | None = None
    price_cents: int
    billing_cycle: BillingCycle
    is_active: bool
    created_at: datetime
    limits: list[PlanLimitRead]


class SubscriptionCreate(BaseModel):
    plan_id: str
    # Defaults to the plan's own cycle.
    billing_cycle: BillingCycle | None = None
    start_date: date | None = None
    payment_method: PaymentMethod | None = None
    detail: dict[str, Any] = PydanticField(default_factory=dict)


class SubscriptionCancelRequest(BaseModel):
    reason: str | None = None


class SubscriptionRead(ORMReadModel):
    id: str
    tenant_id: str
    plan_id: str
    billing_cycle: BillingCycle
    start_date: date
    end_date: date
    status: SubscriptionStatus
    payment_method: PaymentMethod | None = None
    created_by: str | None = None
    created_at: datetime


class QuotaCheckRequest(BaseModel):
    quota_key: str
    delta: float = PydanticField(default=1, ge=0)


class QuotaCheckRead(BaseModel):
    tenant_id: str
    quota_key: str
    allowed: bool
    used: float | None = None
    limit: float | bool | None = None
    requested: float
    projected: float | None = None
    reason: str


class UsageRecordRequest(BaseModel):
    quota_key: str
    delta: float


class TenantUsageRead(ORMReadModel):
    tenant_id: str
    quota_key: str
    used: float
    updated_at: datetime


class BranchCreate(BaseModel):
    name: str
    opening_time: time
    closing_time: time


class BranchRead(ORMReadModel):
    id: str
    tenant_id: str
    name: str
    opening_time: time
    closing_time: time
    status: BranchStatus
    created_at: datetime


class StagedFile(BaseModel):
    path: str
    size_bytes: int = PydanticField(ge=0)
    kind: UploadKind


class UploadRegisterRequest(BaseModel):
    files: list[StagedFile]


class UploadedFileRead(ORMReadModel):
    id: str
    tenant_id: str
    path: str
    size_bytes: int
    kind: UploadKind
    uploaded_by: str | None = None
    created_at: datetime


class ReconcileReport(BaseModel):
    job: str
    run_at: datetime = PydanticField(default_factory=now_utc)
    matched: int = 0
    transitioned: list[str] = PydanticField(default_factory=list)
    failed: list[str] = PydanticField(default_factory=list)
