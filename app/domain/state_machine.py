from __future__ import annotations

from enum import StrEnum


class TenantStatus(StrEnum):
    TRIAL = "trial"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class SubscriptionStatus(StrEnum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class BranchStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"


SUBSCRIPTION_ALLOWED_TRANSITIONS: dict[SubscriptionStatus, set[SubscriptionStatus]] = {
    SubscriptionStatus.ACTIVE: {SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED},
    SubscriptionStatus.CANCELLED: set(),
    SubscriptionStatus.EXPIRED: set(),
}

# A new active subscription may start from any tenant state except an already
# active one; trial expiry only applies while no subscription governs the tenant.
TENANT_ALLOWED_TRANSITIONS: dict[TenantStatus, set[TenantStatus]] = {
    TenantStatus.TRIAL: {TenantStatus.ACTIVE, TenantStatus.EXPIRED},
    TenantStatus.ACTIVE: {TenantStatus.CANCELLED, TenantStatus.EXPIRED},
    TenantStatus.CANCELLED: {TenantStatus.ACTIVE},
    TenantStatus.EXPIRED: {TenantStatus.ACTIVE},
}

# Tenants in any other state may still read and resubscribe, but not write.
WRITABLE_TENANT_STATUSES = frozenset({TenantStatus.ACTIVE, TenantStatus.TRIAL})


def can_subscription_transition(source: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in SUBSCRIPTION_ALLOWED_TRANSITIONS.get(source, set())


def can_tenant_transition(source: TenantStatus, target: TenantStatus) -> bool:
    return target in TENANT_ALLOWED_TRANSITIONS.get(source, set())
