from __future__ import annotations

import pytest

from app.domain.errors import ConfigurationError
from app.domain.plan_limits import (
    BoolLimit,
    LimitDataType,
    NumberLimit,
    TextLimit,
    format_limit_value,
    parse_limit,
)
from app.domain.state_machine import (
    SubscriptionStatus,
    TenantStatus,
    can_subscription_transition,
    can_tenant_transition,
)


def test_parse_limit_resolves_each_variant() -> None:
    assert parse_limit("max_branches", "3", LimitDataType.NUMBER) == NumberLimit(key="max_branches", value=3.0)
    assert parse_limit("storage_quota_gb", " 0.5 ", "number") == NumberLimit(key="storage_quota_gb", value=0.5)
    assert parse_limit("kds_enabled", "TRUE", LimitDataType.BOOLEAN) == BoolLimit(key="kds_enabled", value=True)
    assert parse_limit("kds_enabled", "0", LimitDataType.BOOLEAN) == BoolLimit(key="kds_enabled", value=False)
    assert parse_limit("support_tier", "gold", LimitDataType.STRING) == TextLimit(key="support_tier", value="gold")


@pytest.mark.parametrize(
    ("raw", "data_type"),
    [
        ("three", LimitDataType.NUMBER),
        ("-1", LimitDataType.NUMBER),
        ("nan", LimitDataType.NUMBER),
        ("inf", LimitDataType.NUMBER),
        ("yes", LimitDataType.BOOLEAN),
        ("5", "decimal"),
    ],
)
def test_parse_limit_rejects_malformed_values(raw: str, data_type: str) -> None:
    with pytest.raises(ConfigurationError):
        parse_limit("max_branches", raw, data_type)


def test_format_limit_value_drops_integral_fraction() -> None:
    assert format_limit_value(NumberLimit(key="max_branches", value=5.0)) == 5
    assert format_limit_value(NumberLimit(key="storage_quota_gb", value=2.5)) == 2.5
    assert format_limit_value(BoolLimit(key="kds_enabled", value=False)) is False


def test_subscription_terminal_states_have_no_exit() -> None:
    assert can_subscription_transition(SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED)
    assert can_subscription_transition(SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED)
    assert not can_subscription_transition(SubscriptionStatus.EXPIRED, SubscriptionStatus.ACTIVE)
    assert not can_subscription_transition(SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)


def test_tenant_transitions() -> None:
    assert can_tenant_transition(TenantStatus.TRIAL, TenantStatus.EXPIRED)
    assert can_tenant_transition(TenantStatus.EXPIRED, TenantStatus.ACTIVE)
    assert not can_tenant_transition(TenantStatus.TRIAL, TenantStatus.CANCELLED)
    assert not can_tenant_transition(TenantStatus.EXPIRED, TenantStatus.TRIAL)
