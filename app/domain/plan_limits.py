"""Typed plan limits.

Plan limits are stored as ``(key, value, data_type)`` strings. They are parsed
once into one of three variants and use sites match on the variant instead of
re-parsing the raw string.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import StrEnum

from app.domain.errors import ConfigurationError

KEY_MAX_BRANCHES = "max_branches"
KEY_STORAGE_QUOTA_GB = "storage_quota_gb"
KEY_MAX_STAFF = "max_staff"
KEY_KDS_ENABLED = "kds_enabled"

_TRUE_VALUES = {"true", "1"}
_FALSE_VALUES = {"false", "0"}


class LimitDataType(StrEnum):
    NUMBER = "number"
    BOOLEAN = "boolean"
    STRING = "string"


@dataclass(frozen=True)
class NumberLimit:
    key: str
    value: float


@dataclass(frozen=True)
class BoolLimit:
    key: str
    value: bool


@dataclass(frozen=True)
class TextLimit:
    key: str
    value: str


PlanLimitValue = NumberLimit | BoolLimit | TextLimit


def parse_limit(key: str, raw_value: str, data_type: LimitDataType | str) -> PlanLimitValue:
    try:
        kind = LimitDataType(data_type)
    except ValueError as exc:
        raise ConfigurationError(f"plan limit {key} has unknown data_type {data_type!r}") from exc

    text = raw_value.strip() if isinstance(raw_value, str) else ""
    if kind == LimitDataType.NUMBER:
        try:
            number = float(text)
        except ValueError as exc:
            raise ConfigurationError(f"plan limit {key} is not a number: {raw_value!r}") from exc
        if math.isnan(number) or math.isinf(number) or number < 0:
            raise ConfigurationError(f"plan limit {key} must be a finite non-negative number")
        return NumberLimit(key=key, value=number)

    if kind == LimitDataType.BOOLEAN:
        lowered = text.lower()
        if lowered in _TRUE_VALUES:
            return BoolLimit(key=key, value=True)
        if lowered in _FALSE_VALUES:
            return BoolLimit(key=key, value=False)
        raise ConfigurationError(f"plan limit {key} is not a boolean: {raw_value!r}")

    return TextLimit(key=key, value=raw_value)


def format_limit_value(limit: PlanLimitValue) -> float | bool | str:
    if isinstance(limit, NumberLimit) and limit.value.is_integer():
        return int(limit.value)
    return limit.value
