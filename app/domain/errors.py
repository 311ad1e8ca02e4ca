from __future__ import annotations


class GovernanceError(Exception):
    pass


class ValidationError(GovernanceError):
    pass


class NotFoundError(GovernanceError):
    pass


class ConflictError(GovernanceError):
    pass


class DuplicateSubscription(ConflictError):
    pass


class AuthError(GovernanceError):
    pass


class AuthorityExceeded(GovernanceError):
    """Grantor does not hold the permission being granted or revoked."""


class SubscriptionRequired(GovernanceError):
    pass


class QuotaExceeded(GovernanceError):
    def __init__(
        self,
        message: str,
        *,
        quota_key: str,
        used: float | None = None,
        limit: float | bool | None = None,
    ) -> None:
        super().__init__(message)
        self.quota_key = quota_key
        self.used = used
        self.limit = limit


class ConcurrencyConflict(GovernanceError):
    pass


class ConfigurationError(GovernanceError):
    """A stored limit or setting cannot be interpreted; callers must deny."""


class TransientStoreError(GovernanceError):
    pass
