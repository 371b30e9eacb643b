from __future__ import annotations

from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import Purchase, Subscription, TokenBucket, User


logger = structlog.get_logger(__name__)


class BillingError(Exception):
    code = 'billing_error'

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(BillingError):
    code = 'not_found'


class UserNotFoundError(NotFoundError):
    code = 'user_not_found'

    def __init__(self, user_id: int | None):
        super().__init__(f'User {user_id} not found')
        self.user_id = user_id


class InvalidStateError(BillingError):
    code = 'invalid_state'


class InsufficientTokensError(BillingError):
    code = 'insufficient_tokens'

    def __init__(self, *, required: int, available: int):
        super().__init__(f'Insufficient tokens: required {required}, available {available}')
        self.required = required
        self.available = available


class ExternalProviderError(BillingError):
    code = 'external_provider_error'


class PersistenceError(BillingError):
    code = 'persistence_error'


@dataclass
class TokenBalances:
    registration_token: int = 0
    free_token: int = 0
    subscription_token: int = 0
    addons_token: int = 0

    @classmethod
    def from_user(cls, user: User) -> TokenBalances:
        return cls(**{bucket.value: int(getattr(user, bucket.value, 0) or 0) for bucket in TokenBucket})

    @property
    def total(self) -> int:
        return self.registration_token + self.free_token + self.subscription_token + self.addons_token

    def as_dict(self) -> dict[str, int]:
        return {
            'registration_token': self.registration_token,
            'free_token': self.free_token,
            'subscription_token': self.subscription_token,
            'addons_token': self.addons_token,
            'total': self.total,
        }


@dataclass
class BillingResult:
    success: bool
    message: str
    error_code: str | None = None
    balances: TokenBalances | None = None
    purchase: Purchase | None = None
    subscription: Subscription | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str, **kwargs: Any) -> BillingResult:
        return cls(success=True, message=message, **kwargs)

    @classmethod
    def fail(cls, error: BillingError, **kwargs: Any) -> BillingResult:
        return cls(success=False, message=error.message, error_code=error.code, **kwargs)


async def run_billing_operation(
    db: AsyncSession,
    action: Awaitable[BillingResult],
    *,
    operation: str,
    **log_context: Any,
) -> BillingResult:
    """Await ``action`` and commit; any failure rolls the whole transaction back."""
    try:
        result = await action
        await db.commit()
    except BillingError as exc:
        await db.rollback()
        logger.warning(
            'Billing operation failed',
            operation=operation,
            error_code=exc.code,
            error=exc.message,
            **log_context,
        )
        return BillingResult.fail(exc)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error('Billing operation could not be persisted', operation=operation, exc=exc, **log_context)
        return BillingResult.fail(PersistenceError(f'Failed to persist {operation}'))
    return result
