from collections.abc import AsyncIterator
from functools import lru_cache

import structlog
from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.crud.user import get_user_by_id
from app.database.database import AsyncSessionLocal
from app.database.models import User
from app.services.billing_result import (
    BillingResult,
    ExternalProviderError,
    InsufficientTokensError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    UserNotFoundError,
)
from app.services.price_catalog import PriceCatalog
from app.services.stripe_gateway import StripeGateway


logger = structlog.get_logger(__name__)

ERROR_STATUS_CODES = {
    NotFoundError.code: status.HTTP_404_NOT_FOUND,
    UserNotFoundError.code: status.HTTP_404_NOT_FOUND,
    InvalidStateError.code: status.HTTP_400_BAD_REQUEST,
    InsufficientTokensError.code: status.HTTP_402_PAYMENT_REQUIRED,
    ExternalProviderError.code: status.HTTP_502_BAD_GATEWAY,
    PersistenceError.code: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


async def get_cabinet_db() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionLocal() as session:
        yield session


async def get_current_cabinet_user(
    x_user_id: int | None = Header(default=None, alias='X-User-Id'),
    db: AsyncSession = Depends(get_cabinet_db),
) -> User:
    # identity is established by the upstream gateway
    if x_user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Missing user identity')

    user = await get_user_by_id(db, x_user_id)
    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Unknown or inactive user')
    return user


@lru_cache(maxsize=1)
def get_stripe_gateway() -> StripeGateway:
    return StripeGateway()


@lru_cache(maxsize=1)
def get_price_catalog() -> PriceCatalog:
    return PriceCatalog()


def ensure_success(result: BillingResult) -> BillingResult:
    """Translate a failed service result into an HTTP error."""
    if result.success:
        return result
    status_code = ERROR_STATUS_CODES.get(result.error_code, status.HTTP_400_BAD_REQUEST)
    if status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.warning('Billing request failed', error_code=result.error_code, error=result.message)
    raise HTTPException(status_code=status_code, detail=result.message)
