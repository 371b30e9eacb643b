from __future__ import annotations

from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.crud.purchase import get_purchase_by_session_id
from app.database.crud.user import get_user_by_id
from app.database.models import PurchaseStatus, PurchaseType
from app.services.billing_result import (
    BillingResult,
    InvalidStateError,
    TokenBalances,
    UserNotFoundError,
    run_billing_operation,
)
from app.services.price_catalog import PriceCatalog
from app.services.stripe_gateway import StripeGateway, get_stripe_value, metadata_to_dict
from app.services.token_ledger_service import PurchaseContext, apply_grant


logger = structlog.get_logger(__name__)


def _display_name(first_name: str | None, last_name: str | None) -> str | None:
    name = ' '.join(part for part in (first_name, last_name) if part)
    return name or None


async def _confirm_direct_purchase(
    db: AsyncSession,
    *,
    price_id: str,
    user_id: int,
    customer_info: dict[str, Any] | None,
    gateway: StripeGateway,
    catalog: PriceCatalog,
) -> BillingResult:
    user = await get_user_by_id(db, user_id)
    if user is None:
        raise UserNotFoundError(user_id)

    price = await gateway.retrieve_price(price_id)
    if not get_stripe_value(price, 'active', False):
        raise InvalidStateError('Price is not active')

    price_metadata = metadata_to_dict(get_stripe_value(price, 'metadata'))
    unit_amount = int(get_stripe_value(price, 'unit_amount', 0) or 0)
    tokens = catalog.resolve_tokens(price_id, metadata=price_metadata, unit_amount=unit_amount)
    bucket = catalog.resolve_bucket(price_id, metadata=price_metadata)

    info = customer_info or {}
    email = info.get('email') or user.email
    if not user.stripe_customer_id:
        user.stripe_customer_id = await gateway.find_or_create_customer(
            email=email,
            name=info.get('name') or _display_name(user.first_name, user.last_name),
            user_id=user.id,
        )

    mode = 'subscription' if get_stripe_value(price, 'recurring') else 'payment'
    session = await gateway.create_checkout_session(
        price_id=price_id,
        customer_id=user.stripe_customer_id,
        user_id=user.id,
        mode=mode,
        metadata={'tokens': tokens, 'token_type': bucket.value},
    )
    session_id = get_stripe_value(session, 'id')

    outcome = await apply_grant(
        db,
        user_id=user.id,
        tokens=tokens,
        bucket=bucket,
        context=PurchaseContext(
            session_id=session_id,
            type=PurchaseType.PURCHASE,
            price_id=price_id,
            amount=Decimal(unit_amount) / 100,
            currency=get_stripe_value(price, 'currency', 'usd'),
            status=PurchaseStatus.PENDING,
            customer_email=email,
        ),
    )

    logger.info(
        'Direct purchase confirmed',
        user_id=user.id,
        price_id=price_id,
        session_id=session_id,
        tokens=outcome.applied,
        bucket=bucket.value,
    )
    return BillingResult.ok(
        'Purchase confirmed successfully',
        purchase=outcome.purchase,
        balances=TokenBalances.from_user(outcome.user),
        data={
            'session_id': session_id,
            'session_url': get_stripe_value(session, 'url'),
            'tokens_added': outcome.applied,
            'token_type': bucket.value,
        },
    )


async def confirm_direct_purchase(
    db: AsyncSession,
    *,
    price_id: str,
    user_id: int,
    customer_info: dict[str, Any] | None = None,
    gateway: StripeGateway,
    catalog: PriceCatalog,
) -> BillingResult:
    """Open a checkout session for ``price_id`` and credit its tokens as a pending purchase.

    The purchase is keyed by the checkout session id, so the later
    ``checkout.session.completed`` webhook for the same session is a no-op.
    """
    return await run_billing_operation(
        db,
        _confirm_direct_purchase(
            db,
            price_id=price_id,
            user_id=user_id,
            customer_info=customer_info,
            gateway=gateway,
            catalog=catalog,
        ),
        operation='direct purchase',
        user_id=user_id,
        price_id=price_id,
    )


async def complete_pending_purchase(db: AsyncSession, *, session_id: str) -> BillingResult | None:
    """Mark a purchase credited at confirmation time as paid; None when there is nothing to complete."""
    purchase = await get_purchase_by_session_id(db, session_id)
    if purchase is None or purchase.status != PurchaseStatus.PENDING.value:
        return None

    async def _complete() -> BillingResult:
        purchase.status = PurchaseStatus.COMPLETED.value
        await db.flush()
        logger.info('Pending purchase completed', purchase_id=purchase.id, session_id=session_id)
        return BillingResult.ok('Purchase completed', purchase=purchase, data={'tokens_added': 0, 'duplicate': True})

    return await run_billing_operation(db, _complete(), operation='purchase completion', session_id=session_id)
