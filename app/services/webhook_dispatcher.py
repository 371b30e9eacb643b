from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.crud.plan import (
    find_plan_by_price_fragment,
    get_plan_by_id,
    get_plan_by_stripe_price_id,
    get_plan_by_stripe_product_id,
)
from app.database.crud.user import get_user_by_stripe_customer_id
from app.database.crud.webhook_event import is_event_processed, record_processed_event
from app.database.models import Plan, PurchaseType, SubscriptionStatus
from app.services.billing_result import BillingResult, ExternalProviderError
from app.services.price_catalog import PriceCatalog
from app.services.purchase_service import complete_pending_purchase
from app.services.stripe_gateway import StripeGateway, get_stripe_value, metadata_to_dict, stripe_timestamp
from app.services.subscription_service import (
    handle_checkout_plan_change,
    handle_failed_payment,
    handle_subscription_cancelled,
    handle_subscription_created,
    handle_subscription_updated,
    handle_successful_payment,
)
from app.services.token_ledger_service import PurchaseContext, grant_tokens


logger = structlog.get_logger(__name__)

# Stripe statuses outside the local state machine
PROVIDER_STATUS_MAP = {
    'incomplete': SubscriptionStatus.UNPAID.value,
    'incomplete_expired': SubscriptionStatus.CANCELED.value,
    'paused': SubscriptionStatus.PAST_DUE.value,
}


class WebhookEventKind(Enum):
    CHECKOUT_SESSION_COMPLETED = 'checkout.session.completed'
    SUBSCRIPTION_CREATED = 'customer.subscription.created'
    SUBSCRIPTION_UPDATED = 'customer.subscription.updated'
    SUBSCRIPTION_DELETED = 'customer.subscription.deleted'
    INVOICE_PAYMENT_SUCCEEDED = 'invoice.payment_succeeded'
    INVOICE_PAYMENT_FAILED = 'invoice.payment_failed'
    UNHANDLED = 'unhandled'

    @classmethod
    def classify(cls, event_type: str | None) -> WebhookEventKind:
        try:
            kind = cls(event_type)
        except ValueError:
            return cls.UNHANDLED
        return kind


def normalize_provider_status(status: str | None) -> str | None:
    if not status:
        return None
    return PROVIDER_STATUS_MAP.get(status, status)


def _metadata_value(metadata: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = metadata.get(key)
        if value not in (None, ''):
            return value
    return None


def _to_int(value: Any) -> int | None:
    if value in (None, ''):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _cents_to_amount(value: Any) -> Decimal:
    return Decimal(int(value or 0)) / 100


def _first_item(container: Any) -> Any:
    data = get_stripe_value(container, 'data', [])
    return data[0] if data else None


def _item_price_id(item: Any) -> str | None:
    return get_stripe_value(get_stripe_value(item, 'price'), 'id') or get_stripe_value(get_stripe_value(item, 'plan'), 'id')


def _item_product_id(item: Any) -> str | None:
    for holder in (get_stripe_value(item, 'price'), get_stripe_value(item, 'plan')):
        product = get_stripe_value(holder, 'product')
        if isinstance(product, str):
            return product
        if product is not None:
            return get_stripe_value(product, 'id')
    return None


def _period_end(subscription: Any) -> Any:
    value = get_stripe_value(subscription, 'current_period_end')
    if value is None:
        value = get_stripe_value(_first_item(get_stripe_value(subscription, 'items')), 'current_period_end')
    return stripe_timestamp(value)


def _invoice_subscription_id(invoice: Any) -> str | None:
    subscription = get_stripe_value(invoice, 'subscription')
    if subscription is None:
        details = get_stripe_value(get_stripe_value(invoice, 'parent'), 'subscription_details')
        subscription = get_stripe_value(details, 'subscription')
    if subscription is not None and not isinstance(subscription, str):
        subscription = get_stripe_value(subscription, 'id')
    return subscription


async def resolve_plan_from_items(db: AsyncSession, items: Any) -> Plan | None:
    """Exact provider price id, then substring match, then provider product id."""
    for item in get_stripe_value(items, 'data', []):
        price_id = _item_price_id(item)
        if price_id:
            plan = await get_plan_by_stripe_price_id(db, price_id)
            if plan is None:
                plan = await find_plan_by_price_fragment(db, price_id)
            if plan is not None:
                return plan
        product_id = _item_product_id(item)
        if product_id:
            plan = await get_plan_by_stripe_product_id(db, product_id)
            if plan is not None:
                return plan
    return None


async def _resolve_user_id(db: AsyncSession, provider_object: Any, metadata: dict[str, Any]) -> int | None:
    user_id = _to_int(_metadata_value(metadata, 'user_id', 'userId'))
    if user_id is not None:
        return user_id
    customer_id = get_stripe_value(provider_object, 'customer')
    if isinstance(customer_id, str):
        user = await get_user_by_stripe_customer_id(db, customer_id)
        if user is not None:
            return user.id
    return None


async def _checkout_price_id(session: Any, metadata: dict[str, Any], gateway: StripeGateway | None) -> str | None:
    item = _first_item(get_stripe_value(session, 'line_items'))
    if item is None and gateway is not None:
        try:
            items = await gateway.list_checkout_line_items(get_stripe_value(session, 'id'))
        except ExternalProviderError as exc:
            logger.warning('Could not load checkout line items', session_id=get_stripe_value(session, 'id'), exc=exc)
            items = []
        item = items[0] if items else None
    return _item_price_id(item) or _metadata_value(metadata, 'priceId', 'price_id')


async def _handle_checkout_completed(
    db: AsyncSession,
    session: Any,
    *,
    event_id: str | None,
    gateway: StripeGateway | None,
    catalog: PriceCatalog,
) -> BillingResult | None:
    session_id = get_stripe_value(session, 'id')
    if get_stripe_value(session, 'payment_status') != 'paid':
        logger.info('Checkout session not paid; ignoring', session_id=session_id)
        return None

    metadata = metadata_to_dict(get_stripe_value(session, 'metadata'))
    user_id = await _resolve_user_id(db, session, metadata)
    if user_id is None:
        logger.warning('Checkout session without a user reference', session_id=session_id)
        return None

    price_id = await _checkout_price_id(session, metadata, gateway)
    if not price_id:
        logger.warning('Checkout session without a price', session_id=session_id, user_id=user_id)
        return None

    plan_id = _to_int(_metadata_value(metadata, 'plan_id', 'planId'))
    if get_stripe_value(session, 'mode') == 'subscription':
        stripe_subscription_id = get_stripe_value(session, 'subscription')
        local_subscription_id = _to_int(metadata.get('subscription_id'))
        if metadata.get('action') == 'plan_change' and local_subscription_id is not None:
            if plan_id is None:
                logger.warning('Plan change checkout without a plan', session_id=session_id)
                return None
            return await handle_checkout_plan_change(
                db,
                user_id=user_id,
                subscription_id=local_subscription_id,
                plan_id=plan_id,
                session_id=session_id,
                stripe_subscription_id=stripe_subscription_id,
            )

        if plan_id is None:
            plan = await get_plan_by_stripe_price_id(db, price_id) or await find_plan_by_price_fragment(db, price_id)
            plan_id = plan.id if plan else None
        if plan_id is None or not stripe_subscription_id:
            logger.warning(
                'Subscription checkout missing plan or provider subscription',
                session_id=session_id,
                plan_id=plan_id,
            )
            return None
        return await handle_subscription_created(
            db,
            user_id=user_id,
            plan_id=plan_id,
            stripe_subscription_id=stripe_subscription_id,
        )

    completed = await complete_pending_purchase(db, session_id=session_id)
    if completed is not None:
        return completed

    tokens = catalog.lookup(price_id)
    if tokens is None:
        tokens = _to_int(_metadata_value(metadata, 'tokenAmount', 'tokens'))
    if tokens is None:
        logger.warning('No token amount for paid checkout', session_id=session_id, price_id=price_id)
        return None

    customer_details = get_stripe_value(session, 'customer_details')
    return await grant_tokens(
        db,
        user_id=user_id,
        tokens=tokens,
        bucket=catalog.resolve_bucket(price_id, metadata=metadata),
        context=PurchaseContext(
            session_id=session_id,
            type=PurchaseType.PURCHASE,
            price_id=price_id,
            plan_id=plan_id,
            amount=_cents_to_amount(get_stripe_value(session, 'amount_total')),
            currency=get_stripe_value(session, 'currency', 'usd'),
            customer_email=get_stripe_value(customer_details, 'email') or get_stripe_value(session, 'customer_email'),
        ),
    )


async def _handle_subscription_created(
    db: AsyncSession,
    subscription: Any,
    *,
    event_id: str | None,
    gateway: StripeGateway | None,
    catalog: PriceCatalog,
) -> BillingResult | None:
    stripe_subscription_id = get_stripe_value(subscription, 'id')
    metadata = metadata_to_dict(get_stripe_value(subscription, 'metadata'))
    user_id = await _resolve_user_id(db, subscription, metadata)
    if user_id is None:
        logger.warning('Provider subscription without a user reference', stripe_subscription_id=stripe_subscription_id)
        return None

    plan = await resolve_plan_from_items(db, get_stripe_value(subscription, 'items'))
    if plan is None:
        plan_id = _to_int(_metadata_value(metadata, 'plan_id', 'planId'))
        plan = await get_plan_by_id(db, plan_id) if plan_id is not None else None
    if plan is None:
        logger.warning('No local plan for provider subscription', stripe_subscription_id=stripe_subscription_id)
        return None

    status = normalize_provider_status(get_stripe_value(subscription, 'status')) or SubscriptionStatus.ACTIVE.value
    result = await handle_subscription_created(
        db,
        user_id=user_id,
        plan_id=plan.id,
        stripe_subscription_id=stripe_subscription_id,
        next_billing_date=_period_end(subscription),
        status=status,
    )
    if result.success and not result.data.get('created', True):
        return await _handle_subscription_updated(db, subscription, event_id=event_id, gateway=gateway, catalog=catalog)
    return result


async def _handle_subscription_updated(
    db: AsyncSession,
    subscription: Any,
    *,
    event_id: str | None,
    gateway: StripeGateway | None,
    catalog: PriceCatalog,
) -> BillingResult | None:
    plan = await resolve_plan_from_items(db, get_stripe_value(subscription, 'items'))
    return await handle_subscription_updated(
        db,
        stripe_subscription_id=get_stripe_value(subscription, 'id'),
        status=normalize_provider_status(get_stripe_value(subscription, 'status')),
        next_billing_date=_period_end(subscription),
        cancel_at=stripe_timestamp(get_stripe_value(subscription, 'cancel_at')),
        plan_id=plan.id if plan else None,
        event_id=event_id,
    )


async def _handle_subscription_deleted(
    db: AsyncSession,
    subscription: Any,
    *,
    event_id: str | None,
    gateway: StripeGateway | None,
    catalog: PriceCatalog,
) -> BillingResult | None:
    ended_at = get_stripe_value(subscription, 'ended_at') or get_stripe_value(subscription, 'canceled_at')
    return await handle_subscription_cancelled(
        db,
        stripe_subscription_id=get_stripe_value(subscription, 'id'),
        cancellation_date=stripe_timestamp(ended_at),
    )


async def _handle_invoice_paid(
    db: AsyncSession,
    invoice: Any,
    *,
    event_id: str | None,
    gateway: StripeGateway | None,
    catalog: PriceCatalog,
) -> BillingResult | None:
    stripe_subscription_id = _invoice_subscription_id(invoice)
    if not stripe_subscription_id:
        logger.info('Paid invoice without a subscription; ignoring', invoice_id=get_stripe_value(invoice, 'id'))
        return None
    return await handle_successful_payment(
        db,
        stripe_subscription_id=stripe_subscription_id,
        invoice_id=get_stripe_value(invoice, 'id'),
        amount=_cents_to_amount(get_stripe_value(invoice, 'amount_paid')),
        currency=get_stripe_value(invoice, 'currency', 'usd'),
        billing_reason=get_stripe_value(invoice, 'billing_reason'),
        gateway=gateway,
    )


async def _handle_invoice_failed(
    db: AsyncSession,
    invoice: Any,
    *,
    event_id: str | None,
    gateway: StripeGateway | None,
    catalog: PriceCatalog,
) -> BillingResult | None:
    stripe_subscription_id = _invoice_subscription_id(invoice)
    if not stripe_subscription_id:
        logger.info('Failed invoice without a subscription; ignoring', invoice_id=get_stripe_value(invoice, 'id'))
        return None
    return await handle_failed_payment(
        db,
        stripe_subscription_id=stripe_subscription_id,
        attempt_count=_to_int(get_stripe_value(invoice, 'attempt_count')) or 1,
    )


_HANDLERS = {
    WebhookEventKind.CHECKOUT_SESSION_COMPLETED: _handle_checkout_completed,
    WebhookEventKind.SUBSCRIPTION_CREATED: _handle_subscription_created,
    WebhookEventKind.SUBSCRIPTION_UPDATED: _handle_subscription_updated,
    WebhookEventKind.SUBSCRIPTION_DELETED: _handle_subscription_deleted,
    WebhookEventKind.INVOICE_PAYMENT_SUCCEEDED: _handle_invoice_paid,
    WebhookEventKind.INVOICE_PAYMENT_FAILED: _handle_invoice_failed,
}


async def _mark_processed(
    db: AsyncSession,
    *,
    event_id: str,
    event_type: str,
    handled: bool,
    summary: dict[str, Any],
) -> bool:
    """Returns False when another delivery of the same event recorded it first."""
    try:
        await record_processed_event(
            db,
            event_id=event_id,
            event_type=event_type,
            handled=handled,
            payload_summary=summary,
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info('Webhook event recorded concurrently', event_id=event_id)
        return False
    return True


async def dispatch_event(
    db: AsyncSession,
    event: Any,
    *,
    gateway: StripeGateway | None = None,
    catalog: PriceCatalog | None = None,
) -> dict[str, Any]:
    """Route one verified provider event; always acknowledges so the provider stops retrying.

    Handlers run in their own transactions. An event id is recorded once its
    handler succeeded or it was deliberately ignored; failed events stay
    unrecorded so a provider retry can apply them.
    """
    catalog = catalog or PriceCatalog()
    event_id = get_stripe_value(event, 'id')
    event_type = get_stripe_value(event, 'type', '')
    kind = WebhookEventKind.classify(event_type)
    payload = get_stripe_value(get_stripe_value(event, 'data'), 'object', {})
    ack: dict[str, Any] = {
        'success': True,
        'event_id': event_id,
        'event_type': event_type,
        'handled': False,
        'duplicate': False,
    }

    if event_id and await is_event_processed(db, event_id):
        logger.info('Duplicate webhook event ignored', event_id=event_id, event_type=event_type)
        ack['duplicate'] = True
        return ack

    result: BillingResult | None = None
    if kind is WebhookEventKind.UNHANDLED:
        logger.info('Unhandled webhook event type', event_id=event_id, event_type=event_type)
    else:
        handler = _HANDLERS[kind]
        try:
            result = await handler(db, payload, event_id=event_id, gateway=gateway, catalog=catalog)
        except Exception as exc:
            await db.rollback()
            logger.error(
                'Webhook handler crashed',
                event_id=event_id,
                event_type=event_type,
                exc_info=exc,
            )
            return ack

    if result is not None and not result.success:
        logger.warning(
            'Webhook event not applied',
            event_id=event_id,
            event_type=event_type,
            error_code=result.error_code,
            error=result.message,
        )
        return ack

    ack['handled'] = result is not None
    if event_id:
        summary = {'kind': kind.value, 'message': result.message if result else None}
        if not await _mark_processed(db, event_id=event_id, event_type=event_type, handled=ack['handled'], summary=summary):
            ack['duplicate'] = True

    logger.info('Webhook event processed', event_id=event_id, event_type=event_type, handled=ack['handled'])
    return ack
