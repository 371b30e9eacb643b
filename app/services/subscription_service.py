from __future__ import annotations

import calendar
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database.crud.plan import get_plan_by_id
from app.database.crud.purchase import get_purchase_by_session_id
from app.database.crud.subscription import (
    get_live_subscription_for_user,
    get_subscription_by_id,
    get_subscription_by_stripe_id,
    get_subscriptions_due_for_renewal as fetch_due_for_renewal,
    get_subscriptions_past_end,
    has_other_free_plan_subscription,
)
from app.database.crud.user import get_user_by_id
from app.database.models import (
    LIVE_SUBSCRIPTION_STATUSES,
    PlanChangeKind,
    PlanChangeRecord,
    Plan,
    PurchaseStatus,
    PurchaseType,
    Subscription,
    SubscriptionStatus,
    TokenBucket,
    User,
)
from app.services.billing_result import (
    BillingResult,
    ExternalProviderError,
    InvalidStateError,
    NotFoundError,
    TokenBalances,
    UserNotFoundError,
    run_billing_operation,
)
from app.services.proration import calculate_new_charge, calculate_remaining_value
from app.services.stripe_gateway import StripeGateway, get_stripe_value, stripe_timestamp
from app.services.token_ledger_service import GrantOutcome, PurchaseContext, apply_grant, reset_bucket


logger = structlog.get_logger(__name__)

UPGRADE_MESSAGE = (
    "Subscription upgraded successfully. You've been charged the prorated amount "
    "and received your new plan's tokens immediately."
)
NOT_RESUMABLE_MESSAGE = 'This subscription cannot be resumed. Only canceled subscriptions can be resumed.'
ENDED_MESSAGE = 'This subscription has already ended and cannot be resumed. Please create a new subscription.'

# Stripe billing_reason of the first invoice; its tokens are granted when the subscription is created
INITIAL_INVOICE_REASON = 'subscription_create'


def _now_utc() -> datetime:
    return datetime.now(UTC)


def _ensure_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def advance_billing_date(start: datetime | None, interval: str | None) -> datetime:
    """One billing interval after ``start``; unknown intervals bill monthly."""
    base = _ensure_aware(start) or _now_utc()
    if 'year' in (interval or '').lower():
        return _add_months(base, 12)
    return _add_months(base, 1)


def classify_plan_change(old_plan: Plan, new_plan: Plan) -> PlanChangeKind:
    old_price = Decimal(str(old_plan.price or 0))
    new_price = Decimal(str(new_plan.price or 0))
    if new_price > old_price:
        return PlanChangeKind.UPGRADE
    if new_price < old_price:
        return PlanChangeKind.DOWNGRADE
    return PlanChangeKind.LATERAL


def _parse_status(value: SubscriptionStatus | str) -> str:
    try:
        return SubscriptionStatus(value).value
    except ValueError as exc:
        raise InvalidStateError(f'Unknown subscription status: {value}') from exc


def _price_id_for(plan: Plan, gateway: StripeGateway | None) -> str | None:
    return plan.resolve_stripe_price_id(gateway.mode if gateway else settings.get_stripe_mode())


async def _get_plan(db: AsyncSession, plan_id: int | None) -> Plan:
    plan = await get_plan_by_id(db, plan_id) if plan_id is not None else None
    if plan is None:
        raise NotFoundError(f'Plan {plan_id} not found')
    return plan


async def _lock_user(db: AsyncSession, user_id: int) -> User:
    user = await get_user_by_id(db, user_id, for_update=True)
    if user is None:
        raise UserNotFoundError(user_id)
    return user


async def _lock_subscription(db: AsyncSession, subscription_id: int) -> Subscription:
    subscription = await get_subscription_by_id(db, subscription_id, for_update=True)
    if subscription is None:
        raise NotFoundError(f'Subscription {subscription_id} not found')
    return subscription


async def _lock_by_provider_id(db: AsyncSession, stripe_subscription_id: str | None) -> Subscription:
    subscription = None
    if stripe_subscription_id:
        subscription = await get_subscription_by_stripe_id(db, stripe_subscription_id, for_update=True)
    if subscription is None:
        raise NotFoundError(f'Subscription with provider id {stripe_subscription_id} not found')
    return subscription


async def _free_plan_already_used(db: AsyncSession, subscription: Subscription, plan: Plan) -> bool:
    if not plan.is_free_tier(settings.FREE_PLAN_NAME):
        return False
    return await has_other_free_plan_subscription(
        db,
        user_id=subscription.user_id,
        exclude_subscription_id=subscription.id,
        free_plan_name=settings.FREE_PLAN_NAME,
    )


async def award_tokens_for_subscription(
    db: AsyncSession,
    subscription: Subscription,
    plan: Plan,
    *,
    session_id: str,
    purchase_type: PurchaseType = PurchaseType.SUBSCRIPTION,
    amount: Decimal | None = None,
    currency: str | None = None,
) -> GrantOutcome:
    """Grant ``plan.tokens_per_cycle`` into the subscription bucket; flushes, never commits.

    The purchase record is written even when nothing is granted so that a replay
    of ``session_id`` stays a no-op. Users who already held another Free-plan
    subscription get a zero-token record instead of a second free allowance.
    """
    tokens = int(plan.tokens_per_cycle or 0)
    if tokens > 0 and await _free_plan_already_used(db, subscription, plan):
        logger.info(
            'Skipping free plan token grant for returning user',
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            plan_id=plan.id,
        )
        tokens = 0

    return await apply_grant(
        db,
        user_id=subscription.user_id,
        tokens=tokens,
        bucket=TokenBucket.SUBSCRIPTION,
        context=PurchaseContext(
            session_id=session_id,
            type=purchase_type,
            price_id=plan.resolve_stripe_price_id(settings.get_stripe_mode()),
            plan_id=plan.id,
            amount=plan.price if amount is None else amount,
            currency=currency or plan.currency or 'usd',
        ),
    )


def _close_subscription(subscription: Subscription, moment: datetime) -> None:
    subscription.status = SubscriptionStatus.CANCELED.value
    subscription.canceled_at = subscription.canceled_at or moment
    subscription.ends_at = moment


async def _create_subscription(
    db: AsyncSession,
    *,
    user_id: int,
    plan_id: int,
    stripe_subscription_id: str | None,
    status: SubscriptionStatus | str,
    trial_ends_at: datetime | None,
    next_billing_date: datetime | None,
    supersede_live: bool,
) -> BillingResult:
    status_value = _parse_status(status)
    plan = await _get_plan(db, plan_id)

    if stripe_subscription_id:
        existing = await get_subscription_by_stripe_id(db, stripe_subscription_id, exact=True)
        if existing is not None and existing.user_id == user_id:
            logger.info(
                'Subscription already recorded for provider id',
                subscription_id=existing.id,
                stripe_subscription_id=stripe_subscription_id,
            )
            return BillingResult.ok('Subscription already exists', subscription=existing, data={'created': False})

    now = _now_utc()
    superseded = None
    if status_value in LIVE_SUBSCRIPTION_STATUSES:
        superseded = await get_live_subscription_for_user(db, user_id, for_update=True)
        if superseded is not None and not supersede_live:
            raise InvalidStateError('User already has an active subscription')

    user = await _lock_user(db, user_id)
    if superseded is not None:
        _close_subscription(superseded, now)
        flushed = await reset_bucket(db, user, TokenBucket.SUBSCRIPTION, reason='subscription_superseded')
        await db.flush()
        logger.warning(
            'Superseded live subscription',
            user_id=user_id,
            subscription_id=superseded.id,
            stripe_subscription_id=stripe_subscription_id,
            tokens_flushed=flushed,
        )

    subscription = Subscription(
        user_id=user.id,
        plan_id=plan.id,
        stripe_subscription_id=stripe_subscription_id,
        status=status_value,
        trial_ends_at=_ensure_aware(trial_ends_at),
        next_billing_date=_ensure_aware(next_billing_date) or advance_billing_date(now, plan.interval),
        billing_metadata={},
    )
    db.add(subscription)
    await db.flush()

    tokens_granted = 0
    if status_value in LIVE_SUBSCRIPTION_STATUSES:
        outcome = await award_tokens_for_subscription(
            db,
            subscription,
            plan,
            session_id=f'subscription-{subscription.id}',
        )
        tokens_granted = outcome.applied

    if plan.is_free_tier(settings.FREE_PLAN_NAME):
        user.free_plan_used = True

    logger.info(
        'Subscription created',
        user_id=user.id,
        subscription_id=subscription.id,
        plan_id=plan.id,
        status=status_value,
        tokens_granted=tokens_granted,
    )
    return BillingResult.ok(
        'Subscription created successfully',
        subscription=subscription,
        balances=TokenBalances.from_user(user),
        data={'created': True, 'tokens_granted': tokens_granted},
    )


async def create_subscription(
    db: AsyncSession,
    *,
    user_id: int,
    plan_id: int,
    stripe_subscription_id: str | None = None,
    status: SubscriptionStatus | str = SubscriptionStatus.ACTIVE,
    trial_ends_at: datetime | None = None,
    next_billing_date: datetime | None = None,
) -> BillingResult:
    return await run_billing_operation(
        db,
        _create_subscription(
            db,
            user_id=user_id,
            plan_id=plan_id,
            stripe_subscription_id=stripe_subscription_id,
            status=status,
            trial_ends_at=trial_ends_at,
            next_billing_date=next_billing_date,
            supersede_live=False,
        ),
        operation='subscription creation',
        user_id=user_id,
        plan_id=plan_id,
    )


async def handle_subscription_created(
    db: AsyncSession,
    *,
    user_id: int,
    plan_id: int,
    stripe_subscription_id: str | None,
    next_billing_date: datetime | None = None,
    status: SubscriptionStatus | str = SubscriptionStatus.ACTIVE,
) -> BillingResult:
    """Provider-driven creation; a newer provider subscription replaces the user's live one."""
    return await run_billing_operation(
        db,
        _create_subscription(
            db,
            user_id=user_id,
            plan_id=plan_id,
            stripe_subscription_id=stripe_subscription_id,
            status=status,
            trial_ends_at=None,
            next_billing_date=next_billing_date,
            supersede_live=True,
        ),
        operation='subscription webhook creation',
        user_id=user_id,
        stripe_subscription_id=stripe_subscription_id,
    )


async def _push_plan_to_provider(
    gateway: StripeGateway | None,
    subscription: Subscription,
    plan: Plan,
    *,
    metadata: dict[str, Any],
) -> tuple[Any, str | None]:
    """Returns (provider subscription, provider error message); never raises."""
    if gateway is None or not subscription.stripe_subscription_id:
        return None, None

    price_id = _price_id_for(plan, gateway)
    if not price_id:
        logger.warning('Plan has no provider price id', plan_id=plan.id, subscription_id=subscription.id)
        return None, 'New plan does not have a valid provider price id'

    try:
        updated = await gateway.update_subscription_price(
            subscription.stripe_subscription_id,
            price_id=price_id,
            metadata=metadata,
        )
    except ExternalProviderError as exc:
        logger.warning(
            'Provider plan update failed; keeping local change',
            subscription_id=subscription.id,
            plan_id=plan.id,
            exc=exc,
        )
        return None, exc.message
    return updated, None


async def _apply_pending_downgrade(
    db: AsyncSession,
    subscription: Subscription,
    gateway: StripeGateway | None,
) -> str | None:
    pending = subscription.pending_change
    if not pending.has_pending_downgrade:
        return None

    target = await get_plan_by_id(db, pending.downgrade_plan_id)
    if target is None:
        logger.warning(
            'Pending downgrade plan no longer exists',
            subscription_id=subscription.id,
            plan_id=pending.downgrade_plan_id,
        )
        return None

    _, provider_error = await _push_plan_to_provider(
        gateway,
        subscription,
        target,
        metadata={'plan_id': target.id, 'change': PlanChangeKind.DOWNGRADE.value},
    )
    logger.info(
        'Pending downgrade applied',
        subscription_id=subscription.id,
        from_plan_id=subscription.plan_id,
        to_plan_id=target.id,
    )
    subscription.plan_id = target.id
    return provider_error


async def _renew(
    db: AsyncSession,
    subscription: Subscription,
    *,
    renewal_key: str,
    gateway: StripeGateway | None,
    amount: Decimal | None = None,
    currency: str | None = None,
) -> BillingResult:
    existing = await get_purchase_by_session_id(db, renewal_key)
    if existing is not None:
        logger.info('Renewal already processed', subscription_id=subscription.id, session_id=renewal_key)
        return BillingResult.ok(
            'Subscription already renewed for this cycle',
            subscription=subscription,
            purchase=existing,
            data={'renewed': False, 'duplicate': True},
        )

    provider_error = await _apply_pending_downgrade(db, subscription, gateway)

    # a new cycle starts: proration restarts from the plan now being paid for
    pending = subscription.pending_change
    pending.clear_pending()
    subscription.pending_change = pending

    plan = await _get_plan(db, subscription.plan_id)
    subscription.status = SubscriptionStatus.ACTIVE.value
    subscription.next_billing_date = advance_billing_date(_now_utc(), plan.interval)

    user = await _lock_user(db, subscription.user_id)
    flushed = await reset_bucket(db, user, TokenBucket.SUBSCRIPTION, reason=PurchaseType.SUBSCRIPTION_RENEWAL.value)
    outcome = await award_tokens_for_subscription(
        db,
        subscription,
        plan,
        session_id=renewal_key,
        purchase_type=PurchaseType.SUBSCRIPTION_RENEWAL,
        amount=amount,
        currency=currency,
    )

    logger.info(
        'Subscription renewed',
        subscription_id=subscription.id,
        user_id=user.id,
        plan_id=plan.id,
        tokens_flushed=flushed,
        tokens_granted=outcome.applied,
        next_billing_date=subscription.next_billing_date.isoformat(),
    )
    data: dict[str, Any] = {'renewed': True, 'tokens_flushed': flushed, 'tokens_granted': outcome.applied}
    if provider_error:
        data['provider_error'] = provider_error
    return BillingResult.ok(
        'Subscription renewed successfully',
        subscription=subscription,
        purchase=outcome.purchase,
        balances=TokenBalances.from_user(outcome.user),
        data=data,
    )


async def _process_renewal(
    db: AsyncSession,
    *,
    subscription_id: int,
    gateway: StripeGateway | None,
    now: datetime | None,
) -> BillingResult:
    subscription = await _lock_subscription(db, subscription_id)
    if subscription.status not in (*LIVE_SUBSCRIPTION_STATUSES, SubscriptionStatus.PAST_DUE.value):
        raise InvalidStateError('Only active subscriptions can be renewed')

    current = now or _now_utc()
    cycle_end = _ensure_aware(subscription.next_billing_date) or current
    if cycle_end > current:
        return BillingResult.ok(
            'Subscription is not due for renewal',
            subscription=subscription,
            data={'renewed': False},
        )

    return await _renew(
        db,
        subscription,
        renewal_key=f'subscription-renewal-{subscription.id}-{cycle_end:%Y%m%d}',
        gateway=gateway,
    )


async def process_renewal(
    db: AsyncSession,
    *,
    subscription_id: int,
    gateway: StripeGateway | None = None,
    now: datetime | None = None,
) -> BillingResult:
    return await run_billing_operation(
        db,
        _process_renewal(db, subscription_id=subscription_id, gateway=gateway, now=now),
        operation='subscription renewal',
        subscription_id=subscription_id,
    )


async def _handle_successful_payment(
    db: AsyncSession,
    *,
    stripe_subscription_id: str,
    invoice_id: str | None,
    amount: Decimal | None,
    currency: str | None,
    billing_reason: str | None,
    gateway: StripeGateway | None,
) -> BillingResult:
    subscription = await _lock_by_provider_id(db, stripe_subscription_id)
    if subscription.status != SubscriptionStatus.ACTIVE.value:
        logger.info(
            'Payment succeeded; reactivating subscription',
            subscription_id=subscription.id,
            previous_status=subscription.status,
        )
    subscription.status = SubscriptionStatus.ACTIVE.value

    if billing_reason == INITIAL_INVOICE_REASON:
        await db.flush()
        return BillingResult.ok(
            'Initial subscription payment recorded',
            subscription=subscription,
            data={'renewed': False},
        )

    if invoice_id:
        renewal_key = invoice_id
    else:
        cycle_end = _ensure_aware(subscription.next_billing_date) or _now_utc()
        renewal_key = f'subscription-renewal-{subscription.id}-{cycle_end:%Y%m%d}'

    return await _renew(
        db,
        subscription,
        renewal_key=renewal_key,
        gateway=gateway,
        amount=amount,
        currency=currency,
    )


async def handle_successful_payment(
    db: AsyncSession,
    *,
    stripe_subscription_id: str,
    invoice_id: str | None,
    amount: Decimal | None = None,
    currency: str | None = None,
    billing_reason: str | None = None,
    gateway: StripeGateway | None = None,
) -> BillingResult:
    return await run_billing_operation(
        db,
        _handle_successful_payment(
            db,
            stripe_subscription_id=stripe_subscription_id,
            invoice_id=invoice_id,
            amount=amount,
            currency=currency,
            billing_reason=billing_reason,
            gateway=gateway,
        ),
        operation='subscription payment',
        stripe_subscription_id=stripe_subscription_id,
        invoice_id=invoice_id,
    )


async def _handle_failed_payment(db: AsyncSession, *, stripe_subscription_id: str, attempt_count: int) -> BillingResult:
    subscription = await _lock_by_provider_id(db, stripe_subscription_id)
    if attempt_count > 1 and subscription.status != SubscriptionStatus.CANCELED.value:
        subscription.status = SubscriptionStatus.PAST_DUE.value
        await db.flush()
        logger.warning(
            'Subscription marked past due',
            subscription_id=subscription.id,
            attempt_count=attempt_count,
        )
        return BillingResult.ok('Subscription marked past due', subscription=subscription, data={'changed': True})

    logger.info('Subscription payment failed', subscription_id=subscription.id, attempt_count=attempt_count)
    return BillingResult.ok('Payment failure recorded', subscription=subscription, data={'changed': False})


async def handle_failed_payment(db: AsyncSession, *, stripe_subscription_id: str, attempt_count: int) -> BillingResult:
    return await run_billing_operation(
        db,
        _handle_failed_payment(db, stripe_subscription_id=stripe_subscription_id, attempt_count=attempt_count),
        operation='subscription payment failure',
        stripe_subscription_id=stripe_subscription_id,
    )


async def _cancel_at_provider(
    gateway: StripeGateway | None,
    subscription: Subscription,
    *,
    immediate: bool,
) -> str | None:
    if gateway is None or not subscription.stripe_subscription_id:
        return None
    try:
        if immediate:
            await gateway.set_cancel_at_period_end(subscription.stripe_subscription_id, False)
            await gateway.cancel_subscription(subscription.stripe_subscription_id)
        else:
            await gateway.set_cancel_at_period_end(subscription.stripe_subscription_id, True)
    except ExternalProviderError as exc:
        logger.warning(
            'Provider cancellation failed; keeping local cancellation',
            subscription_id=subscription.id,
            immediate=immediate,
            exc=exc,
        )
        return exc.message
    return None


async def _cancel_subscription(
    db: AsyncSession,
    *,
    subscription_id: int,
    immediate: bool,
    gateway: StripeGateway | None,
) -> BillingResult:
    subscription = await _lock_subscription(db, subscription_id)
    if subscription.status == SubscriptionStatus.CANCELED.value:
        return BillingResult.ok('Subscription is already canceled', subscription=subscription, data={'changed': False})
    if not immediate and subscription.canceled_at is not None:
        return BillingResult.ok(
            'Subscription is already scheduled for cancellation',
            subscription=subscription,
            data={'changed': False},
        )

    now = _now_utc()
    subscription.canceled_at = now
    data: dict[str, Any] = {'changed': True, 'immediate': immediate}
    balances = None

    if immediate:
        subscription.status = SubscriptionStatus.CANCELED.value
        subscription.ends_at = now
        user = await _lock_user(db, subscription.user_id)
        # addon top-ups survive cancellation
        data['tokens_flushed'] = await reset_bucket(db, user, TokenBucket.SUBSCRIPTION, reason='subscription_canceled')
        balances = TokenBalances.from_user(user)
        message = 'Subscription canceled immediately'
    else:
        subscription.ends_at = _ensure_aware(subscription.next_billing_date) or now
        message = 'Subscription will be canceled at the end of the current billing period'

    provider_error = await _cancel_at_provider(gateway, subscription, immediate=immediate)
    if provider_error:
        data['provider_error'] = provider_error

    await db.flush()
    logger.info(
        'Subscription canceled',
        subscription_id=subscription.id,
        immediate=immediate,
        ends_at=subscription.ends_at.isoformat() if subscription.ends_at else None,
    )
    return BillingResult.ok(message, subscription=subscription, balances=balances, data=data)


async def cancel_subscription(
    db: AsyncSession,
    *,
    subscription_id: int,
    immediate: bool = False,
    gateway: StripeGateway | None = None,
) -> BillingResult:
    return await run_billing_operation(
        db,
        _cancel_subscription(db, subscription_id=subscription_id, immediate=immediate, gateway=gateway),
        operation='subscription cancellation',
        subscription_id=subscription_id,
        immediate=immediate,
    )


async def _resume_subscription(
    db: AsyncSession,
    *,
    subscription_id: int,
    gateway: StripeGateway | None,
) -> BillingResult:
    subscription = await _lock_subscription(db, subscription_id)
    was_canceled = subscription.status == SubscriptionStatus.CANCELED.value
    if not was_canceled and subscription.canceled_at is None:
        raise InvalidStateError(NOT_RESUMABLE_MESSAGE)

    ends_at = _ensure_aware(subscription.ends_at)
    if ends_at is None or ends_at <= _now_utc():
        raise InvalidStateError(ENDED_MESSAGE)

    if was_canceled:
        live = await get_live_subscription_for_user(db, subscription.user_id)
        if live is not None and live.id != subscription.id:
            raise InvalidStateError('User already has another active subscription')

    subscription.status = SubscriptionStatus.ACTIVE.value
    subscription.canceled_at = None
    subscription.ends_at = None

    data: dict[str, Any] = {}
    if gateway is not None and subscription.stripe_subscription_id and not was_canceled:
        try:
            await gateway.set_cancel_at_period_end(subscription.stripe_subscription_id, False)
        except ExternalProviderError as exc:
            logger.warning('Provider resume failed; keeping local resume', subscription_id=subscription.id, exc=exc)
            data['provider_error'] = exc.message

    await db.flush()
    logger.info('Subscription resumed', subscription_id=subscription.id, user_id=subscription.user_id)
    return BillingResult.ok('Subscription resumed successfully', subscription=subscription, data=data)


async def resume_subscription(
    db: AsyncSession,
    *,
    subscription_id: int,
    gateway: StripeGateway | None = None,
) -> BillingResult:
    return await run_billing_operation(
        db,
        _resume_subscription(db, subscription_id=subscription_id, gateway=gateway),
        operation='subscription resume',
        subscription_id=subscription_id,
    )


async def _end_subscription(db: AsyncSession, subscription: Subscription, moment: datetime, *, reason: str) -> int:
    _close_subscription(subscription, moment)
    user = await _lock_user(db, subscription.user_id)
    flushed = await reset_bucket(db, user, TokenBucket.SUBSCRIPTION, reason=reason)
    await db.flush()
    logger.info('Subscription ended', subscription_id=subscription.id, reason=reason, tokens_flushed=flushed)
    return flushed


async def _handle_subscription_cancelled(
    db: AsyncSession,
    *,
    stripe_subscription_id: str,
    cancellation_date: datetime | None,
) -> BillingResult:
    subscription = await _lock_by_provider_id(db, stripe_subscription_id)
    if subscription.status == SubscriptionStatus.CANCELED.value:
        # no-op unless a balance survived an earlier cancellation
        user = await _lock_user(db, subscription.user_id)
        flushed = await reset_bucket(db, user, TokenBucket.SUBSCRIPTION, reason='subscription_deleted')
        await db.flush()
        return BillingResult.ok(
            'Subscription is already canceled',
            subscription=subscription,
            data={'changed': False, 'tokens_flushed': flushed},
        )

    moment = _ensure_aware(cancellation_date) or _now_utc()
    flushed = await _end_subscription(db, subscription, moment, reason='subscription_deleted')
    return BillingResult.ok(
        'Subscription canceled',
        subscription=subscription,
        data={'changed': True, 'tokens_flushed': flushed},
    )


async def handle_subscription_cancelled(
    db: AsyncSession,
    *,
    stripe_subscription_id: str,
    cancellation_date: datetime | None = None,
) -> BillingResult:
    return await run_billing_operation(
        db,
        _handle_subscription_cancelled(
            db,
            stripe_subscription_id=stripe_subscription_id,
            cancellation_date=cancellation_date,
        ),
        operation='subscription webhook cancellation',
        stripe_subscription_id=stripe_subscription_id,
    )


async def _expire_subscription(db: AsyncSession, *, subscription_id: int, now: datetime) -> BillingResult:
    subscription = await _lock_subscription(db, subscription_id)
    ends_at = _ensure_aware(subscription.ends_at)
    if not subscription.is_live or ends_at is None or ends_at > now:
        return BillingResult.ok('Subscription has not reached its end date', subscription=subscription)

    flushed = await _end_subscription(db, subscription, ends_at, reason='subscription_expired')
    return BillingResult.ok('Subscription expired', subscription=subscription, data={'tokens_flushed': flushed})


async def expire_subscription(db: AsyncSession, *, subscription_id: int, now: datetime | None = None) -> BillingResult:
    return await run_billing_operation(
        db,
        _expire_subscription(db, subscription_id=subscription_id, now=now or _now_utc()),
        operation='subscription expiry',
        subscription_id=subscription_id,
    )


async def _change_plan(
    db: AsyncSession,
    *,
    subscription_id: int,
    new_plan_id: int,
    gateway: StripeGateway | None,
) -> BillingResult:
    subscription = await _lock_subscription(db, subscription_id)
    if not subscription.is_live:
        raise InvalidStateError('Only active subscriptions can change plans')

    old_plan = await _get_plan(db, subscription.plan_id)
    new_plan = await _get_plan(db, new_plan_id)
    pending = subscription.pending_change

    if new_plan.id == old_plan.id:
        if not pending.has_pending_downgrade:
            raise InvalidStateError('Subscription is already on this plan')
        pending.kind = None
        pending.downgrade_plan_id = None
        pending.effective_at = None
        subscription.pending_change = pending
        await db.flush()
        logger.info('Pending downgrade withdrawn', subscription_id=subscription.id, plan_id=old_plan.id)
        return BillingResult.ok('Scheduled downgrade canceled', subscription=subscription)

    now = _now_utc()
    kind = classify_plan_change(old_plan, new_plan)

    charge = Decimal('0.00')
    original_plan = old_plan
    if kind is not PlanChangeKind.LATERAL:
        if pending.original_plan_id is None:
            pending.original_plan_id = old_plan.id
        elif pending.original_plan_id != old_plan.id:
            original_plan = await get_plan_by_id(db, pending.original_plan_id) or old_plan
        remaining = calculate_remaining_value(
            next_billing_date=_ensure_aware(subscription.next_billing_date),
            interval=original_plan.interval,
            original_price=original_plan.price,
            now=now,
        )
        charge = calculate_new_charge(new_plan.price, remaining)
        logger.info(
            'Plan change prorated',
            subscription_id=subscription.id,
            original_plan_id=original_plan.id,
            remaining_days=remaining.remaining_days,
            remaining_value=str(remaining.value),
            charge=str(charge),
        )

    pending.history.append(
        PlanChangeRecord(date=now.isoformat(), from_plan_id=old_plan.id, to_plan_id=new_plan.id, kind=kind.value)
    )
    change_number = len(pending.history)

    provider_subscription, provider_error = await _push_plan_to_provider(
        gateway,
        subscription,
        new_plan,
        metadata={
            'plan_id': new_plan.id,
            'original_plan_id': pending.original_plan_id or '',
            'change': kind.value,
        },
    )
    if provider_subscription is not None and kind is not PlanChangeKind.LATERAL:
        customer_id = get_stripe_value(provider_subscription, 'customer')
        if customer_id:
            try:
                await gateway.create_and_pay_invoice(
                    customer_id=customer_id,
                    stripe_subscription_id=subscription.stripe_subscription_id,
                )
            except ExternalProviderError as exc:
                logger.warning('Provider invoice failed; keeping local change', subscription_id=subscription.id, exc=exc)
                provider_error = exc.message
    period_end = stripe_timestamp(get_stripe_value(provider_subscription, 'current_period_end'))
    if period_end is not None:
        subscription.next_billing_date = period_end

    user = await _lock_user(db, subscription.user_id)
    data: dict[str, Any] = {'change': kind.value, 'charge': str(charge), 'tokens_flushed': 0, 'tokens_granted': 0}

    if kind is PlanChangeKind.DOWNGRADE:
        effective_at = _ensure_aware(subscription.next_billing_date) or now
        pending.kind = PlanChangeKind.DOWNGRADE
        pending.downgrade_plan_id = new_plan.id
        pending.effective_at = effective_at.isoformat()
        record = await apply_grant(
            db,
            user_id=user.id,
            tokens=0,
            bucket=TokenBucket.SUBSCRIPTION,
            context=PurchaseContext(
                session_id=f'plan-downgrade-{subscription.id}-{change_number}',
                type=PurchaseType.PLAN_CHANGE_DOWNGRADE,
                price_id=_price_id_for(new_plan, gateway),
                plan_id=new_plan.id,
                amount=charge,
                currency=new_plan.currency or 'usd',
                status=PurchaseStatus.COMPLETED,
                customer_email=user.email,
            ),
            cascade=False,
        )
        purchase = record.purchase
        data['effective_at'] = pending.effective_at
        message = (
            f'Your downgrade to the {new_plan.name} plan has been scheduled and will take effect on '
            f'{effective_at:%Y-%m-%d}. Until then, you will continue with your current plan.'
        )
    else:
        subscription.plan_id = new_plan.id
        pending.kind = None
        pending.downgrade_plan_id = None
        pending.effective_at = None
        purchase = None
        tokens_differ = int(new_plan.tokens_per_cycle or 0) != int(old_plan.tokens_per_cycle or 0)
        if kind is PlanChangeKind.UPGRADE or tokens_differ:
            purchase_type = PurchaseType.PLAN_UPGRADE if kind is PlanChangeKind.UPGRADE else PurchaseType.PLAN_CHANGE
            data['tokens_flushed'] = await reset_bucket(db, user, TokenBucket.SUBSCRIPTION, reason=purchase_type.value)
            outcome = await award_tokens_for_subscription(
                db,
                subscription,
                new_plan,
                session_id=f'plan-{kind.value}-{subscription.id}-{change_number}',
                purchase_type=purchase_type,
                amount=charge,
            )
            data['tokens_granted'] = outcome.applied
            purchase = outcome.purchase
        if kind is PlanChangeKind.UPGRADE:
            message = UPGRADE_MESSAGE
        else:
            message = f'Your subscription has been changed to the {new_plan.name} plan.'

    subscription.pending_change = pending
    if provider_error:
        data['provider_error'] = provider_error
    await db.flush()

    logger.info(
        'Subscription plan changed',
        subscription_id=subscription.id,
        user_id=user.id,
        from_plan_id=old_plan.id,
        to_plan_id=new_plan.id,
        change=kind.value,
        charge=str(charge),
        provider_error=provider_error,
    )
    return BillingResult.ok(
        message,
        subscription=subscription,
        purchase=purchase,
        balances=TokenBalances.from_user(user),
        data=data,
    )


async def change_plan(
    db: AsyncSession,
    *,
    subscription_id: int,
    new_plan_id: int,
    gateway: StripeGateway | None = None,
) -> BillingResult:
    return await run_billing_operation(
        db,
        _change_plan(db, subscription_id=subscription_id, new_plan_id=new_plan_id, gateway=gateway),
        operation='subscription plan change',
        subscription_id=subscription_id,
        new_plan_id=new_plan_id,
    )


async def _handle_subscription_updated(
    db: AsyncSession,
    *,
    stripe_subscription_id: str,
    status: str | None,
    next_billing_date: datetime | None,
    cancel_at: datetime | None,
    plan_id: int | None,
    event_id: str | None,
) -> BillingResult:
    subscription = await _lock_by_provider_id(db, stripe_subscription_id)
    changes: dict[str, Any] = {}
    was_live = subscription.is_live

    if status:
        status_value = _parse_status(status)
        if status_value != subscription.status:
            changes['status'] = status_value
            subscription.status = status_value

    next_billing_date = _ensure_aware(next_billing_date)
    if next_billing_date is not None and next_billing_date != _ensure_aware(subscription.next_billing_date):
        changes['next_billing_date'] = next_billing_date.isoformat()
        subscription.next_billing_date = next_billing_date

    cancel_at = _ensure_aware(cancel_at)
    if cancel_at is not None and cancel_at != _ensure_aware(subscription.ends_at):
        changes['cancel_at'] = cancel_at.isoformat()
        subscription.canceled_at = cancel_at
        subscription.ends_at = cancel_at

    tokens_adjusted = 0
    pending = subscription.pending_change
    if plan_id is not None and plan_id != subscription.plan_id:
        if pending.has_pending_downgrade and plan_id == pending.downgrade_plan_id:
            logger.info(
                'Provider already on scheduled downgrade plan; local change waits for renewal',
                subscription_id=subscription.id,
                plan_id=plan_id,
            )
        else:
            old_plan = await get_plan_by_id(db, subscription.plan_id)
            new_plan = await _get_plan(db, plan_id)
            changes['plan_id'] = new_plan.id
            subscription.plan_id = new_plan.id

            if old_plan is not None and was_live and subscription.is_live:
                difference = int(new_plan.tokens_per_cycle or 0) - int(old_plan.tokens_per_cycle or 0)
                if difference:
                    price_delta = abs(Decimal(str(new_plan.price or 0)) - Decimal(str(old_plan.price or 0)))
                    outcome = await apply_grant(
                        db,
                        user_id=subscription.user_id,
                        tokens=difference,
                        bucket=TokenBucket.SUBSCRIPTION,
                        context=PurchaseContext(
                            session_id=f'{event_id}-plan-change' if event_id else None,
                            type=PurchaseType.PLAN_CHANGE,
                            price_id=new_plan.resolve_stripe_price_id(settings.get_stripe_mode()),
                            plan_id=new_plan.id,
                            amount=price_delta,
                            currency=new_plan.currency or 'usd',
                        ),
                    )
                    tokens_adjusted = outcome.applied

    if not was_live and subscription.is_live:
        # subscriptions created before their first payment settled have not been granted yet
        plan = await _get_plan(db, subscription.plan_id)
        outcome = await award_tokens_for_subscription(db, subscription, plan, session_id=f'subscription-{subscription.id}')
        if not outcome.duplicate:
            tokens_adjusted += outcome.applied

    tokens_flushed = 0
    if 'status' in changes and subscription.status == SubscriptionStatus.CANCELED.value:
        tokens_flushed = await _end_subscription(db, subscription, _now_utc(), reason='subscription_canceled')

    if not changes:
        return BillingResult.ok('No changes detected', subscription=subscription, data={'changed': False})

    await db.flush()
    logger.info(
        'Subscription updated from provider',
        subscription_id=subscription.id,
        tokens_adjusted=tokens_adjusted,
        **changes,
    )
    return BillingResult.ok(
        'Subscription updated',
        subscription=subscription,
        data={
            'changed': True,
            'changes': changes,
            'tokens_adjusted': tokens_adjusted,
            'tokens_flushed': tokens_flushed,
        },
    )


async def handle_subscription_updated(
    db: AsyncSession,
    *,
    stripe_subscription_id: str,
    status: str | None = None,
    next_billing_date: datetime | None = None,
    cancel_at: datetime | None = None,
    plan_id: int | None = None,
    event_id: str | None = None,
) -> BillingResult:
    return await run_billing_operation(
        db,
        _handle_subscription_updated(
            db,
            stripe_subscription_id=stripe_subscription_id,
            status=status,
            next_billing_date=next_billing_date,
            cancel_at=cancel_at,
            plan_id=plan_id,
            event_id=event_id,
        ),
        operation='subscription webhook update',
        stripe_subscription_id=stripe_subscription_id,
    )


async def _handle_checkout_plan_change(
    db: AsyncSession,
    *,
    user_id: int,
    subscription_id: int,
    plan_id: int,
    session_id: str,
    stripe_subscription_id: str | None,
) -> BillingResult:
    subscription = await _lock_subscription(db, subscription_id)
    if subscription.user_id != user_id:
        raise NotFoundError(f'Subscription {subscription_id} not found for user {user_id}')

    existing = await get_purchase_by_session_id(db, session_id)
    if existing is not None:
        return BillingResult.ok('Plan change already applied', subscription=subscription, purchase=existing)

    new_plan = await _get_plan(db, plan_id)
    old_plan = await get_plan_by_id(db, subscription.plan_id)
    if stripe_subscription_id and subscription.stripe_subscription_id != stripe_subscription_id:
        subscription.stripe_subscription_id = stripe_subscription_id
    subscription.plan_id = new_plan.id

    purchase = None
    tokens_added = 0
    difference = int(new_plan.tokens_per_cycle or 0) - int(old_plan.tokens_per_cycle or 0) if old_plan else 0
    if difference > 0:
        outcome = await apply_grant(
            db,
            user_id=user_id,
            tokens=difference,
            bucket=TokenBucket.SUBSCRIPTION,
            context=PurchaseContext(
                session_id=session_id,
                type=PurchaseType.PLAN_CHANGE,
                price_id=new_plan.resolve_stripe_price_id(settings.get_stripe_mode()),
                plan_id=new_plan.id,
                amount=Decimal(str(new_plan.price or 0)) - Decimal(str(old_plan.price or 0)),
                currency=new_plan.currency or 'usd',
            ),
        )
        purchase = outcome.purchase
        tokens_added = outcome.applied

    await db.flush()
    logger.info(
        'Checkout plan change applied',
        subscription_id=subscription.id,
        from_plan_id=old_plan.id if old_plan else None,
        to_plan_id=new_plan.id,
        tokens_added=tokens_added,
    )
    return BillingResult.ok(
        'Plan change applied',
        subscription=subscription,
        purchase=purchase,
        data={'tokens_added': tokens_added},
    )


async def handle_checkout_plan_change(
    db: AsyncSession,
    *,
    user_id: int,
    subscription_id: int,
    plan_id: int,
    session_id: str,
    stripe_subscription_id: str | None = None,
) -> BillingResult:
    return await run_billing_operation(
        db,
        _handle_checkout_plan_change(
            db,
            user_id=user_id,
            subscription_id=subscription_id,
            plan_id=plan_id,
            session_id=session_id,
            stripe_subscription_id=stripe_subscription_id,
        ),
        operation='checkout plan change',
        user_id=user_id,
        subscription_id=subscription_id,
    )


async def get_current_subscription(db: AsyncSession, *, user_id: int) -> BillingResult:
    subscription = await get_live_subscription_for_user(db, user_id)
    if subscription is None:
        return BillingResult.fail(NotFoundError('No active subscription'))
    plan = await get_plan_by_id(db, subscription.plan_id)
    pending = subscription.pending_change
    return BillingResult.ok(
        'Subscription retrieved',
        subscription=subscription,
        data={
            'plan': {
                'id': plan.id,
                'name': plan.name,
                'price': str(plan.price),
                'interval': plan.interval,
                'tokens_per_cycle': plan.tokens_per_cycle,
            }
            if plan
            else None,
            'pending_downgrade_plan_id': pending.downgrade_plan_id if pending.has_pending_downgrade else None,
            'on_grace_period': subscription.on_grace_period(),
        },
    )


async def get_subscriptions_due_for_renewal(db: AsyncSession, *, now: datetime | None = None) -> list[Subscription]:
    return await fetch_due_for_renewal(db, now=now or _now_utc())


async def process_due_renewals(
    db: AsyncSession,
    *,
    gateway: StripeGateway | None = None,
    now: datetime | None = None,
) -> BillingResult:
    """Entry point for an external scheduler.

    Each subscription is renewed or expired in its own transaction. Provider-managed
    subscriptions are skipped: their renewals arrive as paid-invoice webhooks.
    """
    current = now or _now_utc()

    expired: list[int] = []
    for subscription_id in [item.id for item in await get_subscriptions_past_end(db, now=current)]:
        result = await expire_subscription(db, subscription_id=subscription_id, now=current)
        if result.success:
            expired.append(subscription_id)

    renewed: list[int] = []
    failed: list[int] = []
    skipped: list[int] = []
    due = await get_subscriptions_due_for_renewal(db, now=current)
    for subscription_id, provider_id in [(item.id, item.stripe_subscription_id) for item in due]:
        if provider_id:
            skipped.append(subscription_id)
            continue
        result = await process_renewal(db, subscription_id=subscription_id, gateway=gateway, now=current)
        (renewed if result.success else failed).append(subscription_id)

    logger.info(
        'Renewal sweep finished',
        renewed=len(renewed),
        expired=len(expired),
        failed=len(failed),
        skipped_provider_managed=len(skipped),
    )
    return BillingResult.ok(
        'Renewal sweep completed',
        data={'renewed': renewed, 'expired': expired, 'failed': failed, 'skipped': skipped},
    )
