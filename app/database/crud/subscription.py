from datetime import datetime

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import LIVE_SUBSCRIPTION_STATUSES, Plan, Subscription, SubscriptionStatus


async def get_subscription_by_id(
    db: AsyncSession,
    subscription_id: int,
    *,
    for_update: bool = False,
) -> Subscription | None:
    query = select(Subscription).where(Subscription.id == subscription_id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_subscription_by_stripe_id(
    db: AsyncSession,
    stripe_subscription_id: str,
    *,
    for_update: bool = False,
    exact: bool = False,
) -> Subscription | None:
    """Exact provider id match first, then a substring match on the stored id."""
    query = select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    if for_update:
        query = query.with_for_update()
    subscription = (await db.execute(query.limit(1))).scalar_one_or_none()
    if subscription is not None or exact:
        return subscription

    fuzzy = (
        select(Subscription)
        .where(Subscription.stripe_subscription_id.contains(stripe_subscription_id, autoescape=True))
        .order_by(Subscription.id.desc())
        .limit(1)
    )
    if for_update:
        fuzzy = fuzzy.with_for_update()
    return (await db.execute(fuzzy)).scalar_one_or_none()


async def get_live_subscription_for_user(
    db: AsyncSession,
    user_id: int,
    *,
    for_update: bool = False,
) -> Subscription | None:
    query = (
        select(Subscription)
        .where(Subscription.user_id == user_id, Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES))
        .order_by(Subscription.id.desc())
        .limit(1)
    )
    if for_update:
        query = query.with_for_update()
    return (await db.execute(query)).scalar_one_or_none()


async def has_other_free_plan_subscription(
    db: AsyncSession,
    *,
    user_id: int,
    exclude_subscription_id: int | None,
    free_plan_name: str,
) -> bool:
    query = (
        select(func.count(Subscription.id))
        .join(Plan, Plan.id == Subscription.plan_id)
        .where(
            Subscription.user_id == user_id,
            Plan.name == free_plan_name,
            Plan.price == 0,
        )
    )
    if exclude_subscription_id is not None:
        query = query.where(Subscription.id != exclude_subscription_id)
    return int((await db.execute(query)).scalar() or 0) > 0


async def get_subscriptions_due_for_renewal(db: AsyncSession, *, now: datetime) -> list[Subscription]:
    query = select(Subscription).where(
        Subscription.status == SubscriptionStatus.ACTIVE.value,
        Subscription.next_billing_date <= now,
        or_(
            Subscription.canceled_at.is_(None),
            and_(Subscription.canceled_at.is_not(None), Subscription.ends_at > now),
        ),
    )
    return list((await db.execute(query.order_by(Subscription.next_billing_date))).scalars().all())


async def get_subscriptions_past_end(db: AsyncSession, *, now: datetime) -> list[Subscription]:
    """Live subscriptions cancelled at period end whose period has elapsed."""
    query = select(Subscription).where(
        Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
        Subscription.canceled_at.is_not(None),
        Subscription.ends_at <= now,
    )
    return list((await db.execute(query.order_by(Subscription.ends_at))).scalars().all())
