from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Literal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.crud.affiliate import create_affiliate_sale, get_affiliate_leaderboard as fetch_leaderboard
from app.database.crud.plan import get_plan_by_id
from app.database.crud.referral import (
    get_next_sales_tier,
    get_sales_tier_for_count,
    get_user_badge,
    list_milestone_awards,
    list_milestone_rewards,
)
from app.database.crud.subscription import get_subscription_by_id
from app.database.crud.user import get_user_by_id
from app.database.models import MilestoneProgram, SalesMilestoneTier, User
from app.services.billing_result import (
    BillingResult,
    InvalidStateError,
    NotFoundError,
    UserNotFoundError,
    run_billing_operation,
)
from app.services.milestone_service import award_tier_milestone


logger = structlog.get_logger(__name__)

LeaderboardPeriod = Literal['all', 'month', 'year']


def _tier_payload(tier: SalesMilestoneTier | None) -> dict | None:
    if tier is None:
        return None
    return {
        'id': tier.id,
        'name': tier.name,
        'badge': tier.badge,
        'required_sales': tier.required_sales,
        'subscription_reward': tier.subscription_reward,
        'subscription_months': tier.subscription_months,
        'cash_bonus': str(tier.cash_bonus or 0),
        'has_physical_plaque': bool(tier.has_physical_plaque),
        'perks': tier.perks or [],
    }


async def check_and_award_milestone(db: AsyncSession, affiliate: User) -> dict:
    sales_count = affiliate.sales_count or 0
    tier = await get_sales_tier_for_count(db, sales_count)
    if tier is None:
        return {'milestone_reached': False}

    outcome = await award_tier_milestone(
        db,
        user_id=affiliate.id,
        program=MilestoneProgram.AFFILIATE,
        tier=tier,
        count=sales_count,
        badge_description=f'Achieved {tier.name} with {sales_count} sales',
    )
    if outcome is None:
        return {'milestone_reached': False, 'tier': _tier_payload(tier)}

    return {
        'milestone_reached': True,
        'tier': _tier_payload(tier),
        'badge': outcome.badge.badge_level if outcome.badge else None,
        'rewards': outcome.rewards,
    }


async def _track_affiliate_sale(
    db: AsyncSession,
    *,
    affiliate_id: int,
    customer_id: int,
    subscription_id: int,
    amount: Decimal | None,
) -> BillingResult:
    if affiliate_id == customer_id:
        raise InvalidStateError('Affiliates cannot earn sales from their own purchases')

    affiliate = await get_user_by_id(db, affiliate_id, for_update=True)
    if affiliate is None:
        raise UserNotFoundError(affiliate_id)
    customer = await get_user_by_id(db, customer_id)
    if customer is None:
        raise UserNotFoundError(customer_id)

    subscription = await get_subscription_by_id(db, subscription_id)
    if subscription is None or subscription.user_id != customer.id:
        raise NotFoundError('Subscription not found for customer')

    if amount is None:
        plan = await get_plan_by_id(db, subscription.plan_id)
        amount = Decimal(str(plan.price or 0)) if plan else Decimal('0')

    sale = await create_affiliate_sale(
        db,
        affiliate_id=affiliate.id,
        customer_id=customer.id,
        subscription_id=subscription.id,
        plan_id=subscription.plan_id,
        amount=Decimal(str(amount)),
    )
    affiliate.sales_count = (affiliate.sales_count or 0) + 1
    milestone = await check_and_award_milestone(db, affiliate)

    logger.info(
        'Affiliate sale tracked',
        affiliate_id=affiliate.id,
        customer_id=customer.id,
        sale_id=sale.id,
        sales_count=affiliate.sales_count,
        milestone_reached=milestone['milestone_reached'],
    )
    return BillingResult.ok(
        'Affiliate sale tracked successfully',
        data={'sale_id': sale.id, 'sales_count': affiliate.sales_count, **milestone},
    )


async def track_affiliate_sale(
    db: AsyncSession,
    *,
    affiliate_id: int,
    customer_id: int,
    subscription_id: int,
    amount: Decimal | None = None,
) -> BillingResult:
    return await run_billing_operation(
        db,
        _track_affiliate_sale(
            db,
            affiliate_id=affiliate_id,
            customer_id=customer_id,
            subscription_id=subscription_id,
            amount=amount,
        ),
        operation='affiliate sale',
        affiliate_id=affiliate_id,
        customer_id=customer_id,
    )


async def get_affiliate_status(db: AsyncSession, *, user_id: int) -> BillingResult:
    user = await get_user_by_id(db, user_id)
    if user is None:
        return BillingResult.fail(UserNotFoundError(user_id))

    sales_count = user.sales_count or 0
    current_tier = await get_sales_tier_for_count(db, sales_count)
    next_tier = await get_next_sales_tier(db, sales_count)
    badge = await get_user_badge(db, user_id=user.id, badge_type=MilestoneProgram.AFFILIATE.value)
    rewards = await list_milestone_rewards(db, user_id=user.id, program=MilestoneProgram.AFFILIATE.value)
    milestones = await list_milestone_awards(db, user_id=user.id, program=MilestoneProgram.AFFILIATE.value)

    next_payload = _tier_payload(next_tier)
    if next_payload is not None:
        next_payload['sales_needed'] = max(0, next_tier.required_sales - sales_count)

    return BillingResult.ok(
        'Affiliate status retrieved',
        data={
            'sales_count': sales_count,
            'current_tier': _tier_payload(current_tier),
            'next_tier': next_payload,
            'badge': {'level': badge.badge_level, 'description': badge.description} if badge else None,
            'rewards': [
                {'id': reward.id, 'type': reward.reward_type, 'value': reward.value, 'status': reward.status}
                for reward in rewards
            ],
            'milestones': [
                {'tier_id': award.tier_id, 'tier': award.tier_name, 'awarded_at': award.awarded_at}
                for award in milestones
            ],
        },
    )


def leaderboard_window_start(period: LeaderboardPeriod, now: datetime | None = None) -> datetime | None:
    current = now or datetime.now(UTC)
    if period == 'month':
        return current.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if period == 'year':
        return current.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return None


async def get_affiliate_leaderboard(
    db: AsyncSession,
    *,
    limit: int = 10,
    period: LeaderboardPeriod = 'all',
) -> BillingResult:
    rows = await fetch_leaderboard(db, limit=limit, since=leaderboard_window_start(period))
    return BillingResult.ok('Affiliate leaderboard retrieved', data={'period': period, 'leaderboard': rows})
