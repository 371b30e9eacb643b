from datetime import UTC, datetime

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import (
    MilestoneAward,
    MilestoneReward,
    Referral,
    ReferralTier,
    SalesMilestoneTier,
    UserBadge,
)


async def get_referral_for_referred(
    db: AsyncSession,
    referred_id: int,
    *,
    for_update: bool = False,
) -> Referral | None:
    query = select(Referral).where(Referral.referred_id == referred_id).order_by(Referral.id).limit(1)
    if for_update:
        query = query.with_for_update()
    return (await db.execute(query)).scalar_one_or_none()


async def get_referral_by_pair(db: AsyncSession, *, referrer_id: int, referred_id: int) -> Referral | None:
    result = await db.execute(
        select(Referral).where(Referral.referrer_id == referrer_id, Referral.referred_id == referred_id)
    )
    return result.scalar_one_or_none()


async def create_referral(
    db: AsyncSession,
    *,
    referrer_id: int,
    referred_id: int,
    referral_code: str,
    referred_email: str | None = None,
) -> Referral:
    referral = Referral(
        referrer_id=referrer_id,
        referred_id=referred_id,
        referral_code=referral_code,
        referred_email=referred_email,
        is_converted=False,
        tokens_awarded=0,
    )
    db.add(referral)
    await db.flush()
    return referral


async def list_referrals_for_referrer(db: AsyncSession, referrer_id: int) -> list[Referral]:
    result = await db.execute(
        select(Referral).where(Referral.referrer_id == referrer_id).order_by(Referral.created_at.desc())
    )
    return list(result.scalars().all())


async def get_referral_tier_for_count(db: AsyncSession, referral_count: int) -> ReferralTier | None:
    result = await db.execute(
        select(ReferralTier)
        .where(
            ReferralTier.min_referrals <= referral_count,
            or_(ReferralTier.max_referrals >= referral_count, ReferralTier.max_referrals.is_(None)),
        )
        .order_by(ReferralTier.min_referrals.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_next_referral_tier(db: AsyncSession, referral_count: int) -> ReferralTier | None:
    result = await db.execute(
        select(ReferralTier)
        .where(ReferralTier.min_referrals > referral_count)
        .order_by(ReferralTier.min_referrals.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_sales_tier_for_count(db: AsyncSession, sales_count: int) -> SalesMilestoneTier | None:
    result = await db.execute(
        select(SalesMilestoneTier)
        .where(SalesMilestoneTier.required_sales <= sales_count)
        .order_by(SalesMilestoneTier.required_sales.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_next_sales_tier(db: AsyncSession, sales_count: int) -> SalesMilestoneTier | None:
    result = await db.execute(
        select(SalesMilestoneTier)
        .where(SalesMilestoneTier.required_sales > sales_count)
        .order_by(SalesMilestoneTier.required_sales.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_user_badge(db: AsyncSession, *, user_id: int, badge_type: str) -> UserBadge | None:
    result = await db.execute(
        select(UserBadge).where(UserBadge.user_id == user_id, UserBadge.badge_type == badge_type)
    )
    return result.scalar_one_or_none()


async def upsert_user_badge(
    db: AsyncSession,
    *,
    user_id: int,
    badge_type: str,
    badge_level: str | None,
    description: str | None,
) -> UserBadge:
    badge = await get_user_badge(db, user_id=user_id, badge_type=badge_type)
    if badge is None:
        badge = UserBadge(user_id=user_id, badge_type=badge_type)
        db.add(badge)
    badge.badge_level = badge_level
    badge.description = description
    badge.awarded_at = datetime.now(UTC)
    await db.flush()
    return badge


async def get_milestone_award(
    db: AsyncSession,
    *,
    user_id: int,
    program: str,
    tier_id: int,
) -> MilestoneAward | None:
    result = await db.execute(
        select(MilestoneAward).where(
            MilestoneAward.user_id == user_id,
            MilestoneAward.program == program,
            MilestoneAward.tier_id == tier_id,
        )
    )
    return result.scalar_one_or_none()


async def create_milestone_award(
    db: AsyncSession,
    *,
    user_id: int,
    program: str,
    tier_id: int,
    tier_name: str | None,
    count_at_award: int,
) -> MilestoneAward:
    award = MilestoneAward(
        user_id=user_id,
        program=program,
        tier_id=tier_id,
        tier_name=tier_name,
        count_at_award=count_at_award,
    )
    db.add(award)
    await db.flush()
    return award


async def create_milestone_reward(
    db: AsyncSession,
    *,
    award: MilestoneAward,
    reward_type: str,
    status: str,
    value: dict | None = None,
    plan_id: int | None = None,
) -> MilestoneReward:
    reward = MilestoneReward(
        user_id=award.user_id,
        award_id=award.id,
        program=award.program,
        reward_type=reward_type,
        plan_id=plan_id,
        value=value or {},
        status=status,
    )
    db.add(reward)
    await db.flush()
    return reward


async def list_milestone_awards(db: AsyncSession, *, user_id: int, program: str) -> list[MilestoneAward]:
    result = await db.execute(
        select(MilestoneAward)
        .where(MilestoneAward.user_id == user_id, MilestoneAward.program == program)
        .order_by(MilestoneAward.awarded_at.desc())
    )
    return list(result.scalars().all())


async def list_milestone_rewards(db: AsyncSession, *, user_id: int, program: str) -> list[MilestoneReward]:
    result = await db.execute(
        select(MilestoneReward)
        .where(MilestoneReward.user_id == user_id, MilestoneReward.program == program)
        .order_by(MilestoneReward.created_at.desc())
    )
    return list(result.scalars().all())


async def count_referrals_by_status(db: AsyncSession, referrer_id: int) -> tuple[int, int, int]:
    """Returns (total, converted, tokens earned) for a referrer."""
    result = await db.execute(
        select(
            func.count(Referral.id),
            func.count(Referral.id).filter(Referral.is_converted.is_(True)),
            func.coalesce(func.sum(Referral.tokens_awarded), 0),
        ).where(Referral.referrer_id == referrer_id)
    )
    total, converted, earned = result.one()
    return int(total or 0), int(converted or 0), int(earned or 0)
