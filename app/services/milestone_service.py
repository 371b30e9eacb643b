from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.crud.referral import (
    create_milestone_award,
    create_milestone_reward,
    get_milestone_award,
    upsert_user_badge,
)
from app.database.models import MilestoneAward, MilestoneProgram, RewardStatus, RewardType, UserBadge


logger = structlog.get_logger(__name__)


@dataclass
class MilestoneOutcome:
    award: MilestoneAward
    badge: UserBadge | None
    rewards: list[dict[str, Any]] = field(default_factory=list)


async def award_tier_milestone(
    db: AsyncSession,
    *,
    user_id: int,
    program: MilestoneProgram,
    tier: Any,
    count: int,
    badge_description: str,
) -> MilestoneOutcome | None:
    """Award ``tier`` once per user and program; returns None when already awarded.

    ``tier`` is a ReferralTier or SalesMilestoneTier; cash and plaque rewards only
    exist on sales tiers.
    """
    existing = await get_milestone_award(db, user_id=user_id, program=program.value, tier_id=tier.id)
    if existing is not None:
        return None

    award = await create_milestone_award(
        db,
        user_id=user_id,
        program=program.value,
        tier_id=tier.id,
        tier_name=tier.name,
        count_at_award=count,
    )

    badge = None
    if tier.badge:
        badge = await upsert_user_badge(
            db,
            user_id=user_id,
            badge_type=program.value,
            badge_level=tier.badge,
            description=badge_description,
        )

    rewards: list[dict[str, Any]] = []
    if tier.subscription_reward:
        value = {'plan_type': tier.subscription_reward, 'months': tier.subscription_months or 1}
        await create_milestone_reward(
            db,
            award=award,
            reward_type=RewardType.SUBSCRIPTION.value,
            status=RewardStatus.AWARDED.value,
            value=value,
        )
        rewards.append({'type': RewardType.SUBSCRIPTION.value, **value})

    cash_bonus = Decimal(str(getattr(tier, 'cash_bonus', 0) or 0))
    if cash_bonus > 0:
        await create_milestone_reward(
            db,
            award=award,
            reward_type=RewardType.CASH.value,
            status=RewardStatus.PENDING.value,
            value={'amount': str(cash_bonus)},
        )
        rewards.append({'type': RewardType.CASH.value, 'amount': str(cash_bonus)})

    if getattr(tier, 'has_physical_plaque', False):
        await create_milestone_reward(
            db,
            award=award,
            reward_type=RewardType.PLAQUE.value,
            status=RewardStatus.PENDING.value,
            value={'tier': tier.name},
        )
        rewards.append({'type': RewardType.PLAQUE.value, 'tier': tier.name})

    logger.info(
        'Milestone tier awarded',
        user_id=user_id,
        program=program.value,
        tier=tier.name,
        count=count,
        rewards=[reward['type'] for reward in rewards],
    )
    return MilestoneOutcome(award=award, badge=badge, rewards=rewards)
