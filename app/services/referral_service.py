from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database.crud.referral import (
    count_referrals_by_status,
    create_referral,
    get_next_referral_tier,
    get_referral_by_pair,
    get_referral_for_referred,
    get_referral_tier_for_count,
    get_user_badge,
    list_referrals_for_referrer,
)
from app.database.crud.user import get_user_by_id, get_user_by_referral_code, referral_code_exists
from app.database.models import (
    MilestoneProgram,
    Purchase,
    PurchaseStatus,
    PurchaseType,
    Referral,
    ReferralTier,
    TokenBucket,
    User,
)
from app.services.billing_result import (
    BillingResult,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    UserNotFoundError,
    run_billing_operation,
)
from app.services.milestone_service import award_tier_milestone
from app.services.token_ledger_service import PurchaseContext, apply_grant


logger = structlog.get_logger(__name__)

REFERRAL_CODE_ALPHABET = string.ascii_lowercase + string.digits
MAX_CODE_ATTEMPTS = 25


@dataclass
class ReferralConversion:
    referral: Referral
    referrer_id: int
    referrer_tokens: int
    referee_tokens: int
    first_conversion: bool
    tier_awarded: bool


def _now_utc() -> datetime:
    return datetime.now(UTC)


def referral_code_prefix(first_name: str | None) -> str:
    cleaned = re.sub(r'[^a-z0-9]', '', (first_name or '').lower())
    return cleaned or 'user'


def calculate_referral_reward(tokens: int) -> int:
    return max(0, int(tokens) * settings.REFERRAL_REWARD_PERCENT // 100)


async def generate_referral_code(db: AsyncSession, first_name: str | None) -> str:
    prefix = referral_code_prefix(first_name)
    for _ in range(MAX_CODE_ATTEMPTS):
        suffix = ''.join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(settings.REFERRAL_CODE_SUFFIX_LENGTH))
        code = f'{prefix}_{suffix}'
        if not await referral_code_exists(db, code):
            return code
    raise PersistenceError('Could not generate a unique referral code')


async def _ensure_referral_code(db: AsyncSession, user: User) -> str:
    if not user.referral_code:
        user.referral_code = await generate_referral_code(db, user.first_name)
        user.referral_code_created_at = _now_utc()
        await db.flush()
    return user.referral_code


async def _process_new_user_referral(db: AsyncSession, *, user_id: int, referral_code: str) -> BillingResult:
    new_user = await get_user_by_id(db, user_id, for_update=True)
    if new_user is None:
        raise UserNotFoundError(user_id)

    referrer = await get_user_by_referral_code(db, referral_code)
    if referrer is None:
        raise NotFoundError('Invalid referral code')
    if referrer.id == new_user.id:
        raise InvalidStateError('Users cannot refer themselves')
    if referrer.referred_by_id == new_user.id:
        raise InvalidStateError('Users cannot refer the person who referred them')
    if new_user.referred_by_id is not None and new_user.referred_by_id != referrer.id:
        raise InvalidStateError('User has already been referred')

    existing = await get_referral_by_pair(db, referrer_id=referrer.id, referred_id=new_user.id)
    if existing is not None:
        return BillingResult.ok('Referral already recorded', data={'referral_id': existing.id})

    referrer = await get_user_by_id(db, referrer.id, for_update=True)
    new_user.referred_by_id = referrer.id
    referral = await create_referral(
        db,
        referrer_id=referrer.id,
        referred_id=new_user.id,
        referral_code=referrer.referral_code,
        referred_email=new_user.email,
    )
    referrer.referral_count = (referrer.referral_count or 0) + 1

    logger.info('Referral recorded', referrer_id=referrer.id, referred_id=new_user.id, referral_id=referral.id)
    return BillingResult.ok(
        'Referral recorded successfully',
        data={'referral_id': referral.id, 'referrer_id': referrer.id, 'referral_count': referrer.referral_count},
    )


async def process_new_user_referral(db: AsyncSession, *, user_id: int, referral_code: str) -> BillingResult:
    return await run_billing_operation(
        db,
        _process_new_user_referral(db, user_id=user_id, referral_code=referral_code),
        operation='referral registration',
        user_id=user_id,
    )


async def convert_referral(
    db: AsyncSession,
    *,
    referral: Referral,
    referred_user: User,
    purchase: Purchase,
    custom_tokens: int | None = None,
) -> ReferralConversion | None:
    """Reward the referrer for ``purchase``; runs inside the caller's transaction."""
    referrer = await get_user_by_id(db, referral.referrer_id, for_update=True)
    if referrer is None:
        logger.warning('Referrer missing for referral', referral_id=referral.id, referrer_id=referral.referrer_id)
        return None

    tier: ReferralTier | None = await get_referral_tier_for_count(db, referrer.referral_count or 0)
    if custom_tokens is not None:
        referrer_tokens = custom_tokens
    else:
        referrer_tokens = tier.referrer_tokens if tier else settings.DEFAULT_REFERRER_TOKENS
    referee_tokens = tier.referee_tokens if tier else settings.DEFAULT_REFEREE_TOKENS

    reward = await apply_grant(
        db,
        user_id=referrer.id,
        tokens=referrer_tokens,
        bucket=TokenBucket.FREE,
        context=PurchaseContext(
            session_id=f'referral-{purchase.session_id}',
            type=PurchaseType.REFERRAL_REWARD,
            currency=purchase.currency or 'usd',
            status=PurchaseStatus.COMPLETED,
        ),
        cascade=False,
    )
    if reward.duplicate:
        return None

    first_conversion = not referral.is_converted
    referral.is_converted = True
    referral.tokens_awarded = (referral.tokens_awarded or 0) + reward.applied
    if first_conversion:
        referral.converted_at = _now_utc()

    purchase.referrer_id = referrer.id
    purchase.tokens_awarded = reward.applied

    granted_referee = 0
    if first_conversion and referee_tokens > 0:
        bonus = await apply_grant(
            db,
            user_id=referred_user.id,
            tokens=referee_tokens,
            bucket=TokenBucket.FREE,
            context=PurchaseContext(
                session_id=f'referral-welcome-{referral.id}',
                type=PurchaseType.REFERRAL_BONUS,
                status=PurchaseStatus.COMPLETED,
            ),
            cascade=False,
        )
        granted_referee = bonus.applied

    tier_awarded = False
    if tier is not None:
        outcome = await award_tier_milestone(
            db,
            user_id=referrer.id,
            program=MilestoneProgram.REFERRAL,
            tier=tier,
            count=referrer.referral_count or 0,
            badge_description=f'Achieved {tier.name} with {referrer.referral_count or 0} referrals',
        )
        tier_awarded = outcome is not None

    await db.flush()
    logger.info(
        'Referral converted',
        referral_id=referral.id,
        referrer_id=referrer.id,
        referred_id=referred_user.id,
        referrer_tokens=reward.applied,
        referee_tokens=granted_referee,
        tokens_awarded_total=referral.tokens_awarded,
    )
    return ReferralConversion(
        referral=referral,
        referrer_id=referrer.id,
        referrer_tokens=reward.applied,
        referee_tokens=granted_referee,
        first_conversion=first_conversion,
        tier_awarded=tier_awarded,
    )


async def apply_referral_cascade(
    db: AsyncSession,
    *,
    referred_user: User,
    purchase: Purchase,
) -> ReferralConversion | None:
    """Called by the ledger after every credit; every purchase earns the referrer a share."""
    if purchase.referrer_id is not None:
        return None

    referral = await get_referral_for_referred(db, referred_user.id, for_update=True)
    if referral is None or referral.referrer_id == referred_user.id:
        return None

    reward = calculate_referral_reward(purchase.tokens or 0)
    if reward <= 0:
        return None

    return await convert_referral(
        db,
        referral=referral,
        referred_user=referred_user,
        purchase=purchase,
        custom_tokens=reward,
    )


def _tier_payload(tier: ReferralTier | None) -> dict | None:
    if tier is None:
        return None
    return {
        'id': tier.id,
        'name': tier.name,
        'badge': tier.badge,
        'min_referrals': tier.min_referrals,
        'max_referrals': tier.max_referrals,
        'referrer_tokens': tier.referrer_tokens,
        'referee_tokens': tier.referee_tokens,
        'subscription_reward': tier.subscription_reward,
        'subscription_months': tier.subscription_months,
    }


async def _get_user_referral_status(db: AsyncSession, *, user_id: int) -> BillingResult:
    user = await get_user_by_id(db, user_id)
    if user is None:
        raise UserNotFoundError(user_id)

    code = await _ensure_referral_code(db, user)
    referral_count = user.referral_count or 0
    total, converted, earned = await count_referrals_by_status(db, user.id)
    current_tier = await get_referral_tier_for_count(db, referral_count)
    next_tier = await get_next_referral_tier(db, referral_count)
    badge = await get_user_badge(db, user_id=user.id, badge_type=MilestoneProgram.REFERRAL.value)
    referrals = await list_referrals_for_referrer(db, user.id)

    next_payload = _tier_payload(next_tier)
    if next_payload is not None:
        next_payload['referrals_needed'] = max(0, next_tier.min_referrals - referral_count)

    return BillingResult.ok(
        'Referral status retrieved',
        data={
            'referral_code': code,
            'referral_count': referral_count,
            'stats': {
                'total': total,
                'pending': total - converted,
                'converted': converted,
                'total_tokens_earned': earned,
            },
            'current_tier': _tier_payload(current_tier),
            'next_tier': next_payload,
            'badge': (
                {'level': badge.badge_level, 'description': badge.description, 'awarded_at': badge.awarded_at}
                if badge
                else None
            ),
            'referrals': [
                {
                    'id': referral.id,
                    'referred_email': referral.referred_email,
                    'is_converted': referral.is_converted,
                    'tokens_awarded': referral.tokens_awarded,
                    'converted_at': referral.converted_at,
                    'created_at': referral.created_at,
                }
                for referral in referrals
            ],
        },
    )


async def get_user_referral_status(db: AsyncSession, *, user_id: int) -> BillingResult:
    return await run_billing_operation(
        db,
        _get_user_referral_status(db, user_id=user_id),
        operation='referral status',
        user_id=user_id,
    )
