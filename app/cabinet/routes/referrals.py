from typing import Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.cabinet.schemas.billing import ApplyReferralRequest, BillingActionResponse, TrackSaleRequest
from app.database.models import User
from app.services.affiliate_service import get_affiliate_leaderboard, get_affiliate_status, track_affiliate_sale
from app.services.referral_service import get_user_referral_status, process_new_user_referral

from ..dependencies import ensure_success, get_cabinet_db, get_current_cabinet_user


router = APIRouter(prefix='/billing', tags=['Cabinet Referrals'])


@router.get('/referrals', response_model=BillingActionResponse)
async def referral_status(
    user: User = Depends(get_current_cabinet_user),
    db: AsyncSession = Depends(get_cabinet_db),
):
    result = await get_user_referral_status(db, user_id=user.id)
    return BillingActionResponse.from_result(ensure_success(result))


@router.post('/referrals/apply', response_model=BillingActionResponse)
async def apply_referral_code(
    payload: ApplyReferralRequest,
    user: User = Depends(get_current_cabinet_user),
    db: AsyncSession = Depends(get_cabinet_db),
):
    result = await process_new_user_referral(db, user_id=user.id, referral_code=payload.referral_code)
    return BillingActionResponse.from_result(ensure_success(result))


@router.get('/affiliates', response_model=BillingActionResponse)
async def affiliate_status(
    user: User = Depends(get_current_cabinet_user),
    db: AsyncSession = Depends(get_cabinet_db),
):
    result = await get_affiliate_status(db, user_id=user.id)
    return BillingActionResponse.from_result(ensure_success(result))


@router.get('/affiliates/leaderboard', response_model=BillingActionResponse)
async def affiliate_leaderboard(
    period: Literal['all', 'month', 'year'] = Query('all'),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_cabinet_db),
):
    result = await get_affiliate_leaderboard(db, limit=limit, period=period)
    return BillingActionResponse.from_result(ensure_success(result))


@router.post('/affiliates/track-sale', response_model=BillingActionResponse)
async def track_sale(
    payload: TrackSaleRequest,
    user: User = Depends(get_current_cabinet_user),
    db: AsyncSession = Depends(get_cabinet_db),
):
    result = await track_affiliate_sale(
        db,
        affiliate_id=payload.affiliate_id,
        customer_id=user.id,
        subscription_id=payload.subscription_id,
    )
    return BillingActionResponse.from_result(ensure_success(result))
