from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.cabinet.schemas.billing import (
    BillingActionResponse,
    CancelSubscriptionRequest,
    ChangePlanRequest,
    CreateSubscriptionRequest,
)
from app.database.crud.subscription import get_subscription_by_id
from app.database.models import Subscription, User
from app.services.stripe_gateway import StripeGateway
from app.services.subscription_service import (
    cancel_subscription,
    change_plan,
    create_subscription,
    get_current_subscription,
    resume_subscription,
)

from ..dependencies import ensure_success, get_cabinet_db, get_current_cabinet_user, get_stripe_gateway


router = APIRouter(prefix='/billing/subscriptions', tags=['Cabinet Subscriptions'])


async def _get_owned_subscription(db: AsyncSession, user: User, subscription_id: int) -> Subscription:
    subscription = await get_subscription_by_id(db, subscription_id)
    if subscription is None or subscription.user_id != user.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Subscription not found')
    return subscription


@router.get('/current', response_model=BillingActionResponse)
async def current_subscription(
    user: User = Depends(get_current_cabinet_user),
    db: AsyncSession = Depends(get_cabinet_db),
):
    result = await get_current_subscription(db, user_id=user.id)
    return BillingActionResponse.from_result(ensure_success(result))


@router.post('', response_model=BillingActionResponse)
async def subscribe(
    payload: CreateSubscriptionRequest,
    user: User = Depends(get_current_cabinet_user),
    db: AsyncSession = Depends(get_cabinet_db),
):
    result = await create_subscription(
        db,
        user_id=user.id,
        plan_id=payload.plan_id,
        stripe_subscription_id=payload.stripe_subscription_id,
        status=payload.status,
        trial_ends_at=payload.trial_ends_at,
    )
    return BillingActionResponse.from_result(ensure_success(result))


@router.post('/{subscription_id}/cancel', response_model=BillingActionResponse)
async def cancel(
    subscription_id: int,
    payload: CancelSubscriptionRequest,
    user: User = Depends(get_current_cabinet_user),
    db: AsyncSession = Depends(get_cabinet_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    await _get_owned_subscription(db, user, subscription_id)
    result = await cancel_subscription(db, subscription_id=subscription_id, immediate=payload.immediate, gateway=gateway)
    return BillingActionResponse.from_result(ensure_success(result))


@router.post('/{subscription_id}/resume', response_model=BillingActionResponse)
async def resume(
    subscription_id: int,
    user: User = Depends(get_current_cabinet_user),
    db: AsyncSession = Depends(get_cabinet_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    await _get_owned_subscription(db, user, subscription_id)
    result = await resume_subscription(db, subscription_id=subscription_id, gateway=gateway)
    return BillingActionResponse.from_result(ensure_success(result))


@router.post('/{subscription_id}/change-plan', response_model=BillingActionResponse)
async def change_subscription_plan(
    subscription_id: int,
    payload: ChangePlanRequest,
    user: User = Depends(get_current_cabinet_user),
    db: AsyncSession = Depends(get_cabinet_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    await _get_owned_subscription(db, user, subscription_id)
    result = await change_plan(db, subscription_id=subscription_id, new_plan_id=payload.plan_id, gateway=gateway)
    return BillingActionResponse.from_result(ensure_success(result))
