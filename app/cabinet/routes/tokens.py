from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.cabinet.schemas.billing import (
    BillingActionResponse,
    DeductTokensRequest,
    PurchaseConfirmRequest,
    TokenBalancesResponse,
)
from app.database.models import User
from app.services.billing_result import TokenBalances
from app.services.price_catalog import PriceCatalog
from app.services.purchase_service import confirm_direct_purchase
from app.services.stripe_gateway import StripeGateway
from app.services.token_ledger_service import deduct_tokens

from ..dependencies import (
    ensure_success,
    get_cabinet_db,
    get_current_cabinet_user,
    get_price_catalog,
    get_stripe_gateway,
)


router = APIRouter(prefix='/billing', tags=['Cabinet Billing'])


@router.get('/tokens', response_model=TokenBalancesResponse)
async def token_balances(user: User = Depends(get_current_cabinet_user)):
    return TokenBalancesResponse(**TokenBalances.from_user(user).as_dict())


@router.post('/tokens/deduct', response_model=BillingActionResponse)
async def deduct_user_tokens(
    payload: DeductTokensRequest,
    user: User = Depends(get_current_cabinet_user),
    db: AsyncSession = Depends(get_cabinet_db),
):
    result = await deduct_tokens(
        db,
        user_id=user.id,
        amount=payload.amount,
        reason=payload.reason,
        bucket_priority=payload.bucket_priority,
        model=payload.model,
        analysis_type=payload.analysis_type,
        input_tokens=payload.input_tokens,
        output_tokens=payload.output_tokens,
    )
    return BillingActionResponse.from_result(ensure_success(result))


@router.post('/purchase/confirm', response_model=BillingActionResponse)
async def confirm_purchase(
    payload: PurchaseConfirmRequest,
    user: User = Depends(get_current_cabinet_user),
    db: AsyncSession = Depends(get_cabinet_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    catalog: PriceCatalog = Depends(get_price_catalog),
):
    result = await confirm_direct_purchase(
        db,
        price_id=payload.price_id,
        user_id=user.id,
        customer_info=payload.customer_info.model_dump() if payload.customer_info else None,
        gateway=gateway,
        catalog=catalog,
    )
    return BillingActionResponse.from_result(ensure_success(result))
