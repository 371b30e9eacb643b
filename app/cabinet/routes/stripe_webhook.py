from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.cabinet.schemas.billing import WebhookAckResponse
from app.services.billing_result import InvalidStateError
from app.services.price_catalog import PriceCatalog
from app.services.stripe_gateway import StripeGateway
from app.services.webhook_dispatcher import dispatch_event

from ..dependencies import get_cabinet_db, get_price_catalog, get_stripe_gateway


router = APIRouter(prefix='/webhooks', tags=['Webhooks'])


@router.post('/stripe', response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_cabinet_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    catalog: PriceCatalog = Depends(get_price_catalog),
):
    payload = await request.body()
    try:
        event = gateway.construct_event(payload, request.headers.get('stripe-signature'))
    except InvalidStateError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc

    return await dispatch_event(db, event, gateway=gateway, catalog=catalog)
