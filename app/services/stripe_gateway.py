from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import stripe
import structlog

from app.config import settings
from app.services.billing_result import ExternalProviderError, InvalidStateError


logger = structlog.get_logger(__name__)


def get_stripe_value(obj: Any, attr: str, default: Any = None) -> Any:
    """Read a field from a Stripe object, a plain dict or ``None``."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(attr, default)
    else:
        try:
            value = obj[attr]
        except (KeyError, TypeError, IndexError):
            value = getattr(obj, attr, default)
    return default if value is None else value


def metadata_to_dict(metadata: Any) -> dict[str, Any]:
    if metadata is None:
        return {}
    if isinstance(metadata, dict):
        return dict(metadata)
    to_dict = getattr(metadata, 'to_dict', None)
    if callable(to_dict):
        return dict(to_dict())
    try:
        return dict(metadata)
    except (TypeError, ValueError):
        return {}


def stripe_timestamp(value: Any) -> datetime | None:
    """Convert a Stripe epoch-seconds field into an aware datetime."""
    if value in (None, '', 0):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    try:
        return datetime.fromtimestamp(int(value), UTC)
    except (TypeError, ValueError, OverflowError):
        return None


class StripeGateway:
    """Thin async wrapper over the blocking ``stripe`` SDK."""

    def __init__(self, api_key: str | None = None, *, webhook_secret: str | None = None, mode: str | None = None):
        self.api_key = settings.STRIPE_SECRET_KEY if api_key is None else api_key
        self.webhook_secret = settings.STRIPE_WEBHOOK_SECRET if webhook_secret is None else webhook_secret
        self.mode = mode or settings.get_stripe_mode()

        if self.api_key:
            stripe.api_key = self.api_key
        else:
            logger.warning('STRIPE_SECRET_KEY not configured - provider calls will fail')

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        if not self.is_configured:
            raise ExternalProviderError('Stripe is not configured')
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except stripe.StripeError as exc:
            message = getattr(exc, 'user_message', None) or str(exc)
            logger.warning('Stripe call failed', operation=operation, exc=exc)
            raise ExternalProviderError(f'Stripe {operation} failed: {message}') from exc

    async def retrieve_price(self, price_id: str) -> Any:
        return await self._call('price retrieval', stripe.Price.retrieve, price_id)

    async def retrieve_subscription(self, stripe_subscription_id: str) -> Any:
        return await self._call('subscription retrieval', stripe.Subscription.retrieve, stripe_subscription_id)

    async def find_or_create_customer(self, *, email: str | None, name: str | None, user_id: int) -> str:
        if email:
            existing = await self._call('customer lookup', stripe.Customer.list, email=email, limit=1)
            data = get_stripe_value(existing, 'data', [])
            if data:
                return get_stripe_value(data[0], 'id')

        customer = await self._call(
            'customer creation',
            stripe.Customer.create,
            email=email,
            name=name,
            metadata={'user_id': str(user_id)},
        )
        return get_stripe_value(customer, 'id')

    async def create_checkout_session(
        self,
        *,
        price_id: str,
        customer_id: str,
        user_id: int,
        mode: str = 'payment',
        metadata: dict[str, Any] | None = None,
    ) -> Any:
        session_metadata = {'user_id': str(user_id), 'priceId': price_id}
        session_metadata.update({key: str(value) for key, value in (metadata or {}).items()})
        return await self._call(
            'checkout session creation',
            stripe.checkout.Session.create,
            customer=customer_id,
            payment_method_types=['card'],
            line_items=[{'price': price_id, 'quantity': 1}],
            mode=mode,
            success_url=f'{settings.FRONTEND_URL}/payment/success?session_id={{CHECKOUT_SESSION_ID}}',
            cancel_url=f'{settings.FRONTEND_URL}/payment/cancel',
            metadata=session_metadata,
        )

    async def list_checkout_line_items(self, session_id: str) -> list[Any]:
        line_items = await self._call('line item retrieval', stripe.checkout.Session.list_line_items, session_id, limit=1)
        return list(get_stripe_value(line_items, 'data', []))

    async def update_subscription_price(
        self,
        stripe_subscription_id: str,
        *,
        price_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> Any:
        subscription = await self.retrieve_subscription(stripe_subscription_id)
        items = get_stripe_value(get_stripe_value(subscription, 'items'), 'data', [])
        if not items:
            raise ExternalProviderError(f'Stripe subscription {stripe_subscription_id} has no items')

        return await self._call(
            'subscription update',
            stripe.Subscription.modify,
            stripe_subscription_id,
            items=[{'id': get_stripe_value(items[0], 'id'), 'price': price_id}],
            proration_behavior='always_invoice',
            metadata={key: str(value) for key, value in (metadata or {}).items()},
        )

    async def create_and_pay_invoice(self, *, customer_id: str, stripe_subscription_id: str) -> Any:
        invoice = await self._call(
            'invoice creation',
            stripe.Invoice.create,
            customer=customer_id,
            subscription=stripe_subscription_id,
        )
        if int(get_stripe_value(invoice, 'amount_due', 0) or 0) > 0:
            invoice = await self._call('invoice payment', stripe.Invoice.pay, get_stripe_value(invoice, 'id'))
        return invoice

    async def set_cancel_at_period_end(self, stripe_subscription_id: str, cancel_at_period_end: bool) -> Any:
        return await self._call(
            'subscription update',
            stripe.Subscription.modify,
            stripe_subscription_id,
            cancel_at_period_end=cancel_at_period_end,
        )

    async def cancel_subscription(self, stripe_subscription_id: str) -> Any:
        return await self._call('subscription cancellation', stripe.Subscription.cancel, stripe_subscription_id)

    def construct_event(self, payload: bytes, signature: str | None) -> Any:
        if not self.webhook_secret:
            raise InvalidStateError('Webhook secret not configured')
        if not signature:
            raise InvalidStateError('Missing webhook signature')
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.warning('Rejected webhook payload', exc=exc)
            raise InvalidStateError('Invalid webhook payload or signature') from exc
