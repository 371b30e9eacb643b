from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import PurchaseType, TokenBucket
from app.services import webhook_dispatcher
from app.services.billing_result import BillingResult, NotFoundError
from app.services.price_catalog import PriceCatalog
from app.services.webhook_dispatcher import WebhookEventKind


def _event(event_type: str, payload: dict, event_id: str = 'evt_1') -> dict:
    return {'id': event_id, 'type': event_type, 'data': {'object': payload}}


@pytest.fixture
def processed(monkeypatch):
    record = AsyncMock()
    monkeypatch.setattr(webhook_dispatcher, 'is_event_processed', AsyncMock(return_value=False))
    monkeypatch.setattr(webhook_dispatcher, 'record_processed_event', record)
    return record


async def test_duplicate_event_is_acknowledged_without_handling(monkeypatch, processed):
    monkeypatch.setattr(webhook_dispatcher, 'is_event_processed', AsyncMock(return_value=True))
    failed = AsyncMock()
    monkeypatch.setattr(webhook_dispatcher, 'handle_failed_payment', failed)
    db = AsyncMock(spec=AsyncSession)

    ack = await webhook_dispatcher.dispatch_event(
        db, _event('invoice.payment_failed', {'id': 'in_1', 'subscription': 'sub_1'}), catalog=PriceCatalog({})
    )

    assert ack == {
        'success': True,
        'event_id': 'evt_1',
        'event_type': 'invoice.payment_failed',
        'handled': False,
        'duplicate': True,
    }
    failed.assert_not_awaited()
    processed.assert_not_awaited()


async def test_unhandled_event_is_recorded_as_ignored(processed):
    db = AsyncMock(spec=AsyncSession)

    ack = await webhook_dispatcher.dispatch_event(db, _event('charge.refunded', {'id': 'ch_1'}), catalog=PriceCatalog({}))

    assert ack['success'] is True
    assert ack['handled'] is False
    assert processed.await_args.kwargs['handled'] is False
    assert processed.await_args.kwargs['payload_summary'] == {'kind': 'unhandled', 'message': None}
    db.commit.assert_awaited_once()


async def test_failed_invoice_reads_subscription_from_invoice_parent(monkeypatch, processed):
    failed = AsyncMock(return_value=BillingResult.ok('Subscription marked past due'))
    monkeypatch.setattr(webhook_dispatcher, 'handle_failed_payment', failed)
    db = AsyncMock(spec=AsyncSession)
    invoice = {
        'id': 'in_1',
        'attempt_count': 2,
        'parent': {'subscription_details': {'subscription': 'sub_42'}},
    }

    ack = await webhook_dispatcher.dispatch_event(db, _event('invoice.payment_failed', invoice), catalog=PriceCatalog({}))

    assert ack['handled'] is True
    failed.assert_awaited_once_with(db, stripe_subscription_id='sub_42', attempt_count=2)
    processed.assert_awaited_once()


async def test_paid_invoice_converts_cents(monkeypatch, processed):
    paid = AsyncMock(return_value=BillingResult.ok('Subscription renewed successfully'))
    monkeypatch.setattr(webhook_dispatcher, 'handle_successful_payment', paid)
    db = AsyncMock(spec=AsyncSession)
    invoice = {
        'id': 'in_9',
        'subscription': 'sub_1',
        'amount_paid': 1999,
        'currency': 'usd',
        'billing_reason': 'subscription_cycle',
    }

    await webhook_dispatcher.dispatch_event(db, _event('invoice.payment_succeeded', invoice), catalog=PriceCatalog({}))

    kwargs = paid.await_args.kwargs
    assert kwargs['invoice_id'] == 'in_9'
    assert kwargs['amount'] == Decimal('19.99')
    assert kwargs['billing_reason'] == 'subscription_cycle'


async def test_failed_result_is_acknowledged_but_not_recorded(monkeypatch, processed):
    paid = AsyncMock(return_value=BillingResult.fail(NotFoundError('Subscription with provider id sub_x not found')))
    monkeypatch.setattr(webhook_dispatcher, 'handle_successful_payment', paid)
    db = AsyncMock(spec=AsyncSession)

    ack = await webhook_dispatcher.dispatch_event(
        db, _event('invoice.payment_succeeded', {'id': 'in_1', 'subscription': 'sub_x'}), catalog=PriceCatalog({})
    )

    assert ack['success'] is True
    assert ack['handled'] is False
    processed.assert_not_awaited()


async def test_handler_crash_rolls_back_and_acknowledges(monkeypatch, processed):
    monkeypatch.setattr(webhook_dispatcher, 'handle_subscription_cancelled', AsyncMock(side_effect=RuntimeError('boom')))
    db = AsyncMock(spec=AsyncSession)

    ack = await webhook_dispatcher.dispatch_event(
        db, _event('customer.subscription.deleted', {'id': 'sub_1', 'ended_at': 1767225600}), catalog=PriceCatalog({})
    )

    assert ack['success'] is True
    assert ack['handled'] is False
    db.rollback.assert_awaited_once()
    processed.assert_not_awaited()


async def test_concurrent_delivery_is_reported_as_duplicate(monkeypatch, processed):
    processed.side_effect = IntegrityError('INSERT', {}, Exception('duplicate key'))
    monkeypatch.setattr(
        webhook_dispatcher,
        'handle_subscription_cancelled',
        AsyncMock(return_value=BillingResult.ok('Subscription canceled')),
    )
    db = AsyncMock(spec=AsyncSession)

    ack = await webhook_dispatcher.dispatch_event(
        db, _event('customer.subscription.deleted', {'id': 'sub_1'}), catalog=PriceCatalog({})
    )

    assert ack['handled'] is True
    assert ack['duplicate'] is True
    db.rollback.assert_awaited_once()


async def test_paid_checkout_grants_catalog_tokens(monkeypatch, processed):
    grant = AsyncMock(return_value=BillingResult.ok('Tokens granted successfully'))
    monkeypatch.setattr(webhook_dispatcher, 'grant_tokens', grant)
    monkeypatch.setattr(webhook_dispatcher, 'complete_pending_purchase', AsyncMock(return_value=None))
    db = AsyncMock(spec=AsyncSession)
    session = {
        'id': 'cs_1',
        'mode': 'payment',
        'payment_status': 'paid',
        'amount_total': 1500,
        'currency': 'usd',
        'metadata': {'user_id': '7', 'token_type': 'addons'},
        'line_items': {'data': [{'price': {'id': 'price_pack_small'}}]},
        'customer_details': {'email': 'buyer@example.com'},
    }

    ack = await webhook_dispatcher.dispatch_event(
        db, _event('checkout.session.completed', session), catalog=PriceCatalog({'pack_small': 7000})
    )

    assert ack['handled'] is True
    kwargs = grant.await_args.kwargs
    assert kwargs['user_id'] == 7
    assert kwargs['tokens'] == 7000
    assert kwargs['bucket'] is TokenBucket.ADDONS
    assert kwargs['context'].session_id == 'cs_1'
    assert kwargs['context'].type is PurchaseType.PURCHASE
    assert kwargs['context'].amount == Decimal('15')
    assert kwargs['context'].customer_email == 'buyer@example.com'


async def test_checkout_confirmed_earlier_is_only_completed(monkeypatch, processed):
    grant = AsyncMock()
    monkeypatch.setattr(webhook_dispatcher, 'grant_tokens', grant)
    monkeypatch.setattr(
        webhook_dispatcher,
        'complete_pending_purchase',
        AsyncMock(return_value=BillingResult.ok('Purchase completed')),
    )
    db = AsyncMock(spec=AsyncSession)
    session = {
        'id': 'cs_2',
        'mode': 'payment',
        'payment_status': 'paid',
        'metadata': {'user_id': '7', 'priceId': 'price_pack_small'},
    }

    ack = await webhook_dispatcher.dispatch_event(
        db, _event('checkout.session.completed', session), catalog=PriceCatalog({'pack_small': 7000})
    )

    assert ack['handled'] is True
    grant.assert_not_awaited()


async def test_unpaid_checkout_is_ignored(monkeypatch, processed):
    grant = AsyncMock()
    monkeypatch.setattr(webhook_dispatcher, 'grant_tokens', grant)
    db = AsyncMock(spec=AsyncSession)

    ack = await webhook_dispatcher.dispatch_event(
        db,
        _event('checkout.session.completed', {'id': 'cs_3', 'payment_status': 'unpaid'}),
        catalog=PriceCatalog({}),
    )

    assert ack['handled'] is False
    grant.assert_not_awaited()
    processed.assert_awaited_once()


async def test_subscription_checkout_creates_subscription(monkeypatch, processed):
    created = AsyncMock(return_value=BillingResult.ok('Subscription created successfully', data={'created': True}))
    monkeypatch.setattr(webhook_dispatcher, 'handle_subscription_created', created)
    monkeypatch.setattr(webhook_dispatcher, 'get_plan_by_stripe_price_id', AsyncMock(return_value=SimpleNamespace(id=3)))
    db = AsyncMock(spec=AsyncSession)
    session = {
        'id': 'cs_4',
        'mode': 'subscription',
        'payment_status': 'paid',
        'subscription': 'sub_77',
        'metadata': {'userId': '7', 'price_id': 'price_pro'},
    }

    await webhook_dispatcher.dispatch_event(db, _event('checkout.session.completed', session), catalog=PriceCatalog({}))

    created.assert_awaited_once_with(db, user_id=7, plan_id=3, stripe_subscription_id='sub_77')


async def test_subscription_update_maps_provider_status(monkeypatch, processed):
    updated = AsyncMock(return_value=BillingResult.ok('Subscription updated'))
    monkeypatch.setattr(webhook_dispatcher, 'handle_subscription_updated', updated)
    monkeypatch.setattr(webhook_dispatcher, 'get_plan_by_stripe_price_id', AsyncMock(return_value=None))
    monkeypatch.setattr(webhook_dispatcher, 'find_plan_by_price_fragment', AsyncMock(return_value=None))
    monkeypatch.setattr(webhook_dispatcher, 'get_plan_by_stripe_product_id', AsyncMock(return_value=SimpleNamespace(id=4)))
    db = AsyncMock(spec=AsyncSession)
    subscription = {
        'id': 'sub_1',
        'status': 'paused',
        'items': {'data': [{'price': {'id': 'price_new', 'product': 'prod_team'}, 'current_period_end': 1767225600}]},
    }

    await webhook_dispatcher.dispatch_event(
        db, _event('customer.subscription.updated', subscription, event_id='evt_9'), catalog=PriceCatalog({})
    )

    kwargs = updated.await_args.kwargs
    assert kwargs['status'] == 'past_due'
    assert kwargs['plan_id'] == 4
    assert kwargs['event_id'] == 'evt_9'
    assert kwargs['next_billing_date'].year == 2026
    assert kwargs['cancel_at'] is None


@pytest.mark.parametrize(
    ('event_type', 'kind'),
    [
        ('checkout.session.completed', WebhookEventKind.CHECKOUT_SESSION_COMPLETED),
        ('invoice.payment_failed', WebhookEventKind.INVOICE_PAYMENT_FAILED),
        ('customer.created', WebhookEventKind.UNHANDLED),
        (None, WebhookEventKind.UNHANDLED),
    ],
)
def test_classify(event_type, kind):
    assert WebhookEventKind.classify(event_type) is kind


@pytest.mark.parametrize(
    ('status', 'expected'),
    [('incomplete', 'unpaid'), ('incomplete_expired', 'canceled'), ('trialing', 'trialing'), (None, None)],
)
def test_normalize_provider_status(status, expected):
    assert webhook_dispatcher.normalize_provider_status(status) == expected
