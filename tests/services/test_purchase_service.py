from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import PurchaseStatus, TokenBucket, User
from app.services import purchase_service, token_ledger_service
from app.services.billing_result import ExternalProviderError
from app.services.price_catalog import PriceCatalog


@pytest.fixture
def buyer(monkeypatch):
    user = User(
        id=7,
        email='buyer@example.com',
        first_name='Ada',
        last_name='Lovelace',
        registration_token=0,
        free_token=0,
        subscription_token=0,
        addons_token=0,
    )
    purchases: dict[str, SimpleNamespace] = {}

    async def fake_create_purchase(db, **kwargs):
        purchase = SimpleNamespace(id=len(purchases) + 1, **kwargs)
        purchases[kwargs['session_id']] = purchase
        return purchase

    monkeypatch.setattr(purchase_service, 'get_user_by_id', AsyncMock(return_value=user))
    monkeypatch.setattr(token_ledger_service, 'get_user_by_id', AsyncMock(return_value=user))
    monkeypatch.setattr(token_ledger_service, 'get_purchase_by_session_id', AsyncMock(return_value=None))
    monkeypatch.setattr(token_ledger_service, 'create_purchase', fake_create_purchase)
    monkeypatch.setattr(token_ledger_service, 'create_token_transaction', AsyncMock())
    monkeypatch.setattr(token_ledger_service, '_run_referral_cascade', AsyncMock())
    return SimpleNamespace(user=user, purchases=purchases)


def _gateway(**overrides):
    values = dict(
        retrieve_price=AsyncMock(
            return_value={'id': 'price_addon_pack', 'active': True, 'unit_amount': 1500, 'currency': 'usd'}
        ),
        find_or_create_customer=AsyncMock(return_value='cus_1'),
        create_checkout_session=AsyncMock(return_value={'id': 'cs_live_1', 'url': 'https://checkout.example/cs_live_1'}),
    )
    values.update(overrides)
    return SimpleNamespace(**values)


async def test_confirm_purchase_credits_pending_tokens(buyer):
    gateway = _gateway()
    db = AsyncMock(spec=AsyncSession)

    result = await purchase_service.confirm_direct_purchase(
        db,
        price_id='price_addon_pack',
        user_id=7,
        gateway=gateway,
        catalog=PriceCatalog({'addon_pack': 40000}),
    )

    assert result.success is True
    assert result.data == {
        'session_id': 'cs_live_1',
        'session_url': 'https://checkout.example/cs_live_1',
        'tokens_added': 40000,
        'token_type': TokenBucket.ADDONS.value,
    }
    assert buyer.user.addons_token == 40000
    assert buyer.user.stripe_customer_id == 'cus_1'
    purchase = buyer.purchases['cs_live_1']
    assert purchase.status == PurchaseStatus.PENDING.value
    assert purchase.amount == Decimal('15')
    gateway.find_or_create_customer.assert_awaited_once_with(email='buyer@example.com', name='Ada Lovelace', user_id=7)
    assert gateway.create_checkout_session.await_args.kwargs['mode'] == 'payment'


async def test_inactive_price_is_rejected(buyer):
    gateway = _gateway(retrieve_price=AsyncMock(return_value={'id': 'price_old', 'active': False}))
    db = AsyncMock(spec=AsyncSession)

    result = await purchase_service.confirm_direct_purchase(
        db, price_id='price_old', user_id=7, gateway=gateway, catalog=PriceCatalog({})
    )

    assert result.success is False
    assert result.message == 'Price is not active'
    gateway.create_checkout_session.assert_not_awaited()


async def test_provider_failure_leaves_balances_untouched(buyer):
    gateway = _gateway(create_checkout_session=AsyncMock(side_effect=ExternalProviderError('Stripe is not configured')))
    db = AsyncMock(spec=AsyncSession)

    result = await purchase_service.confirm_direct_purchase(
        db, price_id='price_addon_pack', user_id=7, gateway=gateway, catalog=PriceCatalog({})
    )

    assert result.success is False
    assert result.error_code == 'external_provider_error'
    assert buyer.user.total_tokens == 0
    db.rollback.assert_awaited_once()


async def test_complete_pending_purchase(monkeypatch):
    purchase = SimpleNamespace(id=3, status=PurchaseStatus.PENDING.value)
    monkeypatch.setattr(purchase_service, 'get_purchase_by_session_id', AsyncMock(return_value=purchase))
    db = AsyncMock(spec=AsyncSession)

    result = await purchase_service.complete_pending_purchase(db, session_id='cs_live_1')

    assert result.success is True
    assert purchase.status == PurchaseStatus.COMPLETED.value
    db.commit.assert_awaited_once()


async def test_complete_pending_purchase_ignores_completed(monkeypatch):
    purchase = SimpleNamespace(id=3, status=PurchaseStatus.COMPLETED.value)
    monkeypatch.setattr(purchase_service, 'get_purchase_by_session_id', AsyncMock(return_value=purchase))
    db = AsyncMock(spec=AsyncSession)

    assert await purchase_service.complete_pending_purchase(db, session_id='cs_live_1') is None
