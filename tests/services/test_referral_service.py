from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import User
from app.services import referral_service, token_ledger_service


def _make_user(user_id: int, **kwargs) -> User:
    defaults = dict(
        registration_token=0,
        free_token=0,
        subscription_token=0,
        addons_token=0,
        referral_count=0,
        referred_by_id=None,
    )
    defaults.update(kwargs)
    return User(id=user_id, **defaults)


def _make_purchase(session_id: str, tokens: int):
    return SimpleNamespace(
        id=None,
        session_id=session_id,
        tokens=tokens,
        currency='usd',
        referrer_id=None,
        tokens_awarded=0,
    )


@pytest.fixture
def referral_world(monkeypatch):
    referrer = _make_user(1, referral_code='alice_ab12', referral_count=1)
    referred = _make_user(2, referred_by_id=1)
    users = {referrer.id: referrer, referred.id: referred}
    referral = SimpleNamespace(
        id=11,
        referrer_id=referrer.id,
        referred_id=referred.id,
        is_converted=False,
        tokens_awarded=0,
        converted_at=None,
    )
    purchases: dict[str, SimpleNamespace] = {}

    async def fake_get_user(db, user_id, for_update=False):
        return users.get(user_id)

    async def fake_create_purchase(db, **kwargs):
        purchase = SimpleNamespace(id=len(purchases) + 100, **kwargs)
        purchases[kwargs['session_id']] = purchase
        return purchase

    async def fake_get_purchase(db, session_id):
        return purchases.get(session_id)

    monkeypatch.setattr(token_ledger_service, 'get_user_by_id', fake_get_user)
    monkeypatch.setattr(token_ledger_service, 'get_purchase_by_session_id', fake_get_purchase)
    monkeypatch.setattr(token_ledger_service, 'create_purchase', fake_create_purchase)
    monkeypatch.setattr(token_ledger_service, 'create_token_transaction', AsyncMock())

    monkeypatch.setattr(referral_service, 'get_user_by_id', fake_get_user)
    monkeypatch.setattr(referral_service, 'get_referral_for_referred', AsyncMock(return_value=referral))
    monkeypatch.setattr(referral_service, 'get_referral_tier_for_count', AsyncMock(return_value=None))
    monkeypatch.setattr(referral_service, 'create_referral', AsyncMock())

    return SimpleNamespace(referrer=referrer, referred=referred, referral=referral, purchases=purchases)


async def test_every_purchase_earns_referrer_a_share(referral_world):
    db = AsyncMock(spec=AsyncSession)

    first = await referral_service.apply_referral_cascade(
        db, referred_user=referral_world.referred, purchase=_make_purchase('cs_first', 1000)
    )
    second = await referral_service.apply_referral_cascade(
        db, referred_user=referral_world.referred, purchase=_make_purchase('cs_second', 500)
    )

    assert first.referrer_tokens == 200
    assert first.first_conversion is True
    assert first.referee_tokens == 10
    assert second.referrer_tokens == 100
    assert second.first_conversion is False
    assert second.referee_tokens == 0

    assert referral_world.referrer.free_token == 300
    assert referral_world.referred.free_token == 10
    assert referral_world.referral.tokens_awarded == 300
    assert referral_world.referral.is_converted is True
    referral_service.create_referral.assert_not_awaited()
    assert set(referral_world.purchases) == {'referral-cs_first', 'referral-welcome-11', 'referral-cs_second'}


async def test_replayed_purchase_does_not_reward_twice(referral_world):
    db = AsyncMock(spec=AsyncSession)

    await referral_service.apply_referral_cascade(
        db, referred_user=referral_world.referred, purchase=_make_purchase('cs_replay', 1000)
    )
    replay = await referral_service.apply_referral_cascade(
        db, referred_user=referral_world.referred, purchase=_make_purchase('cs_replay', 1000)
    )

    assert replay is None
    assert referral_world.referrer.free_token == 200
    assert referral_world.referral.tokens_awarded == 200


async def test_purchase_already_attributed_is_skipped(referral_world):
    db = AsyncMock(spec=AsyncSession)
    purchase = _make_purchase('cs_attributed', 1000)
    purchase.referrer_id = 1

    result = await referral_service.apply_referral_cascade(db, referred_user=referral_world.referred, purchase=purchase)

    assert result is None
    assert referral_world.referrer.free_token == 0


async def test_small_purchase_yields_no_reward(referral_world):
    db = AsyncMock(spec=AsyncSession)

    result = await referral_service.apply_referral_cascade(
        db, referred_user=referral_world.referred, purchase=_make_purchase('cs_tiny', 4)
    )

    assert result is None
    assert referral_world.referral.is_converted is False


async def test_users_cannot_refer_themselves(monkeypatch):
    user = _make_user(5, referral_code='bob_zz99')
    monkeypatch.setattr(referral_service, 'get_user_by_id', AsyncMock(return_value=user))
    monkeypatch.setattr(referral_service, 'get_user_by_referral_code', AsyncMock(return_value=user))
    db = AsyncMock(spec=AsyncSession)

    result = await referral_service.process_new_user_referral(db, user_id=5, referral_code='bob_zz99')

    assert result.success is False
    assert result.error_code == 'invalid_state'
    db.rollback.assert_awaited_once()


async def test_referral_cannot_point_back_at_own_referrer(monkeypatch):
    referrer = _make_user(1, referral_code='alice_ab12', referred_by_id=3)
    new_user = _make_user(3, referral_code='carol_cd34')
    users = {1: referrer, 3: new_user}

    async def fake_get_user(db, user_id, for_update=False):
        return users.get(user_id)

    create_referral = AsyncMock()
    monkeypatch.setattr(referral_service, 'get_user_by_id', fake_get_user)
    monkeypatch.setattr(referral_service, 'get_user_by_referral_code', AsyncMock(return_value=referrer))
    monkeypatch.setattr(referral_service, 'create_referral', create_referral)
    db = AsyncMock(spec=AsyncSession)

    result = await referral_service.process_new_user_referral(db, user_id=3, referral_code='alice_ab12')

    assert result.success is False
    assert result.error_code == 'invalid_state'
    assert new_user.referred_by_id is None
    assert referrer.referral_count == 0
    create_referral.assert_not_awaited()


async def test_new_referral_increments_referrer_count(monkeypatch):
    referrer = _make_user(1, referral_code='alice_ab12', referral_count=2)
    new_user = _make_user(3, email='new@example.com')
    users = {1: referrer, 3: new_user}

    async def fake_get_user(db, user_id, for_update=False):
        return users.get(user_id)

    monkeypatch.setattr(referral_service, 'get_user_by_id', fake_get_user)
    monkeypatch.setattr(referral_service, 'get_user_by_referral_code', AsyncMock(return_value=referrer))
    monkeypatch.setattr(referral_service, 'get_referral_by_pair', AsyncMock(return_value=None))
    monkeypatch.setattr(referral_service, 'create_referral', AsyncMock(return_value=SimpleNamespace(id=42)))
    db = AsyncMock(spec=AsyncSession)

    result = await referral_service.process_new_user_referral(db, user_id=3, referral_code='alice_ab12')

    assert result.success is True
    assert result.data == {'referral_id': 42, 'referrer_id': 1, 'referral_count': 3}
    assert new_user.referred_by_id == 1
    db.commit.assert_awaited_once()


@pytest.mark.parametrize(
    ('first_name', 'prefix'),
    [('Alice', 'alice'), ('Jean-Luc 2', 'jeanluc2'), (None, 'user'), ('***', 'user')],
)
def test_referral_code_prefix(first_name, prefix):
    assert referral_service.referral_code_prefix(first_name) == prefix


def test_calculate_referral_reward():
    assert referral_service.calculate_referral_reward(1000) == 200
    assert referral_service.calculate_referral_reward(4) == 0
    assert referral_service.calculate_referral_reward(-50) == 0
