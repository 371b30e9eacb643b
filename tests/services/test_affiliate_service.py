from datetime import UTC, datetime
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import MilestoneProgram
from app.services import affiliate_service, milestone_service


def _sales_tier(**kwargs):
    values = dict(
        id=1,
        name='Bronze Seller',
        badge='bronze',
        required_sales=5,
        subscription_reward=None,
        subscription_months=None,
        cash_bonus=Decimal('0'),
        has_physical_plaque=False,
        perks=[],
    )
    values.update(kwargs)
    return SimpleNamespace(**values)


@pytest.fixture
def sale_world(monkeypatch):
    affiliate = SimpleNamespace(id=1, sales_count=4)
    customer = SimpleNamespace(id=2)
    users = {1: affiliate, 2: customer}

    async def fake_get_user(db, user_id, for_update=False):
        return users.get(user_id)

    monkeypatch.setattr(affiliate_service, 'get_user_by_id', fake_get_user)
    monkeypatch.setattr(
        affiliate_service,
        'get_subscription_by_id',
        AsyncMock(return_value=SimpleNamespace(id=30, user_id=2, plan_id=3)),
    )
    monkeypatch.setattr(affiliate_service, 'get_plan_by_id', AsyncMock(return_value=SimpleNamespace(id=3, price=Decimal('20'))))
    monkeypatch.setattr(affiliate_service, 'create_affiliate_sale', AsyncMock(return_value=SimpleNamespace(id=99)))
    return SimpleNamespace(affiliate=affiliate, customer=customer)


async def test_affiliate_cannot_sell_to_self(sale_world):
    db = AsyncMock(spec=AsyncSession)

    result = await affiliate_service.track_affiliate_sale(db, affiliate_id=1, customer_id=1, subscription_id=30)

    assert result.success is False
    assert result.error_code == 'invalid_state'


async def test_sale_reaching_tier_awards_milestone(monkeypatch, sale_world):
    tier = _sales_tier()
    monkeypatch.setattr(affiliate_service, 'get_sales_tier_for_count', AsyncMock(return_value=tier))
    award = AsyncMock(
        return_value=milestone_service.MilestoneOutcome(
            award=SimpleNamespace(id=5),
            badge=SimpleNamespace(badge_level='bronze'),
            rewards=[],
        )
    )
    monkeypatch.setattr(affiliate_service, 'award_tier_milestone', award)
    db = AsyncMock(spec=AsyncSession)

    result = await affiliate_service.track_affiliate_sale(db, affiliate_id=1, customer_id=2, subscription_id=30)

    assert result.success is True
    assert result.data['sale_id'] == 99
    assert result.data['sales_count'] == 5
    assert result.data['milestone_reached'] is True
    assert result.data['badge'] == 'bronze'
    assert affiliate_service.create_affiliate_sale.await_args.kwargs['amount'] == Decimal('20')
    assert award.await_args.kwargs['program'] is MilestoneProgram.AFFILIATE
    db.commit.assert_awaited_once()


async def test_sale_for_foreign_subscription_is_rejected(monkeypatch, sale_world):
    monkeypatch.setattr(
        affiliate_service,
        'get_subscription_by_id',
        AsyncMock(return_value=SimpleNamespace(id=30, user_id=77, plan_id=3)),
    )
    db = AsyncMock(spec=AsyncSession)

    result = await affiliate_service.track_affiliate_sale(db, affiliate_id=1, customer_id=2, subscription_id=30)

    assert result.success is False
    assert result.error_code == 'not_found'
    assert sale_world.affiliate.sales_count == 4


async def test_milestone_is_awarded_once(monkeypatch):
    monkeypatch.setattr(milestone_service, 'get_milestone_award', AsyncMock(return_value=SimpleNamespace(id=1)))
    create_award = AsyncMock()
    monkeypatch.setattr(milestone_service, 'create_milestone_award', create_award)
    db = AsyncMock(spec=AsyncSession)

    outcome = await milestone_service.award_tier_milestone(
        db,
        user_id=1,
        program=MilestoneProgram.AFFILIATE,
        tier=_sales_tier(),
        count=5,
        badge_description='Achieved Bronze Seller with 5 sales',
    )

    assert outcome is None
    create_award.assert_not_awaited()


async def test_milestone_records_every_reward_kind(monkeypatch):
    award = SimpleNamespace(id=8)
    monkeypatch.setattr(milestone_service, 'get_milestone_award', AsyncMock(return_value=None))
    monkeypatch.setattr(milestone_service, 'create_milestone_award', AsyncMock(return_value=award))
    monkeypatch.setattr(
        milestone_service,
        'upsert_user_badge',
        AsyncMock(return_value=SimpleNamespace(badge_level='gold')),
    )
    create_reward = AsyncMock()
    monkeypatch.setattr(milestone_service, 'create_milestone_reward', create_reward)
    db = AsyncMock(spec=AsyncSession)
    tier = _sales_tier(
        id=3,
        name='Gold Seller',
        badge='gold',
        subscription_reward='pro',
        subscription_months=3,
        cash_bonus=Decimal('250.00'),
        has_physical_plaque=True,
    )

    outcome = await milestone_service.award_tier_milestone(
        db,
        user_id=1,
        program=MilestoneProgram.AFFILIATE,
        tier=tier,
        count=50,
        badge_description='Achieved Gold Seller with 50 sales',
    )

    assert outcome.badge.badge_level == 'gold'
    assert outcome.rewards == [
        {'type': 'subscription', 'plan_type': 'pro', 'months': 3},
        {'type': 'cash', 'amount': '250.00'},
        {'type': 'plaque', 'tier': 'Gold Seller'},
    ]
    assert [call.kwargs['status'] for call in create_reward.await_args_list] == ['awarded', 'pending', 'pending']


@pytest.mark.parametrize(
    ('period', 'expected'),
    [
        ('month', datetime(2026, 10, 1, tzinfo=UTC)),
        ('year', datetime(2026, 1, 1, tzinfo=UTC)),
        ('all', None),
    ],
)
def test_leaderboard_window_start(period, expected):
    now = datetime(2026, 10, 18, 15, 30, tzinfo=UTC)

    assert affiliate_service.leaderboard_window_start(period, now) == expected
