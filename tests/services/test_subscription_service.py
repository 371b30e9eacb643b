from datetime import UTC, datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import PlanChangeKind, Plan, PurchaseType, Subscription, User
from app.services import subscription_service, token_ledger_service
from app.services.billing_result import ExternalProviderError


def _plan(plan_id: int, name: str, price: str, tokens: int) -> Plan:
    return Plan(
        id=plan_id,
        name=name,
        price=Decimal(price),
        currency='usd',
        interval='monthly',
        tokens_per_cycle=tokens,
        stripe_price_id=f'price_{name.lower()}',
    )


class BillingWorld:
    def __init__(self):
        self.users = {1: User(id=1, email='owner@example.com', subscription_token=0, addons_token=0, free_token=0,
                              registration_token=0, free_plan_used=False)}
        self.plans = {
            1: _plan(1, 'Free', '0', 100),
            2: _plan(2, 'Basic', '10', 500),
            3: _plan(3, 'Pro', '20', 1000),
            4: _plan(4, 'Team', '30', 3000),
            5: _plan(5, 'Studio', '10', 800),
        }
        self.subscriptions: dict[int, Subscription] = {}
        self.purchases: dict[str, SimpleNamespace] = {}
        self.free_plan_used_elsewhere = False

    @property
    def user(self) -> User:
        return self.users[1]

    def add_subscription(self, **kwargs) -> Subscription:
        values = dict(
            id=len(self.subscriptions) + 10,
            user_id=1,
            plan_id=2,
            status='active',
            next_billing_date=datetime.now(UTC) + timedelta(days=10, hours=1),
            billing_metadata={},
        )
        values.update(kwargs)
        subscription = Subscription(**values)
        self.subscriptions[subscription.id] = subscription
        return subscription

    async def get_user(self, db, user_id, for_update=False):
        return self.users.get(user_id)

    async def get_plan(self, db, plan_id):
        return self.plans.get(plan_id)

    async def get_subscription(self, db, subscription_id, for_update=False):
        return self.subscriptions.get(subscription_id)

    async def get_by_stripe_id(self, db, stripe_subscription_id, for_update=False, exact=False):
        for subscription in self.subscriptions.values():
            if subscription.stripe_subscription_id == stripe_subscription_id:
                return subscription
        return None

    async def get_live(self, db, user_id, for_update=False):
        for subscription in self.subscriptions.values():
            if subscription.user_id == user_id and subscription.status in ('active', 'trialing'):
                return subscription
        return None

    async def has_other_free(self, db, **kwargs):
        return self.free_plan_used_elsewhere

    async def get_purchase(self, db, session_id):
        return self.purchases.get(session_id)

    async def create_purchase(self, db, **kwargs):
        purchase = SimpleNamespace(id=len(self.purchases) + 1, **kwargs)
        self.purchases[kwargs['session_id']] = purchase
        return purchase


@pytest.fixture
def world(monkeypatch):
    world = BillingWorld()

    monkeypatch.setattr(subscription_service, 'get_user_by_id', world.get_user)
    monkeypatch.setattr(subscription_service, 'get_plan_by_id', world.get_plan)
    monkeypatch.setattr(subscription_service, 'get_subscription_by_id', world.get_subscription)
    monkeypatch.setattr(subscription_service, 'get_subscription_by_stripe_id', world.get_by_stripe_id)
    monkeypatch.setattr(subscription_service, 'get_live_subscription_for_user', world.get_live)
    monkeypatch.setattr(subscription_service, 'has_other_free_plan_subscription', world.has_other_free)
    monkeypatch.setattr(subscription_service, 'get_purchase_by_session_id', world.get_purchase)

    monkeypatch.setattr(token_ledger_service, 'get_user_by_id', world.get_user)
    monkeypatch.setattr(token_ledger_service, 'get_purchase_by_session_id', world.get_purchase)
    monkeypatch.setattr(token_ledger_service, 'create_purchase', world.create_purchase)
    monkeypatch.setattr(token_ledger_service, 'create_token_transaction', AsyncMock())
    monkeypatch.setattr(token_ledger_service, '_run_referral_cascade', AsyncMock())
    return world


@pytest.fixture
def db():
    session = AsyncMock(spec=AsyncSession)
    session.add.side_effect = lambda obj: setattr(obj, 'id', 500)
    return session


async def test_create_subscription_grants_plan_tokens(world, db):
    result = await subscription_service.create_subscription(db, user_id=1, plan_id=3)

    assert result.success is True
    assert result.data == {'created': True, 'tokens_granted': 1000}
    assert world.user.subscription_token == 1000
    assert world.purchases['subscription-500'].type == PurchaseType.SUBSCRIPTION.value
    assert result.subscription.next_billing_date > datetime.now(UTC) + timedelta(days=27)
    db.commit.assert_awaited_once()


async def test_create_subscription_rejects_second_live_subscription(world, db):
    world.add_subscription(plan_id=2)

    result = await subscription_service.create_subscription(db, user_id=1, plan_id=3)

    assert result.success is False
    assert result.error_code == 'invalid_state'
    db.rollback.assert_awaited_once()


async def test_provider_creation_supersedes_live_subscription(world, db):
    previous = world.add_subscription(plan_id=2)

    result = await subscription_service.handle_subscription_created(
        db, user_id=1, plan_id=3, stripe_subscription_id='sub_new'
    )

    assert result.success is True
    assert previous.status == 'canceled'
    assert previous.ends_at is not None
    assert result.subscription.stripe_subscription_id == 'sub_new'


async def test_returning_free_plan_user_gets_no_tokens(world, db):
    world.free_plan_used_elsewhere = True

    result = await subscription_service.create_subscription(db, user_id=1, plan_id=1)

    assert result.success is True
    assert result.data['tokens_granted'] == 0
    assert world.user.subscription_token == 0
    assert world.purchases['subscription-500'].tokens == 0
    assert world.user.free_plan_used is True


async def test_invoice_replay_does_not_regrant(world, db):
    world.add_subscription(plan_id=3, stripe_subscription_id='sub_1')
    world.user.subscription_token = 50
    world.user.addons_token = 70

    first = await subscription_service.handle_successful_payment(
        db, stripe_subscription_id='sub_1', invoice_id='in_1', amount=Decimal('20')
    )
    world.user.subscription_token -= 300
    second = await subscription_service.handle_successful_payment(
        db, stripe_subscription_id='sub_1', invoice_id='in_1', amount=Decimal('20')
    )

    assert first.data == {'renewed': True, 'tokens_flushed': 50, 'tokens_granted': 1000}
    assert second.success is True
    assert second.data == {'renewed': False, 'duplicate': True}
    assert world.user.subscription_token == 700
    assert world.user.addons_token == 70


async def test_initial_invoice_grants_nothing(world, db):
    subscription = world.add_subscription(plan_id=3, stripe_subscription_id='sub_1', status='trialing')

    result = await subscription_service.handle_successful_payment(
        db, stripe_subscription_id='sub_1', invoice_id='in_first', billing_reason='subscription_create'
    )

    assert result.success is True
    assert result.data == {'renewed': False}
    assert subscription.status == 'active'
    assert world.purchases == {}


async def test_process_renewal_is_keyed_by_cycle(world, db):
    cycle_end = datetime(2026, 5, 1, tzinfo=UTC)
    subscription = world.add_subscription(plan_id=2, next_billing_date=cycle_end)
    after_cycle = cycle_end + timedelta(hours=2)

    first = await subscription_service.process_renewal(db, subscription_id=subscription.id, now=after_cycle)
    subscription.next_billing_date = cycle_end
    replay = await subscription_service.process_renewal(db, subscription_id=subscription.id, now=after_cycle)

    assert first.data['renewed'] is True
    assert f'subscription-renewal-{subscription.id}-20260501' in world.purchases
    assert replay.data == {'renewed': False, 'duplicate': True}
    assert world.user.subscription_token == 500


async def test_process_renewal_skips_subscription_not_yet_due(world, db):
    subscription = world.add_subscription(plan_id=2)

    result = await subscription_service.process_renewal(db, subscription_id=subscription.id)

    assert result.success is True
    assert result.data == {'renewed': False}
    assert world.purchases == {}


@pytest.mark.parametrize(('attempt_count', 'expected_status'), [(1, 'active'), (2, 'past_due'), (4, 'past_due')])
async def test_failed_payment_marks_past_due_after_retry(world, db, attempt_count, expected_status):
    subscription = world.add_subscription(stripe_subscription_id='sub_1')

    result = await subscription_service.handle_failed_payment(
        db, stripe_subscription_id='sub_1', attempt_count=attempt_count
    )

    assert result.success is True
    assert subscription.status == expected_status


async def test_failed_payment_for_unknown_subscription_is_not_found(world, db):
    result = await subscription_service.handle_failed_payment(db, stripe_subscription_id='sub_missing', attempt_count=2)

    assert result.success is False
    assert result.error_code == 'not_found'


async def test_cancel_at_period_end_keeps_tokens(world, db):
    subscription = world.add_subscription(plan_id=2)
    world.user.subscription_token = 300

    result = await subscription_service.cancel_subscription(db, subscription_id=subscription.id)

    assert result.success is True
    assert result.message == 'Subscription will be canceled at the end of the current billing period'
    assert subscription.status == 'active'
    assert subscription.canceled_at is not None
    assert subscription.ends_at == subscription.next_billing_date
    assert world.user.subscription_token == 300


async def test_immediate_cancel_flushes_subscription_tokens_only(world, db):
    subscription = world.add_subscription(plan_id=2, stripe_subscription_id='sub_1')
    world.user.subscription_token = 300
    world.user.addons_token = 40
    gateway = SimpleNamespace(
        mode='test',
        set_cancel_at_period_end=AsyncMock(),
        cancel_subscription=AsyncMock(side_effect=ExternalProviderError('provider down')),
    )

    result = await subscription_service.cancel_subscription(
        db, subscription_id=subscription.id, immediate=True, gateway=gateway
    )

    assert result.success is True
    assert subscription.status == 'canceled'
    assert world.user.subscription_token == 0
    assert world.user.addons_token == 40
    assert result.data['provider_error'] == 'provider down'
    db.commit.assert_awaited_once()


async def test_resume_clears_scheduled_cancellation(world, db):
    now = datetime.now(UTC)
    subscription = world.add_subscription(
        stripe_subscription_id='sub_1',
        canceled_at=now,
        ends_at=now + timedelta(days=5),
    )
    gateway = SimpleNamespace(mode='test', set_cancel_at_period_end=AsyncMock())

    result = await subscription_service.resume_subscription(db, subscription_id=subscription.id, gateway=gateway)

    assert result.success is True
    assert subscription.canceled_at is None
    assert subscription.ends_at is None
    gateway.set_cancel_at_period_end.assert_awaited_once_with('sub_1', False)


async def test_resume_rejects_ended_subscription(world, db):
    now = datetime.now(UTC)
    subscription = world.add_subscription(status='canceled', canceled_at=now, ends_at=now - timedelta(days=1))

    result = await subscription_service.resume_subscription(db, subscription_id=subscription.id)

    assert result.success is False
    assert result.message == subscription_service.ENDED_MESSAGE


async def test_resume_rejects_subscription_without_cancellation(world, db):
    subscription = world.add_subscription()

    result = await subscription_service.resume_subscription(db, subscription_id=subscription.id)

    assert result.success is False
    assert result.message == subscription_service.NOT_RESUMABLE_MESSAGE


async def test_downgrade_waits_for_renewal(world, db):
    subscription = world.add_subscription(plan_id=3)
    world.user.subscription_token = 1000

    result = await subscription_service.change_plan(db, subscription_id=subscription.id, new_plan_id=2)

    assert result.success is True
    assert 'has been scheduled' in result.message
    assert subscription.plan_id == 3
    assert world.user.subscription_token == 1000
    pending = subscription.pending_change
    assert pending.kind is PlanChangeKind.DOWNGRADE
    assert pending.downgrade_plan_id == 2
    assert world.purchases[f'plan-downgrade-{subscription.id}-1'].tokens == 0

    cycle_end = subscription.next_billing_date
    renewal = await subscription_service.process_renewal(
        db, subscription_id=subscription.id, now=cycle_end + timedelta(minutes=5)
    )

    assert renewal.data['renewed'] is True
    assert subscription.plan_id == 2
    assert world.user.subscription_token == 500
    assert subscription.pending_change.has_pending_downgrade is False


async def test_same_plan_withdraws_pending_downgrade(world, db):
    subscription = world.add_subscription(plan_id=3)
    await subscription_service.change_plan(db, subscription_id=subscription.id, new_plan_id=2)

    result = await subscription_service.change_plan(db, subscription_id=subscription.id, new_plan_id=3)

    assert result.success is True
    assert result.message == 'Scheduled downgrade canceled'
    assert subscription.pending_change.has_pending_downgrade is False


async def test_upgrade_applies_locally_when_provider_fails(world, db):
    subscription = world.add_subscription(plan_id=2, stripe_subscription_id='sub_1')
    world.user.subscription_token = 120
    gateway = SimpleNamespace(
        mode='test',
        update_subscription_price=AsyncMock(side_effect=ExternalProviderError('card declined')),
        create_and_pay_invoice=AsyncMock(),
    )

    result = await subscription_service.change_plan(
        db, subscription_id=subscription.id, new_plan_id=3, gateway=gateway
    )

    assert result.success is True
    assert result.message == subscription_service.UPGRADE_MESSAGE
    assert result.data['provider_error'] == 'card declined'
    assert result.data['charge'] == '16.67'
    assert subscription.plan_id == 3
    assert subscription.pending_change.original_plan_id == 2
    assert world.user.subscription_token == 1000
    gateway.create_and_pay_invoice.assert_not_awaited()


async def test_upgrade_chain_prorates_against_original_plan(world, db):
    subscription = world.add_subscription(plan_id=2)

    await subscription_service.change_plan(db, subscription_id=subscription.id, new_plan_id=3)
    second = await subscription_service.change_plan(db, subscription_id=subscription.id, new_plan_id=4)

    assert second.data['charge'] == '26.67'
    assert subscription.plan_id == 4
    assert subscription.pending_change.original_plan_id == 2
    assert len(subscription.pending_change.history) == 2
    assert world.user.subscription_token == 3000


async def test_lateral_change_regrants_when_token_counts_differ(world, db):
    subscription = world.add_subscription(plan_id=2)
    world.user.subscription_token = 200

    result = await subscription_service.change_plan(db, subscription_id=subscription.id, new_plan_id=5)

    assert result.success is True
    assert result.data['change'] == 'lateral'
    assert result.data['charge'] == '0.00'
    assert world.user.subscription_token == 800
    assert world.purchases[f'plan-lateral-{subscription.id}-1'].type == PurchaseType.PLAN_CHANGE.value


async def test_provider_update_to_scheduled_downgrade_is_deferred(world, db):
    subscription = world.add_subscription(plan_id=3, stripe_subscription_id='sub_1')
    await subscription_service.change_plan(db, subscription_id=subscription.id, new_plan_id=2)

    result = await subscription_service.handle_subscription_updated(
        db, stripe_subscription_id='sub_1', plan_id=2, event_id='evt_1'
    )

    assert result.data == {'changed': False}
    assert subscription.plan_id == 3


async def test_subscription_becoming_live_receives_initial_tokens(world, db):
    subscription = world.add_subscription(plan_id=3, stripe_subscription_id='sub_1', status='unpaid')

    result = await subscription_service.handle_subscription_updated(db, stripe_subscription_id='sub_1', status='active')

    assert result.data['changes'] == {'status': 'active'}
    assert result.data['tokens_adjusted'] == 1000
    assert f'subscription-{subscription.id}' in world.purchases


async def test_provider_cancel_then_delete_flushes_subscription_tokens(world, db):
    subscription = world.add_subscription(plan_id=3, stripe_subscription_id='sub_1')
    world.user.subscription_token = 1000
    world.user.addons_token = 40

    updated = await subscription_service.handle_subscription_updated(
        db, stripe_subscription_id='sub_1', status='canceled'
    )
    deleted = await subscription_service.handle_subscription_cancelled(db, stripe_subscription_id='sub_1')

    assert updated.data['changes'] == {'status': 'canceled'}
    assert updated.data['tokens_flushed'] == 1000
    assert deleted.success is True
    assert deleted.data == {'changed': False, 'tokens_flushed': 0}
    assert subscription.status == 'canceled'
    assert subscription.ends_at is not None
    assert world.user.subscription_token == 0
    assert world.user.addons_token == 40


async def test_delete_of_canceled_subscription_clears_leftover_tokens(world, db):
    world.add_subscription(plan_id=3, stripe_subscription_id='sub_1', status='canceled')
    world.user.subscription_token = 300

    result = await subscription_service.handle_subscription_cancelled(db, stripe_subscription_id='sub_1')

    assert result.data == {'changed': False, 'tokens_flushed': 300}
    assert world.user.subscription_token == 0


async def test_provider_creation_replaces_previous_allowance(world, db):
    previous = world.add_subscription(plan_id=3)
    world.user.subscription_token = 1000

    result = await subscription_service.handle_subscription_created(
        db, user_id=1, plan_id=2, stripe_subscription_id='sub_new'
    )

    assert result.success is True
    assert previous.status == 'canceled'
    assert world.user.subscription_token == 500


async def test_replayed_subscription_update_changes_nothing(world, db):
    subscription = world.add_subscription(plan_id=3, stripe_subscription_id='sub_1')
    world.user.subscription_token = 1000

    first = await subscription_service.handle_subscription_updated(
        db, stripe_subscription_id='sub_1', status='active', plan_id=4, event_id='evt_1'
    )
    balances_after_first = world.user.subscription_token
    replay = await subscription_service.handle_subscription_updated(
        db, stripe_subscription_id='sub_1', status='active', plan_id=4, event_id='evt_1'
    )

    assert first.data['changes'] == {'plan_id': 4}
    assert balances_after_first == 3000
    assert replay.success is True
    assert replay.data == {'changed': False}
    assert world.user.subscription_token == 3000
    assert subscription.plan_id == 4
    assert subscription.status == 'active'


def test_advance_billing_date_clamps_month_end():
    assert subscription_service.advance_billing_date(datetime(2026, 1, 31, tzinfo=UTC), 'monthly') == datetime(
        2026, 2, 28, tzinfo=UTC
    )
    assert subscription_service.advance_billing_date(datetime(2024, 2, 29, tzinfo=UTC), 'yearly') == datetime(
        2025, 2, 28, tzinfo=UTC
    )
    assert subscription_service.advance_billing_date(datetime(2026, 12, 15, tzinfo=UTC), None) == datetime(
        2027, 1, 15, tzinfo=UTC
    )


def test_classify_plan_change():
    basic, pro, studio = _plan(2, 'Basic', '10', 500), _plan(3, 'Pro', '20', 1000), _plan(5, 'Studio', '10', 800)

    assert subscription_service.classify_plan_change(basic, pro) is PlanChangeKind.UPGRADE
    assert subscription_service.classify_plan_change(pro, basic) is PlanChangeKind.DOWNGRADE
    assert subscription_service.classify_plan_change(basic, studio) is PlanChangeKind.LATERAL
