from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    text,
)
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime


def _aware(dt: datetime | None) -> datetime | None:
    """Ensure datetime is timezone-aware (handles pre-TIMESTAMPTZ databases)."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


class AwareDateTime(TypeDecorator):
    """DateTime that auto-converts naive values to UTC-aware on load from DB.

    Handles pre-TIMESTAMPTZ databases that return naive datetimes.
    """

    impl = DateTime
    cache_ok = True

    def __init__(self):
        super().__init__(timezone=True)

    def process_result_value(self, value, dialect):
        if value is not None and isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


Base = declarative_base()


class TokenBucket(Enum):
    REGISTRATION = 'registration_token'
    FREE = 'free_token'
    SUBSCRIPTION = 'subscription_token'
    ADDONS = 'addons_token'

    @classmethod
    def parse(cls, value: 'TokenBucket | str | None', default: 'TokenBucket | None' = None) -> 'TokenBucket':
        if isinstance(value, cls):
            return value
        normalized = (value or '').strip().lower()
        for bucket in cls:
            if normalized in {bucket.value, bucket.value.removesuffix('_token'), bucket.name.lower()}:
                return bucket
        if default is not None:
            return default
        raise ValueError(f'Unknown token bucket: {value!r}')


# Usage consumes registration credits first and paid top-ups last.
DEDUCTION_PRIORITY: tuple[TokenBucket, ...] = (
    TokenBucket.REGISTRATION,
    TokenBucket.FREE,
    TokenBucket.SUBSCRIPTION,
    TokenBucket.ADDONS,
)


class SubscriptionStatus(Enum):
    ACTIVE = 'active'
    TRIALING = 'trialing'
    PAST_DUE = 'past_due'
    CANCELED = 'canceled'
    UNPAID = 'unpaid'


LIVE_SUBSCRIPTION_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)


class BillingInterval(Enum):
    MONTHLY = 'monthly'
    YEARLY = 'yearly'
    ONE_TIME = 'one_time'


class PurchaseType(Enum):
    PURCHASE = 'purchase'
    SUBSCRIPTION = 'subscription'
    SUBSCRIPTION_RENEWAL = 'subscription_renewal'
    PLAN_UPGRADE = 'plan_upgrade'
    PLAN_CHANGE = 'plan_change'
    PLAN_CHANGE_DOWNGRADE = 'plan_change_downgrade'
    REFERRAL_REWARD = 'referral_reward'
    REFERRAL_BONUS = 'referral_bonus'


class PurchaseStatus(Enum):
    PENDING = 'pending'
    COMPLETED = 'completed'


class PlanChangeKind(Enum):
    UPGRADE = 'upgrade'
    DOWNGRADE = 'downgrade'
    LATERAL = 'lateral'


class MilestoneProgram(Enum):
    REFERRAL = 'referral'
    AFFILIATE = 'affiliate'


class RewardType(Enum):
    SUBSCRIPTION = 'subscription'
    CASH = 'cash'
    PLAQUE = 'plaque'


class RewardStatus(Enum):
    AWARDED = 'awarded'
    PENDING = 'pending'


@dataclass
class PlanChangeRecord:
    date: str
    from_plan_id: int | None
    to_plan_id: int | None
    kind: str


@dataclass
class PendingChange:
    """Typed view over the plan-change state kept in ``subscriptions.metadata``."""

    kind: PlanChangeKind | None = None
    original_plan_id: int | None = None
    downgrade_plan_id: int | None = None
    effective_at: str | None = None
    history: list[PlanChangeRecord] = field(default_factory=list)

    @property
    def has_pending_downgrade(self) -> bool:
        return self.kind is PlanChangeKind.DOWNGRADE and self.downgrade_plan_id is not None

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> 'PendingChange':
        raw = raw or {}
        kind_value = raw.get('kind')
        try:
            kind = PlanChangeKind(kind_value) if kind_value else None
        except ValueError:
            kind = None
        history = []
        for item in raw.get('history') or []:
            if not isinstance(item, dict):
                continue
            history.append(
                PlanChangeRecord(
                    date=str(item.get('date') or ''),
                    from_plan_id=item.get('from_plan_id'),
                    to_plan_id=item.get('to_plan_id'),
                    kind=str(item.get('kind') or ''),
                )
            )
        return cls(
            kind=kind,
            original_plan_id=raw.get('original_plan_id'),
            downgrade_plan_id=raw.get('downgrade_plan_id'),
            effective_at=raw.get('effective_at'),
            history=history,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            'kind': self.kind.value if self.kind else None,
            'original_plan_id': self.original_plan_id,
            'downgrade_plan_id': self.downgrade_plan_id,
            'effective_at': self.effective_at,
            'history': [asdict(record) for record in self.history],
        }

    def clear_pending(self) -> None:
        self.kind = None
        self.original_plan_id = None
        self.downgrade_plan_id = None
        self.effective_at = None


class User(Base):
    __tablename__ = 'users'
    __table_args__ = (
        CheckConstraint('registration_token >= 0', name='ck_users_registration_token_non_negative'),
        CheckConstraint('free_token >= 0', name='ck_users_free_token_non_negative'),
        CheckConstraint('subscription_token >= 0', name='ck_users_subscription_token_non_negative'),
        CheckConstraint('addons_token >= 0', name='ck_users_addons_token_non_negative'),
    )

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=True, index=True)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    stripe_customer_id = Column(String(255), nullable=True, index=True)

    registration_token = Column(Integer, default=0, nullable=False)
    free_token = Column(Integer, default=0, nullable=False)
    subscription_token = Column(Integer, default=0, nullable=False)
    addons_token = Column(Integer, default=0, nullable=False)

    referral_code = Column(String(64), unique=True, nullable=True)
    referral_code_created_at = Column(AwareDateTime(), nullable=True)
    referral_count = Column(Integer, default=0, nullable=False)
    referred_by_id = Column(Integer, ForeignKey('users.id'), nullable=True, index=True)
    sales_count = Column(Integer, default=0, nullable=False)
    free_plan_used = Column(Boolean, default=False, nullable=False)

    created_at = Column(AwareDateTime(), default=func.now())
    updated_at = Column(AwareDateTime(), default=func.now(), onupdate=func.now())

    subscriptions = relationship('Subscription', back_populates='user')
    purchases = relationship('Purchase', foreign_keys='Purchase.user_id', back_populates='user')
    badges = relationship('UserBadge', back_populates='user')

    def get_tokens(self, bucket: TokenBucket) -> int:
        return int(getattr(self, bucket.value) or 0)

    def add_tokens(self, bucket: TokenBucket, amount: int) -> int:
        """Apply ``amount`` to ``bucket`` without going below zero; returns the applied delta."""
        current = self.get_tokens(bucket)
        updated = max(0, current + int(amount))
        setattr(self, bucket.value, updated)
        return updated - current

    @property
    def total_tokens(self) -> int:
        return sum(self.get_tokens(bucket) for bucket in TokenBucket)


class Plan(Base):
    __tablename__ = 'plans'

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False, default=Decimal('0'))
    currency = Column(String(3), nullable=False, default='usd')
    interval = Column(String(20), nullable=False, default=BillingInterval.MONTHLY.value)
    tokens_per_cycle = Column(Integer, nullable=False, default=0)
    features = Column(JSON, default=list)
    premium_models_access = Column(Boolean, default=False, nullable=False)
    stripe_price_id = Column(String(255), nullable=True, index=True)
    stripe_price_id_live = Column(String(255), nullable=True, index=True)
    stripe_product_id = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(AwareDateTime(), default=func.now())
    updated_at = Column(AwareDateTime(), default=func.now(), onupdate=func.now())

    subscriptions = relationship('Subscription', back_populates='plan')

    def resolve_stripe_price_id(self, mode: str) -> str | None:
        if mode == 'live':
            return self.stripe_price_id_live or self.stripe_price_id
        return self.stripe_price_id

    def is_free_tier(self, free_plan_name: str = 'Free') -> bool:
        return self.name == free_plan_name and Decimal(self.price or 0) == 0

    @property
    def is_yearly(self) -> bool:
        return 'year' in (self.interval or '').lower()


class Subscription(Base):
    __tablename__ = 'subscriptions'
    __table_args__ = (
        Index(
            'uq_subscriptions_user_live',
            'user_id',
            unique=True,
            postgresql_where=text("status IN ('active', 'trialing')"),
        ),
        Index('ix_subscriptions_status_next_billing', 'status', 'next_billing_date'),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey('plans.id'), nullable=False, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)

    status = Column(String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    trial_ends_at = Column(AwareDateTime(), nullable=True)
    next_billing_date = Column(AwareDateTime(), nullable=True)
    canceled_at = Column(AwareDateTime(), nullable=True)
    ends_at = Column(AwareDateTime(), nullable=True)

    # "metadata" is reserved on declarative classes
    billing_metadata = Column('metadata', JSON, nullable=True, default=dict)

    created_at = Column(AwareDateTime(), default=func.now())
    updated_at = Column(AwareDateTime(), default=func.now(), onupdate=func.now())

    user = relationship('User', back_populates='subscriptions')
    plan = relationship('Plan', back_populates='subscriptions')

    @property
    def pending_change(self) -> PendingChange:
        return PendingChange.from_dict(self.billing_metadata)

    @pending_change.setter
    def pending_change(self, value: PendingChange) -> None:
        merged = dict(self.billing_metadata or {})
        merged.update(value.to_dict())
        self.billing_metadata = merged

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_SUBSCRIPTION_STATUSES

    def on_grace_period(self, now: datetime | None = None) -> bool:
        current = now or datetime.now(UTC)
        ends_at = _aware(self.ends_at)
        return self.canceled_at is not None and ends_at is not None and ends_at > current


class Purchase(Base):
    """One row per granting event; ``session_id`` is the idempotency key."""

    __tablename__ = 'purchases'

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(255), nullable=False, unique=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey('plans.id', ondelete='SET NULL'), nullable=True)
    price_id = Column(String(255), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False, default=Decimal('0'))
    currency = Column(String(3), nullable=False, default='usd')
    tokens = Column(Integer, nullable=False, default=0)
    token_type = Column(String(32), nullable=False, default=TokenBucket.SUBSCRIPTION.value)
    status = Column(String(20), nullable=False, default=PurchaseStatus.COMPLETED.value)
    type = Column(String(32), nullable=False, default=PurchaseType.PURCHASE.value)
    customer_email = Column(String(255), nullable=True)
    referrer_id = Column(Integer, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    tokens_awarded = Column(Integer, nullable=False, default=0)
    expires_at = Column(AwareDateTime(), nullable=True)
    created_at = Column(AwareDateTime(), default=func.now())

    user = relationship('User', foreign_keys=[user_id], back_populates='purchases')
    referrer = relationship('User', foreign_keys=[referrer_id])
    plan = relationship('Plan')


class TokenTransaction(Base):
    __tablename__ = 'token_transactions'
    __table_args__ = (Index('ix_token_transactions_user_created', 'user_id', 'created_at'),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    bucket = Column(String(32), nullable=False)
    delta = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reason = Column(String(255), nullable=True)
    purchase_id = Column(Integer, ForeignKey('purchases.id', ondelete='SET NULL'), nullable=True)
    created_at = Column(AwareDateTime(), default=func.now())

    user = relationship('User', backref='token_transactions')
    purchase = relationship('Purchase')


class TokenUsage(Base):
    __tablename__ = 'token_usage'
    __table_args__ = (Index('ix_token_usage_user_timestamp', 'user_id', 'timestamp'),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    feature = Column(String(255), nullable=False, default='usage')
    model = Column(String(100), nullable=True)
    analysis_type = Column(String(100), nullable=True)
    reason = Column(String(255), nullable=True)
    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    tokens_used = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)
    token_type_used = Column(String(32), nullable=True)
    breakdown = Column(JSON, nullable=True, default=dict)
    timestamp = Column(AwareDateTime(), default=func.now(), nullable=False)


class Referral(Base):
    __tablename__ = 'referrals'
    __table_args__ = (UniqueConstraint('referrer_id', 'referred_id', name='uq_referrals_referrer_referred'),)

    id = Column(Integer, primary_key=True, index=True)
    referrer_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    referred_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    referral_code = Column(String(64), nullable=False)
    referred_email = Column(String(255), nullable=True)
    is_converted = Column(Boolean, default=False, nullable=False)
    tokens_awarded = Column(Integer, default=0, nullable=False)
    converted_at = Column(AwareDateTime(), nullable=True)
    created_at = Column(AwareDateTime(), default=func.now())

    referrer = relationship('User', foreign_keys=[referrer_id])
    referred = relationship('User', foreign_keys=[referred_id])


class ReferralTier(Base):
    __tablename__ = 'referral_tiers'

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    min_referrals = Column(Integer, nullable=False)
    max_referrals = Column(Integer, nullable=True)
    referrer_tokens = Column(Integer, nullable=False, default=0)
    referee_tokens = Column(Integer, nullable=False, default=0)
    badge = Column(String(100), nullable=True)
    subscription_reward = Column(String(100), nullable=True)
    subscription_months = Column(Integer, nullable=True)


class SalesMilestoneTier(Base):
    __tablename__ = 'sales_milestone_tiers'

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    required_sales = Column(Integer, nullable=False, unique=True)
    badge = Column(String(100), nullable=True)
    subscription_reward = Column(String(100), nullable=True)
    subscription_months = Column(Integer, nullable=True)
    cash_bonus = Column(Numeric(10, 2), nullable=False, default=Decimal('0'))
    has_physical_plaque = Column(Boolean, default=False, nullable=False)
    perks = Column(JSON, nullable=True, default=list)


class UserBadge(Base):
    __tablename__ = 'user_badges'
    __table_args__ = (UniqueConstraint('user_id', 'badge_type', name='uq_user_badges_user_type'),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    badge_type = Column(String(32), nullable=False)
    badge_level = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    awarded_at = Column(AwareDateTime(), default=func.now())

    user = relationship('User', back_populates='badges')


class MilestoneAward(Base):
    """Guards one award per (user, program, tier)."""

    __tablename__ = 'milestone_awards'
    __table_args__ = (UniqueConstraint('user_id', 'program', 'tier_id', name='uq_milestone_awards_user_program_tier'),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    program = Column(String(20), nullable=False)
    tier_id = Column(Integer, nullable=False)
    tier_name = Column(String(100), nullable=True)
    count_at_award = Column(Integer, nullable=False, default=0)
    awarded_at = Column(AwareDateTime(), default=func.now())


class MilestoneReward(Base):
    __tablename__ = 'milestone_rewards'
    __table_args__ = (Index('ix_milestone_rewards_user_program', 'user_id', 'program'),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    award_id = Column(Integer, ForeignKey('milestone_awards.id', ondelete='CASCADE'), nullable=False)
    program = Column(String(20), nullable=False)
    reward_type = Column(String(20), nullable=False)
    plan_id = Column(Integer, ForeignKey('plans.id', ondelete='SET NULL'), nullable=True)
    value = Column(JSON, nullable=True, default=dict)
    status = Column(String(20), nullable=False, default=RewardStatus.PENDING.value)
    created_at = Column(AwareDateTime(), default=func.now())

    award = relationship('MilestoneAward', backref='rewards')


class AffiliateSale(Base):
    __tablename__ = 'affiliate_sales'
    __table_args__ = (Index('ix_affiliate_sales_affiliate_created', 'affiliate_id', 'created_at'),)

    id = Column(Integer, primary_key=True, index=True)
    affiliate_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    customer_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    subscription_id = Column(Integer, ForeignKey('subscriptions.id', ondelete='SET NULL'), nullable=True)
    plan_id = Column(Integer, ForeignKey('plans.id', ondelete='SET NULL'), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False, default=Decimal('0'))
    created_at = Column(AwareDateTime(), default=func.now())


class ProcessedWebhookEvent(Base):
    __tablename__ = 'processed_webhook_events'

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), nullable=False, unique=True)
    event_type = Column(String(100), nullable=False)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    handled = Column(Boolean, default=True, nullable=False)
    payload_summary = Column(JSON, nullable=True, default=dict)
    processed_at = Column(AwareDateTime(), default=func.now(), nullable=False)
