from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Iterable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database.crud.purchase import (
    create_purchase,
    create_token_transaction,
    create_token_usage,
    get_purchase_by_session_id,
)
from app.database.crud.user import get_user_by_id
from app.database.models import (
    DEDUCTION_PRIORITY,
    Purchase,
    PurchaseStatus,
    PurchaseType,
    TokenBucket,
    User,
)
from app.services.billing_result import (
    BillingResult,
    InsufficientTokensError,
    InvalidStateError,
    PersistenceError,
    TokenBalances,
    UserNotFoundError,
    run_billing_operation,
)


logger = structlog.get_logger(__name__)

MIXED_TOKEN_TYPE = 'mixed'
ESTIMATED_INPUT_SHARE = 0.2
ESTIMATED_OUTPUT_SHARE = 0.8


@dataclass(frozen=True)
class PurchaseContext:
    session_id: str | None = None
    type: PurchaseType | str = PurchaseType.PURCHASE
    price_id: str | None = None
    plan_id: int | None = None
    amount: Decimal | int | float | str = 0
    currency: str = 'usd'
    status: PurchaseStatus | str = PurchaseStatus.COMPLETED
    customer_email: str | None = None
    expires_at: datetime | None = None

    @property
    def type_value(self) -> str:
        return self.type.value if isinstance(self.type, PurchaseType) else str(self.type)

    @property
    def status_value(self) -> str:
        return self.status.value if isinstance(self.status, PurchaseStatus) else str(self.status)


@dataclass
class GrantOutcome:
    user: User
    purchase: Purchase
    applied: int
    duplicate: bool


@dataclass
class DeductionBreakdown:
    amounts: dict[TokenBucket, int]

    @property
    def total(self) -> int:
        return sum(self.amounts.values())

    @property
    def token_type_used(self) -> str:
        used = [bucket for bucket, amount in self.amounts.items() if amount > 0]
        if len(used) == 1:
            return used[0].value
        return MIXED_TOKEN_TYPE

    def as_dict(self) -> dict[str, int]:
        return {bucket.value: self.amounts.get(bucket, 0) for bucket in DEDUCTION_PRIORITY}


def _now_utc() -> datetime:
    return datetime.now(UTC)


def synthesize_idempotency_key(
    purchase_type: str,
    user_id: int,
    *,
    now: datetime | None = None,
    window_seconds: int | None = None,
) -> str:
    """Deterministic key for grants that arrive without a provider session id.

    Repeated calls of the same type for the same user inside one window share a key.
    """
    window = max(1, window_seconds or settings.IDEMPOTENCY_WINDOW_SECONDS)
    moment = now or _now_utc()
    bucket_start = int(moment.timestamp()) // window * window
    return f'{purchase_type}-{user_id}-{bucket_start}'


def resolve_deduction_order(override: Iterable[TokenBucket | str] | None = None) -> tuple[TokenBucket, ...]:
    if not override:
        return DEDUCTION_PRIORITY
    ordered: list[TokenBucket] = []
    for item in override:
        bucket = TokenBucket.parse(item)
        if bucket not in ordered:
            ordered.append(bucket)
    ordered.extend(bucket for bucket in DEDUCTION_PRIORITY if bucket not in ordered)
    return tuple(ordered)


def plan_deduction(
    user: User,
    amount: int,
    order: tuple[TokenBucket, ...] = DEDUCTION_PRIORITY,
) -> DeductionBreakdown:
    """Split ``amount`` across buckets in ``order``; raises before touching anything."""
    available = sum(int(getattr(user, bucket.value, 0) or 0) for bucket in order)
    if available < amount:
        raise InsufficientTokensError(required=amount, available=available)

    remaining = amount
    amounts: dict[TokenBucket, int] = {}
    for bucket in order:
        balance = int(getattr(user, bucket.value, 0) or 0)
        taken = min(balance, remaining)
        amounts[bucket] = taken
        remaining -= taken
    return DeductionBreakdown(amounts=amounts)


def infer_usage_labels(
    reason: str,
    *,
    model: str | None = None,
    analysis_type: str | None = None,
) -> tuple[str, str | None, str | None]:
    """Returns (feature, model, analysis_type) for the usage analytics row."""
    feature = reason
    if model is None:
        if 'gpt-4' in reason:
            model = 'gpt-4'
        elif 'gpt-3' in reason:
            model = 'gpt-3.5-turbo'
        elif 'gemini' in reason:
            model = 'gemini-pro'

    if analysis_type is None:
        if 'image_analysis' in reason:
            feature = 'image_analysis'
            analysis_type = 'vision'
        elif 'chat_completion' in reason:
            feature = 'chat_completion'
            analysis_type = 'text'

    return feature, model, analysis_type


def estimate_token_split(amount: int, input_tokens: int | None, output_tokens: int | None) -> tuple[int, int, bool]:
    """Returns (input, output, estimated)."""
    if input_tokens is None or output_tokens is None:
        return int(amount * ESTIMATED_INPUT_SHARE), int(amount * ESTIMATED_OUTPUT_SHARE), True
    return int(input_tokens), int(output_tokens), False


async def _lock_user(db: AsyncSession, user_id: int) -> User:
    user = await get_user_by_id(db, user_id, for_update=True)
    if user is None:
        raise UserNotFoundError(user_id)
    return user


async def _run_referral_cascade(db: AsyncSession, user: User, purchase: Purchase) -> None:
    from app.services.referral_service import apply_referral_cascade

    await apply_referral_cascade(db, referred_user=user, purchase=purchase)


def _with_idempotency_key(context: PurchaseContext, user_id: int) -> PurchaseContext:
    if context.session_id:
        return context
    return replace(context, session_id=synthesize_idempotency_key(context.type_value, user_id))


async def apply_grant(
    db: AsyncSession,
    *,
    user_id: int,
    tokens: int,
    bucket: TokenBucket | str,
    context: PurchaseContext,
    cascade: bool = True,
) -> GrantOutcome:
    """Credit or adjust one bucket and write the purchase record; flushes, never commits."""
    user = await _lock_user(db, user_id)
    target = TokenBucket.parse(bucket)
    context = _with_idempotency_key(context, user_id)

    existing = await get_purchase_by_session_id(db, context.session_id)
    if existing is not None:
        logger.info(
            'Duplicate token grant ignored',
            user_id=user_id,
            session_id=context.session_id,
            purchase_id=existing.id,
        )
        return GrantOutcome(user=user, purchase=existing, applied=0, duplicate=True)

    expires_at = context.expires_at
    if target is TokenBucket.ADDONS and expires_at is None and tokens > 0:
        expires_at = _now_utc() + timedelta(days=settings.ADDON_TOKEN_TTL_DAYS)

    applied = user.add_tokens(target, tokens)
    if applied != tokens:
        logger.warning(
            'Token adjustment clamped at zero',
            user_id=user_id,
            bucket=target.value,
            requested=tokens,
            applied=applied,
        )

    purchase = await create_purchase(
        db,
        session_id=context.session_id,
        user_id=user.id,
        plan_id=context.plan_id,
        price_id=context.price_id,
        amount=Decimal(str(context.amount or 0)),
        currency=context.currency or 'usd',
        tokens=tokens,
        token_type=target.value,
        status=context.status_value,
        type=context.type_value,
        customer_email=context.customer_email,
        tokens_awarded=0,
        expires_at=expires_at,
    )
    await create_token_transaction(
        db,
        user_id=user.id,
        bucket=target.value,
        delta=applied,
        balance_after=user.get_tokens(target),
        reason=context.type_value,
        purchase_id=purchase.id,
    )

    logger.info(
        'Tokens granted',
        user_id=user.id,
        bucket=target.value,
        tokens=applied,
        session_id=context.session_id,
        purchase_type=context.type_value,
    )

    if cascade and tokens > 0:
        await _run_referral_cascade(db, user, purchase)

    return GrantOutcome(user=user, purchase=purchase, applied=applied, duplicate=False)


async def _grant(
    db: AsyncSession,
    *,
    user_id: int,
    tokens: int,
    bucket: TokenBucket | str,
    context: PurchaseContext,
) -> BillingResult:
    outcome = await apply_grant(db, user_id=user_id, tokens=tokens, bucket=bucket, context=context)
    message = 'Tokens already granted for this purchase' if outcome.duplicate else 'Tokens granted successfully'
    return BillingResult.ok(
        message,
        balances=TokenBalances.from_user(outcome.user),
        purchase=outcome.purchase,
        data={'tokens_added': outcome.applied, 'duplicate': outcome.duplicate},
    )


async def grant_tokens(
    db: AsyncSession,
    *,
    user_id: int,
    tokens: int,
    bucket: TokenBucket | str = TokenBucket.SUBSCRIPTION,
    context: PurchaseContext | None = None,
) -> BillingResult:
    context = _with_idempotency_key(context or PurchaseContext(), user_id)
    result = await run_billing_operation(
        db,
        _grant(db, user_id=user_id, tokens=tokens, bucket=bucket, context=context),
        operation='token grant',
        user_id=user_id,
        session_id=context.session_id,
    )
    if result.success or result.error_code != PersistenceError.code:
        return result

    # A concurrent request may have committed the same idempotency key first.
    existing = await get_purchase_by_session_id(db, context.session_id)
    if existing is None:
        return result
    user = await get_user_by_id(db, user_id)
    return BillingResult.ok(
        'Tokens already granted for this purchase',
        balances=TokenBalances.from_user(user) if user else None,
        purchase=existing,
        data={'tokens_added': 0, 'duplicate': True},
    )


async def apply_deduction(
    db: AsyncSession,
    *,
    user_id: int,
    amount: int,
    reason: str = 'usage',
    bucket_priority: Iterable[TokenBucket | str] | None = None,
    model: str | None = None,
    analysis_type: str | None = None,
    input_tokens: int | None = None,
    output_tokens: int | None = None,
) -> tuple[User, DeductionBreakdown]:
    if amount <= 0:
        raise InvalidStateError('Deduction amount must be positive')

    user = await _lock_user(db, user_id)
    order = resolve_deduction_order(bucket_priority)
    breakdown = plan_deduction(user, amount, order)

    for bucket in order:
        taken = breakdown.amounts.get(bucket, 0)
        if not taken:
            continue
        user.add_tokens(bucket, -taken)
        await create_token_transaction(
            db,
            user_id=user.id,
            bucket=bucket.value,
            delta=-taken,
            balance_after=user.get_tokens(bucket),
            reason=reason,
        )

    logger.info('Token deduction breakdown', user_id=user.id, amount=amount, **breakdown.as_dict())

    feature, model, analysis_type = infer_usage_labels(reason, model=model, analysis_type=analysis_type)
    input_count, output_count, estimated = estimate_token_split(amount, input_tokens, output_tokens)
    actual_total = input_count + output_count
    if actual_total > 0 and abs(actual_total - amount) > settings.DEDUCTION_MISMATCH_TOLERANCE:
        logger.warning(
            'Token count discrepancy detected',
            user_id=user.id,
            input_tokens=input_count,
            output_tokens=output_count,
            actual_total=actual_total,
            tokens_deducted=amount,
            difference=actual_total - amount,
        )

    await create_token_usage(
        db,
        user_id=user.id,
        feature=feature,
        model=model,
        analysis_type=analysis_type,
        reason=reason,
        input_tokens=input_count,
        output_tokens=output_count,
        tokens_used=amount,
        total_tokens=actual_total,
        token_type_used=breakdown.token_type_used,
        breakdown={**breakdown.as_dict(), 'estimated_split': estimated},
        timestamp=_now_utc(),
    )
    return user, breakdown


async def _deduct(db: AsyncSession, **kwargs) -> BillingResult:
    user, breakdown = await apply_deduction(db, **kwargs)
    return BillingResult.ok(
        'Tokens deducted successfully',
        balances=TokenBalances.from_user(user),
        data={'breakdown': breakdown.as_dict(), 'token_type_used': breakdown.token_type_used},
    )


async def deduct_tokens(
    db: AsyncSession,
    *,
    user_id: int,
    amount: int,
    reason: str = 'usage',
    bucket_priority: Iterable[TokenBucket | str] | None = None,
    model: str | None = None,
    analysis_type: str | None = None,
    input_tokens: int | None = None,
    output_tokens: int | None = None,
) -> BillingResult:
    return await run_billing_operation(
        db,
        _deduct(
            db,
            user_id=user_id,
            amount=amount,
            reason=reason,
            bucket_priority=bucket_priority,
            model=model,
            analysis_type=analysis_type,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        ),
        operation='token deduction',
        user_id=user_id,
        amount=amount,
    )


async def get_user_tokens(db: AsyncSession, *, user_id: int) -> BillingResult:
    user = await get_user_by_id(db, user_id)
    if user is None:
        return BillingResult.fail(UserNotFoundError(user_id))
    balances = TokenBalances.from_user(user)
    return BillingResult.ok('Token balances retrieved', balances=balances, data=balances.as_dict())


async def reset_bucket(db: AsyncSession, user: User, bucket: TokenBucket, *, reason: str) -> int:
    """Zero ``bucket`` on an already locked user; returns the amount removed."""
    removed = user.get_tokens(bucket)
    if removed == 0:
        return 0
    user.add_tokens(bucket, -removed)
    await create_token_transaction(
        db,
        user_id=user.id,
        bucket=bucket.value,
        delta=-removed,
        balance_after=0,
        reason=reason,
    )
    return removed
