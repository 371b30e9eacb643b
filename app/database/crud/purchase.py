from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import Purchase, TokenTransaction, TokenUsage


async def get_purchase_by_session_id(db: AsyncSession, session_id: str) -> Purchase | None:
    result = await db.execute(select(Purchase).where(Purchase.session_id == session_id))
    return result.scalar_one_or_none()


async def create_purchase(db: AsyncSession, **values) -> Purchase:
    purchase = Purchase(**values)
    db.add(purchase)
    await db.flush()
    return purchase


async def create_token_transaction(
    db: AsyncSession,
    *,
    user_id: int,
    bucket: str,
    delta: int,
    balance_after: int,
    reason: str | None = None,
    purchase_id: int | None = None,
) -> TokenTransaction:
    entry = TokenTransaction(
        user_id=user_id,
        bucket=bucket,
        delta=delta,
        balance_after=balance_after,
        reason=reason,
        purchase_id=purchase_id,
    )
    db.add(entry)
    await db.flush()
    return entry


async def create_token_usage(db: AsyncSession, **values) -> TokenUsage:
    usage = TokenUsage(**values)
    db.add(usage)
    await db.flush()
    return usage
