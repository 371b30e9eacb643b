from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import User


async def get_user_by_id(db: AsyncSession, user_id: int, *, for_update: bool = False) -> User | None:
    query = select(User).where(User.id == user_id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_user_by_referral_code(db: AsyncSession, referral_code: str) -> User | None:
    result = await db.execute(select(User).where(func.lower(User.referral_code) == referral_code.strip().lower()))
    return result.scalar_one_or_none()


async def referral_code_exists(db: AsyncSession, referral_code: str) -> bool:
    result = await db.execute(select(User.id).where(User.referral_code == referral_code).limit(1))
    return result.scalar_one_or_none() is not None


async def get_user_by_stripe_customer_id(db: AsyncSession, customer_id: str) -> User | None:
    result = await db.execute(select(User).where(User.stripe_customer_id == customer_id).limit(1))
    return result.scalar_one_or_none()
