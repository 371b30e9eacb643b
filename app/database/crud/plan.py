from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import Plan


async def get_plan_by_id(db: AsyncSession, plan_id: int) -> Plan | None:
    return await db.get(Plan, plan_id)


async def get_plan_by_stripe_price_id(db: AsyncSession, price_id: str) -> Plan | None:
    """Exact match on either the test or the live provider price id."""
    result = await db.execute(
        select(Plan)
        .where(or_(Plan.stripe_price_id == price_id, Plan.stripe_price_id_live == price_id))
        .order_by(Plan.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_plan_by_price_fragment(db: AsyncSession, price_id: str) -> Plan | None:
    """Fallback lookup for price ids that embed or are embedded in a stored id."""
    plans = (
        (await db.execute(select(Plan).where(or_(Plan.stripe_price_id.is_not(None), Plan.stripe_price_id_live.is_not(None)))))
        .scalars()
        .all()
    )
    for plan in plans:
        for candidate in (plan.stripe_price_id, plan.stripe_price_id_live):
            if candidate and (candidate in price_id or price_id in candidate):
                return plan
    return None


async def get_plan_by_stripe_product_id(db: AsyncSession, product_id: str) -> Plan | None:
    result = await db.execute(select(Plan).where(Plan.stripe_product_id == product_id).order_by(Plan.id).limit(1))
    return result.scalar_one_or_none()
