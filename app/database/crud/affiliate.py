from datetime import datetime
from decimal import Decimal

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import AffiliateSale, MilestoneProgram, User, UserBadge


async def create_affiliate_sale(
    db: AsyncSession,
    *,
    affiliate_id: int,
    customer_id: int,
    subscription_id: int | None,
    plan_id: int | None,
    amount: Decimal,
) -> AffiliateSale:
    sale = AffiliateSale(
        affiliate_id=affiliate_id,
        customer_id=customer_id,
        subscription_id=subscription_id,
        plan_id=plan_id,
        amount=amount,
    )
    db.add(sale)
    await db.flush()
    return sale


async def get_affiliate_leaderboard(
    db: AsyncSession,
    *,
    limit: int,
    since: datetime | None = None,
) -> list[dict]:
    sales = func.count(AffiliateSale.id).label('sales')
    revenue = func.coalesce(func.sum(AffiliateSale.amount), 0).label('revenue')
    query = (
        select(User.id, User.first_name, User.email, User.sales_count, UserBadge.badge_level, sales, revenue)
        .join(AffiliateSale, AffiliateSale.affiliate_id == User.id)
        .outerjoin(
            UserBadge,
            and_(UserBadge.user_id == User.id, UserBadge.badge_type == MilestoneProgram.AFFILIATE.value),
        )
        .group_by(User.id, User.first_name, User.email, User.sales_count, UserBadge.badge_level)
        .order_by(sales.desc(), revenue.desc())
        .limit(max(1, min(limit, 100)))
    )
    if since is not None:
        query = query.where(AffiliateSale.created_at >= since)

    rows = (await db.execute(query)).all()
    return [
        {
            'user_id': row.id,
            'name': row.first_name,
            'email': row.email,
            'sales_count': row.sales_count,
            'period_sales': int(row.sales or 0),
            'revenue': str(row.revenue or 0),
            'badge_level': row.badge_level,
        }
        for row in rows
    ]
