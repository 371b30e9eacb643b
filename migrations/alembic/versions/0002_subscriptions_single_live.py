"""allow at most one live subscription per user

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-18
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.engine import Connection


revision: str = '0002'
down_revision: Union[str, None] = '0001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LIVE_INDEX = 'uq_subscriptions_user_live'


def _has_table(conn: Connection, table_name: str) -> bool:
    result = conn.execute(
        sa.text(
            "SELECT EXISTS (SELECT 1 FROM information_schema.tables "
            "WHERE table_schema = 'public' AND table_name = :table_name)"
        ),
        {'table_name': table_name},
    )
    return bool(result.scalar())


def _has_index(conn: Connection, index_name: str) -> bool:
    result = conn.execute(
        sa.text(
            "SELECT EXISTS (SELECT 1 FROM pg_indexes "
            "WHERE schemaname = 'public' AND indexname = :index_name)"
        ),
        {'index_name': index_name},
    )
    return bool(result.scalar())


def upgrade() -> None:
    conn = op.get_bind()

    if not _has_table(conn, 'subscriptions'):
        return

    # keep only the newest live row per user before enforcing uniqueness
    conn.execute(
        sa.text(
            "UPDATE subscriptions SET status = 'canceled', canceled_at = COALESCE(canceled_at, now()), "
            "ends_at = COALESCE(ends_at, now()) "
            "WHERE status IN ('active', 'trialing') AND id NOT IN ("
            "SELECT MAX(id) FROM subscriptions WHERE status IN ('active', 'trialing') GROUP BY user_id)"
        )
    )

    if not _has_index(conn, LIVE_INDEX):
        op.create_index(
            LIVE_INDEX,
            'subscriptions',
            ['user_id'],
            unique=True,
            postgresql_where=sa.text("status IN ('active', 'trialing')"),
        )


def downgrade() -> None:
    conn = op.get_bind()

    if _has_table(conn, 'subscriptions') and _has_index(conn, LIVE_INDEX):
        op.drop_index(LIVE_INDEX, table_name='subscriptions')
