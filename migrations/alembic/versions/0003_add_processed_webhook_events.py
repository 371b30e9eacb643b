"""add processed webhook events

Revision ID: 0003
Revises: 0002
Create Date: 2026-10-18
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.engine import Connection


revision: str = '0003'
down_revision: Union[str, None] = '0002'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_table(conn: Connection, table_name: str) -> bool:
    result = conn.execute(
        sa.text(
            "SELECT EXISTS (SELECT 1 FROM information_schema.tables "
            "WHERE table_schema = 'public' AND table_name = :name)"
        ),
        {'name': table_name},
    )
    return bool(result.scalar())


def upgrade() -> None:
    conn = op.get_bind()

    if not _has_table(conn, 'processed_webhook_events'):
        op.create_table(
            'processed_webhook_events',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('event_id', sa.String(length=255), nullable=False),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
            sa.Column('handled', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('payload_summary', sa.JSON(), nullable=True),
            sa.Column('processed_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.UniqueConstraint('event_id', name='uq_processed_webhook_events_event_id'),
        )


def downgrade() -> None:
    conn = op.get_bind()

    if _has_table(conn, 'processed_webhook_events'):
        op.drop_table('processed_webhook_events')
