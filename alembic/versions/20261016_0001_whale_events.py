"""Create whale_events table.

Revision ID: 001_whale_events
Revises:
Create Date: 2026-10-16 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_whale_events"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "whale_events",
        sa.Column("id", sa.String(200), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("wallet", sa.String(100), nullable=False),
        sa.Column("wallet_label", sa.String(200), nullable=True),
        sa.Column("chain", sa.String(20), nullable=False),
        sa.Column("transfer_json", sa.Text(), nullable=False),
        sa.Column("significance", sa.String(10), nullable=False),
        sa.Column("significance_rank", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_whale_events_wallet", "whale_events", ["wallet"])
    op.create_index("idx_whale_events_chain", "whale_events", ["chain"])
    op.create_index("idx_whale_events_created_at", "whale_events", ["created_at"])
    op.create_index("idx_whale_events_significance_rank", "whale_events", ["significance_rank"])


def downgrade() -> None:
    op.drop_index("idx_whale_events_significance_rank", table_name="whale_events")
    op.drop_index("idx_whale_events_created_at", table_name="whale_events")
    op.drop_index("idx_whale_events_chain", table_name="whale_events")
    op.drop_index("idx_whale_events_wallet", table_name="whale_events")
    op.drop_table("whale_events")
