"""Sleep performance/consistency columns and per-class freshness stamps

All additions are nullable, so existing rows need no backfill: a row with
both stamps NULL is aged by updated_at.

Revision ID: 002
Revises: 001
Create Date: 2026-10-02
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column("daily_metrics", sa.Column("sleep_perf_pct", sa.Float, nullable=True))
    op.add_column("daily_metrics", sa.Column("sleep_consistency_pct", sa.Float, nullable=True))
    op.add_column(
        "daily_metrics",
        sa.Column("strain_refreshed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.add_column(
        "daily_metrics",
        sa.Column("sleep_recovery_refreshed_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_column("daily_metrics", "sleep_recovery_refreshed_at")
    op.drop_column("daily_metrics", "strain_refreshed_at")
    op.drop_column("daily_metrics", "sleep_consistency_pct")
    op.drop_column("daily_metrics", "sleep_perf_pct")
