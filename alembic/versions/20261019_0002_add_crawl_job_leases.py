"""add attempt lease columns to crawl_jobs

Revision ID: 20261019_0002
Revises: 20261019_0001
Create Date: 2026-10-19 14:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("crawl_jobs", sa.Column("lock_token", sa.Uuid(as_uuid=True), nullable=True))
    op.add_column("crawl_jobs", sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True))
    op.create_index(
        "ix_crawl_jobs_status_locked_until",
        "crawl_jobs",
        ["status", "locked_until"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crawl_jobs_status_locked_until", table_name="crawl_jobs")
    op.drop_column("crawl_jobs", "locked_until")
    op.drop_column("crawl_jobs", "lock_token")
