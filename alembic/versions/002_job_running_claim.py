"""Add the running claim to jobs.

Revision ID: 002_job_running_claim
Revises: 001_autosync_tables
Create Date: 2026-10-18 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "002_job_running_claim"
down_revision = "001_autosync_tables"
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Add jobs.running_since."""

    with op.batch_alter_table("jobs") as batch_op:
        batch_op.add_column(sa.Column("running_since", sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    """Drop jobs.running_since."""

    with op.batch_alter_table("jobs") as batch_op:
        batch_op.drop_column("running_since")
