"""photo type on download jobs

Revision ID: 0003_job_photo_type
Revises: 0002_agency_tables
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa

revision = "0003_job_photo_type"
down_revision = "0002_agency_tables"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("kizeo_jobs", sa.Column("photo_type", sa.String(length=50), nullable=True))


def downgrade() -> None:
    op.drop_column("kizeo_jobs", "photo_type")
