"""download job queue

Revision ID: 0001_kizeo_jobs
Revises: 
Create Date: 2026-10-12 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa

revision = "0001_kizeo_jobs"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "kizeo_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("job_type", sa.String(length=10), nullable=False),
        sa.Column("agency_code", sa.String(length=10), nullable=False),
        sa.Column("form_id", sa.Integer(), nullable=False),
        sa.Column("data_id", sa.Integer(), nullable=False),
        sa.Column("media_name", sa.String(length=255), nullable=True),
        sa.Column("equipment_numero", sa.String(length=50), nullable=True),
        sa.Column("id_contact", sa.Integer(), nullable=False),
        sa.Column("annee", sa.String(length=4), nullable=False),
        sa.Column("visite", sa.String(length=10), nullable=False),
        sa.Column("client_name", sa.String(length=255), nullable=True),
        sa.Column("date_visite", sa.String(length=10), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("local_path", sa.String(length=500), nullable=True),
        sa.Column("file_size", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("(CURRENT_TIMESTAMP)")),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("form_id", "data_id", "media_name", name="uk_photo"),
    )
    op.create_index("idx_pending_type_priority", "kizeo_jobs", ["status", "job_type", "priority", "created_at"])
    op.create_index("idx_form_data", "kizeo_jobs", ["form_id", "data_id"])
    op.create_index("idx_cleanup", "kizeo_jobs", ["status", "completed_at"])
    op.create_index("idx_agency", "kizeo_jobs", ["agency_code", "status"])
    op.create_index("idx_stuck", "kizeo_jobs", ["status", "started_at"])


def downgrade() -> None:
    op.drop_index("idx_stuck", table_name="kizeo_jobs")
    op.drop_index("idx_agency", table_name="kizeo_jobs")
    op.drop_index("idx_cleanup", table_name="kizeo_jobs")
    op.drop_index("idx_form_data", table_name="kizeo_jobs")
    op.drop_index("idx_pending_type_priority", table_name="kizeo_jobs")
    op.drop_table("kizeo_jobs")
