"""Initial schema for Carnival Sync.

Revision ID: 0001
Revises:
Create Date: 2026-03-01

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create carnivals table (pipeline-managed subset)
    op.create_table(
        "carnivals",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("source_id", sa.String(64), nullable=True),
        sa.Column("title", sa.String(255), nullable=False, server_default=""),
        sa.Column("date", sa.Date(), nullable=True),
        sa.Column("state", sa.String(3), nullable=True),
        sa.Column("location_address", sa.Text(), nullable=True),
        sa.Column("registration_link", sa.String(500), nullable=True),
        sa.Column("organiser_contact_email", sa.String(255), nullable=True),
        sa.Column("organiser_contact_name", sa.String(255), nullable=True),
        sa.Column("organiser_contact_phone", sa.String(50), nullable=True),
        sa.Column("logo_url", sa.String(500), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_manually_entered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_imported_at", sa.DateTime(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("manual_override_fields_json", sa.Text(), server_default="[]"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_carnivals_source_id", "carnivals", ["source_id"], unique=True)
    op.create_index("ix_carnivals_date", "carnivals", ["date"])
    op.create_index("ix_carnivals_state", "carnivals", ["state"])
    op.create_index("ix_carnivals_is_active", "carnivals", ["is_active"])

    # Create ingestion_runs table
    op.create_table(
        "ingestion_runs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("correlation_id", sa.String(36), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("trigger_source", sa.String(20), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("scanned", sa.Integer(), server_default="0"),
        sa.Column("created", sa.Integer(), server_default="0"),
        sa.Column("updated", sa.Integer(), server_default="0"),
        sa.Column("blocked", sa.Integer(), server_default="0"),
        sa.Column("skipped", sa.Integer(), server_default="0"),
        sa.Column("errored", sa.Integer(), server_default="0"),
        sa.Column("deactivated", sa.Integer(), server_default="0"),
        sa.Column("skip_reasons_json", sa.Text(), server_default="{}"),
        sa.Column("error_samples_json", sa.Text(), server_default="[]"),
        sa.Column("error_summary", sa.Text(), nullable=True),
    )
    op.create_index(
        "ix_ingestion_runs_correlation_id", "ingestion_runs", ["correlation_id"], unique=True
    )
    op.create_index("ix_ingestion_runs_started_at", "ingestion_runs", ["started_at"])
    # At most one running row: this index is the single-flight lock
    op.create_index(
        "ux_ingestion_runs_single_running",
        "ingestion_runs",
        ["status"],
        unique=True,
        sqlite_where=sa.text("status = 'running'"),
        postgresql_where=sa.text("status = 'running'"),
    )


def downgrade() -> None:
    op.drop_index("ux_ingestion_runs_single_running", table_name="ingestion_runs")
    op.drop_index("ix_ingestion_runs_started_at", table_name="ingestion_runs")
    op.drop_index("ix_ingestion_runs_correlation_id", table_name="ingestion_runs")
    op.drop_table("ingestion_runs")
    op.drop_index("ix_carnivals_is_active", table_name="carnivals")
    op.drop_index("ix_carnivals_state", table_name="carnivals")
    op.drop_index("ix_carnivals_date", table_name="carnivals")
    op.drop_index("ix_carnivals_source_id", table_name="carnivals")
    op.drop_table("carnivals")
