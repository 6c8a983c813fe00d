"""Initial schema: services, scan_records.

Revision ID: 0001
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── services ────────────────────────────────────────────────────────────
    op.create_table(
        "services",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("repo_url", sa.String(500), nullable=False),
        sa.Column("ref", sa.String(255), nullable=False, server_default="main"),
        sa.Column("image_name", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_services_name", "services", ["name"], unique=True)
    op.create_index("ix_services_created_at", "services", ["created_at"])

    # ── scan_records ─────────────────────────────────────────────────────────
    op.create_table(
        "scan_records",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("external_pipeline_id", sa.String(64), nullable=True),
        sa.Column(
            "service_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("services.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("scan_mode", sa.String(20), nullable=False, server_default="SCAN_ONLY"),
        sa.Column("image_tag", sa.String(128), nullable=True),
        sa.Column("state", sa.String(32), nullable=False, server_default="QUEUED"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("findings", sa.JSON(), nullable=True),
        sa.Column("vuln_critical", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("vuln_high", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("vuln_medium", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("vuln_low", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("image_pushed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("pipeline_url", sa.String(500), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "is_critical_acknowledged",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column("acknowledged_by", sa.String(255), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_latest", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_scan_records_external_pipeline_id",
        "scan_records",
        ["external_pipeline_id"],
        unique=True,
    )
    op.create_index("ix_scan_records_service_id", "scan_records", ["service_id"])
    op.create_index("ix_scan_records_state", "scan_records", ["state"])
    op.create_index("ix_scan_records_is_latest", "scan_records", ["is_latest"])
    op.create_index("ix_scan_records_created_at", "scan_records", ["created_at"])


def downgrade() -> None:
    op.drop_table("scan_records")
    op.drop_table("services")
