"""Initial schema for the FilOps agent core

Revision ID: 20260105_090000
Revises: None
Create Date: 2026-01-05 09:00:00.000000

Creates every table used by the SQL repositories:
- Policies, agents and actions (agent lifecycle and remediation)
- Alerts (append-only)
- Datasets and deals (replication state read by the compliance loop)
- Event outbox

Revision format: YYYYMMDD_HHMMSS_description

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20260105_090000"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(JSONB(), "postgresql")


def upgrade() -> None:
    """Create all tables."""

    op.create_table(
        "fo_policies",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("project_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("doc", JSON_TYPE, nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("created_by", sa.String(128), nullable=True),
        sa.Column("updated_by", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_fo_policies_project_id", "fo_policies", ["project_id"])
    op.create_index("ix_fo_policies_active", "fo_policies", ["active"])

    op.create_table(
        "fo_agents",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("project_id", sa.String(64), nullable=False),
        sa.Column("policy_id", sa.String(64), nullable=False),
        sa.Column("config", JSON_TYPE, nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_fo_agents_kind", "fo_agents", ["kind"])
    op.create_index("ix_fo_agents_project_id", "fo_agents", ["project_id"])
    op.create_index("ix_fo_agents_policy_id", "fo_agents", ["policy_id"])
    op.create_index("ix_fo_agents_status", "fo_agents", ["status"])

    op.create_table(
        "fo_actions",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("agent_id", sa.String(64), nullable=False),
        sa.Column("dataset_id", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("metadata", JSON_TYPE, nullable=False),
        sa.Column("result", JSON_TYPE, nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_fo_actions_agent_id", "fo_actions", ["agent_id"])
    op.create_index("ix_fo_actions_dataset_id", "fo_actions", ["dataset_id"])
    op.create_index("ix_fo_actions_status", "fo_actions", ["status"])

    op.create_table(
        "fo_alerts",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("project_id", sa.String(64), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("details", JSON_TYPE, nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("source", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_fo_alerts_project_id", "fo_alerts", ["project_id"])

    op.create_table(
        "fo_datasets",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("project_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("cid", sa.String(255), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_fo_datasets_project_id", "fo_datasets", ["project_id"])

    op.create_table(
        "fo_deals",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("dataset_id", sa.String(64), nullable=False),
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("region", sa.String(16), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("deal_ref", sa.String(128), nullable=True),
        sa.Column("tx_hash", sa.String(128), nullable=True),
        sa.Column("price_fil", sa.String(64), nullable=True),
        sa.Column("collateral_fil", sa.String(64), nullable=True),
        sa.Column("price_usd_per_tib_month", sa.Float(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_fo_deals_dataset_id", "fo_deals", ["dataset_id"])
    op.create_index("ix_fo_deals_status", "fo_deals", ["status"])

    op.create_table(
        "fo_event_outbox",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("topic", sa.String(128), nullable=False),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("source", sa.String(128), nullable=False),
        sa.Column("version", sa.String(16), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload", JSON_TYPE, nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_fo_event_outbox_topic", "fo_event_outbox", ["topic"])
    op.create_index("ix_fo_event_outbox_type", "fo_event_outbox", ["type"])


def downgrade() -> None:
    """Drop all tables."""
    for table in (
        "fo_event_outbox",
        "fo_deals",
        "fo_datasets",
        "fo_alerts",
        "fo_actions",
        "fo_agents",
        "fo_policies",
    ):
        op.drop_table(table)
