"""create spells, runs and step_results tables

Revision ID: 3a7c9e1b2d40
Revises:
Create Date: 2026-10-16

Runs carry a `version` column used as the compare-and-set counter for
every aggregation write. Step results are unique per (run_id, step_index)
and per external_ref so duplicate dispatches and callbacks are rejected
by the database.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision = "3a7c9e1b2d40"
down_revision = None
branch_labels = None
depends_on = None

SCHEMA = "stationthis"


def _timestamps(*names: str) -> list[sa.Column]:
    return [
        sa.Column(
            name,
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        )
        for name in names
    ]


def upgrade() -> None:
    """Create coordinator tables."""
    op.create_table(
        "spells",
        sa.Column("slug", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False, server_default=""),
        sa.Column("steps", JSONB(), nullable=False),
        *_timestamps("created_at", "updated_at"),
        sa.PrimaryKeyConstraint("slug"),
        schema=SCHEMA,
    )

    op.create_table(
        "runs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False, server_default="cast"),
        sa.Column("definition_id", sa.String(length=128), nullable=False),
        sa.Column("definition", JSONB(), nullable=False),
        sa.Column("initiator_id", sa.String(length=128), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False, server_default="none"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="running"),
        sa.Column(
            "accumulated_cost",
            sa.Numeric(14, 6),
            nullable=False,
            server_default="0",
        ),
        sa.Column("step_result_ids", JSONB(), nullable=False, server_default="[]"),
        sa.Column("initial_context", JSONB(), nullable=False, server_default="{}"),
        sa.Column("notification_context", JSONB(), nullable=False, server_default="{}"),
        sa.Column("metadata", JSONB(), nullable=False, server_default="{}"),
        sa.Column("final_step_result_id", sa.String(length=36), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps("started_at"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('running', 'completed', 'failed', 'cancelled')",
            name="ck_runs_status",
        ),
        schema=SCHEMA,
    )
    op.create_index("ix_runs_definition_id", "runs", ["definition_id"], schema=SCHEMA)
    op.create_index("ix_runs_initiator_id", "runs", ["initiator_id"], schema=SCHEMA)

    op.create_table(
        "step_results",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("run_id", sa.String(length=36), nullable=False),
        sa.Column("step_index", sa.Integer(), nullable=False),
        sa.Column("tool_id", sa.String(length=128), nullable=False),
        sa.Column("delivery_mode", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("input_context", JSONB(), nullable=False, server_default="{}"),
        sa.Column("resolved_inputs", JSONB(), nullable=False, server_default="{}"),
        sa.Column("external_ref", sa.String(length=128), nullable=True),
        sa.Column("raw_payload", JSONB(), nullable=True),
        sa.Column("output_payload", JSONB(), nullable=True),
        sa.Column("cost_delta", sa.Numeric(14, 6), nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("is_final", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps("created_at"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["run_id"], [f"{SCHEMA}.runs.id"]),
        sa.UniqueConstraint("run_id", "step_index", name="uq_step_results_run_step"),
        sa.UniqueConstraint("external_ref", name="uq_step_results_external_ref"),
        sa.CheckConstraint(
            "status IN ('pending', 'success', 'failed')",
            name="ck_step_results_status",
        ),
        schema=SCHEMA,
    )
    op.create_index("ix_step_results_run_id", "step_results", ["run_id"], schema=SCHEMA)


def downgrade() -> None:
    """Drop coordinator tables."""
    op.drop_index("ix_step_results_run_id", table_name="step_results", schema=SCHEMA)
    op.drop_table("step_results", schema=SCHEMA)
    op.drop_index("ix_runs_initiator_id", table_name="runs", schema=SCHEMA)
    op.drop_index("ix_runs_definition_id", table_name="runs", schema=SCHEMA)
    op.drop_table("runs", schema=SCHEMA)
    op.drop_table("spells", schema=SCHEMA)
