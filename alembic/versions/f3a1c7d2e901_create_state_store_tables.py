"""create_state_store_tables

Revision ID: f3a1c7d2e901
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "f3a1c7d2e901"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at",
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    """Apply migration - create the versioned state store."""
    # Create seeding_run table
    op.create_table(
        "seeding_run",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("run_id", sa.String(length=32), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        # Scope
        sa.Column("source_filter", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("target_ids", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("window", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("restores_run_id", sa.String(length=32), nullable=True),
        # Progress
        sa.Column("last_checkpoint", sa.String(length=20), nullable=True),
        sa.Column("summary", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        # Error tracking
        sa.Column("error_message", sa.String(length=2000), nullable=True),
        sa.Column("error_type", sa.String(length=100), nullable=True),
        # Timing
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        # Constraints
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("version"),
        sa.CheckConstraint(
            "status IN ('pending', 'collecting', 'cleaning', 'scoring', 'distributing', "
            "'completed', 'failed', 'rolled_back')",
            name="ck_seeding_run_valid_status",
        ),
        sa.CheckConstraint(
            "kind IN ('seeding', 'refresh', 'rollback')",
            name="ck_seeding_run_valid_kind",
        ),
        sa.CheckConstraint("version >= 1", name="ck_seeding_run_positive_version"),
    )
    op.create_index(op.f("ix_seeding_run_run_id"), "seeding_run", ["run_id"], unique=True)
    op.create_index(op.f("ix_seeding_run_kind"), "seeding_run", ["kind"], unique=False)
    op.create_index(op.f("ix_seeding_run_status"), "seeding_run", ["status"], unique=False)
    op.create_index(
        "ix_seeding_run_target_ids_gin",
        "seeding_run",
        ["target_ids"],
        unique=False,
        postgresql_using="gin",
    )

    # Create run_status_event table
    op.create_table(
        "run_status_event",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("run_id", sa.String(length=32), nullable=False),
        sa.Column("from_status", sa.String(length=20), nullable=True),
        sa.Column("to_status", sa.String(length=20), nullable=False),
        sa.Column("reason", sa.String(length=2000), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_run_status_event_run_id"), "run_status_event", ["run_id"], unique=False
    )
    op.create_index(
        op.f("ix_run_status_event_created_at"), "run_status_event", ["created_at"], unique=False
    )

    # Create run_checkpoint table
    op.create_table(
        "run_checkpoint",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("run_id", sa.String(length=32), nullable=False),
        sa.Column("stage", sa.String(length=20), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("checksum", sa.String(length=64), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("run_id", "stage", name="uq_run_checkpoint_run_stage"),
        sa.CheckConstraint(
            "stage IN ('collected', 'cleaned', 'augmented', 'scored', 'distributed')",
            name="ck_run_checkpoint_valid_stage",
        ),
    )
    op.create_index(op.f("ix_run_checkpoint_run_id"), "run_checkpoint", ["run_id"], unique=False)
    op.create_index(
        op.f("ix_run_checkpoint_created_at"), "run_checkpoint", ["created_at"], unique=False
    )

    # Create canonical_batch table
    op.create_table(
        "canonical_batch",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("run_id", sa.String(length=32), nullable=False),
        sa.Column("schema_name", sa.String(length=100), nullable=False),
        sa.Column("record_count", sa.Integer(), nullable=False),
        sa.Column("records", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("checksum", sa.String(length=64), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("run_id", "schema_name", name="uq_canonical_batch_run_schema"),
    )
    op.create_index(
        op.f("ix_canonical_batch_run_id"), "canonical_batch", ["run_id"], unique=False
    )
    op.create_index(
        op.f("ix_canonical_batch_schema_name"), "canonical_batch", ["schema_name"], unique=False
    )
    op.create_index(
        op.f("ix_canonical_batch_created_at"), "canonical_batch", ["created_at"], unique=False
    )

    # Create policy_snapshot table
    op.create_table(
        "policy_snapshot",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("run_id", sa.String(length=32), nullable=False),
        sa.Column("policies", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_policy_snapshot_run_id"), "policy_snapshot", ["run_id"], unique=True
    )
    op.create_index(
        op.f("ix_policy_snapshot_created_at"), "policy_snapshot", ["created_at"], unique=False
    )

    # Create bias_report table
    op.create_table(
        "bias_report",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("report_id", sa.String(length=32), nullable=False),
        sa.Column("run_id", sa.String(length=32), nullable=False),
        sa.Column("schema_name", sa.String(length=100), nullable=False),
        sa.Column("risk_tier", sa.String(length=20), nullable=False),
        sa.Column("report", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("report_id"),
        sa.CheckConstraint(
            "risk_tier IN ('low', 'medium', 'high', 'critical')",
            name="ck_bias_report_valid_tier",
        ),
    )
    op.create_index(op.f("ix_bias_report_run_id"), "bias_report", ["run_id"], unique=False)
    op.create_index(op.f("ix_bias_report_risk_tier"), "bias_report", ["risk_tier"], unique=False)
    op.create_index(
        op.f("ix_bias_report_created_at"), "bias_report", ["created_at"], unique=False
    )

    # Create audit_event table
    op.create_table(
        "audit_event",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("event_id", sa.String(length=32), nullable=False),
        sa.Column("kind", sa.String(length=40), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False),
        sa.Column("message", sa.String(length=2000), nullable=False),
        # Context
        sa.Column("run_id", sa.String(length=32), nullable=True),
        sa.Column("source_id", sa.String(length=100), nullable=True),
        sa.Column("target_id", sa.String(length=100), nullable=True),
        sa.Column("record_id", sa.String(length=64), nullable=True),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column(
            "occurred_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id"),
        sa.CheckConstraint(
            "severity IN ('info', 'warning', 'critical')",
            name="ck_audit_event_valid_severity",
        ),
    )
    op.create_index(op.f("ix_audit_event_kind"), "audit_event", ["kind"], unique=False)
    op.create_index(op.f("ix_audit_event_run_id"), "audit_event", ["run_id"], unique=False)
    op.create_index(op.f("ix_audit_event_source_id"), "audit_event", ["source_id"], unique=False)
    op.create_index(op.f("ix_audit_event_target_id"), "audit_event", ["target_id"], unique=False)
    op.create_index(
        op.f("ix_audit_event_occurred_at"), "audit_event", ["occurred_at"], unique=False
    )
    op.create_index(
        "ix_audit_event_details_gin",
        "audit_event",
        ["details"],
        unique=False,
        postgresql_using="gin",
    )

    # Create hold_entry table
    op.create_table(
        "hold_entry",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("hold_id", sa.String(length=32), nullable=False),
        sa.Column("run_id", sa.String(length=32), nullable=False),
        sa.Column("target_id", sa.String(length=100), nullable=False),
        sa.Column("record_id", sa.String(length=64), nullable=False),
        sa.Column("schema_name", sa.String(length=100), nullable=False),
        sa.Column("reason", sa.String(length=20), nullable=False),
        sa.Column("policies", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("bias_report_id", sa.String(length=32), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("hold_id"),
        sa.CheckConstraint(
            "reason IN ('governance', 'bias')", name="ck_hold_entry_valid_reason"
        ),
    )
    op.create_index(op.f("ix_hold_entry_run_id"), "hold_entry", ["run_id"], unique=False)
    op.create_index(op.f("ix_hold_entry_target_id"), "hold_entry", ["target_id"], unique=False)
    op.create_index(op.f("ix_hold_entry_created_at"), "hold_entry", ["created_at"], unique=False)
    op.create_index(
        "ix_hold_entry_run_target", "hold_entry", ["run_id", "target_id"], unique=False
    )

    # Create hold_override table
    op.create_table(
        "hold_override",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("override_id", sa.String(length=32), nullable=False),
        sa.Column("run_id", sa.String(length=32), nullable=False),
        sa.Column("target_id", sa.String(length=100), nullable=False),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("reason", sa.String(length=2000), nullable=False),
        sa.Column("record_ids", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("delivered", sa.Integer(), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("override_id"),
    )
    op.create_index(op.f("ix_hold_override_run_id"), "hold_override", ["run_id"], unique=False)
    op.create_index(
        op.f("ix_hold_override_target_id"), "hold_override", ["target_id"], unique=False
    )
    op.create_index(
        op.f("ix_hold_override_created_at"), "hold_override", ["created_at"], unique=False
    )

    # Create target_pointer table
    op.create_table(
        "target_pointer",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("target_id", sa.String(length=100), nullable=False),
        sa.Column("run_id", sa.String(length=32), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        _created_at(),
        _updated_at(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_target_pointer_target_id"), "target_pointer", ["target_id"], unique=True
    )

    # Create pointer_event table
    op.create_table(
        "pointer_event",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("target_id", sa.String(length=100), nullable=False),
        sa.Column("from_run_id", sa.String(length=32), nullable=True),
        sa.Column("to_run_id", sa.String(length=32), nullable=False),
        sa.Column("from_version", sa.Integer(), nullable=True),
        sa.Column("to_version", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=20), nullable=False),
        sa.Column("moved_by_run_id", sa.String(length=32), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "reason IN ('advance', 'rollback', 'override')",
            name="ck_pointer_event_valid_reason",
        ),
    )
    op.create_index(
        op.f("ix_pointer_event_target_id"), "pointer_event", ["target_id"], unique=False
    )
    op.create_index(
        op.f("ix_pointer_event_to_run_id"), "pointer_event", ["to_run_id"], unique=False
    )
    op.create_index(
        op.f("ix_pointer_event_created_at"), "pointer_event", ["created_at"], unique=False
    )

    # Create delivery_outbox table
    op.create_table(
        "delivery_outbox",
        sa.Column("id", sa.BigInteger(), nullable=False),
        sa.Column("target_id", sa.String(length=100), nullable=False),
        sa.Column("run_id", sa.String(length=32), nullable=True),
        sa.Column("record_id", sa.String(length=64), nullable=False),
        sa.Column("delivery_id", sa.String(length=32), nullable=False),
        sa.Column("row", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "target_id", "run_id", "record_id", name="uq_delivery_outbox_target_run_record"
        ),
    )
    op.create_index(op.f("ix_delivery_outbox_run_id"), "delivery_outbox", ["run_id"], unique=False)
    op.create_index(
        op.f("ix_delivery_outbox_created_at"), "delivery_outbox", ["created_at"], unique=False
    )
    op.create_index(
        "ix_delivery_outbox_target_id_id", "delivery_outbox", ["target_id", "id"], unique=False
    )


def downgrade() -> None:
    """Revert migration - drop the state store tables."""
    op.drop_table("delivery_outbox")
    op.drop_table("pointer_event")
    op.drop_table("target_pointer")
    op.drop_table("hold_override")
    op.drop_table("hold_entry")
    op.drop_table("audit_event")
    op.drop_table("bias_report")
    op.drop_table("policy_snapshot")
    op.drop_table("canonical_batch")
    op.drop_table("run_checkpoint")
    op.drop_table("run_status_event")
    op.drop_table("seeding_run")
