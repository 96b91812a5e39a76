"""create workflow engine tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "personalized_templates",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_user_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(length=100), nullable=False, server_default="general"),
        sa.Column("channel", sa.String(length=32), nullable=False, server_default="email"),
        sa.Column("subject_template", sa.Text(), nullable=True),
        sa.Column("content_template", sa.Text(), nullable=False),
        sa.Column("variables", sa.JSON(), nullable=False),
        sa.Column("conditions", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("owner_user_id", "name", name="uq_personalized_templates_owner_name"),
        sa.CheckConstraint("channel IN ('email', 'sms')", name="ck_personalized_templates_channel"),
    )
    op.create_index(
        "ix_personalized_templates_owner_channel",
        "personalized_templates",
        ["owner_user_id", "channel"],
        unique=False,
    )

    op.create_table(
        "template_variants",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("template_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("weight", sa.Float(), nullable=False),
        sa.Column("is_control", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("subject_template", sa.Text(), nullable=True),
        sa.Column("content_template", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["template_id"], ["personalized_templates.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("template_id", "name", name="uq_template_variants_template_name"),
        sa.CheckConstraint("weight > 0 AND weight <= 1", name="ck_template_variants_weight"),
    )
    op.create_index("ix_template_variants_template_id", "template_variants", ["template_id"], unique=False)

    op.create_table(
        "personalization_rules",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_user_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("conditions", sa.JSON(), nullable=False),
        sa.Column("template_priority", sa.JSON(), nullable=False),
        sa.Column("score_weight", sa.Float(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_personalization_rules_owner_active",
        "personalization_rules",
        ["owner_user_id", "is_active"],
        unique=False,
    )

    op.create_table(
        "ab_experiments",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("template_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="draft"),
        sa.Column("target_metric", sa.String(length=64), nullable=False, server_default="open_rate"),
        sa.Column("confidence_threshold", sa.Float(), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["template_id"], ["personalized_templates.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("status IN ('draft', 'running', 'completed')", name="ck_ab_experiments_status"),
    )
    op.create_index("ix_ab_experiments_template_status", "ab_experiments", ["template_id", "status"], unique=False)

    op.create_table(
        "experiment_results",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("experiment_id", sa.Uuid(), nullable=False),
        sa.Column("variant_id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("metric_value", sa.Float(), nullable=True),
        sa.Column("conversion_occurred", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["experiment_id"], ["ab_experiments.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["variant_id"], ["template_variants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("experiment_id", "lead_id", name="uq_experiment_results_experiment_lead"),
    )
    op.create_index("ix_experiment_results_variant_id", "experiment_results", ["variant_id"], unique=False)

    op.create_table(
        "workflow_configurations",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_user_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("trigger_score_min", sa.Integer(), nullable=True),
        sa.Column("trigger_score_max", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_workflow_configurations_owner_active",
        "workflow_configurations",
        ["owner_user_id", "is_active"],
        unique=False,
    )

    op.create_table(
        "workflow_sequences",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workflow_id", sa.Uuid(), nullable=False),
        sa.Column("step_number", sa.Integer(), nullable=False),
        sa.Column("action_type", sa.String(length=32), nullable=False),
        sa.Column("template_id", sa.Uuid(), nullable=True),
        sa.Column("delay_hours", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["workflow_id"], ["workflow_configurations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["template_id"], ["personalized_templates.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("workflow_id", "step_number", name="uq_workflow_sequences_workflow_step"),
        sa.CheckConstraint(
            "action_type IN ('email', 'sms', 'task', 'notification')",
            name="ck_workflow_sequences_action_type",
        ),
        sa.CheckConstraint("delay_hours >= 0", name="ck_workflow_sequences_delay_hours"),
    )
    op.create_index("ix_workflow_sequences_workflow_id", "workflow_sequences", ["workflow_id"], unique=False)

    op.create_table(
        "workflow_enrollments",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workflow_id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("trigger_score", sa.Numeric(10, 2), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["workflow_id"], ["workflow_configurations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("workflow_id", "lead_id", name="uq_workflow_enrollments_workflow_lead"),
    )

    op.create_table(
        "workflow_executions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workflow_id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("sequence_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("template_id", sa.Uuid(), nullable=True),
        sa.Column("variant_id", sa.Uuid(), nullable=True),
        sa.Column("conversion_value", sa.Numeric(12, 2), nullable=True),
        sa.Column("conversion_type", sa.String(length=64), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("clicked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("replied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("bounced", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("unsubscribed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["workflow_id"], ["workflow_configurations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["sequence_id"], ["workflow_sequences.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "workflow_id",
            "lead_id",
            "sequence_id",
            name="uq_workflow_executions_workflow_lead_step",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'in_progress', 'completed', 'failed')",
            name="ck_workflow_executions_status",
        ),
    )
    op.create_index(
        "ix_workflow_executions_status_scheduled",
        "workflow_executions",
        ["status", "scheduled_at"],
        unique=False,
    )
    op.create_index(
        "ix_workflow_executions_workflow_lead",
        "workflow_executions",
        ["workflow_id", "lead_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_workflow_executions_workflow_lead", table_name="workflow_executions")
    op.drop_index("ix_workflow_executions_status_scheduled", table_name="workflow_executions")
    op.drop_table("workflow_executions")
    op.drop_table("workflow_enrollments")
    op.drop_index("ix_workflow_sequences_workflow_id", table_name="workflow_sequences")
    op.drop_table("workflow_sequences")
    op.drop_index("ix_workflow_configurations_owner_active", table_name="workflow_configurations")
    op.drop_table("workflow_configurations")
    op.drop_index("ix_experiment_results_variant_id", table_name="experiment_results")
    op.drop_table("experiment_results")
    op.drop_index("ix_ab_experiments_template_status", table_name="ab_experiments")
    op.drop_table("ab_experiments")
    op.drop_index("ix_personalization_rules_owner_active", table_name="personalization_rules")
    op.drop_table("personalization_rules")
    op.drop_index("ix_template_variants_template_id", table_name="template_variants")
    op.drop_table("template_variants")
    op.drop_index("ix_personalized_templates_owner_channel", table_name="personalized_templates")
    op.drop_table("personalized_templates")
