from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from leadflow.core.database import Base
from leadflow.templates.models import PersonalizedTemplate


ACTION_TYPES = ("email", "sms", "task", "notification")
EXECUTION_STATUSES = ("pending", "in_progress", "completed", "failed")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowConfiguration(Base):
    __tablename__ = "workflow_configurations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    trigger_score_min: Mapped[int | None] = mapped_column(Integer, nullable=True)
    trigger_score_max: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    steps: Mapped[list[SequenceStep]] = relationship(
        "SequenceStep",
        back_populates="workflow",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SequenceStep.step_number",
    )


class SequenceStep(Base):
    __tablename__ = "workflow_sequences"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workflow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("workflow_configurations.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    action_type: Mapped[str] = mapped_column(String(32), nullable=False)
    template_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("personalized_templates.id", ondelete="SET NULL"),
        nullable=True,
    )
    delay_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    workflow: Mapped[WorkflowConfiguration] = relationship("WorkflowConfiguration", back_populates="steps")
    template: Mapped[PersonalizedTemplate | None] = relationship("PersonalizedTemplate")

    __table_args__ = (
        UniqueConstraint("workflow_id", "step_number", name="uq_workflow_sequences_workflow_step"),
    )


class WorkflowEnrollment(Base):
    """One row per (workflow, lead) that has ever been triggered."""

    __tablename__ = "workflow_enrollments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workflow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("workflow_configurations.id", ondelete="CASCADE"),
        nullable=False,
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    trigger_score: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("workflow_id", "lead_id", name="uq_workflow_enrollments_workflow_lead"),
    )


class WorkflowExecution(Base):
    __tablename__ = "workflow_executions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workflow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("workflow_configurations.id", ondelete="CASCADE"),
        nullable=False,
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    sequence_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("workflow_sequences.id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", server_default="pending")
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    template_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    variant_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    conversion_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    conversion_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    opened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    clicked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    replied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    bounced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    unsubscribed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    step: Mapped[SequenceStep] = relationship("SequenceStep")

    __table_args__ = (
        UniqueConstraint("workflow_id", "lead_id", "sequence_id", name="uq_workflow_executions_workflow_lead_step"),
    )


Index("ix_workflow_configurations_owner_active", WorkflowConfiguration.owner_user_id, WorkflowConfiguration.is_active)
Index("ix_workflow_sequences_workflow_id", SequenceStep.workflow_id)
Index("ix_workflow_executions_status_scheduled", WorkflowExecution.status, WorkflowExecution.scheduled_at)
Index("ix_workflow_executions_workflow_lead", WorkflowExecution.workflow_id, WorkflowExecution.lead_id)
