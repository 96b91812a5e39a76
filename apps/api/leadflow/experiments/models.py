from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from leadflow.core.database import Base
from leadflow.templates.models import PersonalizedTemplate, TemplateVariant


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ABExperiment(Base):
    __tablename__ = "ab_experiments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    template_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("personalized_templates.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft", server_default="draft")
    target_metric: Mapped[str] = mapped_column(String(64), nullable=False, default="open_rate", server_default="open_rate")
    confidence_threshold: Mapped[float] = mapped_column(Float, nullable=False, default=0.95)
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    template: Mapped[PersonalizedTemplate] = relationship("PersonalizedTemplate")


class ExperimentAssignment(Base):
    __tablename__ = "experiment_results"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    experiment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("ab_experiments.id", ondelete="CASCADE"),
        nullable=False,
    )
    variant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("template_variants.id", ondelete="CASCADE"),
        nullable=False,
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    metric_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    conversion_occurred: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    variant: Mapped[TemplateVariant] = relationship("TemplateVariant")

    __table_args__ = (
        UniqueConstraint("experiment_id", "lead_id", name="uq_experiment_results_experiment_lead"),
    )


Index("ix_ab_experiments_template_status", ABExperiment.template_id, ABExperiment.status)
Index("ix_experiment_results_variant_id", ExperimentAssignment.variant_id)
