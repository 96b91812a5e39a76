from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    JSON,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from leadflow.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PersonalizedTemplate(Base):
    __tablename__ = "personalized_templates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False, default="general", server_default="general")
    channel: Mapped[str] = mapped_column(String(32), nullable=False, default="email", server_default="email")
    subject_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_template: Mapped[str] = mapped_column(Text, nullable=False)
    variables: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    conditions: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    variants: Mapped[list[TemplateVariant]] = relationship(
        "TemplateVariant",
        back_populates="template",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="TemplateVariant.name",
    )

    __table_args__ = (
        UniqueConstraint("owner_user_id", "name", name="uq_personalized_templates_owner_name"),
    )


class TemplateVariant(Base):
    __tablename__ = "template_variants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    template_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("personalized_templates.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    is_control: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    subject_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_template: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    template: Mapped[PersonalizedTemplate] = relationship("PersonalizedTemplate", back_populates="variants")

    __table_args__ = (
        UniqueConstraint("template_id", "name", name="uq_template_variants_template_name"),
    )


class PersonalizationRule(Base):
    __tablename__ = "personalization_rules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Stored in the validated tagged form, see leadflow.templates.conditions.
    conditions: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    template_priority: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    score_weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


Index("ix_personalized_templates_owner_channel", PersonalizedTemplate.owner_user_id, PersonalizedTemplate.channel)
Index("ix_template_variants_template_id", TemplateVariant.template_id)
Index("ix_personalization_rules_owner_active", PersonalizationRule.owner_user_id, PersonalizationRule.is_active)
