from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from fastapi import HTTPException, status
from sqlalchemy import Select, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from leadflow.templates.models import PersonalizationRule, PersonalizedTemplate, TemplateVariant
from leadflow.templates.rendering import TemplateRenderer
from leadflow.templates.schemas import (
    PersonalizationRuleCreate,
    PersonalizationRuleRead,
    TemplateCreate,
    TemplatePreviewRequest,
    TemplatePreviewResponse,
    TemplateRead,
    TemplateVariantCreate,
    TemplateVariantRead,
    VariantWeightReport,
)


logger = logging.getLogger("leadflow.templates")

WEIGHT_TOLERANCE = 1e-6


@dataclass(slots=True)
class TemplateService:
    renderer: TemplateRenderer = TemplateRenderer()

    def create_template(self, session: Session, dto: TemplateCreate) -> TemplateRead:
        template = PersonalizedTemplate(**dto.model_dump(mode="python"))
        session.add(template)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="template name already exists")
        session.refresh(template)
        return TemplateRead.model_validate(template)

    def list_templates(
        self,
        session: Session,
        *,
        owner_user_id: uuid.UUID,
        channel: str | None = None,
        include_inactive: bool = False,
    ) -> list[TemplateRead]:
        stmt: Select[tuple[PersonalizedTemplate]] = (
            select(PersonalizedTemplate)
            .options(selectinload(PersonalizedTemplate.variants))
            .where(PersonalizedTemplate.owner_user_id == owner_user_id)
        )
        if channel is not None:
            stmt = stmt.where(PersonalizedTemplate.channel == channel)
        if not include_inactive:
            stmt = stmt.where(PersonalizedTemplate.is_active.is_(True))
        rows = session.scalars(stmt.order_by(PersonalizedTemplate.category.asc(), PersonalizedTemplate.name.asc())).all()
        return [TemplateRead.model_validate(row) for row in rows]

    def get_template(self, session: Session, template_id: uuid.UUID) -> PersonalizedTemplate:
        template = session.scalar(select(PersonalizedTemplate).where(PersonalizedTemplate.id == template_id))
        if template is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="template not found")
        return template

    def deactivate_template(self, session: Session, template_id: uuid.UUID) -> TemplateRead:
        template = self.get_template(session, template_id)
        template.is_active = False
        session.add(template)
        session.commit()
        session.refresh(template)
        return TemplateRead.model_validate(template)

    def add_variant(self, session: Session, template_id: uuid.UUID, dto: TemplateVariantCreate) -> TemplateVariantRead:
        self.get_template(session, template_id)
        variant = TemplateVariant(template_id=template_id, **dto.model_dump(mode="python"))
        session.add(variant)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="variant name already exists")
        session.refresh(variant)

        report = self.validate_variant_weights(session, template_id)
        if not report.valid:
            logger.info(
                "template_variant_weights_unbalanced",
                extra={"template_id": str(template_id), "total_weight": report.total_weight},
            )
        return TemplateVariantRead.model_validate(variant)

    def validate_variant_weights(self, session: Session, template_id: uuid.UUID) -> VariantWeightReport:
        weights = session.scalars(select(TemplateVariant.weight).where(TemplateVariant.template_id == template_id)).all()
        total = float(sum(weights))
        return VariantWeightReport(
            template_id=template_id,
            total_weight=total,
            valid=bool(weights) and abs(total - 1.0) <= WEIGHT_TOLERANCE,
            variant_count=len(weights),
        )

    def create_rule(self, session: Session, dto: PersonalizationRuleCreate) -> PersonalizationRuleRead:
        payload = dto.model_dump(mode="python")
        payload["template_priority"] = [str(item) for item in dto.template_priority]
        rule = PersonalizationRule(**payload)
        session.add(rule)
        session.commit()
        session.refresh(rule)
        return PersonalizationRuleRead.model_validate(rule)

    def list_rules(self, session: Session, *, owner_user_id: uuid.UUID) -> list[PersonalizationRuleRead]:
        rows = session.scalars(
            select(PersonalizationRule)
            .where(PersonalizationRule.owner_user_id == owner_user_id)
            .order_by(PersonalizationRule.score_weight.desc(), PersonalizationRule.created_at.asc())
        ).all()
        return [PersonalizationRuleRead.model_validate(row) for row in rows]

    def preview(self, session: Session, template_id: uuid.UUID, dto: TemplatePreviewRequest) -> TemplatePreviewResponse:
        message = self.renderer.render_template(session, template_id, dto.lead, dto.agent)
        return TemplatePreviewResponse(
            template_id=template_id,
            channel=message.channel or "email",
            subject=message.subject,
            content=message.content,
            missing_variables=message.missing_variables,
        )


template_service = TemplateService()
