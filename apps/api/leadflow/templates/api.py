from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from leadflow.core.database import get_db
from leadflow.templates.schemas import (
    PersonalizationRuleCreate,
    PersonalizationRuleRead,
    TemplateChannel,
    TemplateCreate,
    TemplatePreviewRequest,
    TemplatePreviewResponse,
    TemplateRead,
    TemplateVariantCreate,
    TemplateVariantRead,
    VariantWeightReport,
)
from leadflow.templates.service import template_service


router = APIRouter(prefix="/api/templates", tags=["templates"])
rules_router = APIRouter(prefix="/api/personalization-rules", tags=["templates"])


@router.post("", response_model=TemplateRead, status_code=status.HTTP_201_CREATED)
def create_template(payload: TemplateCreate, db: Session = Depends(get_db)) -> TemplateRead:
    return template_service.create_template(db, payload)


@router.get("", response_model=list[TemplateRead])
def list_templates(
    owner_user_id: UUID = Query(),
    channel: TemplateChannel | None = Query(default=None),
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> list[TemplateRead]:
    return template_service.list_templates(
        db,
        owner_user_id=owner_user_id,
        channel=channel,
        include_inactive=include_inactive,
    )


@router.post("/{template_id}/deactivate", response_model=TemplateRead)
def deactivate_template(template_id: UUID, db: Session = Depends(get_db)) -> TemplateRead:
    return template_service.deactivate_template(db, template_id)


@router.post("/{template_id}/variants", response_model=TemplateVariantRead, status_code=status.HTTP_201_CREATED)
def add_variant(template_id: UUID, payload: TemplateVariantCreate, db: Session = Depends(get_db)) -> TemplateVariantRead:
    return template_service.add_variant(db, template_id, payload)


@router.get("/{template_id}/variant-weights", response_model=VariantWeightReport)
def validate_variant_weights(template_id: UUID, db: Session = Depends(get_db)) -> VariantWeightReport:
    template_service.get_template(db, template_id)
    return template_service.validate_variant_weights(db, template_id)


@router.post("/{template_id}/preview", response_model=TemplatePreviewResponse)
def preview_template(
    template_id: UUID,
    payload: TemplatePreviewRequest,
    db: Session = Depends(get_db),
) -> TemplatePreviewResponse:
    return template_service.preview(db, template_id, payload)


@rules_router.post("", response_model=PersonalizationRuleRead, status_code=status.HTTP_201_CREATED)
def create_rule(payload: PersonalizationRuleCreate, db: Session = Depends(get_db)) -> PersonalizationRuleRead:
    return template_service.create_rule(db, payload)


@rules_router.get("", response_model=list[PersonalizationRuleRead])
def list_rules(owner_user_id: UUID = Query(), db: Session = Depends(get_db)) -> list[PersonalizationRuleRead]:
    return template_service.list_rules(db, owner_user_id=owner_user_id)
