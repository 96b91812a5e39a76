from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from leadflow.templates.conditions import dump_rule_conditions, parse_rule_conditions


TemplateChannel = Literal["email", "sms"]


class TemplateCreate(BaseModel):
    owner_user_id: UUID
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    category: str = Field(default="general", min_length=1, max_length=100)
    channel: TemplateChannel = "email"
    subject_template: str | None = None
    content_template: str = Field(min_length=1)
    variables: dict[str, Any] = Field(default_factory=dict)
    conditions: dict[str, Any] = Field(default_factory=dict)


class TemplateVariantCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    weight: float = Field(gt=0, le=1)
    is_control: bool = False
    subject_template: str | None = None
    content_template: str = Field(min_length=1)


class TemplateVariantRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    template_id: UUID
    name: str
    weight: float
    is_control: bool
    subject_template: str | None
    content_template: str
    created_at: datetime


class TemplateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    owner_user_id: UUID
    name: str
    description: str | None
    category: str
    channel: str
    subject_template: str | None
    content_template: str
    variables: dict[str, Any]
    conditions: dict[str, Any]
    is_active: bool
    created_at: datetime
    updated_at: datetime
    variants: list[TemplateVariantRead] = Field(default_factory=list)


class VariantWeightReport(BaseModel):
    template_id: UUID
    total_weight: float
    valid: bool
    variant_count: int


class PersonalizationRuleCreate(BaseModel):
    owner_user_id: UUID
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    conditions: list[dict[str, Any]] | dict[str, Any]
    template_priority: list[UUID] = Field(min_length=1)
    score_weight: float = Field(default=1.0, gt=0)
    is_active: bool = True

    @model_validator(mode="after")
    def validate_conditions(self) -> "PersonalizationRuleCreate":
        self.conditions = dump_rule_conditions(parse_rule_conditions(self.conditions))
        return self


class PersonalizationRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    owner_user_id: UUID
    name: str
    description: str | None
    conditions: list[dict[str, Any]]
    template_priority: list[UUID]
    score_weight: float
    is_active: bool
    created_at: datetime
    updated_at: datetime


class TemplatePreviewRequest(BaseModel):
    lead: dict[str, Any] = Field(default_factory=dict)
    agent: dict[str, Any] = Field(default_factory=dict)


class TemplatePreviewResponse(BaseModel):
    template_id: UUID
    channel: str
    subject: str | None
    content: str
    missing_variables: list[str] = Field(default_factory=list)
