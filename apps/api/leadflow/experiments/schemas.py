from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


ExperimentStatus = Literal["draft", "running", "completed"]


class ExperimentCreate(BaseModel):
    template_id: UUID
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    target_metric: str = Field(default="open_rate", min_length=1, max_length=64)
    confidence_threshold: float = Field(default=0.95, gt=0, lt=1)


class ExperimentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    template_id: UUID
    name: str
    description: str | None
    status: ExperimentStatus
    target_metric: str
    confidence_threshold: float
    start_date: datetime | None
    end_date: datetime | None
    created_at: datetime
    updated_at: datetime


class ExperimentAssignmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    experiment_id: UUID
    variant_id: UUID
    lead_id: UUID
    metric_value: float | None
    conversion_occurred: bool
    created_at: datetime


class ExperimentOutcomeCreate(BaseModel):
    lead_id: UUID
    metric_value: float | None = None
    conversion_occurred: bool = False


class VariantResult(BaseModel):
    variant_id: UUID
    name: str
    is_control: bool
    sample_size: int
    avg_metric: float | None
    conversions: int
    conversion_rate: float


class ExperimentStatistics(BaseModel):
    significant: bool
    confidence: float
    z_score: float | None = None
    control_rate: float | None = None
    test_rate: float | None = None
    difference: float | None = None
    test_variant_id: UUID | None = None


class ExperimentResults(BaseModel):
    experiment_id: UUID
    status: ExperimentStatus
    variants: list[VariantResult]
    statistics: ExperimentStatistics
    total_responses: int
