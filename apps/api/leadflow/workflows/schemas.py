from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


ActionType = Literal["email", "sms", "task", "notification"]
ExecutionStatus = Literal["pending", "in_progress", "completed", "failed"]
DeliveryEvent = Literal["delivered", "opened", "clicked", "replied", "bounced", "unsubscribed"]


class WorkflowStepCreate(BaseModel):
    step_number: int = Field(ge=1)
    action_type: ActionType
    template_id: UUID | None = None
    delay_hours: int = Field(default=0, ge=0)
    is_active: bool = True


class WorkflowCreate(BaseModel):
    owner_user_id: UUID
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    trigger_score_min: int | None = None
    trigger_score_max: int | None = None
    is_active: bool = True
    steps: list[WorkflowStepCreate] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_structure(self) -> "WorkflowCreate":
        if (
            self.trigger_score_min is not None
            and self.trigger_score_max is not None
            and self.trigger_score_min > self.trigger_score_max
        ):
            raise ValueError("trigger_score_min must be <= trigger_score_max")

        numbers = sorted(step.step_number for step in self.steps)
        if numbers != list(range(1, len(numbers) + 1)):
            raise ValueError("step numbers must be contiguous starting at 1")
        self.steps = sorted(self.steps, key=lambda step: step.step_number)
        return self


class WorkflowStepRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workflow_id: UUID
    step_number: int
    action_type: ActionType
    template_id: UUID | None
    delay_hours: int
    is_active: bool


class WorkflowRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    owner_user_id: UUID
    name: str
    description: str | None
    trigger_score_min: int | None
    trigger_score_max: int | None
    is_active: bool
    created_at: datetime
    updated_at: datetime
    steps: list[WorkflowStepRead] = Field(default_factory=list)


class ExecutionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workflow_id: UUID
    lead_id: UUID
    sequence_id: UUID
    status: ExecutionStatus
    scheduled_at: datetime
    executed_at: datetime | None
    error_message: str | None
    template_id: UUID | None
    variant_id: UUID | None
    conversion_value: Decimal | None
    conversion_type: str | None
    delivered_at: datetime | None
    opened_at: datetime | None
    clicked_at: datetime | None
    replied_at: datetime | None
    bounced: bool
    unsubscribed: bool


class TriggerRequest(BaseModel):
    lead_id: UUID
    score: float
    owner_user_id: UUID


class TriggeredWorkflow(BaseModel):
    workflow_id: UUID
    workflow_name: str
    execution_id: UUID
    scheduled_at: datetime


class TriggerResult(BaseModel):
    triggered: bool
    workflows: list[TriggeredWorkflow] = Field(default_factory=list)
    error: str | None = None


class ProcessResult(BaseModel):
    processed: int


class DeliveryEventCreate(BaseModel):
    event: DeliveryEvent
    occurred_at: datetime | None = None


class ConversionCreate(BaseModel):
    value: Decimal = Field(ge=0)
    conversion_type: str = Field(min_length=1, max_length=64)


class StepFunnel(BaseModel):
    step_number: int
    action_type: ActionType
    sent: int = 0
    failed: int = 0
    delivered: int = 0
    opened: int = 0
    clicked: int = 0
    replied: int = 0
    bounced: int = 0
    unsubscribed: int = 0


class WorkflowAnalytics(BaseModel):
    workflow_id: UUID
    total_executions: int
    pending: int
    in_progress: int
    completed: int
    failed: int
    conversions: int
    conversion_value: Decimal
    avg_hours_to_execute: float | None
    steps: list[StepFunnel] = Field(default_factory=list)
