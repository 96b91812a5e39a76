from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from fastapi import HTTPException, status
from sqlalchemy import Select, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from leadflow.workflows.models import SequenceStep, WorkflowConfiguration, WorkflowExecution
from leadflow.workflows.schemas import (
    ConversionCreate,
    DeliveryEventCreate,
    ExecutionRead,
    StepFunnel,
    WorkflowAnalytics,
    WorkflowCreate,
    WorkflowRead,
)


logger = logging.getLogger("leadflow.workflows")

_TIMESTAMP_EVENTS = {
    "delivered": "delivered_at",
    "opened": "opened_at",
    "clicked": "clicked_at",
    "replied": "replied_at",
}
_FLAG_EVENTS = {
    "bounced": "bounced",
    "unsubscribed": "unsubscribed",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class WorkflowConfigService:
    def create_workflow(self, session: Session, dto: WorkflowCreate) -> WorkflowRead:
        workflow = WorkflowConfiguration(**dto.model_dump(mode="python", exclude={"steps"}))
        workflow.steps = [SequenceStep(**step.model_dump(mode="python")) for step in dto.steps]
        session.add(workflow)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="workflow step conflict")
        session.refresh(workflow)
        logger.info(
            "workflow_created",
            extra={"workflow_id": str(workflow.id), "owner_user_id": str(workflow.owner_user_id)},
        )
        return WorkflowRead.model_validate(workflow)

    def list_workflows(
        self,
        session: Session,
        *,
        owner_user_id: uuid.UUID,
        include_inactive: bool = True,
    ) -> list[WorkflowRead]:
        stmt: Select[tuple[WorkflowConfiguration]] = (
            select(WorkflowConfiguration)
            .options(selectinload(WorkflowConfiguration.steps))
            .where(WorkflowConfiguration.owner_user_id == owner_user_id)
        )
        if not include_inactive:
            stmt = stmt.where(WorkflowConfiguration.is_active.is_(True))
        rows = session.scalars(stmt.order_by(WorkflowConfiguration.created_at.asc())).all()
        return [WorkflowRead.model_validate(row) for row in rows]

    def get_workflow(self, session: Session, workflow_id: uuid.UUID) -> WorkflowConfiguration:
        workflow = session.scalar(select(WorkflowConfiguration).where(WorkflowConfiguration.id == workflow_id))
        if workflow is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="workflow not found")
        return workflow

    def deactivate_workflow(self, session: Session, workflow_id: uuid.UUID) -> WorkflowRead:
        workflow = self.get_workflow(session, workflow_id)
        workflow.is_active = False
        session.add(workflow)
        session.commit()
        session.refresh(workflow)
        logger.info("workflow_deactivated", extra={"workflow_id": str(workflow.id)})
        return WorkflowRead.model_validate(workflow)

    def get_execution(self, session: Session, execution_id: uuid.UUID) -> WorkflowExecution:
        execution = session.scalar(select(WorkflowExecution).where(WorkflowExecution.id == execution_id))
        if execution is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="execution not found")
        return execution

    def list_executions(
        self,
        session: Session,
        workflow_id: uuid.UUID,
        *,
        lead_id: uuid.UUID | None = None,
    ) -> list[ExecutionRead]:
        self.get_workflow(session, workflow_id)
        stmt: Select[tuple[WorkflowExecution]] = select(WorkflowExecution).where(WorkflowExecution.workflow_id == workflow_id)
        if lead_id is not None:
            stmt = stmt.where(WorkflowExecution.lead_id == lead_id)
        rows = session.scalars(stmt.order_by(WorkflowExecution.scheduled_at.asc(), WorkflowExecution.created_at.asc())).all()
        return [ExecutionRead.model_validate(row) for row in rows]

    def record_delivery_event(
        self,
        session: Session,
        execution_id: uuid.UUID,
        dto: DeliveryEventCreate,
    ) -> ExecutionRead:
        """Store channel telemetry on a dispatched execution without touching its status."""
        execution = self.get_execution(session, execution_id)
        if execution.status != "completed":
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="delivery events are only accepted for completed executions",
            )

        if dto.event in _TIMESTAMP_EVENTS:
            attribute = _TIMESTAMP_EVENTS[dto.event]
            if getattr(execution, attribute) is None:
                setattr(execution, attribute, dto.occurred_at or utcnow())
        else:
            setattr(execution, _FLAG_EVENTS[dto.event], True)

        session.add(execution)
        session.commit()
        session.refresh(execution)
        logger.info(
            "workflow_delivery_event_recorded",
            extra={"execution_id": str(execution.id), "status": dto.event},
        )
        return ExecutionRead.model_validate(execution)

    def record_conversion(self, session: Session, execution_id: uuid.UUID, dto: ConversionCreate) -> ExecutionRead:
        execution = self.get_execution(session, execution_id)
        execution.conversion_value = dto.value
        execution.conversion_type = dto.conversion_type
        session.add(execution)
        session.commit()
        session.refresh(execution)
        logger.info("workflow_conversion_recorded", extra={"execution_id": str(execution.id), "workflow_id": str(execution.workflow_id)})
        return ExecutionRead.model_validate(execution)

    def get_analytics(self, session: Session, workflow_id: uuid.UUID) -> WorkflowAnalytics:
        workflow = self.get_workflow(session, workflow_id)
        rows = session.execute(
            select(WorkflowExecution, SequenceStep.step_number, SequenceStep.action_type)
            .join(SequenceStep, SequenceStep.id == WorkflowExecution.sequence_id)
            .where(WorkflowExecution.workflow_id == workflow.id)
        ).all()

        counts = {"pending": 0, "in_progress": 0, "completed": 0, "failed": 0}
        conversions = 0
        conversion_value = Decimal("0")
        execution_hours: list[float] = []
        funnels: dict[int, StepFunnel] = {
            step.step_number: StepFunnel(step_number=step.step_number, action_type=step.action_type)
            for step in workflow.steps
        }

        for execution, step_number, action_type in rows:
            counts[execution.status] = counts.get(execution.status, 0) + 1
            if execution.conversion_value is not None:
                conversions += 1
                conversion_value += Decimal(execution.conversion_value)
            if execution.executed_at is not None:
                delta = execution.executed_at - execution.scheduled_at
                execution_hours.append(delta.total_seconds() / 3600)

            funnel = funnels.setdefault(step_number, StepFunnel(step_number=step_number, action_type=action_type))
            if execution.status == "completed":
                funnel.sent += 1
            elif execution.status == "failed":
                funnel.failed += 1
            funnel.delivered += int(execution.delivered_at is not None)
            funnel.opened += int(execution.opened_at is not None)
            funnel.clicked += int(execution.clicked_at is not None)
            funnel.replied += int(execution.replied_at is not None)
            funnel.bounced += int(bool(execution.bounced))
            funnel.unsubscribed += int(bool(execution.unsubscribed))

        return WorkflowAnalytics(
            workflow_id=workflow.id,
            total_executions=len(rows),
            pending=counts["pending"],
            in_progress=counts["in_progress"],
            completed=counts["completed"],
            failed=counts["failed"],
            conversions=conversions,
            conversion_value=conversion_value,
            avg_hours_to_execute=round(sum(execution_hours) / len(execution_hours), 4) if execution_hours else None,
            steps=[funnels[number] for number in sorted(funnels)],
        )


workflow_config_service = WorkflowConfigService()
