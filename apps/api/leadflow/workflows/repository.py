from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import exists, or_, select, update
from sqlalchemy.orm import Session

from leadflow.metrics import observe_claim_conflict
from leadflow.workflows.models import SequenceStep, WorkflowConfiguration, WorkflowEnrollment, WorkflowExecution


class WorkflowStore:
    """Row access for the engine's own tables."""

    def matching_workflows(self, session: Session, owner_user_id: uuid.UUID, score: float) -> list[WorkflowConfiguration]:
        return list(
            session.scalars(
                select(WorkflowConfiguration)
                .where(
                    WorkflowConfiguration.owner_user_id == owner_user_id,
                    WorkflowConfiguration.is_active.is_(True),
                    or_(WorkflowConfiguration.trigger_score_min.is_(None), WorkflowConfiguration.trigger_score_min <= score),
                    or_(WorkflowConfiguration.trigger_score_max.is_(None), WorkflowConfiguration.trigger_score_max >= score),
                )
                .order_by(WorkflowConfiguration.created_at.asc(), WorkflowConfiguration.id.asc())
            ).all()
        )

    def is_enrolled(self, session: Session, workflow_id: uuid.UUID, lead_id: uuid.UUID) -> bool:
        enrolled = session.scalar(
            select(
                exists().where(
                    WorkflowEnrollment.workflow_id == workflow_id,
                    WorkflowEnrollment.lead_id == lead_id,
                )
            )
        )
        if enrolled:
            return True
        return bool(
            session.scalar(
                select(
                    exists().where(
                        WorkflowExecution.workflow_id == workflow_id,
                        WorkflowExecution.lead_id == lead_id,
                    )
                )
            )
        )

    def active_step(self, session: Session, workflow_id: uuid.UUID, step_number: int) -> SequenceStep | None:
        return session.scalar(
            select(SequenceStep).where(
                SequenceStep.workflow_id == workflow_id,
                SequenceStep.step_number == step_number,
                SequenceStep.is_active.is_(True),
            )
        )

    def enroll(
        self,
        session: Session,
        workflow: WorkflowConfiguration,
        lead_id: uuid.UUID,
        score: float,
        first_step: SequenceStep,
        scheduled_at: datetime,
    ) -> WorkflowExecution:
        session.add(
            WorkflowEnrollment(
                workflow_id=workflow.id,
                lead_id=lead_id,
                trigger_score=Decimal(str(score)),
            )
        )
        execution = WorkflowExecution(
            workflow_id=workflow.id,
            lead_id=lead_id,
            sequence_id=first_step.id,
            status="pending",
            scheduled_at=scheduled_at,
        )
        session.add(execution)
        return execution

    def schedule_step(
        self,
        session: Session,
        previous: WorkflowExecution,
        step: SequenceStep,
        scheduled_at: datetime,
    ) -> WorkflowExecution:
        execution = WorkflowExecution(
            workflow_id=previous.workflow_id,
            lead_id=previous.lead_id,
            sequence_id=step.id,
            status="pending",
            scheduled_at=scheduled_at,
        )
        session.add(execution)
        return execution

    def due_candidates(self, session: Session, now: datetime, limit: int) -> list[uuid.UUID]:
        return list(
            session.scalars(
                select(WorkflowExecution.id)
                .where(WorkflowExecution.status == "pending", WorkflowExecution.scheduled_at <= now)
                .order_by(WorkflowExecution.scheduled_at.asc(), WorkflowExecution.id.asc())
                .limit(limit)
                .with_for_update(skip_locked=True)
            ).all()
        )

    def try_claim(self, session: Session, execution_id: uuid.UUID, now: datetime) -> bool:
        result = session.execute(
            update(WorkflowExecution)
            .where(WorkflowExecution.id == execution_id, WorkflowExecution.status == "pending")
            .values(status="in_progress", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def claim_due(self, session: Session, now: datetime, limit: int) -> list[uuid.UUID]:
        """Move up to ``limit`` due pending executions to in_progress and return their ids.

        A row another poller took between selection and update is skipped.
        """
        claimed: list[uuid.UUID] = []
        for execution_id in self.due_candidates(session, now, limit):
            if self.try_claim(session, execution_id, now):
                claimed.append(execution_id)
            else:
                observe_claim_conflict()
        session.commit()
        return claimed

    def get_execution(self, session: Session, execution_id: uuid.UUID) -> WorkflowExecution | None:
        return session.scalar(select(WorkflowExecution).where(WorkflowExecution.id == execution_id))