from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from opentelemetry import trace
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from leadflow.context import get_correlation_id
from leadflow.metrics import observe_trigger
from leadflow.workflows.models import WorkflowExecution
from leadflow.workflows.repository import WorkflowStore
from leadflow.workflows.schemas import TriggeredWorkflow, TriggerResult


logger = logging.getLogger("leadflow.workflows.triggers")
tracer = trace.get_tracer("leadflow.workflows.triggers")


class TriggerEvaluator:
    def __init__(self, store: WorkflowStore | None = None, clock: Callable[[], datetime] | None = None):
        self.store = store or WorkflowStore()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def check_triggers(self, session: Session, lead_id: uuid.UUID, score: float, owner_user_id: uuid.UUID) -> TriggerResult:
        with tracer.start_as_current_span("workflow.check_triggers") as span:
            span.set_attribute("lead_id", str(lead_id))
            span.set_attribute("owner_user_id", str(owner_user_id))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                try:
                    result = self._evaluate(session, lead_id, score, owner_user_id)
                except IntegrityError:
                    # A concurrent caller enrolled the lead first; the retry sees its row and skips it.
                    session.rollback()
                    logger.info("workflow_trigger_race_retry", extra={"lead_id": str(lead_id)})
                    result = self._evaluate(session, lead_id, score, owner_user_id)
            except SQLAlchemyError as exc:
                session.rollback()
                observe_trigger("error")
                logger.warning(
                    "workflow_trigger_failed",
                    extra={"lead_id": str(lead_id), "owner_user_id": str(owner_user_id), "error": str(exc)},
                )
                span.set_attribute("error", True)
                return TriggerResult(triggered=False, workflows=[], error=str(exc)[:2000])

            span.set_attribute("triggered_count", len(result.workflows))
            return result

    def _evaluate(self, session: Session, lead_id: uuid.UUID, score: float, owner_user_id: uuid.UUID) -> TriggerResult:
        now = self.clock()
        planned: list[tuple[str, WorkflowExecution]] = []

        for workflow in self.store.matching_workflows(session, owner_user_id, score):
            if self.store.is_enrolled(session, workflow.id, lead_id):
                observe_trigger("already_enrolled")
                continue

            first_step = self.store.active_step(session, workflow.id, 1)
            if first_step is None:
                observe_trigger("missing_first_step")
                logger.warning(
                    "workflow_missing_first_step",
                    extra={"workflow_id": str(workflow.id), "lead_id": str(lead_id)},
                )
                continue

            scheduled_at = now + timedelta(hours=first_step.delay_hours)
            execution = self.store.enroll(session, workflow, lead_id, score, first_step, scheduled_at)
            planned.append((workflow.name, execution))

        if not planned:
            return TriggerResult(triggered=False, workflows=[])

        session.flush()
        workflows = [
            TriggeredWorkflow(
                workflow_id=execution.workflow_id,
                workflow_name=name,
                execution_id=execution.id,
                scheduled_at=execution.scheduled_at,
            )
            for name, execution in planned
        ]
        session.commit()

        observe_trigger("triggered", len(workflows))
        for item in workflows:
            logger.info(
                "workflow_triggered",
                extra={
                    "workflow_id": str(item.workflow_id),
                    "lead_id": str(lead_id),
                    "execution_id": str(item.execution_id),
                },
            )
        return TriggerResult(triggered=True, workflows=workflows)
