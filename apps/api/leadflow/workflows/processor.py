from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from opentelemetry import trace
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from leadflow.collaborators import (
    Channel,
    FollowUpTask,
    LeadRecord,
    LeadStore,
    NotificationStore,
    TaskStore,
    WorkflowNotification,
)
from leadflow.context import correlation_scope, execution_correlation_id
from leadflow.core.config import get_settings
from leadflow.experiments.selection import VariantSelector
from leadflow.experiments.service import ExperimentService
from leadflow.metrics import observe_execution
from leadflow.templates.rendering import TemplateRenderer
from leadflow.templates.selection import TemplateSelector
from leadflow.workflows.errors import (
    ExperimentError,
    LeadNotFoundError,
    MissingRecipientError,
    TemplateNotFoundError,
    UnsupportedActionError,
)
from leadflow.workflows.models import SequenceStep, WorkflowExecution
from leadflow.workflows.repository import WorkflowStore
from leadflow.workflows.schemas import ProcessResult


logger = logging.getLogger("leadflow.workflows.processor")
tracer = trace.get_tracer("leadflow.workflows.processor")


@dataclass(slots=True)
class DispatchOutcome:
    template_id: uuid.UUID | None = None
    variant_id: uuid.UUID | None = None


class StepProcessor:
    def __init__(
        self,
        lead_store: LeadStore,
        channel: Channel,
        notification_store: NotificationStore,
        task_store: TaskStore,
        *,
        store: WorkflowStore | None = None,
        template_selector: TemplateSelector | None = None,
        variant_selector: VariantSelector | None = None,
        renderer: TemplateRenderer | None = None,
        experiment_service: ExperimentService | None = None,
        clock: Callable[[], datetime] | None = None,
        batch_size: int | None = None,
    ):
        settings = get_settings()
        self.lead_store = lead_store
        self.channel = channel
        self.notification_store = notification_store
        self.task_store = task_store
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.store = store or WorkflowStore()
        self.template_selector = template_selector or TemplateSelector(clock=self.clock)
        self.variant_selector = variant_selector or VariantSelector()
        self.renderer = renderer or TemplateRenderer(clock=self.clock)
        self.experiment_service = experiment_service or ExperimentService()
        self.batch_size = batch_size or settings.workflow_batch_size
        self.task_priority = settings.workflow_task_priority
        self.task_due_hours = settings.workflow_task_due_hours
        self.default_agent_name = settings.workflow_default_agent_name

    def process_pending(self, session: Session) -> ProcessResult:
        claimed = self.store.claim_due(session, self.clock(), self.batch_size)
        if claimed:
            logger.info("workflow_executions_claimed", extra={"claimed": len(claimed)})
        for execution_id in claimed:
            try:
                self.process_execution(session, execution_id)
            except SQLAlchemyError as exc:
                # A store error strands only this row; the rest of the batch still runs.
                self._abandon_execution(session, execution_id, exc)
        return ProcessResult(processed=len(claimed))

    def process_execution(self, session: Session, execution_id: uuid.UUID) -> WorkflowExecution | None:
        """Run one claimed execution to a terminal state.

        Dispatch errors never escape: the row is marked failed and the chain stops.
        """
        started = time.perf_counter()
        with correlation_scope(execution_correlation_id(execution_id)) as correlation_id:
            with tracer.start_as_current_span("workflow.process_execution") as span:
                span.set_attribute("execution_id", str(execution_id))
                span.set_attribute("correlation_id", correlation_id)
                execution = self.store.get_execution(session, execution_id)
                if execution is None or execution.status != "in_progress":
                    return execution

                step = execution.step
                action_type = step.action_type
                span.set_attribute("workflow_id", str(execution.workflow_id))
                span.set_attribute("lead_id", str(execution.lead_id))
                span.set_attribute("action_type", action_type)

                try:
                    outcome = self._dispatch(session, execution, step)
                except Exception as exc:
                    span.record_exception(exc)
                    failed = self._mark_failed(session, execution_id, exc)
                    observe_execution(action_type, "failed", time.perf_counter() - started)
                    return failed

                completed = self._mark_completed(session, execution_id, outcome)
                observe_execution(action_type, "completed", time.perf_counter() - started)
                return completed

    def _abandon_execution(self, session: Session, execution_id: uuid.UUID, exc: SQLAlchemyError) -> None:
        logger.error(
            "workflow_execution_store_error",
            extra={"execution_id": str(execution_id), "error": str(exc)},
        )
        try:
            self._mark_failed(session, execution_id, RuntimeError(f"store error while processing execution: {exc}"))
        except SQLAlchemyError as retry_exc:
            session.rollback()
            logger.error(
                "workflow_execution_left_in_progress",
                extra={"execution_id": str(execution_id), "error": str(retry_exc)},
            )

    def _mark_failed(self, session: Session, execution_id: uuid.UUID, exc: Exception) -> WorkflowExecution | None:
        session.rollback()
        execution = self.store.get_execution(session, execution_id)
        if execution is None:
            return None
        execution.status = "failed"
        execution.executed_at = self.clock()
        execution.error_message = (str(exc) or exc.__class__.__name__)[:2000]
        session.add(execution)
        session.commit()
        logger.warning(
            "workflow_execution_failed",
            extra={
                "execution_id": str(execution_id),
                "workflow_id": str(execution.workflow_id),
                "lead_id": str(execution.lead_id),
                "error": execution.error_message,
            },
        )
        return execution

    def _mark_completed(self, session: Session, execution_id: uuid.UUID, outcome: DispatchOutcome) -> WorkflowExecution | None:
        execution = self.store.get_execution(session, execution_id)
        if execution is None:
            return None
        now = self.clock()
        execution.status = "completed"
        execution.executed_at = now
        execution.template_id = outcome.template_id
        execution.variant_id = outcome.variant_id
        session.add(execution)

        step = execution.step
        next_step = self.store.active_step(session, execution.workflow_id, step.step_number + 1)
        scheduled = None
        if next_step is not None:
            scheduled = self.store.schedule_step(session, execution, next_step, now + timedelta(hours=next_step.delay_hours))

        try:
            session.commit()
        except IntegrityError:
            # The next step row already exists for this lead; keep the completion only.
            session.rollback()
            execution = self.store.get_execution(session, execution_id)
            if execution is None:
                return None
            execution.status = "completed"
            execution.executed_at = now
            execution.template_id = outcome.template_id
            execution.variant_id = outcome.variant_id
            session.add(execution)
            session.commit()
            scheduled = None
            logger.warning("workflow_next_step_already_scheduled", extra={"execution_id": str(execution_id)})

        logger.info(
            "workflow_execution_completed",
            extra={
                "execution_id": str(execution_id),
                "workflow_id": str(execution.workflow_id),
                "lead_id": str(execution.lead_id),
                "step_number": step.step_number,
                "template_id": str(outcome.template_id) if outcome.template_id else None,
                "variant_id": str(outcome.variant_id) if outcome.variant_id else None,
            },
        )
        if scheduled is not None:
            logger.info(
                "workflow_step_scheduled",
                extra={"execution_id": str(scheduled.id), "sequence_id": str(scheduled.sequence_id)},
            )
        return execution

    def _dispatch(self, session: Session, execution: WorkflowExecution, step: SequenceStep) -> DispatchOutcome:
        lead = self.lead_store.get_by_id(execution.lead_id)
        if lead is None:
            raise LeadNotFoundError(execution.lead_id)

        action_type = step.action_type
        if action_type in {"email", "sms"}:
            return self._send_message(session, execution, step, lead)
        if action_type == "task":
            self._create_task(lead)
            return DispatchOutcome()
        if action_type == "notification":
            self._create_notification(execution, lead)
            return DispatchOutcome()
        raise UnsupportedActionError(action_type)

    def _send_message(
        self,
        session: Session,
        execution: WorkflowExecution,
        step: SequenceStep,
        lead: LeadRecord,
    ) -> DispatchOutcome:
        channel = step.action_type
        recipient = lead.email if channel == "email" else lead.phone
        if not recipient:
            raise MissingRecipientError(channel, lead.id)

        lead_context = lead.as_context()
        template = self.template_selector.pick_for_step(
            session,
            lead.owner_user_id,
            lead_context,
            {"channel": channel, "workflow_id": str(execution.workflow_id)},
            preferred_template_id=step.template_id,
        )
        if template is None:
            raise TemplateNotFoundError(channel, lead.owner_user_id)

        template_id = template.id
        subject = template.subject_template
        content = template.content_template
        variant_id: uuid.UUID | None = None

        experiment = self.experiment_service.find_running_for_template(session, template_id)
        if experiment is not None:
            experiment_id = experiment.id
            try:
                variant = self.variant_selector.select_variant(session, experiment_id, lead.id)
            except ExperimentError as exc:
                logger.warning(
                    "experiment_variant_selection_failed",
                    extra={"experiment_id": str(experiment_id), "lead_id": str(lead.id), "error": str(exc)},
                )
            else:
                variant_id = variant.id
                content = variant.content_template
                if variant.subject_template is not None:
                    subject = variant.subject_template

        agent = {
            "name": lead.agent_name or self.default_agent_name,
            "email": lead.agent_email,
            "phone": lead.agent_phone,
        }
        message = self.renderer.render(content, lead_context, agent, subject=subject)
        if message.missing_variables:
            logger.warning(
                "template_variables_unresolved",
                extra={"template_id": str(template_id), "missing_variables": message.missing_variables},
            )

        if channel == "email":
            self.channel.send_email(recipient, message.subject, message.content)
        else:
            self.channel.send_sms(recipient, message.content)

        logger.info(
            "workflow_message_enqueued",
            extra={"action_type": channel, "lead_id": str(lead.id), "template_id": str(template_id)},
        )
        return DispatchOutcome(template_id=template_id, variant_id=variant_id)

    def _create_task(self, lead: LeadRecord) -> None:
        name = lead.full_name or "lead"
        last_contact = lead.last_contacted_at.isoformat() if lead.last_contacted_at else "No previous contact"
        self.task_store.create(
            FollowUpTask(
                lead_id=lead.id,
                owner_user_id=lead.owner_user_id,
                title=f"Follow-up with {name}",
                description=f"Automated workflow follow-up for lead {name}. Previous interaction: {last_contact}",
                due_at=self.clock() + timedelta(hours=self.task_due_hours),
                priority=self.task_priority,
            )
        )

    def _create_notification(self, execution: WorkflowExecution, lead: LeadRecord) -> None:
        name = lead.full_name or "lead"
        self.notification_store.create(
            WorkflowNotification(
                user_id=lead.owner_user_id,
                title=f"Workflow Follow-up: {name}",
                message=f"Automated workflow triggered for lead {name}. Please review and follow up.",
                related_id=lead.id,
                action_url=f"/leads/{lead.id}",
                metadata={"workflow_id": str(execution.workflow_id), "execution_id": str(execution.id)},
            )
        )
