from __future__ import annotations

import logging
import random
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy.orm import Session, sessionmaker

from leadflow.collaborators import Channel, LeadStore, NotificationStore, TaskStore
from leadflow.experiments.selection import VariantSelector
from leadflow.workflows.processor import StepProcessor
from leadflow.workflows.repository import WorkflowStore
from leadflow.workflows.schemas import ProcessResult, TriggerResult
from leadflow.workflows.triggers import TriggerEvaluator


logger = logging.getLogger("leadflow.workflows.engine")


class WorkflowEngine:
    """Entry points for the external driver: score changes and the polling tick.

    Each call opens its own session from ``session_factory``. Neither entry
    point raises; failures are logged and reported in the result.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        lead_store: LeadStore,
        channel: Channel,
        notification_store: NotificationStore,
        task_store: TaskStore,
        *,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
        batch_size: int | None = None,
    ):
        self.session_factory = session_factory
        clock = clock or (lambda: datetime.now(timezone.utc))
        store = WorkflowStore()
        self.trigger_evaluator = TriggerEvaluator(store=store, clock=clock)
        self.step_processor = StepProcessor(
            lead_store,
            channel,
            notification_store,
            task_store,
            store=store,
            variant_selector=VariantSelector(rng=rng),
            clock=clock,
            batch_size=batch_size,
        )
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def init(self) -> None:
        self._running = True
        logger.info("workflow_engine_started", extra={"status": "running"})

    def shutdown(self) -> None:
        self._running = False
        logger.info("workflow_engine_stopped", extra={"status": "stopped"})

    def check_triggers(self, lead_id: uuid.UUID, score: float, owner_user_id: uuid.UUID) -> TriggerResult:
        if not self._running:
            return TriggerResult(triggered=False, workflows=[], error="workflow engine is not running")
        try:
            with self.session_factory() as session:
                return self.trigger_evaluator.check_triggers(session, lead_id, score, owner_user_id)
        except Exception as exc:
            logger.exception("workflow_trigger_unhandled", extra={"lead_id": str(lead_id), "error": str(exc)})
            return TriggerResult(triggered=False, workflows=[], error=str(exc)[:2000])

    def process_pending(self) -> ProcessResult:
        if not self._running:
            return ProcessResult(processed=0)
        try:
            with self.session_factory() as session:
                result = self.step_processor.process_pending(session)
        except Exception as exc:
            logger.exception("workflow_process_unhandled", extra={"error": str(exc)})
            return ProcessResult(processed=0)
        if result.processed:
            logger.info("workflow_process_pending_finished", extra={"processed": result.processed})
        return result
