from __future__ import annotations

import uuid
from functools import lru_cache
from typing import Any

from leadflow.collaborators import CeleryChannel, SqlLeadStore, SqlNotificationStore, SqlTaskStore
from leadflow.core.celery_app import celery_app
from leadflow.core.database import get_session_factory
from leadflow.workflows.engine import WorkflowEngine


def build_engine() -> WorkflowEngine:
    session_factory = get_session_factory()
    return WorkflowEngine(
        session_factory,
        SqlLeadStore(session_factory),
        CeleryChannel(),
        SqlNotificationStore(session_factory),
        SqlTaskStore(session_factory),
    )


@lru_cache
def get_worker_engine() -> WorkflowEngine:
    engine = build_engine()
    engine.init()
    return engine


@celery_app.task(name="leadflow.workflows.process_pending")
def process_pending_task() -> dict[str, int]:
    return get_worker_engine().process_pending().model_dump()


@celery_app.task(name="leadflow.workflows.check_triggers")
def check_triggers_task(lead_id: str, score: float, owner_user_id: str) -> dict[str, Any]:
    result = get_worker_engine().check_triggers(uuid.UUID(lead_id), score, uuid.UUID(owner_user_id))
    return result.model_dump(mode="json")
