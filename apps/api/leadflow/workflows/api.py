from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from leadflow.core.database import get_db
from leadflow.workflows.engine import WorkflowEngine
from leadflow.workflows.schemas import (
    ConversionCreate,
    DeliveryEventCreate,
    ExecutionRead,
    ProcessResult,
    TriggerRequest,
    TriggerResult,
    WorkflowAnalytics,
    WorkflowCreate,
    WorkflowRead,
)
from leadflow.workflows.service import workflow_config_service


router = APIRouter(prefix="/api/workflows", tags=["workflows"])


def get_workflow_engine(request: Request) -> WorkflowEngine:
    engine = getattr(request.app.state, "workflow_engine", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="workflow engine not initialized")
    return engine


@router.post("", response_model=WorkflowRead, status_code=status.HTTP_201_CREATED)
def create_workflow(payload: WorkflowCreate, db: Session = Depends(get_db)) -> WorkflowRead:
    return workflow_config_service.create_workflow(db, payload)


@router.get("", response_model=list[WorkflowRead])
def list_workflows(
    owner_user_id: UUID = Query(),
    include_inactive: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> list[WorkflowRead]:
    return workflow_config_service.list_workflows(db, owner_user_id=owner_user_id, include_inactive=include_inactive)


@router.post("/triggers", response_model=TriggerResult)
def check_triggers(payload: TriggerRequest, engine: WorkflowEngine = Depends(get_workflow_engine)) -> TriggerResult:
    return engine.check_triggers(payload.lead_id, payload.score, payload.owner_user_id)


@router.post("/process", response_model=ProcessResult)
def process_pending(engine: WorkflowEngine = Depends(get_workflow_engine)) -> ProcessResult:
    return engine.process_pending()


@router.post("/executions/{execution_id}/delivery", response_model=ExecutionRead)
def record_delivery_event(
    execution_id: UUID,
    payload: DeliveryEventCreate,
    db: Session = Depends(get_db),
) -> ExecutionRead:
    return workflow_config_service.record_delivery_event(db, execution_id, payload)


@router.post("/executions/{execution_id}/conversion", response_model=ExecutionRead)
def record_conversion(
    execution_id: UUID,
    payload: ConversionCreate,
    db: Session = Depends(get_db),
) -> ExecutionRead:
    return workflow_config_service.record_conversion(db, execution_id, payload)


@router.post("/{workflow_id}/deactivate", response_model=WorkflowRead)
def deactivate_workflow(workflow_id: UUID, db: Session = Depends(get_db)) -> WorkflowRead:
    return workflow_config_service.deactivate_workflow(db, workflow_id)


@router.get("/{workflow_id}/executions", response_model=list[ExecutionRead])
def list_executions(
    workflow_id: UUID,
    lead_id: UUID | None = Query(default=None),
    db: Session = Depends(get_db),
) -> list[ExecutionRead]:
    return workflow_config_service.list_executions(db, workflow_id, lead_id=lead_id)


@router.get("/{workflow_id}/analytics", response_model=WorkflowAnalytics)
def get_workflow_analytics(workflow_id: UUID, db: Session = Depends(get_db)) -> WorkflowAnalytics:
    return workflow_config_service.get_analytics(db, workflow_id)
