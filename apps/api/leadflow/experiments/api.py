from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from leadflow.core.database import get_db
from leadflow.experiments.schemas import (
    ExperimentAssignmentRead,
    ExperimentCreate,
    ExperimentOutcomeCreate,
    ExperimentRead,
    ExperimentResults,
    ExperimentStatus,
)
from leadflow.experiments.service import experiment_service


router = APIRouter(prefix="/api/experiments", tags=["experiments"])


@router.post("", response_model=ExperimentRead, status_code=status.HTTP_201_CREATED)
def create_experiment(payload: ExperimentCreate, db: Session = Depends(get_db)) -> ExperimentRead:
    return experiment_service.create_experiment(db, payload)


@router.get("", response_model=list[ExperimentRead])
def list_experiments(
    template_id: UUID | None = Query(default=None),
    status_filter: ExperimentStatus | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
) -> list[ExperimentRead]:
    return experiment_service.list_experiments(db, template_id=template_id, status_filter=status_filter)


@router.post("/{experiment_id}/start", response_model=ExperimentRead)
def start_experiment(experiment_id: UUID, db: Session = Depends(get_db)) -> ExperimentRead:
    return experiment_service.start_experiment(db, experiment_id)


@router.post("/{experiment_id}/stop", response_model=ExperimentRead)
def stop_experiment(experiment_id: UUID, db: Session = Depends(get_db)) -> ExperimentRead:
    return experiment_service.stop_experiment(db, experiment_id)


@router.post("/{experiment_id}/results", response_model=ExperimentAssignmentRead)
def record_experiment_outcome(
    experiment_id: UUID,
    payload: ExperimentOutcomeCreate,
    db: Session = Depends(get_db),
) -> ExperimentAssignmentRead:
    return experiment_service.record_outcome(db, experiment_id, payload)


@router.get("/{experiment_id}/results", response_model=ExperimentResults)
def get_experiment_results(experiment_id: UUID, db: Session = Depends(get_db)) -> ExperimentResults:
    return experiment_service.get_results(db, experiment_id)
