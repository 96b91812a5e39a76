from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from fastapi import HTTPException, status
from sqlalchemy import Select, case, func, select
from sqlalchemy.orm import Session

from leadflow.experiments.models import ABExperiment, ExperimentAssignment
from leadflow.experiments.schemas import (
    ExperimentAssignmentRead,
    ExperimentCreate,
    ExperimentOutcomeCreate,
    ExperimentRead,
    ExperimentResults,
    ExperimentStatistics,
    VariantResult,
)
from leadflow.templates.models import PersonalizedTemplate, TemplateVariant
from leadflow.templates.service import TemplateService


logger = logging.getLogger("leadflow.experiments")

_DEFAULT_VARIANTS = (("Control", 0.5, True), ("Test A", 0.5, False))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def two_proportion_z_test(
    control_conversions: int,
    control_size: int,
    test_conversions: int,
    test_size: int,
) -> tuple[float, float] | None:
    """Return ``(z, two-sided p-value)`` or ``None`` when the test is undefined."""
    if control_size <= 0 or test_size <= 0:
        return None
    pooled = (control_conversions + test_conversions) / (control_size + test_size)
    if pooled <= 0 or pooled >= 1:
        return None
    standard_error = math.sqrt(pooled * (1 - pooled) * (1 / control_size + 1 / test_size))
    z_score = (test_conversions / test_size - control_conversions / control_size) / standard_error
    p_value = math.erfc(abs(z_score) / math.sqrt(2))
    return z_score, p_value


@dataclass(slots=True)
class ExperimentService:
    template_service: TemplateService = field(default_factory=TemplateService)

    def create_experiment(self, session: Session, dto: ExperimentCreate) -> ExperimentRead:
        template = session.scalar(select(PersonalizedTemplate).where(PersonalizedTemplate.id == dto.template_id))
        if template is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="template not found")

        experiment = ABExperiment(**dto.model_dump(mode="python"))
        session.add(experiment)

        has_variants = session.scalar(select(func.count(TemplateVariant.id)).where(TemplateVariant.template_id == template.id))
        if not has_variants:
            for name, weight, is_control in _DEFAULT_VARIANTS:
                session.add(
                    TemplateVariant(
                        template_id=template.id,
                        name=name,
                        weight=weight,
                        is_control=is_control,
                        subject_template=template.subject_template,
                        content_template=template.content_template,
                    )
                )

        session.commit()
        session.refresh(experiment)
        logger.info("experiment_created", extra={"experiment_id": str(experiment.id), "template_id": str(template.id)})
        return ExperimentRead.model_validate(experiment)

    def get_experiment(self, session: Session, experiment_id: uuid.UUID) -> ABExperiment:
        experiment = session.scalar(select(ABExperiment).where(ABExperiment.id == experiment_id))
        if experiment is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="experiment not found")
        return experiment

    def list_experiments(
        self,
        session: Session,
        *,
        template_id: uuid.UUID | None = None,
        status_filter: str | None = None,
    ) -> list[ExperimentRead]:
        stmt: Select[tuple[ABExperiment]] = select(ABExperiment)
        if template_id is not None:
            stmt = stmt.where(ABExperiment.template_id == template_id)
        if status_filter is not None:
            stmt = stmt.where(ABExperiment.status == status_filter)
        rows = session.scalars(stmt.order_by(ABExperiment.created_at.desc())).all()
        return [ExperimentRead.model_validate(row) for row in rows]

    def find_running_for_template(self, session: Session, template_id: uuid.UUID) -> ABExperiment | None:
        return session.scalar(
            select(ABExperiment)
            .where(ABExperiment.template_id == template_id, ABExperiment.status == "running")
            .order_by(ABExperiment.start_date.asc(), ABExperiment.created_at.asc())
            .limit(1)
        )

    def start_experiment(self, session: Session, experiment_id: uuid.UUID) -> ExperimentRead:
        experiment = self.get_experiment(session, experiment_id)
        if experiment.status != "draft":
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="only draft experiments can be started")

        report = self.template_service.validate_variant_weights(session, experiment.template_id)
        if not report.valid:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"variant weights must sum to 1.0 (got {report.total_weight:.6f})",
            )

        experiment.status = "running"
        experiment.start_date = utcnow()
        session.add(experiment)
        session.commit()
        session.refresh(experiment)
        logger.info("experiment_started", extra={"experiment_id": str(experiment.id)})
        return ExperimentRead.model_validate(experiment)

    def stop_experiment(self, session: Session, experiment_id: uuid.UUID) -> ExperimentRead:
        experiment = self.get_experiment(session, experiment_id)
        if experiment.status != "running":
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="only running experiments can be stopped")

        experiment.status = "completed"
        experiment.end_date = utcnow()
        session.add(experiment)
        session.commit()
        session.refresh(experiment)
        logger.info("experiment_stopped", extra={"experiment_id": str(experiment.id)})
        return ExperimentRead.model_validate(experiment)

    def record_outcome(
        self,
        session: Session,
        experiment_id: uuid.UUID,
        dto: ExperimentOutcomeCreate,
    ) -> ExperimentAssignmentRead:
        self.get_experiment(session, experiment_id)
        assignment = session.scalar(
            select(ExperimentAssignment).where(
                ExperimentAssignment.experiment_id == experiment_id,
                ExperimentAssignment.lead_id == dto.lead_id,
            )
        )
        if assignment is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead is not assigned to this experiment")

        assignment.metric_value = dto.metric_value
        assignment.conversion_occurred = dto.conversion_occurred
        session.add(assignment)
        session.commit()
        session.refresh(assignment)
        return ExperimentAssignmentRead.model_validate(assignment)

    def get_results(self, session: Session, experiment_id: uuid.UUID) -> ExperimentResults:
        experiment = self.get_experiment(session, experiment_id)
        rows = session.execute(
            select(
                TemplateVariant.id,
                TemplateVariant.name,
                TemplateVariant.is_control,
                func.count(ExperimentAssignment.id),
                func.avg(ExperimentAssignment.metric_value),
                func.sum(case((ExperimentAssignment.conversion_occurred.is_(True), 1), else_=0)),
            )
            .select_from(ExperimentAssignment)
            .join(TemplateVariant, TemplateVariant.id == ExperimentAssignment.variant_id)
            .where(ExperimentAssignment.experiment_id == experiment_id)
            .group_by(TemplateVariant.id, TemplateVariant.name, TemplateVariant.is_control)
            .order_by(TemplateVariant.name.asc())
        ).all()

        variants = [
            VariantResult(
                variant_id=variant_id,
                name=name,
                is_control=bool(is_control),
                sample_size=int(sample_size),
                avg_metric=float(avg_metric) if avg_metric is not None else None,
                conversions=int(conversions or 0),
                conversion_rate=(int(conversions or 0) / int(sample_size)) if sample_size else 0.0,
            )
            for variant_id, name, is_control, sample_size, avg_metric, conversions in rows
        ]
        return ExperimentResults(
            experiment_id=experiment.id,
            status=experiment.status,
            variants=variants,
            statistics=self._statistics(variants, experiment.confidence_threshold),
            total_responses=sum(item.sample_size for item in variants),
        )

    def _statistics(self, variants: list[VariantResult], threshold: float) -> ExperimentStatistics:
        control = next((item for item in variants if item.is_control), None)
        tests = [item for item in variants if not item.is_control]
        if control is None or not tests:
            return ExperimentStatistics(significant=False, confidence=0.0)

        best = max(tests, key=lambda item: (item.conversion_rate, item.sample_size))
        outcome = two_proportion_z_test(control.conversions, control.sample_size, best.conversions, best.sample_size)
        if outcome is None:
            return ExperimentStatistics(
                significant=False,
                confidence=0.0,
                control_rate=control.conversion_rate,
                test_rate=best.conversion_rate,
                difference=best.conversion_rate - control.conversion_rate,
                test_variant_id=best.variant_id,
            )

        z_score, p_value = outcome
        confidence = round(1 - p_value, 4)
        return ExperimentStatistics(
            significant=confidence >= threshold,
            confidence=confidence,
            z_score=round(z_score, 4),
            control_rate=control.conversion_rate,
            test_rate=best.conversion_rate,
            difference=best.conversion_rate - control.conversion_rate,
            test_variant_id=best.variant_id,
        )


experiment_service = ExperimentService()
