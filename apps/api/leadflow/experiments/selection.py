from __future__ import annotations

import logging
import random
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leadflow.experiments.models import ABExperiment, ExperimentAssignment
from leadflow.metrics import observe_experiment_assignment
from leadflow.templates.models import TemplateVariant
from leadflow.workflows.errors import ExperimentError


logger = logging.getLogger("leadflow.experiments.selection")


def pick_weighted(variants: list[TemplateVariant], draw: float) -> TemplateVariant:
    cumulative = 0.0
    for variant in variants:
        cumulative += variant.weight
        if cumulative >= draw:
            return variant
    return variants[0]


class VariantSelector:
    """Sticky weighted assignment of leads to the variants of a running experiment."""

    def __init__(self, rng: random.Random | None = None):
        self.rng = rng or random.Random()

    def _existing(self, session: Session, experiment_id: uuid.UUID, lead_id: uuid.UUID) -> ExperimentAssignment | None:
        return session.scalar(
            select(ExperimentAssignment).where(
                ExperimentAssignment.experiment_id == experiment_id,
                ExperimentAssignment.lead_id == lead_id,
            )
        )

    def select_variant(self, session: Session, experiment_id: uuid.UUID, lead_id: uuid.UUID) -> TemplateVariant:
        experiment = session.scalar(select(ABExperiment).where(ABExperiment.id == experiment_id))
        if experiment is None:
            raise ExperimentError(f"experiment {experiment_id} not found")
        if experiment.status != "running":
            raise ExperimentError(f"experiment {experiment_id} is {experiment.status}, not running")

        assignment = self._existing(session, experiment_id, lead_id)
        if assignment is not None:
            observe_experiment_assignment("sticky")
            return assignment.variant

        variants = list(
            session.scalars(
                select(TemplateVariant)
                .where(TemplateVariant.template_id == experiment.template_id)
                .order_by(TemplateVariant.name.asc(), TemplateVariant.id.asc())
            ).all()
        )
        if not variants:
            raise ExperimentError(f"experiment {experiment_id} has no variants")

        variant = pick_weighted(variants, self.rng.random())
        session.add(ExperimentAssignment(experiment_id=experiment_id, variant_id=variant.id, lead_id=lead_id))
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            winner = self._existing(session, experiment_id, lead_id)
            if winner is None:
                raise
            logger.info(
                "experiment_assignment_race_lost",
                extra={"experiment_id": str(experiment_id), "lead_id": str(lead_id), "variant_id": str(winner.variant_id)},
            )
            observe_experiment_assignment("sticky")
            return winner.variant

        observe_experiment_assignment("new")
        logger.info(
            "experiment_variant_assigned",
            extra={"experiment_id": str(experiment_id), "lead_id": str(lead_id), "variant_id": str(variant.id)},
        )
        return variant
