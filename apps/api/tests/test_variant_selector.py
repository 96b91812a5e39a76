from __future__ import annotations

import random
import uuid
from collections import Counter
from collections.abc import Generator
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow import models  # noqa: F401
from leadflow.core.database import Base
from leadflow.experiments.models import ABExperiment, ExperimentAssignment
from leadflow.experiments.selection import VariantSelector, pick_weighted
from leadflow.templates.models import PersonalizedTemplate, TemplateVariant
from leadflow.workflows.errors import ExperimentError


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _experiment(
    session: Session,
    weights: dict[str, float],
    *,
    status: str = "running",
) -> ABExperiment:
    template = PersonalizedTemplate(owner_user_id=uuid.uuid4(), name="Listing alert", content_template="New listing")
    session.add(template)
    session.flush()
    for index, (name, weight) in enumerate(weights.items()):
        session.add(
            TemplateVariant(
                template_id=template.id,
                name=name,
                weight=weight,
                is_control=index == 0,
                content_template=f"{name} copy",
            )
        )
    experiment = ABExperiment(template_id=template.id, name="Copy test", status=status)
    session.add(experiment)
    session.commit()
    session.refresh(experiment)
    return experiment


def test_assignment_is_sticky_per_lead(db_session: Session) -> None:
    experiment = _experiment(db_session, {"Control": 0.5, "Test A": 0.5})
    selector = VariantSelector(rng=random.Random(11))
    lead_id = uuid.uuid4()

    first = selector.select_variant(db_session, experiment.id, lead_id)
    chosen = {selector.select_variant(db_session, experiment.id, lead_id).id for _ in range(10)}

    assert chosen == {first.id}
    assignments = db_session.scalar(
        select(func.count(ExperimentAssignment.id)).where(ExperimentAssignment.lead_id == lead_id)
    )
    assert assignments == 1


def test_assignment_frequencies_follow_weights(db_session: Session) -> None:
    experiment = _experiment(db_session, {"Control": 0.2, "Test A": 0.8})
    selector = VariantSelector(rng=random.Random(2026))

    counts = Counter(selector.select_variant(db_session, experiment.id, uuid.uuid4()).name for _ in range(1000))

    assert counts["Control"] + counts["Test A"] == 1000
    assert abs(counts["Control"] / 1000 - 0.2) < 0.05
    assert abs(counts["Test A"] / 1000 - 0.8) < 0.05


@pytest.mark.parametrize("status", ["draft", "completed"])
def test_experiment_must_be_running(db_session: Session, status: str) -> None:
    experiment = _experiment(db_session, {"Control": 1.0}, status=status)

    with pytest.raises(ExperimentError, match="not running"):
        VariantSelector().select_variant(db_session, experiment.id, uuid.uuid4())


def test_unknown_experiment_is_rejected(db_session: Session) -> None:
    with pytest.raises(ExperimentError, match="not found"):
        VariantSelector().select_variant(db_session, uuid.uuid4(), uuid.uuid4())


def test_experiment_without_variants_is_rejected(db_session: Session) -> None:
    experiment = _experiment(db_session, {})

    with pytest.raises(ExperimentError, match="no variants"):
        VariantSelector().select_variant(db_session, experiment.id, uuid.uuid4())
    assert db_session.scalar(select(func.count(ExperimentAssignment.id))) == 0


def test_pick_weighted_walks_cumulative_weights() -> None:
    control = SimpleNamespace(name="Control", weight=0.3)
    test_a = SimpleNamespace(name="Test A", weight=0.6)

    assert pick_weighted([control, test_a], 0.1) is control
    assert pick_weighted([control, test_a], 0.3) is control
    assert pick_weighted([control, test_a], 0.31) is test_a
    # Weights summing below the draw fall back to the first variant.
    assert pick_weighted([control, test_a], 0.95) is control


class _LateSelector(VariantSelector):
    """Misses an assignment another caller committed just before this one."""

    def __init__(self, rng: random.Random) -> None:
        super().__init__(rng=rng)
        self.lookups = 0

    def _existing(self, session: Session, experiment_id: uuid.UUID, lead_id: uuid.UUID) -> ExperimentAssignment | None:
        self.lookups += 1
        if self.lookups == 1:
            return None
        return super()._existing(session, experiment_id, lead_id)


def test_losing_assignment_race_returns_stored_variant(db_session: Session) -> None:
    experiment = _experiment(db_session, {"Control": 0.5, "Test A": 0.5})
    lead_id = uuid.uuid4()
    winner = VariantSelector(rng=random.Random(1)).select_variant(db_session, experiment.id, lead_id)

    late = _LateSelector(rng=random.Random(99))
    result = late.select_variant(db_session, experiment.id, lead_id)

    assert late.lookups == 2
    assert result.id == winner.id
    assert db_session.scalar(select(func.count(ExperimentAssignment.id))) == 1
