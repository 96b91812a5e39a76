from __future__ import annotations

import logging
import random
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow import models  # noqa: F401
from leadflow.collaborators import FollowUpTask, LeadRecord, WorkflowNotification
from leadflow.core.config import get_settings
from leadflow.core.database import Base
from leadflow.experiments.models import ABExperiment, ExperimentAssignment
from leadflow.experiments.selection import VariantSelector
from leadflow.templates.models import PersonalizedTemplate, TemplateVariant
from leadflow.workflows.models import SequenceStep, WorkflowConfiguration, WorkflowExecution
from leadflow.workflows.processor import StepProcessor
from leadflow.workflows.repository import WorkflowStore
from leadflow.workflows.triggers import TriggerEvaluator


START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, hours: float) -> None:
        self.now = self.now + timedelta(hours=hours)


class FakeLeadStore:
    def __init__(self, *leads: LeadRecord) -> None:
        self.leads = {lead.id: lead for lead in leads}

    def get_by_id(self, lead_id: uuid.UUID) -> LeadRecord | None:
        return self.leads.get(lead_id)


class RecordingChannel:
    def __init__(self, fail_with: Exception | None = None) -> None:
        self.fail_with = fail_with
        self.emails: list[tuple[str, str | None, str]] = []
        self.sms: list[tuple[str, str]] = []

    def send_email(self, to: str, subject: str | None, body: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.emails.append((to, subject, body))

    def send_sms(self, to: str, body: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sms.append((to, body))


class RecordingTaskStore:
    def __init__(self) -> None:
        self.tasks: list[FollowUpTask] = []

    def create(self, task: FollowUpTask) -> None:
        self.tasks.append(task)


class RecordingNotificationStore:
    def __init__(self) -> None:
        self.notifications: list[WorkflowNotification] = []

    def create(self, notification: WorkflowNotification) -> None:
        self.notifications.append(notification)


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


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("WORKFLOW_TASK_PRIORITY", "High")
    monkeypatch.setenv("WORKFLOW_TASK_DUE_HOURS", "24")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(START)


@pytest.fixture()
def owner_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def lead(owner_id: uuid.UUID) -> LeadRecord:
    return LeadRecord(
        id=uuid.uuid4(),
        owner_user_id=owner_id,
        first_name="Jane",
        last_name="Doe",
        email="jane@example.com",
        phone="+15550100",
        score=85,
        source="zillow",
        agent_name="Sam Agent",
        attributes={"property_type": "condo"},
    )


@pytest.fixture()
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture()
def task_store() -> RecordingTaskStore:
    return RecordingTaskStore()


@pytest.fixture()
def notification_store() -> RecordingNotificationStore:
    return RecordingNotificationStore()


def _processor(
    lead: LeadRecord,
    channel: RecordingChannel,
    task_store: RecordingTaskStore,
    notification_store: RecordingNotificationStore,
    clock: FakeClock,
    **kwargs,
) -> StepProcessor:
    return StepProcessor(
        FakeLeadStore(lead),
        channel,
        notification_store,
        task_store,
        clock=clock,
        **kwargs,
    )


def _template(
    session: Session,
    owner_id: uuid.UUID,
    *,
    name: str = "Welcome",
    channel: str = "email",
    subject: str | None = "Hello {{lead.first_name}}",
    content: str = "Hi {{lead.first_name}}, {{agent.name}} here.",
) -> PersonalizedTemplate:
    template = PersonalizedTemplate(
        owner_user_id=owner_id,
        name=name,
        channel=channel,
        subject_template=subject,
        content_template=content,
    )
    session.add(template)
    session.commit()
    session.refresh(template)
    return template


def _workflow(
    session: Session,
    owner_id: uuid.UUID,
    steps: tuple[tuple[int, str, int], ...],
    template_id: uuid.UUID | None = None,
) -> WorkflowConfiguration:
    workflow = WorkflowConfiguration(owner_user_id=owner_id, name="Nurture", trigger_score_min=50)
    workflow.steps = [
        SequenceStep(step_number=number, action_type=action_type, delay_hours=delay, template_id=template_id)
        for number, action_type, delay in steps
    ]
    session.add(workflow)
    session.commit()
    session.refresh(workflow)
    return workflow


def _trigger(session: Session, lead: LeadRecord, clock: FakeClock) -> uuid.UUID:
    result = TriggerEvaluator(clock=clock).check_triggers(session, lead.id, lead.score or 0, lead.owner_user_id)
    assert result.triggered is True
    return result.workflows[0].execution_id


def _executions(session: Session, lead_id: uuid.UUID) -> list[WorkflowExecution]:
    session.expire_all()
    rows = session.execute(
        select(WorkflowExecution, SequenceStep.step_number)
        .join(SequenceStep, SequenceStep.id == WorkflowExecution.sequence_id)
        .where(WorkflowExecution.lead_id == lead_id)
        .order_by(SequenceStep.step_number.asc())
    ).all()
    return [execution for execution, _ in rows]


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None)


def test_email_step_completes_and_schedules_next_step(
    db_session: Session,
    owner_id: uuid.UUID,
    lead: LeadRecord,
    channel: RecordingChannel,
    task_store: RecordingTaskStore,
    notification_store: RecordingNotificationStore,
    clock: FakeClock,
) -> None:
    template = _template(db_session, owner_id)
    _workflow(db_session, owner_id, ((1, "email", 0), (2, "sms", 24)), template_id=template.id)
    _trigger(db_session, lead, clock)

    result = _processor(lead, channel, task_store, notification_store, clock).process_pending(db_session)

    assert result.processed == 1
    assert channel.emails == [("jane@example.com", "Hello Jane", "Hi Jane, Sam Agent here.")]
    first, second = _executions(db_session, lead.id)
    assert first.status == "completed"
    assert _naive(first.executed_at) == _naive(START)
    assert first.template_id == template.id
    assert first.variant_id is None
    assert first.error_message is None
    assert second.status == "pending"
    assert _naive(second.scheduled_at) == _naive(START + timedelta(hours=24))


def test_last_step_completes_without_scheduling(
    db_session: Session,
    owner_id: uuid.UUID,
    lead: LeadRecord,
    channel: RecordingChannel,
    task_store: RecordingTaskStore,
    notification_store: RecordingNotificationStore,
    clock: FakeClock,
) -> None:
    _template(db_session, owner_id, channel="sms", subject=None, content="Call me, {{name}}")
    _workflow(db_session, owner_id, ((1, "sms", 0),))
    _trigger(db_session, lead, clock)

    _processor(lead, channel, task_store, notification_store, clock).process_pending(db_session)

    executions = _executions(db_session, lead.id)
    assert [item.status for item in executions] == ["completed"]
    assert channel.sms == [("+15550100", "Call me, Jane Doe")]


def test_dispatch_failure_marks_execution_failed_and_stops_chain(
    db_session: Session,
    owner_id: uuid.UUID,
    lead: LeadRecord,
    task_store: RecordingTaskStore,
    notification_store: RecordingNotificationStore,
    clock: FakeClock,
    caplog: pytest.LogCaptureFixture,
) -> None:
    _template(db_session, owner_id)
    _workflow(db_session, owner_id, ((1, "email", 0), (2, "email", 24)))
    _trigger(db_session, lead, clock)
    failing = RecordingChannel(fail_with=RuntimeError("email queue unavailable"))

    with caplog.at_level(logging.WARNING, logger="leadflow.workflows.processor"):
        result = _processor(lead, failing, task_store, notification_store, clock).process_pending(db_session)

    assert result.processed == 1
    executions = _executions(db_session, lead.id)
    assert len(executions) == 1
    assert executions[0].status == "failed"
    assert executions[0].error_message == "email queue unavailable"
    assert _naive(executions[0].executed_at) == _naive(START)
    assert any(record.getMessage() == "workflow_execution_failed" for record in caplog.records)


def test_missing_template_marks_execution_failed(
    db_session: Session,
    owner_id: uuid.UUID,
    lead: LeadRecord,
    channel: RecordingChannel,
    task_store: RecordingTaskStore,
    notification_store: RecordingNotificationStore,
    clock: FakeClock,
) -> None:
    _template(db_session, owner_id, channel="sms", subject=None, content="sms only")
    _workflow(db_session, owner_id, ((1, "email", 0),))
    _trigger(db_session, lead, clock)

    _processor(lead, channel, task_store, notification_store, clock).process_pending(db_session)

    (execution,) = _executions(db_session, lead.id)
    assert execution.status == "failed"
    assert "no active email template" in (execution.error_message or "")
    assert channel.emails == []


def test_missing_lead_marks_execution_failed(
    db_session: Session,
    owner_id: uuid.UUID,
    lead: LeadRecord,
    channel: RecordingChannel,
    task_store: RecordingTaskStore,
    notification_store: RecordingNotificationStore,
    clock: FakeClock,
) -> None:
    _workflow(db_session, owner_id, ((1, "task", 0),))
    _trigger(db_session, lead, clock)
    processor = StepProcessor(FakeLeadStore(), channel, notification_store, task_store, clock=clock)

    processor.process_pending(db_session)

    (execution,) = _executions(db_session, lead.id)
    assert execution.status == "failed"
    assert execution.error_message == f"lead {lead.id} not found"
    assert task_store.tasks == []


def test_missing_recipient_marks_execution_failed(
    db_session: Session,
    owner_id: uuid.UUID,
    lead: LeadRecord,
    channel: RecordingChannel,
    task_store: RecordingTaskStore,
    notification_store: RecordingNotificationStore,
    clock: FakeClock,
) -> None:
    no_phone = lead.model_copy(update={"phone": None})
    _template(db_session, owner_id, channel="sms", subject=None, content="Hi")
    _workflow(db_session, owner_id, ((1, "sms", 0),))
    _trigger(db_session, no_phone, clock)

    _processor(no_phone, channel, task_store, notification_store, clock).process_pending(db_session)

    (execution,) = _executions(db_session, lead.id)
    assert execution.status == "failed"
    assert execution.error_message == f"lead {lead.id} has no sms recipient"
    assert channel.sms == []


def test_task_step_creates_follow_up_task(
    db_session: Session,
    owner_id: uuid.UUID,
    lead: LeadRecord,
    channel: RecordingChannel,
    task_store: RecordingTaskStore,
    notification_store: RecordingNotificationStore,
    clock: FakeClock,
) -> None:
    _workflow(db_session, owner_id, ((1, "task", 0),))
    _trigger(db_session, lead, clock)

    _processor(lead, channel, task_store, notification_store, clock).process_pending(db_session)

    (task,) = task_store.tasks
    assert task.lead_id == lead.id
    assert task.owner_user_id == owner_id
    assert task.title == "Follow-up with Jane Doe"
    assert task.description.endswith("Previous interaction: No previous contact")
    assert task.priority == "High"
    assert task.due_at == START + timedelta(hours=24)
    (execution,) = _executions(db_session, lead.id)
    assert execution.status == "completed"
    assert execution.template_id is None


def test_notification_step_notifies_owner(
    db_session: Session,
    owner_id: uuid.UUID,
    lead: LeadRecord,
    channel: RecordingChannel,
    task_store: RecordingTaskStore,
    notification_store: RecordingNotificationStore,
    clock: FakeClock,
) -> None:
    _workflow(db_session, owner_id, ((1, "notification", 0),))
    execution_id = _trigger(db_session, lead, clock)

    _processor(lead, channel, task_store, notification_store, clock).process_pending(db_session)

    (notification,) = notification_store.notifications
    assert notification.user_id == owner_id
    assert notification.title == "Workflow Follow-up: Jane Doe"
    assert notification.related_id == lead.id
    assert notification.related_type == "lead"
    assert notification.notification_type == "workflow"
    assert notification.action_url == f"/leads/{lead.id}"
    assert notification.metadata["execution_id"] == str(execution_id)


def test_three_step_chain_runs_in_order(
    db_session: Session,
    owner_id: uuid.UUID,
    lead: LeadRecord,
    channel: RecordingChannel,
    task_store: RecordingTaskStore,
    notification_store: RecordingNotificationStore,
    clock: FakeClock,
) -> None:
    _template(db_session, owner_id)
    _workflow(db_session, owner_id, ((1, "email", 0), (2, "task", 2), (3, "notification", 5)))
    _trigger(db_session, lead, clock)
    processor = _processor(lead, channel, task_store, notification_store, clock)

    assert processor.process_pending(db_session).processed == 1
    clock.advance(1)
    assert processor.process_pending(db_session).processed == 0
    clock.advance(1)
    assert processor.process_pending(db_session).processed == 1
    clock.advance(5)
    assert processor.process_pending(db_session).processed == 1
    clock.advance(24)
    assert processor.process_pending(db_session).processed == 0

    executions = _executions(db_session, lead.id)
    assert [item.status for item in executions] == ["completed", "completed", "completed"]
    for previous, current in zip(executions, executions[1:]):
        assert _naive(current.scheduled_at) >= _naive(previous.executed_at)
    assert len(channel.emails) == 1
    assert len(task_store.tasks) == 1
    assert len(notification_store.notifications) == 1


def test_future_and_claimed_rows_are_not_processed(
    db_session: Session,
    owner_id: uuid.UUID,
    lead: LeadRecord,
    channel: RecordingChannel,
    task_store: RecordingTaskStore,
    notification_store: RecordingNotificationStore,
    clock: FakeClock,
) -> None:
    _workflow(db_session, owner_id, ((1, "task", 3),))
    execution_id = _trigger(db_session, lead, clock)
    processor = _processor(lead, channel, task_store, notification_store, clock)

    assert processor.process_pending(db_session).processed == 0

    execution = db_session.get(WorkflowExecution, execution_id)
    execution.status = "in_progress"
    db_session.commit()
    clock.advance(3)

    assert processor.process_pending(db_session).processed == 0
    assert task_store.tasks == []


def test_batch_size_limits_claimed_rows(
    db_session: Session,
    owner_id: uuid.UUID,
    lead: LeadRecord,
    channel: RecordingChannel,
    task_store: RecordingTaskStore,
    notification_store: RecordingNotificationStore,
    clock: FakeClock,
) -> None:
    _workflow(db_session, owner_id, ((1, "task", 0),))
    leads = [lead.model_copy(update={"id": uuid.uuid4()}) for _ in range(3)]
    for item in leads:
        _trigger(db_session, item, clock)
    processor = StepProcessor(FakeLeadStore(*leads), channel, notification_store, task_store, clock=clock, batch_size=2)

    assert processor.process_pending(db_session).processed == 2
    assert processor.process_pending(db_session).processed == 1
    assert processor.process_pending(db_session).processed == 0
    assert len(task_store.tasks) == 3


class _RacingStore(WorkflowStore):
    """Another poller claims every candidate between selection and update."""

    def due_candidates(self, session: Session, now: datetime, limit: int) -> list[uuid.UUID]:
        candidates = super().due_candidates(session, now, limit)
        for execution_id in candidates:
            session.get(WorkflowExecution, execution_id).status = "in_progress"
        session.flush()
        return candidates


def test_lost_claim_race_skips_execution(
    db_session: Session,
    owner_id: uuid.UUID,
    lead: LeadRecord,
    channel: RecordingChannel,
    task_store: RecordingTaskStore,
    notification_store: RecordingNotificationStore,
    clock: FakeClock,
) -> None:
    _workflow(db_session, owner_id, ((1, "task", 0),))
    _trigger(db_session, lead, clock)
    processor = _processor(lead, channel, task_store, notification_store, clock, store=_RacingStore())

    assert processor.process_pending(db_session).processed == 0
    assert task_store.tasks == []


class _FlakyStore(WorkflowStore):
    """The first next-step lookup hits a dropped connection."""

    def __init__(self) -> None:
        self.failures_left = 1

    def active_step(self, session: Session, workflow_id: uuid.UUID, step_number: int) -> SequenceStep | None:
        if step_number == 2 and self.failures_left:
            self.failures_left -= 1
            raise OperationalError("SELECT workflow_sequences", {}, Exception("server closed the connection"))
        return super().active_step(session, workflow_id, step_number)


def test_store_error_fails_one_execution_and_keeps_batch_running(
    db_session: Session,
    owner_id: uuid.UUID,
    lead: LeadRecord,
    channel: RecordingChannel,
    task_store: RecordingTaskStore,
    notification_store: RecordingNotificationStore,
    clock: FakeClock,
) -> None:
    _workflow(db_session, owner_id, ((1, "task", 0), (2, "task", 1)))
    leads = [lead.model_copy(update={"id": uuid.uuid4()}) for _ in range(3)]
    for item in leads:
        _trigger(db_session, item, clock)
    processor = StepProcessor(FakeLeadStore(*leads), channel, notification_store, task_store, clock=clock, store=_FlakyStore())

    assert processor.process_pending(db_session).processed == 3

    chains = [_executions(db_session, item.id) for item in leads]
    first_steps = [chain[0] for chain in chains]
    assert sorted(execution.status for execution in first_steps) == ["completed", "completed", "failed"]
    assert not [execution for execution in first_steps if execution.status == "in_progress"]
    failed = next(execution for execution in first_steps if execution.status == "failed")
    assert "server closed the connection" in failed.error_message
    for chain in chains:
        if chain[0].status == "completed":
            assert [execution.status for execution in chain] == ["completed", "pending"]
        else:
            assert len(chain) == 1

    clock.advance(1)
    assert processor.process_pending(db_session).processed == 2
    assert len(task_store.tasks) == 5


def test_running_experiment_sends_assigned_variant(
    db_session: Session,
    owner_id: uuid.UUID,
    lead: LeadRecord,
    channel: RecordingChannel,
    task_store: RecordingTaskStore,
    notification_store: RecordingNotificationStore,
    clock: FakeClock,
) -> None:
    template = _template(db_session, owner_id)
    db_session.add(
        TemplateVariant(
            template_id=template.id,
            name="Control",
            weight=1.0,
            is_control=True,
            subject_template=None,
            content_template="Variant copy for {{lead.first_name}}",
        )
    )
    db_session.add(ABExperiment(template_id=template.id, name="Subject test", status="running", start_date=START))
    db_session.commit()
    _workflow(db_session, owner_id, ((1, "email", 0),), template_id=template.id)
    _trigger(db_session, lead, clock)
    processor = _processor(
        lead,
        channel,
        task_store,
        notification_store,
        clock,
        variant_selector=VariantSelector(rng=random.Random(7)),
    )

    processor.process_pending(db_session)

    assert channel.emails == [("jane@example.com", "Hello Jane", "Variant copy for Jane")]
    (execution,) = _executions(db_session, lead.id)
    assignment = db_session.scalar(select(ExperimentAssignment).where(ExperimentAssignment.lead_id == lead.id))
    assert assignment is not None
    assert execution.variant_id == assignment.variant_id


def test_experiment_without_variants_falls_back_to_template(
    db_session: Session,
    owner_id: uuid.UUID,
    lead: LeadRecord,
    channel: RecordingChannel,
    task_store: RecordingTaskStore,
    notification_store: RecordingNotificationStore,
    clock: FakeClock,
    caplog: pytest.LogCaptureFixture,
) -> None:
    template = _template(db_session, owner_id)
    db_session.add(ABExperiment(template_id=template.id, name="Empty", status="running", start_date=START))
    db_session.commit()
    _workflow(db_session, owner_id, ((1, "email", 0),), template_id=template.id)
    _trigger(db_session, lead, clock)

    with caplog.at_level(logging.WARNING, logger="leadflow.workflows.processor"):
        _processor(lead, channel, task_store, notification_store, clock).process_pending(db_session)

    assert channel.emails == [("jane@example.com", "Hello Jane", "Hi Jane, Sam Agent here.")]
    (execution,) = _executions(db_session, lead.id)
    assert execution.status == "completed"
    assert execution.variant_id is None
    assert any(record.getMessage() == "experiment_variant_selection_failed" for record in caplog.records)


def test_unresolved_placeholders_are_sent_verbatim(
    db_session: Session,
    owner_id: uuid.UUID,
    lead: LeadRecord,
    channel: RecordingChannel,
    task_store: RecordingTaskStore,
    notification_store: RecordingNotificationStore,
    clock: FakeClock,
    caplog: pytest.LogCaptureFixture,
) -> None:
    _template(db_session, owner_id, subject=None, content="Your {{lead.property_type}} near {{lead.neighborhood}}")
    _workflow(db_session, owner_id, ((1, "email", 0),))
    _trigger(db_session, lead, clock)

    with caplog.at_level(logging.WARNING, logger="leadflow.workflows.processor"):
        _processor(lead, channel, task_store, notification_store, clock).process_pending(db_session)

    assert channel.emails == [("jane@example.com", None, "Your condo near {{lead.neighborhood}}")]
    unresolved = [record for record in caplog.records if record.getMessage() == "template_variables_unresolved"]
    assert len(unresolved) == 1
    assert getattr(unresolved[0], "missing_variables") == ["lead.neighborhood"]
    (execution,) = _executions(db_session, lead.id)
    assert execution.status == "completed"
