from __future__ import annotations

import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow import models  # noqa: F401
from leadflow.collaborators import FollowUpTask, LeadRecord
from leadflow.context import get_correlation_id
from leadflow.core.config import get_settings
from leadflow.core.database import Base, get_db, get_session_factory
from leadflow.main import app
from leadflow.workflows.api import get_workflow_engine
from leadflow.workflows.engine import WorkflowEngine


class StaticLeadStore:
    def __init__(self, lead: LeadRecord) -> None:
        self.lead = lead

    def get_by_id(self, lead_id: uuid.UUID) -> LeadRecord | None:
        return self.lead if lead_id == self.lead.id else None


class NullChannel:
    def send_email(self, to: str, subject: str | None, body: str) -> None:
        return None

    def send_sms(self, to: str, body: str) -> None:
        return None


class CorrelationCapturingTaskStore:
    def __init__(self) -> None:
        self.correlation_ids: list[str | None] = []

    def create(self, task: FollowUpTask) -> None:
        self.correlation_ids.append(get_correlation_id())


class NullNotificationStore:
    def create(self, notification: object) -> None:
        return None


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    try:
        yield SessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    get_settings.cache_clear()
    get_session_factory.cache_clear()
    yield
    get_settings.cache_clear()
    get_session_factory.cache_clear()


@pytest.fixture()
def owner_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def lead(owner_id: uuid.UUID) -> LeadRecord:
    return LeadRecord(id=uuid.uuid4(), owner_user_id=owner_id, first_name="Jane", last_name="Doe")


@pytest.fixture()
def task_store() -> CorrelationCapturingTaskStore:
    return CorrelationCapturingTaskStore()


@pytest.fixture()
def client(
    db_session: Session,
    session_factory: sessionmaker[Session],
    lead: LeadRecord,
    task_store: CorrelationCapturingTaskStore,
) -> Generator[TestClient, None, None]:
    engine = WorkflowEngine(session_factory, StaticLeadStore(lead), NullChannel(), NullNotificationStore(), task_store)
    engine.init()

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_workflow_engine] = lambda: engine
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_task_workflow(client: TestClient, owner_id: uuid.UUID) -> dict:
    response = client.post(
        "/api/workflows",
        json={
            "owner_user_id": str(owner_id),
            "name": "Call back",
            "trigger_score_min": 10,
            "steps": [{"step_number": 1, "action_type": "task"}],
        },
    )
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header(client: TestClient) -> None:
    response = client.get(f"/api/workflows/{uuid.uuid4()}/analytics")

    assert response.status_code == 404
    assert response.headers.get("x-correlation-id")


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "abc-123"})

    assert response.status_code == 200
    assert response.headers.get("x-correlation-id") == "abc-123"


def test_trigger_logs_carry_request_correlation_id(
    client: TestClient,
    owner_id: uuid.UUID,
    lead: LeadRecord,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    _create_task_workflow(client, owner_id)

    response = client.post(
        "/api/workflows/triggers",
        json={"lead_id": str(lead.id), "score": 50, "owner_user_id": str(owner_id)},
        headers={"X-Correlation-Id": "corr-trigger-1"},
    )

    assert response.json()["triggered"] is True
    records = [record for record in caplog.records if record.getMessage() == "workflow_triggered"]
    assert records
    assert getattr(records[-1], "correlation_id", None) == "corr-trigger-1"


def test_step_processing_uses_execution_correlation_id(
    client: TestClient,
    owner_id: uuid.UUID,
    lead: LeadRecord,
    task_store: CorrelationCapturingTaskStore,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    _create_task_workflow(client, owner_id)
    trigger = client.post(
        "/api/workflows/triggers",
        json={"lead_id": str(lead.id), "score": 50, "owner_user_id": str(owner_id)},
    ).json()
    execution_id = trigger["workflows"][0]["execution_id"]

    processed = client.post("/api/workflows/process", headers={"X-Correlation-Id": "corr-poll-1"})

    assert processed.json() == {"processed": 1}
    assert task_store.correlation_ids == [f"workflow-execution:{execution_id}"]
    completed = [record for record in caplog.records if record.getMessage() == "workflow_execution_completed"]
    assert completed
    assert getattr(completed[-1], "correlation_id", None) == f"workflow-execution:{execution_id}"
    polled = [record for record in caplog.records if record.getMessage() == "workflow_executions_claimed"]
    assert getattr(polled[-1], "correlation_id", None) == "corr-poll-1"
