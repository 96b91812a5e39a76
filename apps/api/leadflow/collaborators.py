from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker

from leadflow.context import get_correlation_id
from leadflow.core.celery_app import celery_app
from leadflow.core.config import get_settings


logger = logging.getLogger("leadflow.collaborators")
tracer = trace.get_tracer("leadflow.collaborators")


class LeadRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    owner_user_id: uuid.UUID
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    score: float | None = None
    status: str | None = None
    source: str | None = None
    last_contacted_at: datetime | None = None
    agent_name: str | None = None
    agent_email: str | None = None
    agent_phone: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    def as_context(self) -> dict[str, Any]:
        """Flat mapping used for rule evaluation and template rendering.

        Free-form attributes never shadow the typed lead fields.
        """
        payload = self.model_dump(mode="json", exclude={"attributes", "agent_name", "agent_email", "agent_phone"})
        payload["name"] = self.full_name
        for key, value in self.attributes.items():
            payload.setdefault(key, value)
        return payload


@dataclass(slots=True)
class FollowUpTask:
    lead_id: uuid.UUID
    owner_user_id: uuid.UUID
    title: str
    description: str
    due_at: datetime
    priority: str


@dataclass(slots=True)
class WorkflowNotification:
    user_id: uuid.UUID
    title: str
    message: str
    related_id: uuid.UUID
    related_type: str = "lead"
    notification_type: str = "workflow"
    action_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class LeadStore(Protocol):
    def get_by_id(self, lead_id: uuid.UUID) -> LeadRecord | None: ...


class Channel(Protocol):
    def send_email(self, to: str, subject: str | None, body: str) -> None: ...

    def send_sms(self, to: str, body: str) -> None: ...


class NotificationStore(Protocol):
    def create(self, notification: WorkflowNotification) -> None: ...


class TaskStore(Protocol):
    def create(self, task: FollowUpTask) -> None: ...


class CeleryChannel:
    """Enqueues outbound messages on the broker and returns immediately."""

    def __init__(self, email_task_name: str | None = None, sms_task_name: str | None = None):
        settings = get_settings()
        self.email_task_name = email_task_name or settings.email_task_name
        self.sms_task_name = sms_task_name or settings.sms_task_name

    def send_email(self, to: str, subject: str | None, body: str) -> None:
        with tracer.start_as_current_span("channel.send_email") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            celery_app.send_task(
                self.email_task_name,
                kwargs={"to": to, "subject": subject, "body": body, "correlation_id": get_correlation_id()},
            )

    def send_sms(self, to: str, body: str) -> None:
        with tracer.start_as_current_span("channel.send_sms") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            celery_app.send_task(
                self.sms_task_name,
                kwargs={"to": to, "body": body, "correlation_id": get_correlation_id()},
            )


class SqlLeadStore:
    """Reads leads and their owning agent from the CRM tables."""

    _query = text(
        """
        SELECT l.lead_id, l.user_id, l.first_name, l.last_name, l.email, l.phone_number,
               l.score, l.status, l.source, l.last_contacted_at,
               u.first_name AS agent_first_name, u.last_name AS agent_last_name,
               u.email AS agent_email, u.phone AS agent_phone
        FROM leads l
        JOIN users u ON l.user_id = u.user_id
        WHERE l.lead_id = :lead_id
        """
    )

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def get_by_id(self, lead_id: uuid.UUID) -> LeadRecord | None:
        with self.session_factory() as session:
            row = session.execute(self._query, {"lead_id": str(lead_id)}).mappings().first()
        if row is None:
            return None

        agent_name = " ".join(part for part in (row["agent_first_name"], row["agent_last_name"]) if part) or None
        return LeadRecord(
            id=uuid.UUID(str(row["lead_id"])),
            owner_user_id=uuid.UUID(str(row["user_id"])),
            first_name=row["first_name"],
            last_name=row["last_name"],
            email=row["email"],
            phone=row["phone_number"],
            score=row["score"],
            status=row["status"],
            source=row["source"],
            last_contacted_at=row["last_contacted_at"],
            agent_name=agent_name,
            agent_email=row["agent_email"],
            agent_phone=row["agent_phone"],
        )


class SqlTaskStore:
    _insert = text(
        """
        INSERT INTO tasks (lead_id, user_id, title, description, due_date, priority)
        VALUES (:lead_id, :user_id, :title, :description, :due_date, :priority)
        """
    )

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def create(self, task: FollowUpTask) -> None:
        with self.session_factory() as session:
            session.execute(
                self._insert,
                {
                    "lead_id": str(task.lead_id),
                    "user_id": str(task.owner_user_id),
                    "title": task.title,
                    "description": task.description,
                    "due_date": task.due_at,
                    "priority": task.priority,
                },
            )
            session.commit()
        logger.info("workflow_task_created", extra={"lead_id": str(task.lead_id)})


class SqlNotificationStore:
    _insert = text(
        """
        INSERT INTO notifications (user_id, title, message, type, related_id, related_type, action_url)
        VALUES (:user_id, :title, :message, :type, :related_id, :related_type, :action_url)
        """
    )

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def create(self, notification: WorkflowNotification) -> None:
        with self.session_factory() as session:
            session.execute(
                self._insert,
                {
                    "user_id": str(notification.user_id),
                    "title": notification.title,
                    "message": notification.message,
                    "type": notification.notification_type,
                    "related_id": str(notification.related_id),
                    "related_type": notification.related_type,
                    "action_url": notification.action_url,
                },
            )
            session.commit()
        logger.info("workflow_notification_created", extra={"lead_id": str(notification.related_id)})
