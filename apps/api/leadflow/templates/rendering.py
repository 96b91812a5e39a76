from __future__ import annotations

import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from leadflow.templates.models import PersonalizedTemplate


_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][\w]*(?:\.[A-Za-z_][\w]*)*)\s*\}\}")
_MISSING = object()


@dataclass(slots=True)
class RenderedMessage:
    content: str
    subject: str | None = None
    template_id: uuid.UUID | None = None
    channel: str | None = None
    missing_variables: list[str] = field(default_factory=list)


def _lookup(context: dict[str, Any], path: str) -> Any:
    current: Any = context
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return _MISSING
    return current


def _format_value(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class TemplateRenderer:
    """Substitutes ``{{ path }}`` placeholders against a lead/agent context.

    Unresolved placeholders are kept verbatim and reported back so callers can
    log them; they never raise.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def build_context(self, lead: dict[str, Any], agent: dict[str, Any] | None = None) -> dict[str, Any]:
        now = self.clock()
        return {
            "lead": lead,
            "agent": agent or {},
            "currentDate": now.date().isoformat(),
            "currentTime": now.strftime("%H:%M:%S"),
        }

    def render_string(self, template: str, context: dict[str, Any], missing: list[str] | None = None) -> str:
        def replace(match: re.Match[str]) -> str:
            path = match.group(1)
            value = _lookup(context, path)
            if (value is _MISSING or value is None) and "." not in path:
                value = _lookup(context.get("lead") or {}, path)
            if value is _MISSING or value is None:
                if missing is not None and path not in missing:
                    missing.append(path)
                return match.group(0)
            return _format_value(value)

        return _PLACEHOLDER_RE.sub(replace, template)

    def render(
        self,
        content: str,
        lead: dict[str, Any],
        agent: dict[str, Any] | None = None,
        *,
        subject: str | None = None,
    ) -> RenderedMessage:
        context = self.build_context(lead, agent)
        missing: list[str] = []
        rendered_subject = self.render_string(subject, context, missing) if subject is not None else None
        rendered_content = self.render_string(content, context, missing)
        return RenderedMessage(content=rendered_content, subject=rendered_subject, missing_variables=missing)

    def render_template(
        self,
        session: Session,
        template_id: uuid.UUID,
        lead: dict[str, Any],
        agent: dict[str, Any] | None = None,
    ) -> RenderedMessage:
        template = session.scalar(select(PersonalizedTemplate).where(PersonalizedTemplate.id == template_id))
        if template is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="template not found")
        message = self.render(template.content_template, lead, agent, subject=template.subject_template)
        message.template_id = template.id
        message.channel = template.channel
        return message
