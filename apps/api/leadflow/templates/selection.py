from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from leadflow.templates.conditions import parse_rule_conditions, score_conditions
from leadflow.templates.models import PersonalizationRule, PersonalizedTemplate


logger = logging.getLogger("leadflow.templates.selection")


class TemplateSelector:
    def __init__(self, clock: Callable[[], datetime] | None = None):
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def available_templates(self, session: Session, owner_user_id: uuid.UUID, channel: str) -> list[PersonalizedTemplate]:
        return list(
            session.scalars(
                select(PersonalizedTemplate)
                .where(
                    PersonalizedTemplate.owner_user_id == owner_user_id,
                    PersonalizedTemplate.channel == channel,
                    PersonalizedTemplate.is_active.is_(True),
                )
                .order_by(PersonalizedTemplate.category.asc(), PersonalizedTemplate.name.asc())
            ).all()
        )

    def active_rules(self, session: Session, owner_user_id: uuid.UUID) -> list[PersonalizationRule]:
        return list(
            session.scalars(
                select(PersonalizationRule)
                .where(
                    PersonalizationRule.owner_user_id == owner_user_id,
                    PersonalizationRule.is_active.is_(True),
                )
                .order_by(PersonalizationRule.score_weight.desc(), PersonalizationRule.created_at.asc())
            ).all()
        )

    def _best_rule_template(
        self,
        session: Session,
        owner_user_id: uuid.UUID,
        lead: dict[str, Any],
        context: dict[str, Any],
        available: list[PersonalizedTemplate],
    ) -> PersonalizedTemplate | None:
        by_id = {str(template.id): template for template in available}
        now = self.clock()
        best: PersonalizedTemplate | None = None
        best_score = 0.0

        for rule in self.active_rules(session, owner_user_id):
            try:
                conditions = parse_rule_conditions(rule.conditions)
            except (ValidationError, ValueError) as exc:
                logger.warning("personalization_rule_invalid", extra={"owner_user_id": str(owner_user_id), "error": str(exc)})
                continue

            score = score_conditions(conditions, lead, context, now=now) * rule.score_weight
            if score <= best_score:
                continue
            candidate = next((by_id[str(item)] for item in rule.template_priority if str(item) in by_id), None)
            if candidate is not None:
                best = candidate
                best_score = score

        return best

    def select_template(
        self,
        session: Session,
        owner_user_id: uuid.UUID,
        lead: dict[str, Any],
        context: dict[str, Any] | None = None,
    ) -> PersonalizedTemplate | None:
        context = context or {}
        available = self.available_templates(session, owner_user_id, str(context.get("channel") or "email"))
        if not available:
            return None
        return self._best_rule_template(session, owner_user_id, lead, context, available) or available[0]

    def pick_for_step(
        self,
        session: Session,
        owner_user_id: uuid.UUID,
        lead: dict[str, Any],
        context: dict[str, Any],
        preferred_template_id: uuid.UUID | None = None,
    ) -> PersonalizedTemplate | None:
        """Rule-based choice first, then the step's own template, then any template for the channel."""
        available = self.available_templates(session, owner_user_id, str(context.get("channel") or "email"))
        if not available:
            return None

        chosen = self._best_rule_template(session, owner_user_id, lead, context, available)
        if chosen is not None:
            return chosen
        if preferred_template_id is not None:
            preferred = next((item for item in available if item.id == preferred_template_id), None)
            if preferred is not None:
                return preferred
        return available[0]
