from __future__ import annotations

import uuid


class WorkflowEngineError(Exception):
    pass


class LeadNotFoundError(WorkflowEngineError):
    def __init__(self, lead_id: uuid.UUID):
        super().__init__(f"lead {lead_id} not found")
        self.lead_id = lead_id


class TemplateNotFoundError(WorkflowEngineError):
    def __init__(self, channel: str, owner_user_id: uuid.UUID):
        super().__init__(f"no active {channel} template available for owner {owner_user_id}")
        self.channel = channel
        self.owner_user_id = owner_user_id


class MissingRecipientError(WorkflowEngineError):
    def __init__(self, channel: str, lead_id: uuid.UUID):
        super().__init__(f"lead {lead_id} has no {channel} recipient")
        self.channel = channel
        self.lead_id = lead_id


class UnsupportedActionError(WorkflowEngineError):
    def __init__(self, action_type: str):
        super().__init__(f"unsupported action type: {action_type}")
        self.action_type = action_type


class ExperimentError(WorkflowEngineError):
    pass
