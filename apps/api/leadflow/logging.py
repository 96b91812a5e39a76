from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from leadflow.context import get_correlation_id
from leadflow.core.config import get_settings


HTTP_FIELDS = frozenset({"method", "path", "status_code", "duration_ms"})
ENGINE_FIELDS = frozenset(
    {
        "workflow_id",
        "lead_id",
        "owner_user_id",
        "execution_id",
        "sequence_id",
        "step_number",
        "action_type",
        "template_id",
        "variant_id",
        "experiment_id",
        "missing_variables",
        "total_weight",
        "claimed",
        "processed",
        "triggered",
        "status",
        "error",
    }
)
_EXPORTED_FIELDS = HTTP_FIELDS | ENGINE_FIELDS

_previous_factory = logging.getLogRecordFactory()


def stamp_correlation_id(record: logging.LogRecord) -> bool:
    """Handler filter; fills ``correlation_id`` for records built before the factory was installed."""
    if getattr(record, "correlation_id", None) is None:
        record.correlation_id = get_correlation_id()
    return True


def _correlated_record(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _previous_factory(*args, **kwargs)
    stamp_correlation_id(record)
    return record


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line: envelope keys plus whitelisted ``extra`` fields."""

    def __init__(self, service: str | None = None, error_max_length: int = 500):
        super().__init__()
        self.service = service
        self.error_max_length = error_max_length

    def format(self, record: logging.LogRecord) -> str:
        fields = {key: value for key, value in vars(record).items() if key in _EXPORTED_FIELDS}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][: self.error_max_length]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        if self.service:
            payload["service"] = self.service
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_leadflow_configured", False):
        return

    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter(service=settings.app_name, error_max_length=settings.log_error_max_length))
    handler.addFilter(stamp_correlation_id)

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    logging.setLogRecordFactory(_correlated_record)
    root_logger._leadflow_configured = True  # type: ignore[attr-defined]
