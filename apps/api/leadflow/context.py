from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

_correlation_id: ContextVar[str | None] = ContextVar("leadflow_correlation_id", default=None)


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def set_correlation_id(value: str | None) -> Token[str | None]:
    return _correlation_id.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    _correlation_id.reset(token)


def execution_correlation_id(execution_id: uuid.UUID) -> str:
    """Background work has no inbound request id; executions are correlated by their own id."""
    return f"workflow-execution:{execution_id}"


@contextmanager
def correlation_scope(value: str | None) -> Iterator[str | None]:
    token = set_correlation_id(value)
    try:
        yield value
    finally:
        reset_correlation_id(token)
