from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


api_requests_total = Counter(
    "leadflow_api_requests_total",
    "API requests by route template and response status",
    ["method", "route", "status"],
)

api_request_latency_seconds = Histogram(
    "leadflow_api_request_latency_seconds",
    "API request latency by route template",
    ["method", "route"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

workflow_triggers_total = Counter(
    "workflow_triggers_total",
    "Workflow trigger evaluations by outcome",
    ["outcome"],
)

workflow_executions_total = Counter(
    "workflow_executions_total",
    "Processed workflow step executions by action type and status",
    ["action_type", "status"],
)

workflow_execution_duration_seconds = Histogram(
    "workflow_execution_duration_seconds",
    "Workflow step dispatch duration in seconds",
    ["action_type"],
)

workflow_claim_conflicts_total = Counter(
    "workflow_claim_conflicts_total",
    "Pending executions another worker claimed first",
)

experiment_assignments_total = Counter(
    "experiment_assignments_total",
    "Experiment variant assignments by kind",
    ["kind"],
)


# Unmatched paths still need a bounded label set.
_ID_SEGMENT_RE = re.compile(r"^(\d+|[0-9a-fA-F]{8}(-[0-9a-fA-F]{4}){3}-[0-9a-fA-F]{12})$")
_ROUTE_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _collapse_ids(path: str) -> str:
    return "/".join("{id}" if _ID_SEGMENT_RE.match(segment) else segment for segment in path.split("/"))


def route_label(request: Request) -> str:
    route = request.scope.get("route")
    template = getattr(route, "path_format", None) if route is not None else None
    if template:
        return _ROUTE_PARAM_RE.sub("{id}", template)
    return _collapse_ids(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    api_requests_total.labels(method=method, route=path, status=str(status)).inc()
    api_request_latency_seconds.labels(method=method, route=path).observe(duration)


def observe_trigger(outcome: str, count: int = 1) -> None:
    if count > 0:
        workflow_triggers_total.labels(outcome=outcome).inc(count)


def observe_execution(action_type: str, status: str, duration: float) -> None:
    workflow_executions_total.labels(action_type=action_type, status=status).inc()
    workflow_execution_duration_seconds.labels(action_type=action_type).observe(duration)


def observe_claim_conflict() -> None:
    workflow_claim_conflicts_total.inc()


def observe_experiment_assignment(kind: str) -> None:
    experiment_assignments_total.labels(kind=kind).inc()


def render_latest() -> bytes:
    return generate_latest()


def exposition_content_type() -> str:
    return CONTENT_TYPE_LATEST
