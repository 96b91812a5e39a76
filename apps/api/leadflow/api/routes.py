from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import Response

from leadflow.core.config import get_settings
from leadflow.experiments.api import router as experiments_router
from leadflow.metrics import exposition_content_type, render_latest
from leadflow.templates.api import router as templates_router, rules_router as personalization_rules_router
from leadflow.workflows.api import router as workflows_router

router = APIRouter()
for _domain_router in (workflows_router, templates_router, personalization_rules_router, experiments_router):
    router.include_router(_domain_router)


@router.get("/health", tags=["system"])
def health(request: Request) -> dict[str, str]:
    engine = getattr(request.app.state, "workflow_engine", None)
    return {
        "status": "ok",
        "service": get_settings().app_name,
        "workflow_engine": "running" if engine is not None and engine.running else "stopped",
    }


@router.get("/metrics", tags=["system"])
def metrics() -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="metrics disabled")
    return Response(content=render_latest(), media_type=exposition_content_type())
