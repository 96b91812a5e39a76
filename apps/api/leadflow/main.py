from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from leadflow.api.routes import router as api_router
from leadflow.core.config import get_settings
from leadflow.logging import configure_logging
from leadflow.middleware import CorrelationIdMiddleware, RequestLoggingMiddleware
from leadflow.otel import configure_tracing, correlation_request_hook
from leadflow.workflows.tasks import build_engine


configure_logging()
logger = logging.getLogger("leadflow.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = build_engine()
    engine.init()
    app.state.workflow_engine = engine
    logger.info("system_started", extra={"status": "running"})
    try:
        yield
    finally:
        engine.shutdown()
        app.state.workflow_engine = None


app = FastAPI(title="Leadflow API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

configure_tracing(get_settings())

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=correlation_request_hook)
