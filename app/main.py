import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from app.api_audit import router as audit_router
from app.api_export import router as export_router
from app.config import settings
from app.errors import AuditError
from app.export_service import CommunicationExportService, InMemoryExportJobStore
from app.logging_utils import setup_logging, RequestLoggingMiddleware
from app.metrics import get_metrics, get_metrics_content_type
from app.schemas import HealthResponse
from app.storage import init_db, check_db_health


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


async def sweep_expired_exports(service: CommunicationExportService, interval_seconds: int):
    """Periodically drop export jobs past their retention window."""
    while True:
        await asyncio.sleep(interval_seconds)
        removed = service.cleanup_expired_exports()
        logger.debug(f"Export job sweep removed {removed} jobs")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, build the export service and its job store,
      start the expired-job sweep
    - Shutdown: stop the sweep
    """
    init_db()
    app.state.export_service = CommunicationExportService(InMemoryExportJobStore(), settings)

    sweep_task = None
    if settings.EXPORT_JOB_SWEEP_SECONDS > 0:
        sweep_task = asyncio.create_task(
            sweep_expired_exports(app.state.export_service, settings.EXPORT_JOB_SWEEP_SECONDS)
        )
    yield
    if sweep_task is not None:
        sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await sweep_task


app = FastAPI(
    title="Communication Audit API",
    description="Audit trail, compliance reporting and exports for customer communications",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)

app.include_router(audit_router)
app.include_router(export_router)


@app.exception_handler(AuditError)
async def audit_error_handler(request: Request, exc: AuditError) -> JSONResponse:
    """Map the audit error taxonomy onto HTTP statuses."""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__}: {exc.message}")
    else:
        logger.warning(f"{type(exc).__name__}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# =============================================================================
# Health and Metrics
# =============================================================================

# Settings that must be non-empty before the service takes traffic
REQUIRED_SECRETS = ("WEBHOOK_SECRET", "JWT_SECRET_KEY")


@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness: 200 whenever the process can serve requests."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness: 200 once the webhook and token secrets are configured and the
    database answers with the audit tables in place, 503 otherwise.
    """
    missing = [name for name in REQUIRED_SECRETS if not getattr(settings, name)]
    if missing:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason=f"Not configured: {', '.join(missing)}")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus text exposition of the request, webhook and export metrics."""
    return Response(content=get_metrics(), media_type=get_metrics_content_type())
