from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from growthdesk.config import settings
from growthdesk.core.exceptions import GrowthdeskError
from growthdesk.database import init_db, async_session_factory
from growthdesk.jobs.scheduler import start_scheduler, shutdown_scheduler, get_job_status

logger = logging.getLogger(__name__)


def configure_logging():
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Tables are ensured and the engine ticks scheduled before the first request."""
    configure_logging()
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    await init_db()
    start_scheduler()

    yield

    shutdown_scheduler()
    logger.info(f"{settings.APP_NAME} stopped")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Affiliate commission and email sequence engines",
    lifespan=lifespan,
)


@app.exception_handler(GrowthdeskError)
async def growthdesk_exception_handler(request: Request, exc: GrowthdeskError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    body = {"error": "INTERNAL_ERROR", "message": str(exc), "type": type(exc).__name__}
    if settings.DEBUG:
        body["traceback"] = traceback.format_exc()
    return JSONResponse(status_code=500, content=body)


@app.get("/health", tags=["Health"])
async def health_check():
    checks = {}
    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = "connected"
    except Exception as e:
        checks["database"] = f"error: {e}"

    healthy = checks["database"] == "connected"
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }
    return body if healthy else JSONResponse(status_code=503, content=body)


@app.get("/api/v1/jobs/status", tags=["Jobs"])
async def jobs_status():
    return {"jobs": get_job_status()}

