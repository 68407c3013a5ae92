"""
gateway/main.py

FastAPI application entry point for the Gateway service.
Builds the database engine, store, dispatcher and MonitoringService on
startup and registers routers and error-kind handlers.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config import settings
from db.models import Base, build_engine, build_session_factory
from gateway.errors import AlertDetectionFailed, NotConfigured
from gateway.routers.readings import router as readings_router
from gateway.routers.realtime import router as realtime_router
from gateway.services.monitoring import MonitoringService
from gateway.services.notification import DefaultDispatcher, EmailSender
from gateway.services.persistence import SqlGlucoseStore
from gateway.services.realtime import ConnectionManager

logger = structlog.get_logger(__name__)


def enqueue_suggestion_mining(patient_id: str) -> None:
    """Hand suggestion mining to the Celery worker."""
    from worker.main import celery_app

    celery_app.send_task("worker.tasks.generate_suggestions", args=[patient_id])


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifecycle: startup and shutdown."""
    engine = build_engine(settings.sqlalchemy_url)
    if settings.create_schema:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    connections = ConnectionManager()
    app.state.connections = connections
    app.state.monitoring = MonitoringService(
        store=SqlGlucoseStore(build_session_factory(engine)),
        dispatcher=DefaultDispatcher(EmailSender(), connections),
        enqueue_mining=enqueue_suggestion_mining,
    )
    logger.info("gateway_starting", port=8000)
    yield
    logger.info("gateway_shutting_down")
    await engine.dispose()


app = FastAPI(
    title="Glucose Sentinel Gateway",
    description="Reading categorization, abnormal-frequency alerts and trigger suggestions",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(readings_router)
app.include_router(realtime_router)


@app.exception_handler(NotConfigured)
async def not_configured_handler(request: Request, exc: NotConfigured) -> JSONResponse:
    logger.error("request_blocked_not_configured", path=request.url.path, as_of=str(exc.as_of))
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(AlertDetectionFailed)
async def alert_detection_failed_handler(
    request: Request, exc: AlertDetectionFailed
) -> JSONResponse:
    logger.error(
        "alert_detection_failed",
        path=request.url.path,
        patient_id=exc.patient_id,
        stage=exc.stage,
        error=str(exc.cause),
    )
    return JSONResponse(status_code=503, content={"detail": str(exc)})
