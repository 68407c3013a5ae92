"""
worker/main.py

Celery Worker entry point.
Defines the Celery app, the suggestion-mining task enqueued by the gateway
after abnormal readings, and the periodic alert sweep over active patients.
"""

import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog
from celery import Celery
from celery.schedules import crontab

from config import settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")

celery_app = Celery(
    "worker",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.worker_timezone,
    enable_utc=True,
    beat_schedule={
        "sweep-alerts-daily": {
            "task": "worker.tasks.sweep_alerts",
            "schedule": crontab(hour=8, minute=0),
        },
    },
)


async def _with_service(action: Callable[..., Awaitable[T]]) -> T:
    """Build a MonitoringService on a fresh engine, run action, dispose the engine."""
    from db.models import build_engine, build_session_factory
    from gateway.services.monitoring import MonitoringService
    from gateway.services.notification import DefaultDispatcher, EmailSender
    from gateway.services.persistence import SqlGlucoseStore
    from gateway.services.realtime import ConnectionManager

    engine = build_engine(settings.sqlalchemy_url)
    try:
        store = SqlGlucoseStore(build_session_factory(engine))
        # No sockets live in the worker; the real-time channel reports recipients as not connected
        service = MonitoringService(
            store=store,
            dispatcher=DefaultDispatcher(EmailSender(), ConnectionManager()),
        )
        return await action(service, store)
    finally:
        await engine.dispose()


async def _generate_suggestions(service, store, patient_id: str) -> int:
    suggestions = await service.generate_suggestions(patient_id)
    return len(suggestions)


async def _sweep_alerts(service, store) -> int:
    patient_ids = await store.fetch_active_patient_ids()
    created = await service.alerts.sweep(patient_ids)
    return len(created)


@celery_app.task(name="worker.tasks.generate_suggestions")
def generate_suggestions(patient_id: str) -> int:
    """
    Recompute and persist suggestions for one patient.

    Uses asyncio.run() to bridge Celery's sync interface with the async store.
    """
    logger.info("suggestion_task_starting", patient_id=patient_id)
    count = asyncio.run(
        _with_service(lambda service, store: _generate_suggestions(service, store, patient_id))
    )
    logger.info("suggestion_task_complete", patient_id=patient_id, suggestions=count)
    return count


@celery_app.task(name="worker.tasks.sweep_alerts")
def sweep_alerts() -> int:
    """Evaluate every active patient for abnormal-frequency alerts."""
    logger.info("alert_sweep_starting")
    return asyncio.run(_with_service(_sweep_alerts))
