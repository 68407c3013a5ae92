"""
gateway/services/monitoring.py

Operations exposed to the route layer and the worker.

Flow for a submitted reading:
1. Resolve thresholds at the reading's timestamp (NotConfigured blocks the write)
2. Categorize, degrading to Borderline on a gap in the ranges
3. Persist the reading
4. If Abnormal: evaluate alerts and schedule suggestion mining; neither
   outcome can undo or block step 3
"""

from datetime import datetime
from typing import Callable, Optional

import structlog

from gateway.constants import RECENT_ALERTS_LIMIT
from gateway.errors import AlertDetectionFailed
from gateway.schemas import (
    Alert,
    AlertEvaluation,
    Category,
    Reading,
    ReadingPayload,
    ReadingReceipt,
    Suggestion,
)
from gateway.services.alerts import AlertDetector
from gateway.services.categorizer import categorize, categorize_with_fallback
from gateway.services.notification import NotificationDispatcher
from gateway.services.patterns import mine_patterns
from gateway.services.persistence import GlucoseStore
from gateway.services.thresholds import ThresholdResolver

logger = structlog.get_logger(__name__)


class MonitoringService:
    """Composes threshold resolution, categorization, alerting and mining."""

    def __init__(
        self,
        store: GlucoseStore,
        dispatcher: NotificationDispatcher,
        enqueue_mining: Optional[Callable[[str], None]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._enqueue_mining = enqueue_mining
        self._clock = clock
        self.thresholds = ThresholdResolver(store, clock)
        self.alerts = AlertDetector(store, dispatcher, clock)

    async def categorize_reading(
        self,
        patient_id: str,
        value: float,
        timestamp: datetime,
    ) -> Category:
        """Raises NotConfigured or UncategorizableValue; no fallback is applied."""
        thresholds = await self.thresholds.resolve(patient_id, timestamp)
        return categorize(value, thresholds)

    async def submit_reading(self, payload: ReadingPayload) -> ReadingReceipt:
        """
        Accept, categorize and store a reading, then run best-effort side effects.

        Raises ValueError for a future timestamp and NotConfigured when no
        thresholds are in force; nothing is stored in either case.
        """
        if payload.timestamp > self._clock():
            raise ValueError("reading timestamp is in the future")

        thresholds = await self.thresholds.resolve(payload.patient_id, payload.timestamp)
        category = categorize_with_fallback(payload.value, thresholds, payload.patient_id)
        reading = await self._store.insert_reading(
            Reading(**payload.model_dump(), category=category)
        )

        receipt = ReadingReceipt(reading=reading)
        if category is not Category.ABNORMAL:
            return receipt

        try:
            receipt.alert = await self.evaluate_alert(reading.patient_id)
        except AlertDetectionFailed as exc:
            logger.error(
                "alert_detection_failed",
                patient_id=reading.patient_id,
                reading_id=reading.reading_id,
                stage=exc.stage,
                error=str(exc.cause),
            )
            receipt.alert_error = str(exc)

        await self._schedule_mining(reading.patient_id)
        return receipt

    async def evaluate_alert(self, patient_id: str) -> AlertEvaluation:
        return await self.alerts.evaluate(patient_id)

    async def recent_alerts(self, patient_id: str) -> list[Alert]:
        return await self._store.fetch_alerts(patient_id, RECENT_ALERTS_LIMIT)

    async def generate_suggestions(
        self,
        patient_id: str,
        persist: bool = True,
    ) -> list[Suggestion]:
        """
        Recompute suggestions from the full abnormal history.

        With persist, the stored set is replaced and the patient is notified
        of tokens that were not suggested before.
        """
        readings = await self._store.fetch_abnormal_readings(patient_id)
        suggestions = mine_patterns(patient_id, readings, clock=self._clock)
        logger.info(
            "suggestions_generated",
            patient_id=patient_id,
            abnormal_readings=len(readings),
            suggestions=len(suggestions),
        )
        if not persist:
            return suggestions

        previous = {s.token for s in await self._store.fetch_suggestions(patient_id)}
        await self._store.replace_suggestions(patient_id, suggestions)

        fresh = [s for s in suggestions if s.token not in previous]
        if fresh:
            try:
                await self._dispatcher.notify_suggestions(patient_id, fresh)
            except Exception as exc:
                logger.warning(
                    "suggestion_notify_failed",
                    patient_id=patient_id,
                    error=str(exc),
                )
        return suggestions

    async def stored_suggestions(self, patient_id: str) -> list[Suggestion]:
        return await self._store.fetch_suggestions(patient_id)

    async def _schedule_mining(self, patient_id: str) -> None:
        try:
            if self._enqueue_mining is not None:
                self._enqueue_mining(patient_id)
                logger.info("suggestion_mining_enqueued", patient_id=patient_id)
            else:
                await self.generate_suggestions(patient_id)
        except Exception as exc:
            logger.error(
                "suggestion_mining_failed",
                patient_id=patient_id,
                error=str(exc),
            )
