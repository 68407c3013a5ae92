"""
gateway/services/alerts.py

Rolling-window alert detection.
- Counts Abnormal readings with timestamp >= now - ALERT_WINDOW_DAYS
- Fires when the count is strictly greater than ALERT_ABNORMAL_COUNT_THRESHOLD
- At most one alert per (patient, week window), keyed by the Monday of the
  ISO week containing the evaluation instant

The week-window dedup relies on GlucoseStore.insert_alert being
insert-if-absent; find_alert is only a fast path that avoids building a
payload for an alert that already exists.
"""

from datetime import date, datetime, timedelta
from typing import Callable, Iterable

import structlog

from gateway.constants import (
    ALERT_ABNORMAL_COUNT_THRESHOLD,
    ALERT_TITLE,
    ALERT_WINDOW_DAYS,
)
from gateway.errors import AlertAlreadyExists, AlertDetectionFailed
from gateway.schemas import (
    Alert,
    AlertDelivery,
    AlertEvaluation,
    AlertPayload,
    DeliveryChannel,
    Recipient,
    RecipientRole,
)
from gateway.services.notification import NotificationDispatcher
from gateway.services.persistence import GlucoseStore

logger = structlog.get_logger(__name__)


def week_window_key(now: datetime) -> date:
    """Monday of the ISO week containing now."""
    today = now.date()
    return today - timedelta(days=today.weekday())


def build_payload(alert: Alert) -> AlertPayload:
    count = alert.abnormal_count
    return AlertPayload(
        alert_id=alert.alert_id,
        patient_id=alert.patient_id,
        specialist_id=alert.specialist_id,
        title=ALERT_TITLE,
        message=(
            f"You have logged {count} abnormal blood sugar readings in the last "
            f"{ALERT_WINDOW_DAYS} days. Please review your logs."
        ),
        specialist_message=(
            f"Patient {alert.patient_id} has logged {count} abnormal blood sugar "
            f"readings in the last {ALERT_WINDOW_DAYS} days."
        ),
        recipients=alert.recipients,
    )


class AlertDetector:
    """Evaluates a patient's trailing window and raises deduplicated alerts."""

    def __init__(
        self,
        store: GlucoseStore,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._clock = clock

    async def evaluate(self, patient_id: str) -> AlertEvaluation:
        """
        Decide whether a new alert must be raised for patient_id.

        Raises AlertDetectionFailed if any lookup or the insert fails.
        Dispatch failures are logged and never undo the stored alert.
        """
        now = self._clock()
        since = now - timedelta(days=ALERT_WINDOW_DAYS)

        try:
            count = await self._store.fetch_abnormal_count(patient_id, since)
        except Exception as exc:
            raise AlertDetectionFailed(patient_id, "count_abnormal", exc) from exc

        if count <= ALERT_ABNORMAL_COUNT_THRESHOLD:
            logger.debug("alert_threshold_not_met", patient_id=patient_id, abnormal_count=count)
            return AlertEvaluation(
                created=False, abnormal_count=count, reason="threshold_not_met"
            )

        week_start = week_window_key(now)

        try:
            existing = await self._store.find_alert(patient_id, week_start)
        except Exception as exc:
            raise AlertDetectionFailed(patient_id, "find_alert", exc) from exc
        if existing is not None:
            logger.info(
                "alert_already_sent",
                patient_id=patient_id,
                week_start=week_start.isoformat(),
            )
            return AlertEvaluation(
                created=False, abnormal_count=count, alert=existing, reason="already_sent"
            )

        try:
            alert = await self._build_alert(patient_id, week_start, count, now)
        except Exception as exc:
            raise AlertDetectionFailed(patient_id, "resolve_recipients", exc) from exc

        try:
            alert = await self._store.insert_alert(alert)
        except AlertAlreadyExists:
            # A concurrent evaluation won the insert for this week window
            logger.info(
                "alert_insert_deduplicated",
                patient_id=patient_id,
                week_start=week_start.isoformat(),
            )
            try:
                existing = await self._store.find_alert(patient_id, week_start)
            except Exception as exc:
                raise AlertDetectionFailed(patient_id, "find_alert", exc) from exc
            return AlertEvaluation(
                created=False, abnormal_count=count, alert=existing, reason="already_sent"
            )
        except Exception as exc:
            raise AlertDetectionFailed(patient_id, "insert_alert", exc) from exc

        logger.info(
            "alert_created",
            patient_id=patient_id,
            alert_id=alert.alert_id,
            week_start=week_start.isoformat(),
            abnormal_count=count,
            specialist_id=alert.specialist_id,
        )

        await self._deliver(alert)
        return AlertEvaluation(created=True, abnormal_count=count, alert=alert)

    async def sweep(self, patient_ids: Iterable[str]) -> list[Alert]:
        """Evaluate many patients; one patient's failure does not stop the rest."""
        created: list[Alert] = []
        for patient_id in patient_ids:
            try:
                evaluation = await self.evaluate(patient_id)
            except AlertDetectionFailed as exc:
                logger.error(
                    "alert_sweep_patient_failed",
                    patient_id=patient_id,
                    stage=exc.stage,
                    error=str(exc.cause),
                )
                continue
            if evaluation.created and evaluation.alert is not None:
                created.append(evaluation.alert)
        logger.info("alert_sweep_complete", alerts_created=len(created))
        return created

    async def _build_alert(
        self,
        patient_id: str,
        week_start: date,
        count: int,
        now: datetime,
    ) -> Alert:
        specialist_id = await self._store.fetch_assigned_specialist(patient_id)
        recipients = [
            Recipient(
                user_id=patient_id,
                role=RecipientRole.PATIENT,
                email=await self._store.fetch_email(patient_id),
            )
        ]
        if specialist_id is not None:
            recipients.append(
                Recipient(
                    user_id=specialist_id,
                    role=RecipientRole.SPECIALIST,
                    email=await self._store.fetch_email(specialist_id),
                )
            )

        return Alert(
            patient_id=patient_id,
            week_start=week_start,
            abnormal_count=count,
            specialist_id=specialist_id,
            recipients=recipients,
            created_at=now,
            deliveries=[
                AlertDelivery(recipient_id=r.user_id, channel=channel)
                for r in recipients
                for channel in DeliveryChannel
            ],
        )

    async def _deliver(self, alert: Alert) -> None:
        """Invoke the dispatcher once per channel and record each outcome."""
        payload = build_payload(alert)
        for channel in DeliveryChannel:
            try:
                results = await self._dispatcher.dispatch(payload, channel)
            except Exception as exc:
                logger.error(
                    "alert_dispatch_failed",
                    alert_id=alert.alert_id,
                    channel=channel.value,
                    error=str(exc),
                )
                continue

            for result in results:
                try:
                    await self._store.record_delivery(alert.alert_id, result)
                except Exception as exc:
                    logger.error(
                        "alert_delivery_record_failed",
                        alert_id=alert.alert_id,
                        recipient_id=result.recipient_id,
                        channel=channel.value,
                        error=str(exc),
                    )
