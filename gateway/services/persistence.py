"""
gateway/services/persistence.py

Storage boundary of the monitoring core.
- GlucoseStore: the protocol every component depends on
- SqlGlucoseStore: SQLAlchemy 2.0 async implementation

The (patient_id, week_start) unique constraint on alerts makes
insert_alert an insert-if-absent operation: a duplicate raises
AlertAlreadyExists instead of creating a second alert.
"""

from datetime import date, datetime
from typing import Optional, Protocol

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from db.models import (
    AISuggestion,
    AlertDeliveryRecord,
    AlertRecord,
    CategoryThreshold,
    Patient,
    SpecialistPatientAssignment,
    SugarReading,
    User,
)
from gateway.errors import AlertAlreadyExists
from gateway.schemas import (
    Alert,
    AlertDelivery,
    Category,
    DeliveryChannel,
    DeliveryResult,
    DeliveryStatus,
    PatientOverride,
    Reading,
    Recipient,
    Suggestion,
    ThresholdSet,
)

logger = structlog.get_logger(__name__)


class GlucoseStore(Protocol):
    """Everything the core needs from storage."""

    async def fetch_system_thresholds(self, as_of: datetime) -> Optional[ThresholdSet]: ...

    async def insert_threshold_set(self, thresholds: ThresholdSet) -> ThresholdSet: ...

    async def fetch_patient_override(self, patient_id: str) -> Optional[PatientOverride]: ...

    async def set_patient_override(
        self, patient_id: str, override: Optional[PatientOverride]
    ) -> None: ...

    async def insert_reading(self, reading: Reading) -> Reading: ...

    async def fetch_abnormal_count(self, patient_id: str, since: datetime) -> int: ...

    async def fetch_abnormal_readings(self, patient_id: str) -> list[Reading]: ...

    async def fetch_assigned_specialist(self, patient_id: str) -> Optional[str]: ...

    async def fetch_email(self, user_id: str) -> Optional[str]: ...

    async def fetch_active_patient_ids(self) -> list[str]: ...

    async def find_alert(self, patient_id: str, week_start: date) -> Optional[Alert]: ...

    async def insert_alert(self, alert: Alert) -> Alert: ...

    async def fetch_alerts(self, patient_id: str, limit: int) -> list[Alert]: ...

    async def record_delivery(self, alert_id: int, result: DeliveryResult) -> None: ...

    async def replace_suggestions(
        self, patient_id: str, suggestions: list[Suggestion]
    ) -> None: ...

    async def fetch_suggestions(self, patient_id: str) -> list[Suggestion]: ...


# ── Row conversion ───────────────────────────────────────────

def _threshold_from_row(row: CategoryThreshold) -> ThresholdSet:
    return ThresholdSet(
        version_id=row.threshold_id,
        normal_low=row.normal_low,
        normal_high=row.normal_high,
        borderline_low=row.borderline_low,
        borderline_high=row.borderline_high,
        abnormal_low=row.abnormal_low,
        abnormal_high=row.abnormal_high,
        effective_at=row.effective_at,
    )


def _reading_from_row(row: SugarReading) -> Reading:
    return Reading(
        reading_id=row.reading_id,
        patient_id=row.patient_id,
        timestamp=row.recorded_at,
        value=row.value,
        unit=row.unit,
        food_notes=row.food_notes,
        activity_notes=row.activity_notes,
        event=row.event,
        symptoms=row.symptoms,
        notes=row.notes,
        category=Category(row.category),
    )


def _alert_from_row(row: AlertRecord, deliveries: list[AlertDeliveryRecord]) -> Alert:
    return Alert(
        alert_id=row.alert_id,
        patient_id=row.patient_id,
        week_start=row.week_start,
        abnormal_count=row.abnormal_count,
        specialist_id=row.specialist_id,
        recipients=[Recipient.model_validate(r) for r in row.recipients],
        created_at=row.created_at,
        deliveries=[
            AlertDelivery(
                recipient_id=d.recipient_id,
                channel=DeliveryChannel(d.channel),
                status=DeliveryStatus(d.status),
                error=d.error,
            )
            for d in deliveries
        ],
    )


def _suggestion_from_row(row: AISuggestion) -> Suggestion:
    return Suggestion(
        patient_id=row.patient_id,
        token=row.token,
        occurrences=row.occurrences,
        total_abnormal=row.total_abnormal,
        percent=row.percent,
        time_bucket=row.time_bucket,
        strength=row.strength,
        message=row.content,
        based_on_pattern=row.based_on_pattern or "",
        generated_at=row.generated_at,
    )


class SqlGlucoseStore:
    """GlucoseStore backed by an injected SQLAlchemy async session factory."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    # ── Thresholds ───────────────────────────────────────────

    async def fetch_system_thresholds(self, as_of: datetime) -> Optional[ThresholdSet]:
        """Most recent version whose effective_at is at or before as_of."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(CategoryThreshold)
                .where(CategoryThreshold.effective_at <= as_of)
                .order_by(
                    CategoryThreshold.effective_at.desc(),
                    CategoryThreshold.threshold_id.desc(),
                )
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _threshold_from_row(row) if row is not None else None

    async def insert_threshold_set(self, thresholds: ThresholdSet) -> ThresholdSet:
        async with self._session_factory() as session:
            row = CategoryThreshold(
                **thresholds.model_dump(exclude={"version_id"}),
            )
            session.add(row)
            await session.commit()
            return thresholds.model_copy(update={"version_id": row.threshold_id})

    async def fetch_patient_override(self, patient_id: str) -> Optional[PatientOverride]:
        async with self._session_factory() as session:
            row = await session.get(Patient, patient_id)
            if row is None or row.threshold_normal_low is None or row.threshold_normal_high is None:
                return None
            return PatientOverride(
                normal_low=row.threshold_normal_low,
                normal_high=row.threshold_normal_high,
            )

    async def set_patient_override(
        self,
        patient_id: str,
        override: Optional[PatientOverride],
    ) -> None:
        low = override.normal_low if override is not None else None
        high = override.normal_high if override is not None else None
        async with self._session_factory() as session:
            row = await session.get(Patient, patient_id)
            if row is None:
                if await session.get(User, patient_id) is None:
                    raise ValueError(f"unknown patient {patient_id}")
                row = Patient(patient_id=patient_id)
                session.add(row)
            row.threshold_normal_low = low
            row.threshold_normal_high = high
            await session.commit()

    # ── Readings ─────────────────────────────────────────────

    async def insert_reading(self, reading: Reading) -> Reading:
        """Insert a categorized reading and return it with its id."""
        try:
            async with self._session_factory() as session:
                row = SugarReading(
                    patient_id=reading.patient_id,
                    recorded_at=reading.timestamp,
                    value=reading.value,
                    unit=reading.unit,
                    food_notes=reading.food_notes,
                    activity_notes=reading.activity_notes,
                    event=reading.event,
                    symptoms=reading.symptoms,
                    notes=reading.notes,
                    category=reading.category.value,
                )
                session.add(row)
                await session.commit()
                logger.info(
                    "reading_persisted",
                    patient_id=reading.patient_id,
                    reading_id=row.reading_id,
                    category=reading.category.value,
                )
                return reading.model_copy(update={"reading_id": row.reading_id})
        except Exception as exc:
            logger.error(
                "reading_persist_failed",
                patient_id=reading.patient_id,
                error=str(exc),
            )
            raise

    async def fetch_abnormal_count(self, patient_id: str, since: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(SugarReading)
                .where(
                    SugarReading.patient_id == patient_id,
                    SugarReading.category == Category.ABNORMAL.value,
                    SugarReading.recorded_at >= since,
                )
            )
            return result.scalar_one()

    async def fetch_abnormal_readings(self, patient_id: str) -> list[Reading]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SugarReading)
                .where(
                    SugarReading.patient_id == patient_id,
                    SugarReading.category == Category.ABNORMAL.value,
                )
                .order_by(SugarReading.recorded_at.desc(), SugarReading.reading_id.desc())
            )
            return [_reading_from_row(row) for row in result.scalars()]

    # ── People ───────────────────────────────────────────────

    async def fetch_assigned_specialist(self, patient_id: str) -> Optional[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SpecialistPatientAssignment.specialist_id)
                .where(SpecialistPatientAssignment.patient_id == patient_id)
                .order_by(
                    SpecialistPatientAssignment.assigned_at.desc(),
                    SpecialistPatientAssignment.id.desc(),
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def fetch_email(self, user_id: str) -> Optional[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(User.email).where(User.user_id == user_id)
            )
            return result.scalar_one_or_none()

    async def fetch_active_patient_ids(self) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Patient.patient_id)
                .join(User, User.user_id == Patient.patient_id)
                .where(User.status == "Active")
                .order_by(Patient.patient_id)
            )
            return list(result.scalars())

    # ── Alerts ───────────────────────────────────────────────

    async def find_alert(self, patient_id: str, week_start: date) -> Optional[Alert]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AlertRecord).where(
                    AlertRecord.patient_id == patient_id,
                    AlertRecord.week_start == week_start,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            deliveries = await session.execute(
                select(AlertDeliveryRecord)
                .where(AlertDeliveryRecord.alert_id == row.alert_id)
                .order_by(AlertDeliveryRecord.id)
            )
            return _alert_from_row(row, list(deliveries.scalars()))

    async def insert_alert(self, alert: Alert) -> Alert:
        """
        Insert the alert and its pending deliveries in one transaction.

        Raises AlertAlreadyExists if (patient_id, week_start) is taken.
        """
        async with self._session_factory() as session:
            row = AlertRecord(
                patient_id=alert.patient_id,
                week_start=alert.week_start,
                abnormal_count=alert.abnormal_count,
                specialist_id=alert.specialist_id,
                recipients=[r.model_dump(mode="json") for r in alert.recipients],
                created_at=alert.created_at,
            )
            session.add(row)
            try:
                await session.flush()
            except IntegrityError as exc:
                await session.rollback()
                raise AlertAlreadyExists(
                    f"alert exists for patient {alert.patient_id} week {alert.week_start}"
                ) from exc

            for delivery in alert.deliveries:
                session.add(
                    AlertDeliveryRecord(
                        alert_id=row.alert_id,
                        recipient_id=delivery.recipient_id,
                        channel=delivery.channel.value,
                        status=delivery.status.value,
                        error=delivery.error,
                    )
                )
            await session.commit()
            return alert.model_copy(update={"alert_id": row.alert_id})

    async def fetch_alerts(self, patient_id: str, limit: int) -> list[Alert]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AlertRecord)
                .where(AlertRecord.patient_id == patient_id)
                .order_by(AlertRecord.created_at.desc())
                .limit(limit)
            )
            rows = list(result.scalars())
            alerts = []
            for row in rows:
                deliveries = await session.execute(
                    select(AlertDeliveryRecord)
                    .where(AlertDeliveryRecord.alert_id == row.alert_id)
                    .order_by(AlertDeliveryRecord.id)
                )
                alerts.append(_alert_from_row(row, list(deliveries.scalars())))
            return alerts

    async def record_delivery(self, alert_id: int, result: DeliveryResult) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(AlertDeliveryRecord)
                .where(
                    AlertDeliveryRecord.alert_id == alert_id,
                    AlertDeliveryRecord.recipient_id == result.recipient_id,
                    AlertDeliveryRecord.channel == result.channel.value,
                )
                .values(
                    status=result.status.value,
                    error=result.error,
                    updated_at=datetime.utcnow(),
                )
            )
            await session.commit()

    # ── Suggestions ──────────────────────────────────────────

    async def replace_suggestions(
        self,
        patient_id: str,
        suggestions: list[Suggestion],
    ) -> None:
        """Supersede the patient's stored suggestions with a fresh run."""
        async with self._session_factory() as session:
            await session.execute(
                delete(AISuggestion).where(AISuggestion.patient_id == patient_id)
            )
            session.add_all(
                AISuggestion(
                    patient_id=patient_id,
                    token=s.token,
                    occurrences=s.occurrences,
                    total_abnormal=s.total_abnormal,
                    percent=s.percent,
                    time_bucket=s.time_bucket,
                    strength=s.strength,
                    content=s.message,
                    based_on_pattern=s.based_on_pattern,
                    generated_at=s.generated_at,
                )
                for s in suggestions
            )
            await session.commit()

    async def fetch_suggestions(self, patient_id: str) -> list[Suggestion]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AISuggestion)
                .where(AISuggestion.patient_id == patient_id)
                .order_by(AISuggestion.percent.desc(), AISuggestion.token)
            )
            return [_suggestion_from_row(row) for row in result.scalars()]
