"""
tests/fixtures.py

Shared test data and helper functions for constructing test payloads.
All tests must use these fixtures instead of hardcoding test values.
FakeStore and FakeDispatcher stand in for storage and delivery so the
core can be exercised without a database or network.
"""

import asyncio
from datetime import date, datetime, timedelta
from typing import Optional

from gateway.errors import AlertAlreadyExists
from gateway.schemas import (
    Alert,
    AlertPayload,
    Category,
    DeliveryChannel,
    DeliveryResult,
    PatientOverride,
    Reading,
    ReadingPayload,
    Suggestion,
    ThresholdSet,
)

# ── Reference instants ──────────────────────────────────────

# Wednesday; its ISO week starts Monday 2024-06-10
TEST_NOW: datetime = datetime(2024, 6, 12, 13, 30, 0)
TEST_WEEK_START: date = date(2024, 6, 10)

TEST_PATIENT_ID: str = "patient_001"
TEST_SPECIALIST_ID: str = "specialist_001"


def fixed_clock(now: datetime = TEST_NOW):
    """Clock callable that always returns now."""
    return lambda: now


def build_thresholds(
    effective_at: datetime = datetime(2024, 1, 1),
    version_id: Optional[int] = 1,
    normal: tuple[float, float] = (70.0, 100.0),
    borderline: tuple[float, float] = (100.1, 140.0),
    abnormal: tuple[float, float] = (140.1, 300.0),
) -> ThresholdSet:
    """Build a ThresholdSet with the clinic's default mg/dL ranges."""
    return ThresholdSet(
        version_id=version_id,
        normal_low=normal[0],
        normal_high=normal[1],
        borderline_low=borderline[0],
        borderline_high=borderline[1],
        abnormal_low=abnormal[0],
        abnormal_high=abnormal[1],
        effective_at=effective_at,
    )


def build_payload(
    patient_id: str = TEST_PATIENT_ID,
    value: float = 90.0,
    timestamp: datetime | None = None,
    food_notes: str | None = None,
    activity_notes: str | None = None,
) -> ReadingPayload:
    """Build a ReadingPayload with sensible defaults for testing."""
    return ReadingPayload(
        patient_id=patient_id,
        timestamp=timestamp or TEST_NOW - timedelta(hours=1),
        value=value,
        food_notes=food_notes,
        activity_notes=activity_notes,
    )


def build_reading(
    patient_id: str = TEST_PATIENT_ID,
    category: Category = Category.ABNORMAL,
    timestamp: datetime | None = None,
    value: float = 180.0,
    food_notes: str | None = None,
    activity_notes: str | None = None,
    reading_id: int | None = None,
) -> Reading:
    """Build a categorized Reading with sensible defaults for testing."""
    return Reading(
        reading_id=reading_id,
        patient_id=patient_id,
        timestamp=timestamp or TEST_NOW - timedelta(hours=1),
        value=value,
        food_notes=food_notes,
        activity_notes=activity_notes,
        category=category,
    )


class FakeStore:
    """In-memory GlucoseStore. insert_alert enforces (patient_id, week_start) uniqueness."""

    def __init__(self) -> None:
        self.thresholds: list[ThresholdSet] = []
        self.overrides: dict[str, PatientOverride] = {}
        self.readings: list[Reading] = []
        self.specialists: dict[str, str] = {}
        self.emails: dict[str, str] = {}
        self.active_patients: list[str] = []
        self.alerts: list[Alert] = []
        self.deliveries: list[tuple[int, DeliveryResult]] = []
        self.suggestions: dict[str, list[Suggestion]] = {}
        # Yield to the event loop inside find_alert so concurrent evaluations interleave
        self.yield_in_find_alert = False

    async def fetch_system_thresholds(self, as_of: datetime) -> Optional[ThresholdSet]:
        eligible = [t for t in self.thresholds if t.effective_at <= as_of]
        if not eligible:
            return None
        return max(eligible, key=lambda t: (t.effective_at, t.version_id or 0))

    async def insert_threshold_set(self, thresholds: ThresholdSet) -> ThresholdSet:
        stored = thresholds.model_copy(update={"version_id": len(self.thresholds) + 1})
        self.thresholds.append(stored)
        return stored

    async def fetch_patient_override(self, patient_id: str) -> Optional[PatientOverride]:
        return self.overrides.get(patient_id)

    async def set_patient_override(
        self, patient_id: str, override: Optional[PatientOverride]
    ) -> None:
        if override is None:
            self.overrides.pop(patient_id, None)
        else:
            self.overrides[patient_id] = override

    async def insert_reading(self, reading: Reading) -> Reading:
        stored = reading.model_copy(update={"reading_id": len(self.readings) + 1})
        self.readings.append(stored)
        return stored

    async def fetch_abnormal_count(self, patient_id: str, since: datetime) -> int:
        return sum(
            1
            for r in self.readings
            if r.patient_id == patient_id
            and r.category is Category.ABNORMAL
            and r.timestamp >= since
        )

    async def fetch_abnormal_readings(self, patient_id: str) -> list[Reading]:
        return [
            r
            for r in self.readings
            if r.patient_id == patient_id and r.category is Category.ABNORMAL
        ]

    async def fetch_assigned_specialist(self, patient_id: str) -> Optional[str]:
        return self.specialists.get(patient_id)

    async def fetch_email(self, user_id: str) -> Optional[str]:
        return self.emails.get(user_id)

    async def fetch_active_patient_ids(self) -> list[str]:
        return list(self.active_patients)

    async def find_alert(self, patient_id: str, week_start: date) -> Optional[Alert]:
        found = next(
            (a for a in self.alerts if a.patient_id == patient_id and a.week_start == week_start),
            None,
        )
        if self.yield_in_find_alert:
            await asyncio.sleep(0)
        return found

    async def insert_alert(self, alert: Alert) -> Alert:
        for existing in self.alerts:
            if (existing.patient_id, existing.week_start) == (alert.patient_id, alert.week_start):
                raise AlertAlreadyExists(f"{alert.patient_id} {alert.week_start}")
        stored = alert.model_copy(update={"alert_id": len(self.alerts) + 1})
        self.alerts.append(stored)
        return stored

    async def fetch_alerts(self, patient_id: str, limit: int) -> list[Alert]:
        matching = [a for a in self.alerts if a.patient_id == patient_id]
        return sorted(matching, key=lambda a: a.created_at, reverse=True)[:limit]

    async def record_delivery(self, alert_id: int, result: DeliveryResult) -> None:
        self.deliveries.append((alert_id, result))

    async def replace_suggestions(
        self, patient_id: str, suggestions: list[Suggestion]
    ) -> None:
        self.suggestions[patient_id] = list(suggestions)

    async def fetch_suggestions(self, patient_id: str) -> list[Suggestion]:
        return list(self.suggestions.get(patient_id, []))


class FakeDispatcher:
    """Records dispatch calls and reports every recipient as delivered."""

    def __init__(self, fail_channels: tuple[DeliveryChannel, ...] = ()) -> None:
        self.calls: list[tuple[AlertPayload, DeliveryChannel]] = []
        self.suggestion_calls: list[tuple[str, list[Suggestion]]] = []
        self._fail_channels = fail_channels

    async def dispatch(
        self, payload: AlertPayload, channel: DeliveryChannel
    ) -> list[DeliveryResult]:
        self.calls.append((payload, channel))
        if channel in self._fail_channels:
            raise RuntimeError(f"{channel.value} transport down")
        return [
            DeliveryResult(recipient_id=r.user_id, channel=channel, success=True)
            for r in payload.recipients
        ]

    async def notify_suggestions(
        self, patient_id: str, suggestions: list[Suggestion]
    ) -> bool:
        self.suggestion_calls.append((patient_id, suggestions))
        return True


def seed_abnormal(
    store: FakeStore,
    count: int,
    patient_id: str = TEST_PATIENT_ID,
    start: datetime | None = None,
    step: timedelta = timedelta(hours=6),
) -> None:
    """Append count Abnormal readings going back from start in steps."""
    start = start or TEST_NOW - timedelta(hours=1)
    for i in range(count):
        store.readings.append(
            build_reading(
                patient_id=patient_id,
                timestamp=start - step * i,
                reading_id=len(store.readings) + 1,
            )
        )
