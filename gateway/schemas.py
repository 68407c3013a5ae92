"""
gateway/schemas.py

Pydantic data models for the gateway layer.
- ReadingPayload / Reading: incoming and stored glucose readings
- ThresholdSet / PatientOverride: category boundaries and per-patient Normal range
- Alert / AlertPayload / DeliveryResult: alert records and the dispatcher contract
- Suggestion: mined food/activity trigger with its generated message
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from gateway.constants import DEFAULT_UNIT


class Category(str, Enum):
    """Severity category of a reading, ordered from least to most severe."""

    NORMAL = "Normal"
    BORDERLINE = "Borderline"
    ABNORMAL = "Abnormal"


class DeliveryChannel(str, Enum):
    EMAIL = "email"
    REALTIME = "realtime"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class RecipientRole(str, Enum):
    PATIENT = "patient"
    SPECIALIST = "specialist"


# ── Readings ─────────────────────────────────────────────────

class ReadingPayload(BaseModel):
    """Incoming glucose reading submitted by a patient."""

    patient_id: str
    timestamp: datetime
    value: float = Field(gt=0)
    unit: str = DEFAULT_UNIT
    food_notes: Optional[str] = None
    activity_notes: Optional[str] = None
    event: Optional[str] = None
    symptoms: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def _to_local_naive(cls, value: datetime) -> datetime:
        # Storage and time-of-day bucketing work on naive local time
        if value.tzinfo is not None:
            return value.astimezone().replace(tzinfo=None)
        return value


class Reading(ReadingPayload):
    """A stored reading with its assigned category."""

    reading_id: Optional[int] = None
    category: Category


# ── Thresholds ───────────────────────────────────────────────

class ThresholdValues(BaseModel):
    """Six closed-interval boundaries: normal, borderline and abnormal [low, high]."""

    normal_low: float
    normal_high: float
    borderline_low: float
    borderline_high: float
    abnormal_low: float
    abnormal_high: float


class ThresholdUpdate(ThresholdValues):
    """Request body for publishing a new system threshold version."""

    @model_validator(mode="after")
    def _check_ranges(self) -> "ThresholdUpdate":
        for name in ("normal", "borderline", "abnormal"):
            low = getattr(self, f"{name}_low")
            high = getattr(self, f"{name}_high")
            if low > high:
                raise ValueError(f"{name}_low ({low}) must not exceed {name}_high ({high})")
        return self


class ThresholdSet(ThresholdValues):
    """An immutable system threshold version."""

    model_config = {"frozen": True}

    version_id: Optional[int] = None
    effective_at: datetime


class PatientOverride(BaseModel):
    """Per-patient replacement for the Normal range only."""

    model_config = {"frozen": True}

    normal_low: float
    normal_high: float


class OverrideUpdate(BaseModel):
    """Request body for setting or clearing a patient override (both None clears)."""

    normal_low: Optional[float] = None
    normal_high: Optional[float] = None

    @model_validator(mode="after")
    def _check_pair(self) -> "OverrideUpdate":
        if (self.normal_low is None) != (self.normal_high is None):
            raise ValueError("normal_low and normal_high must be set together")
        if self.normal_low is not None and self.normal_low > self.normal_high:
            raise ValueError("normal_low must not exceed normal_high")
        return self

    def to_override(self) -> Optional[PatientOverride]:
        if self.normal_low is None:
            return None
        return PatientOverride(normal_low=self.normal_low, normal_high=self.normal_high)


# ── Alerts ───────────────────────────────────────────────────

class Recipient(BaseModel):
    """A user who should be notified about an alert."""

    user_id: str
    role: RecipientRole
    email: Optional[str] = None


class AlertDelivery(BaseModel):
    """Delivery state of one alert on one channel for one recipient."""

    recipient_id: str
    channel: DeliveryChannel
    status: DeliveryStatus = DeliveryStatus.PENDING
    error: Optional[str] = None


class Alert(BaseModel):
    """One alert per (patient_id, week_start)."""

    alert_id: Optional[int] = None
    patient_id: str
    week_start: date
    abnormal_count: int
    specialist_id: Optional[str] = None
    recipients: list[Recipient]
    created_at: datetime
    deliveries: list[AlertDelivery] = Field(default_factory=list)


class AlertPayload(BaseModel):
    """What the notification dispatcher receives for one alert."""

    alert_id: Optional[int]
    patient_id: str
    specialist_id: Optional[str] = None
    title: str
    message: str
    specialist_message: str
    recipients: list[Recipient]

    def message_for(self, recipient: Recipient) -> str:
        if recipient.role is RecipientRole.SPECIALIST:
            return self.specialist_message
        return self.message


class DeliveryResult(BaseModel):
    """Outcome reported by the dispatcher for one recipient on one channel."""

    recipient_id: str
    channel: DeliveryChannel
    success: bool
    error: Optional[str] = None

    @property
    def status(self) -> DeliveryStatus:
        return DeliveryStatus.SENT if self.success else DeliveryStatus.FAILED


class AlertEvaluation(BaseModel):
    """Result of one alert evaluation for a patient."""

    created: bool
    abnormal_count: int = 0
    alert: Optional[Alert] = None
    reason: Optional[str] = None


class ReadingReceipt(BaseModel):
    """Response for an accepted reading; alert is None unless it was Abnormal."""

    reading: Reading
    alert: Optional[AlertEvaluation] = None
    alert_error: Optional[str] = None


# ── Suggestions ──────────────────────────────────────────────

class Suggestion(BaseModel):
    """A food/activity token correlated with abnormal readings."""

    patient_id: str
    token: str
    occurrences: int
    total_abnormal: int
    percent: float  # 0-100, one decimal
    time_bucket: str
    strength: str  # "strong" | "moderate"
    message: str
    based_on_pattern: str
    generated_at: datetime
