"""
gateway/errors.py

Error kinds raised by the monitoring core.
- NotConfigured: blocks reading acceptance
- UncategorizableValue: recovered by the conservative Borderline fallback
- AlertDetectionFailed: surfaced to the caller, never blocks the reading write
- DispatchFailed: logged only, never affects alert persistence
"""

from datetime import datetime


class GuardianError(Exception):
    """Base class for all monitoring core errors."""


class NotConfigured(GuardianError):
    """No system threshold version is effective at the requested instant."""

    def __init__(self, as_of: datetime) -> None:
        super().__init__(f"no threshold version effective at or before {as_of.isoformat()}")
        self.as_of = as_of


class UncategorizableValue(GuardianError):
    """A reading value falls inside none of the configured ranges."""

    def __init__(self, value: float) -> None:
        super().__init__(f"value {value} is outside every configured range")
        self.value = value


class AlertDetectionFailed(GuardianError):
    """A lookup or persistence step of alert detection failed."""

    def __init__(self, patient_id: str, stage: str, cause: Exception) -> None:
        super().__init__(f"alert detection for patient {patient_id} failed at {stage}: {cause}")
        self.patient_id = patient_id
        self.stage = stage
        self.cause = cause


class DispatchFailed(GuardianError):
    """The notification collaborator could not deliver on a channel."""

    def __init__(self, channel: str, reason: str) -> None:
        super().__init__(f"{channel} delivery failed: {reason}")
        self.channel = channel
        self.reason = reason


class AlertAlreadyExists(GuardianError):
    """Storage rejected an alert that duplicates (patient, week_start)."""
