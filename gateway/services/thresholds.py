"""
gateway/services/thresholds.py

Threshold resolution: the most recent system version at or before an
instant, with the patient's Normal-range override merged in.
Borderline and Abnormal ranges are never patient-customizable.
"""

from datetime import datetime
from typing import Callable, Optional

import structlog

from gateway.errors import NotConfigured
from gateway.schemas import OverrideUpdate, PatientOverride, ThresholdSet, ThresholdUpdate
from gateway.services.persistence import GlucoseStore

logger = structlog.get_logger(__name__)


def merge_override(
    thresholds: ThresholdSet,
    override: Optional[PatientOverride],
) -> ThresholdSet:
    """Replace only the Normal range of a system version with a patient override."""
    if override is None:
        return thresholds
    return thresholds.model_copy(
        update={
            "normal_low": override.normal_low,
            "normal_high": override.normal_high,
        }
    )


class ThresholdResolver:
    """Resolves and administers category thresholds against a GlucoseStore."""

    def __init__(
        self,
        store: GlucoseStore,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._store = store
        self._clock = clock

    async def resolve(self, patient_id: str, as_of: datetime) -> ThresholdSet:
        """
        Return the thresholds in force for a patient at as_of.

        Raises NotConfigured if no system version is effective at as_of.
        """
        system = await self._store.fetch_system_thresholds(as_of)
        if system is None:
            logger.error(
                "thresholds_not_configured",
                patient_id=patient_id,
                as_of=as_of.isoformat(),
            )
            raise NotConfigured(as_of)

        override = await self._store.fetch_patient_override(patient_id)
        return merge_override(system, override)

    async def effective_thresholds(self, patient_id: str) -> ThresholdSet:
        return await self.resolve(patient_id, self._clock())

    async def publish_thresholds(self, update: ThresholdUpdate) -> ThresholdSet:
        """Insert a new system version effective now; existing versions are untouched."""
        version = ThresholdSet(effective_at=self._clock(), **update.model_dump())
        stored = await self._store.insert_threshold_set(version)
        logger.info(
            "thresholds_published",
            version_id=stored.version_id,
            effective_at=stored.effective_at.isoformat(),
        )
        return stored

    async def set_patient_override(
        self,
        patient_id: str,
        update: OverrideUpdate,
    ) -> Optional[PatientOverride]:
        override = update.to_override()
        await self._store.set_patient_override(patient_id, override)
        logger.info(
            "patient_override_updated",
            patient_id=patient_id,
            cleared=override is None,
        )
        return override
