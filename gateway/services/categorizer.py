"""
gateway/services/categorizer.py

Maps a reading value onto Normal / Borderline / Abnormal.
Ranges are closed intervals; when ranges overlap the most severe label wins.
"""

import structlog

from gateway.errors import UncategorizableValue
from gateway.schemas import Category, ThresholdValues

logger = structlog.get_logger(__name__)


def categorize(value: float, thresholds: ThresholdValues) -> Category:
    """
    Return the category of value under thresholds.

    Checked in severity order (Abnormal, Borderline, Normal) so overlapping
    ranges resolve deterministically to the most severe label.
    Raises UncategorizableValue if value lies in a gap between ranges.
    """
    if thresholds.abnormal_low <= value <= thresholds.abnormal_high:
        return Category.ABNORMAL
    if thresholds.borderline_low <= value <= thresholds.borderline_high:
        return Category.BORDERLINE
    if thresholds.normal_low <= value <= thresholds.normal_high:
        return Category.NORMAL
    raise UncategorizableValue(value)


def categorize_with_fallback(
    value: float,
    thresholds: ThresholdValues,
    patient_id: str,
) -> Category:
    """Categorize, degrading to Borderline when the value hits a gap in the ranges."""
    try:
        return categorize(value, thresholds)
    except UncategorizableValue:
        logger.warning(
            "reading_uncategorizable",
            patient_id=patient_id,
            value=value,
            fallback=Category.BORDERLINE.value,
        )
        return Category.BORDERLINE
