"""
gateway/services/patterns.py

Mines a patient's abnormal readings for recurring food/activity triggers.
Stateless and read-only: every run recomputes from the full history it is
given; persisting the resulting suggestions is the caller's job.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional

from gateway.constants import (
    BUCKET_ORDER,
    EVENING_BUCKET,
    PATTERN_MIN_OCCURRENCES,
    PATTERN_MIN_PERCENT,
    PATTERN_STRONG_PERCENT,
    TIME_BUCKETS,
    TOKEN_SEPARATOR,
)
from gateway.schemas import Category, Reading, Suggestion


@dataclass
class _TokenStats:
    readings: int = 0
    buckets: Counter = field(default_factory=Counter)


def normalize_tokens(text: Optional[str]) -> list[str]:
    """Split free text on commas, trim, lower-case and drop empty tokens."""
    if not text:
        return []
    tokens = (part.strip().lower() for part in text.split(TOKEN_SEPARATOR))
    return [token for token in tokens if token]


def time_bucket(timestamp: datetime) -> str:
    """Classify a timestamp by its local hour into a time-of-day bucket."""
    hour = timestamp.hour
    for name, start, end in TIME_BUCKETS:
        if start <= hour < end:
            return name
    return EVENING_BUCKET


def dominant_bucket(tally: Counter) -> str:
    """Bucket with the highest tally; ties go to the earliest in BUCKET_ORDER."""
    return max(BUCKET_ORDER, key=lambda name: (tally[name], -BUCKET_ORDER.index(name)))


def build_message(token: str, fraction: float) -> tuple[str, str]:
    """Return (strength, message) for a token seen in fraction of abnormal readings."""
    pct = round(fraction * 100)
    if fraction >= PATTERN_STRONG_PERCENT:
        return "strong", (
            f"A strong pattern detected: your blood sugar was abnormal in {pct}% "
            f"of cases after '{token}'. Consider avoiding or reducing it."
        )
    return "moderate", (
        f"A pattern detected: your blood sugar was abnormal in {pct}% "
        f"of cases after '{token}'. Consider portion control or timing changes."
    )


def mine_patterns(
    patient_id: str,
    readings: Iterable[Reading],
    min_occurrences: int = PATTERN_MIN_OCCURRENCES,
    min_percent: float = PATTERN_MIN_PERCENT,
    clock: Callable[[], datetime] = datetime.now,
) -> list[Suggestion]:
    """
    Emit a Suggestion for every token present in at least min_occurrences
    distinct abnormal readings and in at least min_percent of them.

    Output is sorted by percentage descending, then token ascending.
    """
    abnormal = [r for r in readings if r.category is Category.ABNORMAL]
    total = len(abnormal)
    if total < min_occurrences:
        return []

    stats: dict[str, _TokenStats] = {}
    for reading in abnormal:
        # A token in both food and activity notes counts once for the reading
        tokens = set(normalize_tokens(reading.food_notes))
        tokens.update(normalize_tokens(reading.activity_notes))
        bucket = time_bucket(reading.timestamp)
        for token in tokens:
            entry = stats.setdefault(token, _TokenStats())
            entry.readings += 1
            entry.buckets[bucket] += 1

    generated_at = clock()
    suggestions: list[Suggestion] = []
    for token, entry in stats.items():
        fraction = entry.readings / total
        if entry.readings < min_occurrences or fraction < min_percent:
            continue
        strength, message = build_message(token, fraction)
        suggestions.append(
            Suggestion(
                patient_id=patient_id,
                token=token,
                occurrences=entry.readings,
                total_abnormal=total,
                percent=round(fraction * 100, 1),
                time_bucket=dominant_bucket(entry.buckets),
                strength=strength,
                message=message,
                based_on_pattern=f"{token} ({entry.readings}/{total} times)",
                generated_at=generated_at,
            )
        )

    # total is shared by the whole run; occurrences orders by the unrounded fraction
    suggestions.sort(key=lambda s: (-s.occurrences, s.token))
    return suggestions
