"""
gateway/constants.py

Clinical and detection constants used by the categorizer, alert detector
and pattern miner. All clinical numeric values must be referenced from this
module; magic numbers in business logic are prohibited.
"""

# ── Readings ─────────────────────────────────────────────────
DEFAULT_UNIT: str = "mg/dL"

# ── Alert detection ──────────────────────────────────────────
ALERT_WINDOW_DAYS: int = 7
ALERT_ABNORMAL_COUNT_THRESHOLD: int = 3  # alert fires when count is strictly greater
ALERT_TITLE: str = "High Frequency of Abnormal Readings"
RECENT_ALERTS_LIMIT: int = 10

# ── Pattern mining ───────────────────────────────────────────
PATTERN_MIN_OCCURRENCES: int = 3
PATTERN_MIN_PERCENT: float = 0.40
PATTERN_STRONG_PERCENT: float = 0.70
TOKEN_SEPARATOR: str = ","

# Time-of-day buckets by local hour, half-open [start, end).
# Hours not covered by any bucket fall into EVENING_BUCKET.
TIME_BUCKETS: tuple[tuple[str, int, int], ...] = (
    ("morning", 6, 11),
    ("lunch", 11, 15),
    ("afternoon", 15, 19),
)
EVENING_BUCKET: str = "evening"
BUCKET_ORDER: tuple[str, ...] = ("morning", "lunch", "afternoon", "evening")

# ── Email delivery ───────────────────────────────────────────
EMAIL_MAX_RETRIES: int = 2
EMAIL_BACKOFF_BASE_S: float = 1.0  # waits 1s, 2s between attempts
