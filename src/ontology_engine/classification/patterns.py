"""
Sample-value pattern library and data type helpers

Patterns are matched against actual sample values, never column names.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Dict, List, Pattern, Sequence

from ..models.column_features import (
    DetectedPattern,
    PATTERN_AWS_SES,
    PATTERN_EMAIL,
    PATTERN_GENERIC_EXTERNAL_ID,
    PATTERN_ISO4217,
    PATTERN_STRIPE_ID,
    PATTERN_TWILIO_SID,
    PATTERN_UNIX_MICROS,
    PATTERN_UNIX_MILLIS,
    PATTERN_UNIX_NANOS,
    PATTERN_UNIX_SECONDS,
    PATTERN_URL,
    PATTERN_UUID,
)

MAX_MATCHED_EXAMPLES = 5

SAMPLE_PATTERNS: Dict[str, Pattern[str]] = {
    PATTERN_UUID: re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE),
    PATTERN_STRIPE_ID: re.compile(r"^(pi_|pm_|ch_|cus_|sub_|inv_|price_|prod_|txn_|re_|pout_|seti_|cs_)[a-zA-Z0-9]+$"),
    PATTERN_AWS_SES: re.compile(r"^[0-9a-f-]+@email\.amazonses\.com$"),
    PATTERN_TWILIO_SID: re.compile(r"^(AC|SM|MM|PN|SK)[a-f0-9]{32}$"),
    PATTERN_ISO4217: re.compile(r"^[A-Z]{3}$"),
    PATTERN_UNIX_SECONDS: re.compile(r"^[0-9]{10}$"),
    PATTERN_UNIX_MILLIS: re.compile(r"^[0-9]{13}$"),
    PATTERN_UNIX_MICROS: re.compile(r"^[0-9]{16}$"),
    PATTERN_UNIX_NANOS: re.compile(r"^[0-9]{19}$"),
    PATTERN_EMAIL: re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$"),
    PATTERN_URL: re.compile(r"^https?://"),
    PATTERN_GENERIC_EXTERNAL_ID: re.compile(r"^[A-Za-z]{2,8}_[A-Za-z0-9]{8,}$"),
}

EXTERNAL_ID_PATTERNS = (PATTERN_STRIPE_ID, PATTERN_AWS_SES, PATTERN_TWILIO_SID)

UNIX_TIMESTAMP_DIVISORS: Dict[str, int] = {
    PATTERN_UNIX_SECONDS: 1,
    PATTERN_UNIX_MILLIS: 1_000,
    PATTERN_UNIX_MICROS: 1_000_000,
    PATTERN_UNIX_NANOS: 1_000_000_000,
}

TIMESTAMP_SCALES: Dict[str, str] = {
    PATTERN_UNIX_SECONDS: "seconds",
    PATTERN_UNIX_MILLIS: "milliseconds",
    PATTERN_UNIX_MICROS: "microseconds",
    PATTERN_UNIX_NANOS: "nanoseconds",
}

MIN_TIMESTAMP_YEAR = 1970
MAX_TIMESTAMP_YEAR = 2100


def detect_patterns(sample_values: Sequence[str]) -> List[DetectedPattern]:
    """Match every library pattern against the samples; only patterns that hit are returned"""
    if not sample_values:
        return []

    detected: List[DetectedPattern] = []
    for name, regex in SAMPLE_PATTERNS.items():
        matched = [v for v in sample_values if regex.match(v)]
        if matched:
            detected.append(DetectedPattern(
                pattern_name=name,
                match_rate=len(matched) / len(sample_values),
                matched_values=matched[:MAX_MATCHED_EXAMPLES],
            ))
    return detected


def plausible_unix_timestamps(values: Sequence[str], pattern_name: str) -> bool:
    """At least half of the values convert to a date between 1970 and 2100"""
    divisor = UNIX_TIMESTAMP_DIVISORS.get(pattern_name)
    if not values or divisor is None:
        return False

    valid = 0
    for value in values:
        try:
            seconds = int(value) // divisor
            year = datetime.fromtimestamp(seconds, tz=timezone.utc).year
        except (ValueError, OverflowError, OSError):
            continue
        if MIN_TIMESTAMP_YEAR <= year <= MAX_TIMESTAMP_YEAR:
            valid += 1
    return valid > 0 and valid >= len(values) // 2


def _lower(data_type: str) -> str:
    return (data_type or "").strip().lower()


def is_timestamp_type(data_type: str) -> bool:
    lowered = _lower(data_type)
    return "timestamp" in lowered or lowered in ("date", "datetime", "time", "timestamptz")


def is_boolean_type(data_type: str) -> bool:
    return _lower(data_type) in ("bool", "boolean", "bit")


def is_integer_type(data_type: str) -> bool:
    lowered = _lower(data_type)
    if lowered in ("serial", "bigserial", "smallserial"):
        return True
    return "int" in lowered and "interval" not in lowered and "point" not in lowered


def is_uuid_type(data_type: str) -> bool:
    return _lower(data_type) in ("uuid", "uniqueidentifier")


def is_text_type(data_type: str) -> bool:
    lowered = _lower(data_type)
    return any(marker in lowered for marker in ("char", "text", "string", "clob"))


def is_json_type(data_type: str) -> bool:
    return _lower(data_type) in ("json", "jsonb")


def is_decimal_type(data_type: str) -> bool:
    lowered = _lower(data_type)
    return any(marker in lowered for marker in ("numeric", "decimal", "real", "float", "double", "money"))


def types_compatible(source_type: str, target_type: str) -> bool:
    """Join-compatible type families: integers, uuids, or text"""
    for family in (is_integer_type, is_uuid_type):
        if family(source_type) and family(target_type):
            return True
    if is_text_type(source_type) and (is_text_type(target_type) or is_uuid_type(target_type)):
        return True
    if is_uuid_type(source_type) and is_text_type(target_type):
        return True
    return False
