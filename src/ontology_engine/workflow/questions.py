"""
Deterministic question generation

Questions that can be raised from scan statistics alone, before any model call:
columns that are mostly NULL without an obvious reason, and low-cardinality
columns whose values are short codes nobody can read without domain knowledge.
"""
from __future__ import annotations

import re
from typing import List, Optional, Sequence

from ..models import ColumnScanData, QuestionAffects, WorkflowQuestion

HIGH_NULL_RATE_THRESHOLD = 0.80
CRYPTIC_ENUM_MAX_DISTINCT = 20

# Columns that are commonly optional; a high NULL rate on these is expected
KNOWN_OPTIONAL_COLUMNS = frozenset({
    # Lifecycle timestamps
    "deleted_at", "deleted_on", "deleted_date",
    "archived_at", "archived_on", "archived_date",
    "canceled_at", "cancelled_at", "canceled_on", "cancelled_on",
    "completed_at", "completed_on", "completed_date",
    "expired_at", "expired_on", "expiry_date", "expires_at",
    "ended_at", "ended_on", "end_date",
    "closed_at", "closed_on", "closed_date",
    "suspended_at", "suspended_on",
    "terminated_at", "terminated_on",
    "revoked_at", "revoked_on",
    "deactivated_at", "deactivated_on",
    "last_login_at", "last_login",
    "last_seen_at", "last_seen",
    "last_active_at", "last_active",
    "verified_at", "verified_on", "email_verified_at",
    "confirmed_at", "confirmed_on",
    "approved_at", "approved_on",
    # Optional references
    "parent_id", "parent_uuid",
    "manager_id", "supervisor_id",
    "referrer_id", "referred_by",
    "assigned_to", "assigned_to_id",
    "reviewed_by", "reviewed_by_id",
    "approved_by", "approved_by_id",
    # Descriptive
    "description", "notes", "comment", "comments", "memo", "remarks",
    "middle_name", "suffix", "title", "nickname",
    "secondary_email", "alt_email", "alternate_email",
    "secondary_phone", "alt_phone", "mobile", "fax",
    "address_line_2", "address2", "apt", "suite", "unit",
    "company", "organization", "employer",
    "website", "url", "homepage",
    "bio", "about", "summary",
    "avatar", "avatar_url", "profile_image", "photo", "picture",
    # Tracking
    "updated_by", "modified_by", "changed_by",
    "source", "source_id", "origin", "referral_source",
    "campaign", "campaign_id", "utm_source", "utm_medium",
    "legacy_id", "external_id", "old_id",
    "metadata", "extra", "custom_fields", "attributes", "properties", "data",
    "tags", "labels", "categories",
    # Payment and billing
    "discount", "discount_amount", "discount_percent",
    "coupon", "coupon_code", "promo_code",
    "refund_amount", "refunded_at",
    "tax", "tax_amount", "tax_rate",
    "shipping", "shipping_cost", "shipping_address",
    "billing_address", "billing_address_id",
})

OPTIONAL_SUFFIXES = (
    "_notes", "_note", "_comment", "_comments", "_memo", "_remarks",
    "_description", "_desc",
    "_url", "_link",
    "_at", "_on",
)

OPTIONAL_PREFIXES = (
    "old_", "legacy_", "deprecated_",
    "alt_", "alternate_", "secondary_",
    "custom_", "extra_", "meta_",
)

BOOLEAN_PAIRS = (
    ("true", "false"),
    ("t", "f"),
    ("yes", "no"),
    ("y", "n"),
    ("1", "0"),
    ("on", "off"),
    ("active", "inactive"),
    ("enabled", "disabled"),
)

_SINGLE_LETTER = re.compile(r"^[A-Za-z]$")
_NUMERIC_CODE = re.compile(r"^[0-9]{1,3}$")
_ABBREVIATION = re.compile(r"^[A-Z]{2,4}$")


def is_known_optional_column(column_name: str) -> bool:
    lower = column_name.lower()
    if lower in KNOWN_OPTIONAL_COLUMNS:
        return True
    return lower.endswith(OPTIONAL_SUFFIXES) or lower.startswith(OPTIONAL_PREFIXES)


def is_boolean_like(values: Sequence[str]) -> bool:
    if len(values) != 2:
        return False
    pair = {str(values[0]).lower(), str(values[1]).lower()}
    return any(pair == set(candidate) for candidate in BOOLEAN_PAIRS)


def is_cryptic_value(value: str) -> bool:
    """Single letters, 1-3 digit codes, 2-3 letter abbreviations and short letter/digit mixes"""
    v = str(value).strip()
    if not v:
        return False
    if _SINGLE_LETTER.match(v) or _NUMERIC_CODE.match(v):
        return True
    # Four capital letters may well be a word
    if _ABBREVIATION.match(v) and len(v) <= 3:
        return True
    if len(v) <= 3:
        has_letter = any(c.isalpha() for c in v)
        has_digit = any(c.isdigit() for c in v)
        return has_letter and has_digit
    return False


def cryptic_values(values: Sequence[str]) -> List[str]:
    """
    The cryptic members of ``values``, or an empty list when too few of them
    are cryptic for the column to read as a code list
    """
    cryptic = [str(v) for v in values if is_cryptic_value(v)]
    if len(cryptic) >= len(values) // 2 or len(cryptic) >= 3:
        return cryptic
    return []


def format_values(values: Sequence[str], limit: int = 5) -> str:
    quoted = [f"'{v}'" for v in values]
    if len(quoted) <= limit:
        return ", ".join(quoted)
    return ", ".join(quoted[:limit]) + f" (and {len(quoted) - limit} more)"


def high_null_rate_question(table_name: str, column_name: str,
                            scan: ColumnScanData) -> Optional[WorkflowQuestion]:
    if scan.row_count <= 0:
        return None
    null_rate = (scan.row_count - scan.non_null_count) / scan.row_count
    if null_rate <= HIGH_NULL_RATE_THRESHOLD or is_known_optional_column(column_name):
        return None

    location = f"{table_name}.{column_name}"
    percent = f"{null_rate * 100:.0f}"
    return WorkflowQuestion(
        text=f"Column {location} has {percent}% NULL values - is this expected?",
        category="data_quality",
        priority=3,
        is_required=False,
        detected_pattern="high_null_rate",
        reasoning=f"Detected {percent}% NULL rate which may indicate data quality issues or an optional field.",
        affects=QuestionAffects(tables=[table_name], columns=[location]),
    )


def cryptic_enum_question(table_name: str, column_name: str,
                          scan: ColumnScanData) -> Optional[WorkflowQuestion]:
    values = scan.sample_values
    if not values or scan.distinct_count > CRYPTIC_ENUM_MAX_DISTINCT:
        return None
    if is_boolean_like(values):
        return None
    cryptic = cryptic_values(values)
    if not cryptic:
        return None

    location = f"{table_name}.{column_name}"
    formatted = format_values(cryptic)
    return WorkflowQuestion(
        text=f"What do the values {formatted} represent in {location}?",
        category="enumeration",
        priority=1,
        is_required=True,
        detected_pattern="enum_column",
        reasoning=f"Detected cryptic enum values that may require domain knowledge to interpret: {formatted}",
        affects=QuestionAffects(tables=[table_name], columns=[location]),
    )


def column_questions(table_name: str, column_name: str, scan: ColumnScanData,
                     is_key: bool = False) -> List[WorkflowQuestion]:
    """
    Every deterministic question for one scanned column.

    Key columns hold identifiers rather than codes, so only the NULL rate
    check applies to them.
    """
    questions = []
    nulls = high_null_rate_question(table_name, column_name, scan)
    if nulls is not None:
        questions.append(nulls)
    if not is_key:
        codes = cryptic_enum_question(table_name, column_name, scan)
        if codes is not None:
            questions.append(codes)
    return questions


def missing_primary_key_question(table_name: str) -> WorkflowQuestion:
    return WorkflowQuestion(
        text=f"Table {table_name} has no primary key. Which column identifies a row?",
        category="entity",
        priority=3,
        is_required=False,
        detected_pattern="missing_primary_key",
        affects=QuestionAffects(tables=[table_name]),
    )


def clarification_question(table_name: str, column_name: str, text: str,
                           reasoning: str = "") -> WorkflowQuestion:
    """Required question for a column the classifier could not settle on its own"""
    location = f"{table_name}.{column_name}"
    return WorkflowQuestion(
        text=text,
        category="clarification",
        priority=2,
        is_required=True,
        detected_pattern="low_confidence_classification",
        reasoning=reasoning,
        affects=QuestionAffects(tables=[table_name], columns=[location]),
    )
