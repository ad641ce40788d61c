"""
Data collection and deterministic path routing

A column is routed by declared data type first, then by what its sample values
look like. The same profile always yields the same path.
"""
from __future__ import annotations

from typing import Optional

from ..adapters.base import ColumnSchema, ColumnStats, TableSchema
from ..config import ClassificationConfig
from ..models.column_features import ClassificationPath, ColumnDataProfile, PATTERN_UUID
from .patterns import (
    EXTERNAL_ID_PATTERNS,
    UNIX_TIMESTAMP_DIVISORS,
    detect_patterns,
    is_boolean_type,
    is_decimal_type,
    is_integer_type,
    is_json_type,
    is_text_type,
    is_timestamp_type,
    is_uuid_type,
    plausible_unix_timestamps,
)


def build_profile(table: TableSchema, column: ColumnSchema, stats: ColumnStats,
                  config: Optional[ClassificationConfig] = None) -> ColumnDataProfile:
    """Assemble a ColumnDataProfile and route it"""
    config = config or ClassificationConfig()
    row_count = stats.row_count
    profile = ColumnDataProfile(
        column_id=f"{table.name}.{column.name}",
        column_name=column.name,
        table_id=table.name,
        table_name=table.name,
        data_type=column.data_type,
        is_primary_key=column.is_primary_key,
        is_unique=column.is_unique,
        is_nullable=column.nullable,
        row_count=row_count,
        distinct_count=stats.distinct_count,
        null_count=stats.null_count,
        null_rate=stats.null_count / row_count if row_count else 0.0,
        cardinality=stats.distinct_count / row_count if row_count and stats.distinct_count else 0.0,
        min_value=stats.min_value,
        max_value=stats.max_value,
        avg_value=stats.avg_value,
        min_length=stats.min_length,
        max_length=stats.max_length,
        sample_values=list(stats.sample_values[:config.sample_limit]),
    )
    profile.detected_patterns = detect_patterns(profile.sample_values)
    profile.classification_path = route_profile(profile, config)
    return profile


def route_profile(profile: ColumnDataProfile,
                  config: Optional[ClassificationConfig] = None) -> ClassificationPath:
    config = config or ClassificationConfig()
    data_type = profile.data_type

    if is_timestamp_type(data_type):
        return ClassificationPath.TIMESTAMP
    if is_boolean_type(data_type):
        return ClassificationPath.BOOLEAN
    if is_integer_type(data_type):
        return _route_integer(profile, config)
    if is_uuid_type(data_type):
        return ClassificationPath.UUID
    if is_text_type(data_type):
        return _route_text(profile, config)
    if is_json_type(data_type):
        return ClassificationPath.JSON
    if is_decimal_type(data_type):
        return ClassificationPath.NUMERIC
    return ClassificationPath.UNKNOWN


def _route_integer(profile: ColumnDataProfile, config: ClassificationConfig) -> ClassificationPath:
    if profile.has_only_boolean_values():
        return ClassificationPath.BOOLEAN
    if has_unix_timestamp_pattern(profile, config.unix_timestamp_threshold):
        return ClassificationPath.TIMESTAMP
    if _is_enum_shaped(profile, config):
        return ClassificationPath.ENUM
    return ClassificationPath.NUMERIC


def _route_text(profile: ColumnDataProfile, config: ClassificationConfig) -> ClassificationPath:
    if profile.matches_pattern(PATTERN_UUID, config.pattern_threshold):
        return ClassificationPath.UUID
    if any(profile.matches_pattern(p, config.external_id_threshold) for p in EXTERNAL_ID_PATTERNS):
        return ClassificationPath.EXTERNAL_ID
    if profile.has_only_boolean_values():
        return ClassificationPath.BOOLEAN
    if _is_enum_shaped(profile, config):
        return ClassificationPath.ENUM
    return ClassificationPath.TEXT


def _is_enum_shaped(profile: ColumnDataProfile, config: ClassificationConfig) -> bool:
    return (
        profile.cardinality < config.enum_max_cardinality
        and 0 < profile.distinct_count <= config.enum_max_distinct
    )


def has_unix_timestamp_pattern(profile: ColumnDataProfile, threshold: float = 0.8) -> bool:
    for pattern in profile.detected_patterns:
        if pattern.pattern_name not in UNIX_TIMESTAMP_DIVISORS:
            continue
        if pattern.match_rate >= threshold and plausible_unix_timestamps(pattern.matched_values, pattern.pattern_name):
            return True
    return False
