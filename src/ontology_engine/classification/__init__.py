"""
Column Feature Classification
Routes every column to one classification path and enriches it in six phases
"""
from .patterns import (
    SAMPLE_PATTERNS,
    EXTERNAL_ID_PATTERNS,
    detect_patterns,
    plausible_unix_timestamps,
    types_compatible,
)
from .routing import build_profile, route_profile, has_unix_timestamp_pattern
from .classifiers import (
    ColumnClassifier,
    TimestampClassifier,
    BooleanClassifier,
    EnumClassifier,
    UUIDClassifier,
    ExternalIDClassifier,
    NumericClassifier,
    TextClassifier,
    JSONClassifier,
    UnknownClassifier,
    ClassifierRegistry,
    profile_context,
)
from .enum_analysis import (
    EnumAnalyzer,
    EnumAnalysisResult,
    find_completion_column,
    label_by_completion,
    merge_enum_analysis,
)
from .fk_resolution import (
    FKCandidate,
    FKResolutionResult,
    FKResolver,
    merge_fk_resolution,
)
from .cross_column import (
    CrossColumnAnalyzer,
    CrossColumnResult,
    MonetaryPairing,
    SoftDeleteValidation,
    merge_cross_column,
)
from .pipeline import ColumnFeaturePipeline, FeatureExtractionResult

__all__ = [
    "SAMPLE_PATTERNS",
    "EXTERNAL_ID_PATTERNS",
    "detect_patterns",
    "plausible_unix_timestamps",
    "build_profile",
    "route_profile",
    "has_unix_timestamp_pattern",
    "ColumnClassifier",
    "TimestampClassifier",
    "BooleanClassifier",
    "EnumClassifier",
    "UUIDClassifier",
    "ExternalIDClassifier",
    "NumericClassifier",
    "TextClassifier",
    "JSONClassifier",
    "UnknownClassifier",
    "ClassifierRegistry",
    "profile_context",
    "EnumAnalyzer",
    "EnumAnalysisResult",
    "find_completion_column",
    "label_by_completion",
    "merge_enum_analysis",
    "FKCandidate",
    "FKResolutionResult",
    "FKResolver",
    "merge_fk_resolution",
    "types_compatible",
    "CrossColumnAnalyzer",
    "CrossColumnResult",
    "MonetaryPairing",
    "SoftDeleteValidation",
    "merge_cross_column",
    "ColumnFeaturePipeline",
    "FeatureExtractionResult",
]
