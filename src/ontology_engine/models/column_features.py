"""
Column Feature Models

ColumnDataProfile is the deterministic output of data collection; ColumnFeatures is
the final classification. Path-specific feature structs form a tagged union keyed
by ClassificationPath: at most one struct is set at a time and its type must be
allowed for the column's path.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type, Union

from ..utils.clock import format_datetime, utc_now
from ..utils.errors import ValidationError


class ClassificationPath(str, Enum):
    TIMESTAMP = "timestamp"
    BOOLEAN = "boolean"
    ENUM = "enum"
    UUID = "uuid"
    EXTERNAL_ID = "external_id"
    NUMERIC = "numeric"
    TEXT = "text"
    JSON = "json"
    UNKNOWN = "unknown"


class Purpose(str, Enum):
    IDENTIFIER = "identifier"
    TIMESTAMP = "timestamp"
    FLAG = "flag"
    MEASURE = "measure"
    ENUM = "enum"
    TEXT = "text"
    JSON = "json"


class Role(str, Enum):
    PRIMARY_KEY = "primary_key"
    FOREIGN_KEY = "foreign_key"
    ATTRIBUTE = "attribute"
    MEASURE = "measure"


class TimestampPurpose(str, Enum):
    AUDIT_CREATED = "audit_created"
    AUDIT_UPDATED = "audit_updated"
    SOFT_DELETE = "soft_delete"
    EVENT_TIME = "event_time"
    SCHEDULED_TIME = "scheduled_time"
    EXPIRATION = "expiration"
    CURSOR = "cursor"


class BooleanType(str, Enum):
    FEATURE_FLAG = "feature_flag"
    STATUS_INDICATOR = "status_indicator"
    PERMISSION = "permission"
    PREFERENCE = "preference"
    STATE = "state"


class EnumCategory(str, Enum):
    INITIAL = "initial"
    IN_PROGRESS = "in_progress"
    TERMINAL = "terminal"
    TERMINAL_SUCCESS = "terminal_success"
    TERMINAL_ERROR = "terminal_error"

    @property
    def is_terminal(self) -> bool:
        return self in (EnumCategory.TERMINAL, EnumCategory.TERMINAL_SUCCESS, EnumCategory.TERMINAL_ERROR)


class IdentifierType(str, Enum):
    INTERNAL_UUID = "internal_uuid"
    EXTERNAL_UUID = "external_uuid"
    PRIMARY_KEY = "primary_key"
    FOREIGN_KEY = "foreign_key"
    EXTERNAL_SERVICE_ID = "external_service_id"


class CurrencyUnit(str, Enum):
    CENTS = "cents"
    DOLLARS = "dollars"
    BASIS_POINTS = "basis_points"


# Pattern names produced by data collection
PATTERN_UUID = "uuid"
PATTERN_STRIPE_ID = "stripe_id"
PATTERN_AWS_SES = "aws_ses"
PATTERN_TWILIO_SID = "twilio_sid"
PATTERN_ISO4217 = "iso4217"
PATTERN_UNIX_SECONDS = "unix_seconds"
PATTERN_UNIX_MILLIS = "unix_millis"
PATTERN_UNIX_MICROS = "unix_micros"
PATTERN_UNIX_NANOS = "unix_nanos"
PATTERN_EMAIL = "email"
PATTERN_URL = "url"
PATTERN_GENERIC_EXTERNAL_ID = "generic_external_id"

DEFAULT_PATTERN_THRESHOLD = 0.95

BOOLEAN_VALUE_SETS: Tuple[frozenset, ...] = (
    frozenset({"0", "1"}),
    frozenset({"true", "false"}),
    frozenset({"yes", "no"}),
    frozenset({"y", "n"}),
    frozenset({"t", "f"}),
)


def _normalize_boolean_value(value: Any) -> str:
    return "".join(str(value).split()).lower()


def is_boolean_value_set(values: List[Any], distinct_count: Optional[int] = None) -> bool:
    """
    Strict boolean check: at most two distinct values, all drawn from one canonical
    pair (0/1, true/false, yes/no, y/n, t/f), ignoring case and whitespace.
    """
    if not values:
        return False
    normalized = {_normalize_boolean_value(v) for v in values}
    if len(normalized) > 2:
        return False
    if distinct_count is not None and distinct_count > 2:
        return False
    return any(normalized <= pair for pair in BOOLEAN_VALUE_SETS)


@dataclass
class DetectedPattern:
    pattern_name: str
    match_rate: float
    matched_values: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pattern_name": self.pattern_name,
            "match_rate": self.match_rate,
            "matched_values": list(self.matched_values),
        }


@dataclass
class ColumnDataProfile:
    """Raw statistics, samples, patterns and the routing decision for one column"""
    column_id: str
    column_name: str
    table_id: str
    table_name: str
    data_type: str

    is_primary_key: bool = False
    is_unique: bool = False
    is_nullable: bool = True

    row_count: int = 0
    distinct_count: int = 0
    null_count: int = 0
    null_rate: float = 0.0
    cardinality: float = 0.0

    min_value: Optional[float] = None
    max_value: Optional[float] = None
    avg_value: Optional[float] = None

    min_length: Optional[int] = None
    max_length: Optional[int] = None

    sample_values: List[str] = field(default_factory=list)
    detected_patterns: List[DetectedPattern] = field(default_factory=list)

    classification_path: ClassificationPath = ClassificationPath.UNKNOWN

    @property
    def qualified_name(self) -> str:
        return f"{self.table_name}.{self.column_name}"

    def has_only_boolean_values(self) -> bool:
        return is_boolean_value_set(self.sample_values, self.distinct_count)

    def pattern_rate(self, pattern_name: str) -> float:
        for pattern in self.detected_patterns:
            if pattern.pattern_name == pattern_name:
                return pattern.match_rate
        return 0.0

    def matches_pattern(self, pattern_name: str, threshold: float = DEFAULT_PATTERN_THRESHOLD) -> bool:
        return any(
            p.pattern_name == pattern_name and p.match_rate >= threshold
            for p in self.detected_patterns
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["classification_path"] = self.classification_path.value
        return data


@dataclass
class TimestampFeatures:
    timestamp_purpose: TimestampPurpose = TimestampPurpose.EVENT_TIME
    timestamp_scale: str = ""
    is_soft_delete: bool = False
    is_audit_field: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp_purpose": self.timestamp_purpose.value,
            "timestamp_scale": self.timestamp_scale,
            "is_soft_delete": self.is_soft_delete,
            "is_audit_field": self.is_audit_field,
        }


@dataclass
class BooleanFeatures:
    true_meaning: str = ""
    false_meaning: str = ""
    boolean_type: BooleanType = BooleanType.STATE
    true_percentage: float = 0.0
    false_percentage: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "true_meaning": self.true_meaning,
            "false_meaning": self.false_meaning,
            "boolean_type": self.boolean_type.value,
            "true_percentage": self.true_percentage,
            "false_percentage": self.false_percentage,
        }


@dataclass
class ColumnEnumValue:
    value: str
    label: str = ""
    category: Optional[EnumCategory] = None
    count: int = 0
    percentage: float = 0.0
    completion_rate: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "label": self.label,
            "category": self.category.value if self.category else None,
            "count": self.count,
            "percentage": self.percentage,
            "completion_rate": self.completion_rate,
        }


@dataclass
class EnumFeatures:
    is_state_machine: bool = False
    values: List[ColumnEnumValue] = field(default_factory=list)
    state_description: str = ""
    completion_column: Optional[str] = None

    def get_value(self, value: str) -> Optional[ColumnEnumValue]:
        for enum_value in self.values:
            if enum_value.value == value:
                return enum_value
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_state_machine": self.is_state_machine,
            "values": [v.to_dict() for v in self.values],
            "state_description": self.state_description,
            "completion_column": self.completion_column,
        }


@dataclass
class IdentifierFeatures:
    identifier_type: IdentifierType = IdentifierType.FOREIGN_KEY
    external_service: str = ""
    fk_target_table: str = ""
    fk_target_column: str = ""
    fk_confidence: float = 0.0
    entity_referenced: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier_type": self.identifier_type.value,
            "external_service": self.external_service,
            "fk_target_table": self.fk_target_table,
            "fk_target_column": self.fk_target_column,
            "fk_confidence": self.fk_confidence,
            "entity_referenced": self.entity_referenced,
        }


@dataclass
class MonetaryFeatures:
    is_monetary: bool = True
    currency_unit: str = CurrencyUnit.CENTS.value
    paired_currency_column: str = ""
    amount_description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_monetary": self.is_monetary,
            "currency_unit": self.currency_unit,
            "paired_currency_column": self.paired_currency_column,
            "amount_description": self.amount_description,
        }


PathFeatures = Union[TimestampFeatures, BooleanFeatures, EnumFeatures, IdentifierFeatures, MonetaryFeatures]

# Which feature variants each path may carry
PATH_FEATURE_TYPES: Dict[ClassificationPath, Tuple[Type, ...]] = {
    ClassificationPath.TIMESTAMP: (TimestampFeatures,),
    ClassificationPath.BOOLEAN: (BooleanFeatures,),
    ClassificationPath.ENUM: (EnumFeatures,),
    ClassificationPath.UUID: (IdentifierFeatures,),
    ClassificationPath.EXTERNAL_ID: (IdentifierFeatures,),
    ClassificationPath.NUMERIC: (IdentifierFeatures, MonetaryFeatures),
    ClassificationPath.TEXT: (IdentifierFeatures,),
    ClassificationPath.JSON: (),
    ClassificationPath.UNKNOWN: (),
}

_FEATURE_KEYS: Dict[Type, str] = {
    TimestampFeatures: "timestamp_features",
    BooleanFeatures: "boolean_features",
    EnumFeatures: "enum_features",
    IdentifierFeatures: "identifier_features",
    MonetaryFeatures: "monetary_features",
}


@dataclass
class ColumnFeatures:
    """Final classification for a column"""
    column_id: str
    classification_path: ClassificationPath
    table_name: str = ""
    column_name: str = ""
    purpose: str = ""
    semantic_type: str = ""
    role: str = Role.ATTRIBUTE.value
    description: str = ""
    confidence: float = 0.0

    path_features: Optional[PathFeatures] = None

    needs_enum_analysis: bool = False
    needs_fk_resolution: bool = False
    needs_cross_column_check: bool = False
    needs_clarification: bool = False
    clarification_question: str = ""

    analyzed_at: datetime = field(default_factory=utc_now)
    llm_model_used: str = ""

    def set_path_features(self, features: Optional[PathFeatures]) -> None:
        """Replace the path-specific variant, enforcing the path's allowed types"""
        if features is not None and not isinstance(features, PATH_FEATURE_TYPES[self.classification_path]):
            raise ValidationError(
                f"{type(features).__name__} is not valid for path '{self.classification_path.value}'",
                field_name="path_features",
            )
        self.path_features = features

    def _variant(self, cls: Type) -> Any:
        return self.path_features if isinstance(self.path_features, cls) else None

    @property
    def timestamp_features(self) -> Optional[TimestampFeatures]:
        return self._variant(TimestampFeatures)

    @property
    def boolean_features(self) -> Optional[BooleanFeatures]:
        return self._variant(BooleanFeatures)

    @property
    def enum_features(self) -> Optional[EnumFeatures]:
        return self._variant(EnumFeatures)

    @property
    def identifier_features(self) -> Optional[IdentifierFeatures]:
        return self._variant(IdentifierFeatures)

    @property
    def monetary_features(self) -> Optional[MonetaryFeatures]:
        return self._variant(MonetaryFeatures)

    def to_dict(self) -> Dict[str, Any]:
        """Flattened storage form: every variant key present, at most one non-null"""
        data: Dict[str, Any] = {
            "column_id": self.column_id,
            "table_name": self.table_name,
            "column_name": self.column_name,
            "classification_path": self.classification_path.value,
            "purpose": self.purpose,
            "semantic_type": self.semantic_type,
            "role": self.role,
            "description": self.description,
            "confidence": self.confidence,
            "needs_enum_analysis": self.needs_enum_analysis,
            "needs_fk_resolution": self.needs_fk_resolution,
            "needs_cross_column_check": self.needs_cross_column_check,
            "needs_clarification": self.needs_clarification,
            "clarification_question": self.clarification_question,
            "analyzed_at": format_datetime(self.analyzed_at),
            "llm_model_used": self.llm_model_used,
        }
        for cls, key in _FEATURE_KEYS.items():
            variant = self._variant(cls)
            data[key] = variant.to_dict() if variant is not None else None
        return data


class FeaturePhase(str, Enum):
    DATA_COLLECTION = "phase1"
    COLUMN_CLASSIFICATION = "phase2"
    ENUM_ANALYSIS = "phase3"
    FK_RESOLUTION = "phase4"
    CROSS_COLUMN_ANALYSIS = "phase5"
    STORE_RESULTS = "phase6"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


PHASE_NAMES: Dict[FeaturePhase, str] = {
    FeaturePhase.DATA_COLLECTION: "Collecting column metadata",
    FeaturePhase.COLUMN_CLASSIFICATION: "Classifying columns",
    FeaturePhase.ENUM_ANALYSIS: "Analyzing enum values",
    FeaturePhase.FK_RESOLUTION: "Resolving FK candidates",
    FeaturePhase.CROSS_COLUMN_ANALYSIS: "Cross-column analysis",
    FeaturePhase.STORE_RESULTS: "Saving results",
}


@dataclass
class PhaseProgress:
    phase_id: FeaturePhase
    phase_name: str
    status: PhaseStatus = PhaseStatus.PENDING
    total_items: Optional[int] = None
    completed_items: int = 0
    current_item: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase_id": self.phase_id.value,
            "phase_name": self.phase_name,
            "status": self.status.value,
            "total_items": self.total_items,
            "completed_items": self.completed_items,
            "current_item": self.current_item,
        }


@dataclass
class FeatureExtractionProgress:
    """
    Progress across the six phases.

    A phase's total_items stays None until the phase starts; totals are only
    published once data collection has finished enumerating the work.
    """
    current_phase: FeaturePhase = FeaturePhase.DATA_COLLECTION
    phase_description: str = "Initializing..."
    total_columns: int = 0
    enum_candidates: int = 0
    fk_candidates: int = 0
    cross_column_candidates: int = 0
    phases: List[PhaseProgress] = field(
        default_factory=lambda: [PhaseProgress(phase_id=p, phase_name=n) for p, n in PHASE_NAMES.items()]
    )

    def get_phase(self, phase: FeaturePhase) -> PhaseProgress:
        for progress in self.phases:
            if progress.phase_id == phase:
                return progress
        raise KeyError(phase)

    def start_phase(self, phase: FeaturePhase, total_items: int) -> None:
        progress = self.get_phase(phase)
        progress.status = PhaseStatus.IN_PROGRESS
        progress.total_items = total_items
        progress.completed_items = 0
        self.current_phase = phase
        self.phase_description = progress.phase_name

    def advance(self, phase: FeaturePhase, current_item: str = "") -> None:
        progress = self.get_phase(phase)
        progress.completed_items += 1
        progress.current_item = current_item

    def finish_phase(self, phase: FeaturePhase, failed: bool = False) -> None:
        self.get_phase(phase).status = PhaseStatus.FAILED if failed else PhaseStatus.COMPLETE

    @property
    def percentage(self) -> int:
        progress = self.get_phase(self.current_phase)
        if not progress.total_items:
            return 0
        return int(progress.completed_items * 100 / progress.total_items)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_phase": self.current_phase.value,
            "phase_description": self.phase_description,
            "total_columns": self.total_columns,
            "enum_candidates": self.enum_candidates,
            "fk_candidates": self.fk_candidates,
            "cross_column_candidates": self.cross_column_candidates,
            "percentage": self.percentage,
            "phases": [p.to_dict() for p in self.phases],
        }
