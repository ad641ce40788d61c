"""
Relationship candidate model
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from ..utils.clock import format_datetime, utc_now


class DetectionMethod(str, Enum):
    VALUE_MATCH = "value_match"
    NAME_INFERENCE = "name_inference"
    LLM = "llm"
    HYBRID = "hybrid"
    FOREIGN_KEY = "foreign_key"
    PK_MATCH = "pk_match"


class Cardinality(str, Enum):
    ONE_TO_ONE = "1:1"
    ONE_TO_MANY = "1:N"
    MANY_TO_ONE = "N:1"
    MANY_TO_MANY = "N:M"
    UNKNOWN = "unknown"


class CandidateStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class UserDecision(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class RejectionReason(str, Enum):
    """Listed in evaluation order: the first applicable reason wins"""
    TYPE_MISMATCH = "type_mismatch"
    ALREADY_EXISTS = "already_exists"
    WRONG_DIRECTION = "wrong_direction"
    ORPHAN_INTEGRITY = "orphan_integrity"
    COINCIDENTAL_OVERLAP = "coincidental_overlap"
    LOW_MATCH_RATE = "low_match_rate"
    JOIN_FAILED = "join_failed"
    LOW_CONFIDENCE = "low_confidence"
    LLM_REJECTED = "llm_rejected"


@dataclass
class RelationshipCandidate:
    """
    A proposed column-to-column relationship under review.

    Sample-based metrics (value_match_rate, name_similarity) come from cheap
    estimation; join metrics are exact counts from an actual join.
    """
    datasource_id: str
    source_table: str
    source_column: str
    target_table: str
    target_column: str
    detection_method: DetectionMethod
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: Optional[str] = None
    source_column_id: Optional[str] = None
    target_column_id: Optional[str] = None
    confidence: float = 0.0
    llm_reasoning: str = ""
    source_role: str = ""

    value_match_rate: Optional[float] = None
    name_similarity: Optional[float] = None

    cardinality: Cardinality = Cardinality.UNKNOWN
    join_match_rate: Optional[float] = None
    orphan_rate: Optional[float] = None
    target_coverage: Optional[float] = None
    source_row_count: Optional[int] = None
    target_row_count: Optional[int] = None
    source_distinct_count: Optional[int] = None
    target_distinct_count: Optional[int] = None
    matched_rows: Optional[int] = None
    orphan_rows: Optional[int] = None
    reverse_orphan_rate: Optional[float] = None

    rejection_reason: Optional[RejectionReason] = None
    status: CandidateStatus = CandidateStatus.PENDING
    is_required: bool = False
    user_decision: Optional[UserDecision] = None

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.confidence = clamp_confidence(self.confidence)

    @property
    def source_key(self) -> str:
        return f"{self.source_table}.{self.source_column}"

    @property
    def target_key(self) -> str:
        return f"{self.target_table}.{self.target_column}"

    @property
    def pair_key(self) -> str:
        return f"{self.source_key}->{self.target_key}"

    def needs_review(self) -> bool:
        return self.is_required and self.status == CandidateStatus.PENDING

    @property
    def is_user_decided(self) -> bool:
        return self.user_decision is not None

    def set_confidence(self, value: float) -> None:
        self.confidence = clamp_confidence(value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "datasource_id": self.datasource_id,
            "source_table": self.source_table,
            "source_column": self.source_column,
            "target_table": self.target_table,
            "target_column": self.target_column,
            "source_column_id": self.source_column_id,
            "target_column_id": self.target_column_id,
            "detection_method": self.detection_method.value,
            "confidence": self.confidence,
            "llm_reasoning": self.llm_reasoning,
            "source_role": self.source_role,
            "value_match_rate": self.value_match_rate,
            "name_similarity": self.name_similarity,
            "cardinality": self.cardinality.value,
            "join_match_rate": self.join_match_rate,
            "orphan_rate": self.orphan_rate,
            "target_coverage": self.target_coverage,
            "source_row_count": self.source_row_count,
            "target_row_count": self.target_row_count,
            "matched_rows": self.matched_rows,
            "orphan_rows": self.orphan_rows,
            "rejection_reason": self.rejection_reason.value if self.rejection_reason else None,
            "status": self.status.value,
            "is_required": self.is_required,
            "user_decision": self.user_decision.value if self.user_decision else None,
            "needs_review": self.needs_review(),
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
        }


def clamp_confidence(value: Optional[float]) -> float:
    if value is None:
        return 0.0
    return max(0.0, min(1.0, float(value)))
