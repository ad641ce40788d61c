"""
Per-entity workflow state

An entity is one addressable unit of extraction work: the whole datasource
("global"), a table, or a "table.column" pair. Its state machine:

    pending -> scanning -> scanned -> analyzing -> complete
                                          |            |
                                    needs_input <------+ (re-opened by an answer)
                                          |
                                          +-> analyzing

Any state may move to failed. These records are ephemeral and are deleted when
the owning workflow reaches a terminal state; answer diffs are kept for audit.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from ..utils.clock import format_datetime, parse_datetime, utc_now
from ..utils.hashing import content_hash


class WorkflowEntityType(str, Enum):
    GLOBAL = "global"
    TABLE = "table"
    COLUMN = "column"


class WorkflowEntityStatus(str, Enum):
    PENDING = "pending"
    SCANNING = "scanning"
    SCANNED = "scanned"
    ANALYZING = "analyzing"
    COMPLETE = "complete"
    NEEDS_INPUT = "needs_input"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowEntityStatus.COMPLETE, WorkflowEntityStatus.FAILED)

    def can_transition_to(self, target: "WorkflowEntityStatus") -> bool:
        if target == WorkflowEntityStatus.FAILED:
            return True
        return target in _ENTITY_TRANSITIONS.get(self, frozenset())


_ENTITY_TRANSITIONS: Dict[WorkflowEntityStatus, FrozenSet[WorkflowEntityStatus]] = {
    WorkflowEntityStatus.PENDING: frozenset({WorkflowEntityStatus.SCANNING}),
    WorkflowEntityStatus.SCANNING: frozenset({WorkflowEntityStatus.SCANNED}),
    WorkflowEntityStatus.SCANNED: frozenset({WorkflowEntityStatus.ANALYZING}),
    WorkflowEntityStatus.ANALYZING: frozenset({
        WorkflowEntityStatus.COMPLETE,
        WorkflowEntityStatus.NEEDS_INPUT,
    }),
    WorkflowEntityStatus.NEEDS_INPUT: frozenset({WorkflowEntityStatus.ANALYZING}),
    WorkflowEntityStatus.COMPLETE: frozenset({WorkflowEntityStatus.ANALYZING}),
    WorkflowEntityStatus.FAILED: frozenset(),
}


class QuestionStatus(str, Enum):
    PENDING = "pending"
    SKIPPED = "skipped"
    ANSWERED = "answered"


def global_entity_key() -> str:
    return ""


def table_entity_key(table_name: str) -> str:
    return table_name


def column_entity_key(table_name: str, column_name: str) -> str:
    return f"{table_name}.{column_name}"


@dataclass
class QuestionAffects:
    """Tables and columns an answer may touch"""
    tables: List[str] = field(default_factory=list)
    columns: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"tables": self.tables, "columns": self.columns}


@dataclass
class WorkflowQuestion:
    text: str
    category: str = "general"
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    priority: int = 3
    is_required: bool = False
    reasoning: str = ""
    affects: Optional[QuestionAffects] = None
    detected_pattern: str = ""
    status: QuestionStatus = QuestionStatus.PENDING
    answer: str = ""
    answered_by: str = ""
    answered_at: Optional[datetime] = None
    parent_id: str = ""

    @property
    def content_hash(self) -> str:
        return content_hash(self.category, self.text)

    def is_pending(self) -> bool:
        return self.status == QuestionStatus.PENDING

    def is_answered(self) -> bool:
        return self.status == QuestionStatus.ANSWERED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "priority": self.priority,
            "is_required": self.is_required,
            "category": self.category,
            "reasoning": self.reasoning,
            "affects": self.affects.to_dict() if self.affects else None,
            "detected_pattern": self.detected_pattern,
            "status": self.status.value,
            "answer": self.answer,
            "answered_by": self.answered_by,
            "answered_at": format_datetime(self.answered_at),
            "parent_id": self.parent_id,
            "content_hash": self.content_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowQuestion":
        affects = data.get("affects")
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            text=data["text"],
            priority=data.get("priority", 3),
            is_required=data.get("is_required", False),
            category=data.get("category", "general"),
            reasoning=data.get("reasoning", ""),
            affects=QuestionAffects(**affects) if affects else None,
            detected_pattern=data.get("detected_pattern", ""),
            status=QuestionStatus(data.get("status", "pending")),
            answer=data.get("answer", ""),
            answered_by=data.get("answered_by", ""),
            answered_at=parse_datetime(data.get("answered_at")),
            parent_id=data.get("parent_id", ""),
        )


@dataclass
class WorkflowAnswer:
    """An answer plus the diff it produced, kept for the audit trail"""
    question_id: str
    answer: str
    answered_by: str
    answered_at: datetime = field(default_factory=utc_now)
    entity_updates: List[str] = field(default_factory=list)
    column_updates: List[str] = field(default_factory=list)
    knowledge_facts: List[str] = field(default_factory=list)
    follow_up_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question_id": self.question_id,
            "answer": self.answer,
            "answered_by": self.answered_by,
            "answered_at": format_datetime(self.answered_at),
            "entity_updates": list(self.entity_updates),
            "column_updates": list(self.column_updates),
            "knowledge_facts": list(self.knowledge_facts),
            "follow_up_id": self.follow_up_id,
        }


@dataclass
class ColumnScanData:
    """Statistics gathered during the scanning phase, before any model call"""
    row_count: int = 0
    non_null_count: int = 0
    distinct_count: int = 0
    null_percent: float = 0.0
    sample_values: List[str] = field(default_factory=list)
    is_enum_candidate: bool = False
    value_fingerprint: str = ""
    scanned_at: datetime = field(default_factory=utc_now)

    ENUM_MAX_DISTINCT = 50
    ENUM_MAX_ROW_FRACTION = 0.10

    @classmethod
    def enum_candidate(cls, distinct_count: int, row_count: int) -> bool:
        if distinct_count <= 0 or row_count <= 0:
            return False
        return (distinct_count <= cls.ENUM_MAX_DISTINCT
                and distinct_count < row_count * cls.ENUM_MAX_ROW_FRACTION)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "row_count": self.row_count,
            "non_null_count": self.non_null_count,
            "distinct_count": self.distinct_count,
            "null_percent": self.null_percent,
            "sample_values": list(self.sample_values),
            "is_enum_candidate": self.is_enum_candidate,
            "value_fingerprint": self.value_fingerprint,
            "scanned_at": format_datetime(self.scanned_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ColumnScanData":
        return cls(
            row_count=data.get("row_count", 0),
            non_null_count=data.get("non_null_count", 0),
            distinct_count=data.get("distinct_count", 0),
            null_percent=data.get("null_percent", 0.0),
            sample_values=list(data.get("sample_values", [])),
            is_enum_candidate=data.get("is_enum_candidate", False),
            value_fingerprint=data.get("value_fingerprint", ""),
            scanned_at=parse_datetime(data.get("scanned_at")) or utc_now(),
        )


@dataclass
class WorkflowStateData:
    gathered: Dict[str, Any] = field(default_factory=dict)
    llm_analysis: Dict[str, Any] = field(default_factory=dict)
    questions: List[WorkflowQuestion] = field(default_factory=list)
    answers: List[WorkflowAnswer] = field(default_factory=list)

    def find_question(self, question_id: str) -> Optional[WorkflowQuestion]:
        for question in self.questions:
            if question.id == question_id:
                return question
        return None

    def has_pending_required(self) -> bool:
        return any(q.is_required and q.is_pending() for q in self.questions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gathered": self.gathered,
            "llm_analysis": self.llm_analysis,
            "questions": [q.to_dict() for q in self.questions],
            "answers": [a.to_dict() for a in self.answers],
        }


@dataclass
class WorkflowEntityState:
    project_id: str
    workflow_id: str
    entity_type: WorkflowEntityType
    entity_key: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    ontology_id: Optional[str] = None
    status: WorkflowEntityStatus = WorkflowEntityStatus.PENDING
    state_data: WorkflowStateData = field(default_factory=WorkflowStateData)
    data_fingerprint: Optional[str] = None
    last_error: Optional[str] = None
    retry_count: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def table_name(self) -> str:
        if self.entity_type == WorkflowEntityType.GLOBAL:
            return ""
        return self.entity_key.split(".", 1)[0]

    @property
    def column_name(self) -> str:
        if self.entity_type != WorkflowEntityType.COLUMN:
            return ""
        parts = self.entity_key.split(".", 1)
        return parts[1] if len(parts) == 2 else ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "ontology_id": self.ontology_id,
            "workflow_id": self.workflow_id,
            "entity_type": self.entity_type.value,
            "entity_key": self.entity_key,
            "status": self.status.value,
            "state_data": self.state_data.to_dict(),
            "data_fingerprint": self.data_fingerprint,
            "last_error": self.last_error,
            "retry_count": self.retry_count,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
        }
