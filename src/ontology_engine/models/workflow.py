"""
Workflow-level models: the coarse state machine wrapping a whole run and its task queue
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from ..utils.clock import format_datetime, parse_datetime, utc_now
from ..utils.errors import InvalidTransitionError


class WorkflowState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    AWAITING_INPUT = "awaiting_input"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowState.COMPLETED, WorkflowState.FAILED)

    def can_transition_to(self, target: "WorkflowState") -> bool:
        return target in _WORKFLOW_TRANSITIONS.get(self, frozenset())


_WORKFLOW_TRANSITIONS: Dict[WorkflowState, FrozenSet[WorkflowState]] = {
    WorkflowState.PENDING: frozenset({WorkflowState.RUNNING, WorkflowState.FAILED}),
    WorkflowState.RUNNING: frozenset({
        WorkflowState.PAUSED,
        WorkflowState.AWAITING_INPUT,
        WorkflowState.COMPLETED,
        WorkflowState.FAILED,
    }),
    WorkflowState.PAUSED: frozenset({WorkflowState.RUNNING, WorkflowState.FAILED}),
    WorkflowState.AWAITING_INPUT: frozenset({
        WorkflowState.RUNNING,
        WorkflowState.COMPLETED,
        WorkflowState.FAILED,
    }),
    # Explicit restart only
    WorkflowState.COMPLETED: frozenset({WorkflowState.PENDING}),
    WorkflowState.FAILED: frozenset({WorkflowState.PENDING}),
}


class WorkflowPhase(str, Enum):
    """Which kind of work a workflow drives"""
    RELATIONSHIPS = "relationships"
    ONTOLOGY = "ontology"


class TaskType(str, Enum):
    PROFILE_TABLE = "profile_table"
    UNDERSTAND_SCHEMA = "understand_schema"
    BUILD_TIER0_AND_TIER1 = "build_tier0_and_tier1"
    GENERATE_QUESTIONS = "generate_questions"
    SCAN_COLUMN = "scan_column"
    MATCH_VALUES = "match_values"
    INFER_NAMES = "infer_names"
    TEST_JOIN = "test_join"


class TaskStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"
    PAUSED = "paused"


@dataclass
class WorkflowTask:
    """A named unit of work in the task queue"""
    name: str
    task_type: TaskType
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: TaskStatus = TaskStatus.QUEUED
    retry_count: int = 0
    error: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    result: Any = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "task_type": self.task_type.value,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "error": self.error,
            "payload": self.payload,
            "started_at": format_datetime(self.started_at),
            "completed_at": format_datetime(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowTask":
        return cls(
            id=data["id"],
            name=data["name"],
            task_type=TaskType(data["task_type"]),
            status=TaskStatus(data.get("status", "queued")),
            retry_count=data.get("retry_count", 0),
            error=data.get("error"),
            payload=data.get("payload", {}),
            started_at=parse_datetime(data.get("started_at")),
            completed_at=parse_datetime(data.get("completed_at")),
        )


@dataclass
class WorkflowProgress:
    current_phase: str = ""
    current: int = 0
    total: int = 0
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_phase": self.current_phase,
            "current": self.current,
            "total": self.total,
            "message": self.message,
        }


@dataclass
class OntologyWorkflow:
    """Workflow-level record for one run against a datasource"""
    project_id: str
    datasource_id: str
    phase: WorkflowPhase = WorkflowPhase.RELATIONSHIPS
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: WorkflowState = WorkflowState.PENDING
    progress: WorkflowProgress = field(default_factory=WorkflowProgress)
    task_queue: List[WorkflowTask] = field(default_factory=list)
    config: Dict[str, Any] = field(default_factory=lambda: {"max_tables_per_batch": 20})
    error: Optional[str] = None
    owner_id: Optional[str] = None
    last_heartbeat: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def transition_to(self, target: WorkflowState) -> None:
        """Apply a state change, raising InvalidTransitionError when not allowed"""
        if not self.state.can_transition_to(target):
            raise InvalidTransitionError(self.state.value, target.value, subject="workflow")
        self.state = target
        self.updated_at = utc_now()
        if target == WorkflowState.RUNNING and self.started_at is None:
            self.started_at = self.updated_at
        if target.is_terminal:
            self.completed_at = self.updated_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "datasource_id": self.datasource_id,
            "phase": self.phase.value,
            "state": self.state.value,
            "progress": self.progress.to_dict(),
            "task_queue": [t.to_dict() for t in self.task_queue],
            "config": self.config,
            "error": self.error,
            "owner_id": self.owner_id,
            "started_at": format_datetime(self.started_at),
            "completed_at": format_datetime(self.completed_at),
        }
