"""
Workflow Package
Per-entity state tracking, answer cascades and the batched task queue
"""
from .events import (
    WorkflowEvent,
    GatheredDataChanged,
    FollowUpQuestionRaised,
    KnowledgeFactRecorded,
)
from .tracker import EntityStateTracker
from .task_queue import TaskQueue

__all__ = [
    "WorkflowEvent",
    "GatheredDataChanged",
    "FollowUpQuestionRaised",
    "KnowledgeFactRecorded",
    "EntityStateTracker",
    "TaskQueue",
]
