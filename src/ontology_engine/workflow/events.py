"""
Events produced by answering a clarification question

The tracker applies each event to the entity it names. Keeping cascades as data
lets one answer touch several entities and still leave a single audit record.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict

from ..models import WorkflowEntityType, WorkflowQuestion


@dataclass
class WorkflowEvent:
    """Base class; entity_type/entity_key address the entity the event applies to"""
    entity_type: WorkflowEntityType
    entity_key: str

    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass
class GatheredDataChanged(WorkflowEvent):
    """Merge ``updates`` into the entity's gathered data, re-opening it if complete"""
    updates: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FollowUpQuestionRaised(WorkflowEvent):
    """Attach a follow-up to the entity; parent linkage is set by the tracker"""
    question: WorkflowQuestion = field(default_factory=lambda: WorkflowQuestion(text=""))


@dataclass
class KnowledgeFactRecorded(WorkflowEvent):
    """A durable fact learned from the answer, stored with the audit diff"""
    fact: str = ""
