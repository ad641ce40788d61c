"""
Finalized ontology and model conversation records
"""
from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import yaml

from ..utils.clock import format_datetime, utc_now


@dataclass
class GlossaryTerm:
    """A business term and the entities or columns it refers to"""
    term: str
    definition: str = ""
    aliases: List[str] = field(default_factory=list)
    related_entities: List[str] = field(default_factory=list)
    related_columns: List[str] = field(default_factory=list)
    confidence: float = 0.5

    def to_dict(self) -> Dict[str, Any]:
        return {
            "term": self.term,
            "definition": self.definition,
            "aliases": list(self.aliases),
            "related_entities": list(self.related_entities),
            "related_columns": list(self.related_columns),
            "confidence": self.confidence,
        }


@dataclass
class Ontology:
    """
    Hierarchical summary consumed by downstream query tools

    Tier 0 is the domain summary, tier 1 the per-entity summaries and tier 2 the
    per-column details keyed by table.
    """
    project_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    version: int = 1
    is_active: bool = True
    domain_summary: Dict[str, Any] = field(default_factory=dict)
    entity_summaries: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    column_details: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    relationships: List[Dict[str, Any]] = field(default_factory=list)
    glossary: List[GlossaryTerm] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def find_term(self, term: str) -> Optional[GlossaryTerm]:
        lowered = term.lower()
        for entry in self.glossary:
            if entry.term.lower() == lowered or lowered in (a.lower() for a in entry.aliases):
                return entry
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "version": self.version,
            "is_active": self.is_active,
            "domain_summary": self.domain_summary,
            "entity_summaries": self.entity_summaries,
            "column_details": self.column_details,
            "relationships": self.relationships,
            "glossary": [g.to_dict() for g in self.glossary],
            "metadata": self.metadata,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
        }

    def to_json(self, indent: int = 2) -> str:
        """Export as JSON"""
        return json.dumps(self.to_dict(), indent=indent, default=str)

    def to_yaml(self) -> str:
        """Export as YAML"""
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False)

    def save(self, path: str) -> None:
        """Save to file (JSON or YAML based on extension)"""
        with open(path, "w") as f:
            if path.endswith((".yaml", ".yml")):
                f.write(self.to_yaml())
            else:
                f.write(self.to_json())


@dataclass
class LLMConversation:
    """Verbatim record of one model call"""
    project_id: str
    purpose: str
    prompt: str
    model: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    system_prompt: str = ""
    response: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    duration_ms: int = 0
    status: str = "success"
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "purpose": self.purpose,
            "prompt": self.prompt,
            "system_prompt": self.system_prompt,
            "response": self.response,
            "model": self.model,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "duration_ms": self.duration_ms,
            "status": self.status,
            "error_message": self.error_message,
            "created_at": format_datetime(self.created_at),
        }
