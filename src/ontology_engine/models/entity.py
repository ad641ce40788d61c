"""
Discovered domain entities and where they occur in the schema
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.clock import format_datetime, utc_now


class EntitySource(str, Enum):
    INFERENCE = "inference"
    MCP = "mcp"
    MANUAL = "manual"


@dataclass
class OntologyEntityOccurrence:
    entity_id: str
    table_name: str
    column_name: str
    schema_name: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    role: Optional[str] = None
    confidence: float = 1.0
    created_at: datetime = field(default_factory=utc_now)

    @property
    def location(self) -> str:
        parts = [self.schema_name, self.table_name, self.column_name]
        return ".".join(p for p in parts if p)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "schema_name": self.schema_name,
            "table_name": self.table_name,
            "column_name": self.column_name,
            "role": self.role,
            "confidence": self.confidence,
        }


@dataclass
class OntologyEntity:
    """A business concept such as "user", soft-deletable with a reason"""
    project_id: str
    name: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    ontology_id: Optional[str] = None
    description: str = ""
    primary_table: str = ""
    primary_column: str = ""
    aliases: List[str] = field(default_factory=list)
    source: EntitySource = EntitySource.INFERENCE
    confidence: float = 0.5
    is_deleted: bool = False
    deletion_reason: Optional[str] = None
    is_stale: bool = False
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def soft_delete(self, reason: str) -> None:
        self.is_deleted = True
        self.deletion_reason = reason
        self.updated_at = utc_now()

    def restore(self) -> None:
        self.is_deleted = False
        self.deletion_reason = None
        self.updated_at = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "ontology_id": self.ontology_id,
            "name": self.name,
            "description": self.description,
            "primary_table": self.primary_table,
            "primary_column": self.primary_column,
            "aliases": list(self.aliases),
            "source": self.source.value,
            "confidence": self.confidence,
            "is_deleted": self.is_deleted,
            "deletion_reason": self.deletion_reason,
            "is_stale": self.is_stale,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
        }


@dataclass
class EntityWithOccurrences:
    entity: OntologyEntity
    occurrences: List[OntologyEntityOccurrence] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity.to_dict(),
            "occurrences": [o.to_dict() for o in self.occurrences],
        }
