"""
Persisted column metadata with field-level provenance

Each field remembers the source of its last edit. A merge never lowers a field's
source: inference cannot overwrite a field last set by mcp or manual, and mcp
cannot overwrite a manual field.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.clock import format_datetime, utc_now
from .column_features import ColumnFeatures


class ProvenanceSource(str, Enum):
    INFERENCE = "inference"
    MCP = "mcp"
    MANUAL = "manual"

    @property
    def rank(self) -> int:
        return _PROVENANCE_RANK[self]

    def can_overwrite(self, existing: Optional["ProvenanceSource"]) -> bool:
        return existing is None or self.rank >= existing.rank


_PROVENANCE_RANK = {
    ProvenanceSource.INFERENCE: 0,
    ProvenanceSource.MCP: 1,
    ProvenanceSource.MANUAL: 2,
}

MERGEABLE_FIELDS = (
    "description",
    "purpose",
    "semantic_type",
    "role",
    "classification_path",
    "features",
    "is_sensitive",
)


@dataclass
class ColumnMetadata:
    project_id: str
    table_name: str
    column_name: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    description: Optional[str] = None
    purpose: Optional[str] = None
    semantic_type: Optional[str] = None
    role: Optional[str] = None
    classification_path: Optional[str] = None
    features: Optional[Dict[str, Any]] = None
    is_sensitive: Optional[bool] = None
    confidence: float = 0.0
    field_sources: Dict[str, ProvenanceSource] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> str:
        return f"{self.table_name}.{self.column_name}"

    def source_of(self, field_name: str) -> Optional[ProvenanceSource]:
        return self.field_sources.get(field_name)

    def merge(self, values: Dict[str, Any], source: ProvenanceSource) -> List[str]:
        """
        Apply ``values`` field by field; returns the names of fields that changed.

        None values are ignored. Fields whose recorded source outranks ``source``
        are left verbatim.
        """
        changed: List[str] = []
        for name, value in values.items():
            if name not in MERGEABLE_FIELDS:
                raise KeyError(f"not a mergeable column metadata field: {name}")
            if value is None:
                continue
            if not source.can_overwrite(self.source_of(name)):
                continue
            if getattr(self, name) != value or self.source_of(name) != source:
                setattr(self, name, value)
                self.field_sources[name] = source
                changed.append(name)
        if changed:
            self.updated_at = utc_now()
        return changed

    def merge_features(self, features: ColumnFeatures,
                       source: ProvenanceSource = ProvenanceSource.INFERENCE) -> List[str]:
        """Fold a classification result into this record"""
        stored = features.to_dict()
        payload = {
            k: stored[k] for k in (
                "timestamp_features", "boolean_features", "enum_features",
                "identifier_features", "monetary_features",
            ) if stored.get(k) is not None
        }
        changed = self.merge({
            "description": features.description or None,
            "purpose": features.purpose or None,
            "semantic_type": features.semantic_type or None,
            "role": features.role or None,
            "classification_path": features.classification_path.value,
            "features": payload or None,
        }, source)
        if "description" in changed or "semantic_type" in changed or not self.confidence:
            self.confidence = features.confidence
        return changed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "table_name": self.table_name,
            "column_name": self.column_name,
            "description": self.description,
            "purpose": self.purpose,
            "semantic_type": self.semantic_type,
            "role": self.role,
            "classification_path": self.classification_path,
            "features": self.features,
            "is_sensitive": self.is_sensitive,
            "confidence": self.confidence,
            "field_sources": {k: v.value for k, v in self.field_sources.items()},
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
        }
