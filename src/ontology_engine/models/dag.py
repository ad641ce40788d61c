"""
DAG models for the ontology extraction run

One OntologyDAG exists per (project, datasource) extraction run. Its nodes form a
strict total order; "DAG" is kept as the name the rest of the system uses.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.clock import format_datetime, parse_datetime, utc_now


class DAGStatus(str, Enum):
    """Overall status of an extraction run"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (DAGStatus.COMPLETED, DAGStatus.FAILED, DAGStatus.CANCELLED)

    @property
    def is_active(self) -> bool:
        return self in (DAGStatus.PENDING, DAGStatus.RUNNING)


class DAGNodeStatus(str, Enum):
    """Status of a single stage"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_done(self) -> bool:
        return self in (DAGNodeStatus.COMPLETED, DAGNodeStatus.SKIPPED)


class DAGNodeName(str, Enum):
    """The nine extraction stages"""
    ENTITY_DISCOVERY = "EntityDiscovery"
    ENTITY_ENRICHMENT = "EntityEnrichment"
    FK_DISCOVERY = "FKDiscovery"
    COLUMN_ENRICHMENT = "ColumnEnrichment"
    PK_MATCH_DISCOVERY = "PKMatchDiscovery"
    RELATIONSHIP_ENRICHMENT = "RelationshipEnrichment"
    ONTOLOGY_FINALIZATION = "OntologyFinalization"
    GLOSSARY_DISCOVERY = "GlossaryDiscovery"
    GLOSSARY_ENRICHMENT = "GlossaryEnrichment"


NODE_ORDER: Dict[DAGNodeName, int] = {
    DAGNodeName.ENTITY_DISCOVERY: 1,
    DAGNodeName.ENTITY_ENRICHMENT: 2,
    DAGNodeName.FK_DISCOVERY: 3,
    DAGNodeName.COLUMN_ENRICHMENT: 4,
    DAGNodeName.PK_MATCH_DISCOVERY: 5,
    DAGNodeName.RELATIONSHIP_ENRICHMENT: 6,
    DAGNodeName.ONTOLOGY_FINALIZATION: 7,
    DAGNodeName.GLOSSARY_DISCOVERY: 8,
    DAGNodeName.GLOSSARY_ENRICHMENT: 9,
}


def all_node_names() -> List[DAGNodeName]:
    """Stage names sorted by execution order"""
    return sorted(NODE_ORDER, key=lambda n: NODE_ORDER[n])


@dataclass
class DAGNodeProgress:
    """Progress within a running node"""
    current: int = 0
    total: int = 0
    message: str = ""

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 0.0
        return min(100.0, self.current * 100.0 / self.total)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current": self.current,
            "total": self.total,
            "message": self.message,
            "percentage": round(self.percentage, 1),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DAGNodeProgress":
        data = data or {}
        return cls(
            current=data.get("current", 0),
            total=data.get("total", 0),
            message=data.get("message", ""),
        )


@dataclass
class DAGNode:
    """One stage of the extraction run"""
    dag_id: str
    node_name: DAGNodeName
    node_order: int
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: DAGNodeStatus = DAGNodeStatus.PENDING
    progress: DAGNodeProgress = field(default_factory=DAGNodeProgress)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    retry_count: int = 0
    error_message: Optional[str] = None
    # Schema fingerprint in force when the node last completed
    completed_fingerprint: Optional[str] = None

    def reset(self) -> None:
        """Return the node to pending so it runs again"""
        self.status = DAGNodeStatus.PENDING
        self.progress = DAGNodeProgress()
        self.started_at = None
        self.completed_at = None
        self.duration_ms = None
        self.retry_count = 0
        self.error_message = None
        self.completed_fingerprint = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "dag_id": self.dag_id,
            "node_name": self.node_name.value,
            "node_order": self.node_order,
            "status": self.status.value,
            "progress": self.progress.to_dict(),
            "started_at": format_datetime(self.started_at),
            "completed_at": format_datetime(self.completed_at),
            "duration_ms": self.duration_ms,
            "retry_count": self.retry_count,
            "error_message": self.error_message,
            "completed_fingerprint": self.completed_fingerprint,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DAGNode":
        return cls(
            id=data["id"],
            dag_id=data["dag_id"],
            node_name=DAGNodeName(data["node_name"]),
            node_order=data["node_order"],
            status=DAGNodeStatus(data.get("status", "pending")),
            progress=DAGNodeProgress.from_dict(data.get("progress")),
            started_at=parse_datetime(data.get("started_at")),
            completed_at=parse_datetime(data.get("completed_at")),
            duration_ms=data.get("duration_ms"),
            retry_count=data.get("retry_count", 0),
            error_message=data.get("error_message"),
            completed_fingerprint=data.get("completed_fingerprint"),
        )


@dataclass
class OntologyDAG:
    """
    One extraction run for a (project, datasource) pair

    owner_id and last_heartbeat form the leadership lease. The lease is only
    changed through the persistence collaborator's compare-and-swap.
    cancel_requested is set by an instance that does not hold the lease; the
    owner polls it and stops at the next node boundary.
    """
    project_id: str
    datasource_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    ontology_id: Optional[str] = None
    status: DAGStatus = DAGStatus.PENDING
    current_node: Optional[DAGNodeName] = None
    schema_fingerprint: Optional[str] = None
    owner_id: Optional[str] = None
    last_heartbeat: Optional[datetime] = None
    cancel_requested: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    nodes: List[DAGNode] = field(default_factory=list)

    @classmethod
    def create(cls, project_id: str, datasource_id: str,
               schema_fingerprint: Optional[str] = None) -> "OntologyDAG":
        """New DAG with all nine nodes pending"""
        dag = cls(project_id=project_id, datasource_id=datasource_id,
                  schema_fingerprint=schema_fingerprint)
        dag.nodes = [
            DAGNode(dag_id=dag.id, node_name=name, node_order=NODE_ORDER[name])
            for name in all_node_names()
        ]
        return dag

    def get_node(self, name: DAGNodeName) -> Optional[DAGNode]:
        for node in self.nodes:
            if node.node_name == name:
                return node
        return None

    def ordered_nodes(self) -> List[DAGNode]:
        return sorted(self.nodes, key=lambda n: n.node_order)

    def next_runnable_node(self) -> Optional[DAGNode]:
        """First node that is not completed or skipped"""
        for node in self.ordered_nodes():
            if not node.status.is_done:
                return node
        return None

    def can_start_node(self, node: DAGNode) -> bool:
        """A node may run only once every lower-order node is completed or skipped"""
        return all(
            other.status.is_done
            for other in self.nodes
            if other.node_order < node.node_order
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "datasource_id": self.datasource_id,
            "ontology_id": self.ontology_id,
            "status": self.status.value,
            "current_node": self.current_node.value if self.current_node else None,
            "schema_fingerprint": self.schema_fingerprint,
            "owner_id": self.owner_id,
            "last_heartbeat": format_datetime(self.last_heartbeat),
            "cancel_requested": self.cancel_requested,
            "started_at": format_datetime(self.started_at),
            "completed_at": format_datetime(self.completed_at),
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
            "nodes": [n.to_dict() for n in self.ordered_nodes()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OntologyDAG":
        current = data.get("current_node")
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            datasource_id=data["datasource_id"],
            ontology_id=data.get("ontology_id"),
            status=DAGStatus(data.get("status", "pending")),
            current_node=DAGNodeName(current) if current else None,
            schema_fingerprint=data.get("schema_fingerprint"),
            owner_id=data.get("owner_id"),
            last_heartbeat=parse_datetime(data.get("last_heartbeat")),
            cancel_requested=bool(data.get("cancel_requested", False)),
            started_at=parse_datetime(data.get("started_at")),
            completed_at=parse_datetime(data.get("completed_at")),
            created_at=parse_datetime(data.get("created_at")) or utc_now(),
            updated_at=parse_datetime(data.get("updated_at")) or utc_now(),
            nodes=[DAGNode.from_dict(n) for n in data.get("nodes", [])],
        )
