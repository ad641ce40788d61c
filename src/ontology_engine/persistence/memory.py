"""
In-memory persistence collaborator

Thread-safe reference store. Records are deep-copied on the way in and out so
callers never share mutable state with the store; every method runs under a
single lock, which makes lease claims a true compare-and-swap.
"""
from __future__ import annotations

import copy
import threading
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..models import (
    ColumnMetadata,
    DAGNode,
    DAGStatus,
    EntitySource,
    LLMConversation,
    Ontology,
    OntologyDAG,
    OntologyEntity,
    OntologyEntityOccurrence,
    OntologyWorkflow,
    RelationshipCandidate,
    WorkflowEntityState,
    WorkflowEntityStatus,
    WorkflowEntityType,
    WorkflowPhase,
)
from ..utils import LeaseError, NotFoundError, get_logger, utc_now
from .base import OntologyStore

logger = get_logger(__name__)


class InMemoryStore(OntologyStore):
    """Dictionary-backed OntologyStore"""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._lock = threading.RLock()
        self._dags: Dict[str, OntologyDAG] = {}
        self._workflows: Dict[str, OntologyWorkflow] = {}
        self._entity_states: Dict[Tuple[str, str, str], WorkflowEntityState] = {}
        self._audit: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self._candidates: Dict[str, RelationshipCandidate] = {}
        self._column_metadata: Dict[Tuple[str, str, str], ColumnMetadata] = {}
        self._entities: Dict[str, OntologyEntity] = {}
        self._occurrences: Dict[str, OntologyEntityOccurrence] = {}
        self._ontologies: Dict[str, Ontology] = {}
        self._conversations: List[LLMConversation] = []

    # DAGs

    def create_dag(self, dag: OntologyDAG) -> OntologyDAG:
        with self._lock:
            self._dags[dag.id] = copy.deepcopy(dag)
            return copy.deepcopy(dag)

    def get_dag(self, dag_id: str) -> Optional[OntologyDAG]:
        with self._lock:
            dag = self._dags.get(dag_id)
            return copy.deepcopy(dag) if dag else None

    def get_latest_dag(self, project_id: str, datasource_id: str) -> Optional[OntologyDAG]:
        with self._lock:
            matches = [
                d for d in self._dags.values()
                if d.project_id == project_id and d.datasource_id == datasource_id
            ]
            if not matches:
                return None
            return copy.deepcopy(max(matches, key=lambda d: d.created_at))

    def list_dags(self, project_id: str) -> List[OntologyDAG]:
        with self._lock:
            dags = [d for d in self._dags.values() if d.project_id == project_id]
            return [copy.deepcopy(d) for d in sorted(dags, key=lambda d: d.created_at)]

    def update_dag(self, dag: OntologyDAG, owner_id: Optional[str] = None) -> None:
        with self._lock:
            stored = self._require_dag(dag.id)
            self._check_owner(stored, owner_id)
            updated = copy.deepcopy(dag)
            updated.owner_id = stored.owner_id
            updated.last_heartbeat = stored.last_heartbeat
            updated.cancel_requested = stored.cancel_requested or dag.cancel_requested
            updated.updated_at = self._clock()
            self._dags[dag.id] = updated

    def update_node(self, dag_id: str, node: DAGNode, owner_id: Optional[str] = None) -> None:
        with self._lock:
            stored = self._require_dag(dag_id)
            self._check_owner(stored, owner_id)
            for i, existing in enumerate(stored.nodes):
                if existing.id == node.id:
                    stored.nodes[i] = copy.deepcopy(node)
                    stored.updated_at = self._clock()
                    return
            raise NotFoundError(f"node {node.id} not found in DAG {dag_id}")

    def request_dag_cancel(self, dag_id: str) -> OntologyDAG:
        with self._lock:
            dag = self._require_dag(dag_id)
            if dag.status.is_terminal:
                return copy.deepcopy(dag)
            now = self._clock()
            if dag.owner_id is None:
                dag.status = DAGStatus.CANCELLED
                dag.completed_at = now
            else:
                dag.cancel_requested = True
            dag.updated_at = now
            return copy.deepcopy(dag)

    def claim_dag_lease(self, dag_id: str, owner_id: str, stale_seconds: float) -> bool:
        with self._lock:
            return self._claim(self._require_dag(dag_id), owner_id, stale_seconds)

    def heartbeat_dag(self, dag_id: str, owner_id: str) -> bool:
        with self._lock:
            dag = self._dags.get(dag_id)
            if dag is None or dag.owner_id != owner_id:
                return False
            dag.last_heartbeat = self._clock()
            return True

    def release_dag_lease(self, dag_id: str, owner_id: str) -> None:
        with self._lock:
            dag = self._dags.get(dag_id)
            if dag is not None and dag.owner_id == owner_id:
                dag.owner_id = None
                dag.last_heartbeat = None

    def delete_dags(self, project_id: str) -> int:
        with self._lock:
            doomed = [k for k, d in self._dags.items() if d.project_id == project_id]
            for key in doomed:
                del self._dags[key]
            return len(doomed)

    def _require_dag(self, dag_id: str) -> OntologyDAG:
        dag = self._dags.get(dag_id)
        if dag is None:
            raise NotFoundError(f"DAG {dag_id} not found")
        return dag

    @staticmethod
    def _check_owner(record: OntologyDAG, owner_id: Optional[str]) -> None:
        if owner_id is not None and record.owner_id != owner_id:
            raise LeaseError(
                f"DAG {record.id} is owned by {record.owner_id}, not {owner_id}",
                owner_id=record.owner_id,
            )

    def _claim(self, record: Any, owner_id: str, stale_seconds: float) -> bool:
        now = self._clock()
        stale = (
            record.last_heartbeat is None
            or now - record.last_heartbeat > timedelta(seconds=stale_seconds)
        )
        if record.owner_id is None or record.owner_id == owner_id or stale:
            if record.owner_id not in (None, owner_id):
                logger.warning(
                    "Taking over stale lease",
                    extra={"extra_fields": {"record_id": record.id, "previous_owner": record.owner_id}}
                )
            record.owner_id = owner_id
            record.last_heartbeat = now
            return True
        return False

    # Workflows

    def save_workflow(self, workflow: OntologyWorkflow) -> None:
        with self._lock:
            stored = self._workflows.get(workflow.id)
            updated = copy.deepcopy(workflow)
            if stored is not None:
                updated.owner_id = stored.owner_id
                updated.last_heartbeat = stored.last_heartbeat
            updated.updated_at = self._clock()
            self._workflows[workflow.id] = updated

    def get_workflow(self, workflow_id: str) -> Optional[OntologyWorkflow]:
        with self._lock:
            workflow = self._workflows.get(workflow_id)
            return copy.deepcopy(workflow) if workflow else None

    def get_latest_workflow(self, project_id: str, datasource_id: str,
                            phase: WorkflowPhase) -> Optional[OntologyWorkflow]:
        with self._lock:
            matches = [
                w for w in self._workflows.values()
                if w.project_id == project_id and w.datasource_id == datasource_id and w.phase == phase
            ]
            if not matches:
                return None
            return copy.deepcopy(max(matches, key=lambda w: w.created_at))

    def claim_workflow_lease(self, workflow_id: str, owner_id: str, stale_seconds: float) -> bool:
        with self._lock:
            workflow = self._workflows.get(workflow_id)
            if workflow is None:
                raise NotFoundError(f"workflow {workflow_id} not found")
            return self._claim(workflow, owner_id, stale_seconds)

    def heartbeat_workflow(self, workflow_id: str, owner_id: str) -> bool:
        with self._lock:
            workflow = self._workflows.get(workflow_id)
            if workflow is None or workflow.owner_id != owner_id:
                return False
            workflow.last_heartbeat = self._clock()
            return True

    def delete_workflows(self, project_id: str) -> int:
        with self._lock:
            doomed = [k for k, w in self._workflows.items() if w.project_id == project_id]
            for key in doomed:
                self.delete_entity_states(key)
                del self._workflows[key]
            return len(doomed)

    # Entity states

    def upsert_entity_state(self, state: WorkflowEntityState) -> None:
        with self._lock:
            key = (state.workflow_id, state.entity_type.value, state.entity_key)
            stored = copy.deepcopy(state)
            stored.updated_at = self._clock()
            self._entity_states[key] = stored

    def get_entity_state(self, workflow_id: str, entity_type: WorkflowEntityType,
                         entity_key: str) -> Optional[WorkflowEntityState]:
        with self._lock:
            state = self._entity_states.get((workflow_id, entity_type.value, entity_key))
            return copy.deepcopy(state) if state else None

    def list_entity_states(self, workflow_id: str,
                           entity_type: Optional[WorkflowEntityType] = None,
                           status: Optional[WorkflowEntityStatus] = None) -> List[WorkflowEntityState]:
        with self._lock:
            states = [
                s for (wf, _, _), s in self._entity_states.items()
                if wf == workflow_id
                and (entity_type is None or s.entity_type == entity_type)
                and (status is None or s.status == status)
            ]
            return [copy.deepcopy(s) for s in sorted(states, key=lambda s: (s.entity_type.value, s.entity_key))]

    def delete_entity_states(self, workflow_id: str) -> int:
        with self._lock:
            doomed = [k for k in self._entity_states if k[0] == workflow_id]
            for key in doomed:
                del self._entity_states[key]
            return len(doomed)

    def append_audit(self, workflow_id: str, record: Dict[str, Any]) -> None:
        with self._lock:
            self._audit[workflow_id].append(copy.deepcopy(record))

    def list_audit(self, workflow_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._audit.get(workflow_id, []))

    # Candidates

    def upsert_candidate(self, candidate: RelationshipCandidate) -> None:
        with self._lock:
            stored = copy.deepcopy(candidate)
            stored.updated_at = self._clock()
            self._candidates[candidate.id] = stored

    def get_candidate(self, candidate_id: str) -> Optional[RelationshipCandidate]:
        with self._lock:
            candidate = self._candidates.get(candidate_id)
            return copy.deepcopy(candidate) if candidate else None

    def find_candidate(self, datasource_id: str, source_table: str, source_column: str,
                       target_table: str, target_column: str) -> Optional[RelationshipCandidate]:
        with self._lock:
            for c in self._candidates.values():
                if (c.datasource_id == datasource_id
                        and (c.source_table, c.source_column, c.target_table, c.target_column)
                        == (source_table, source_column, target_table, target_column)):
                    return copy.deepcopy(c)
            return None

    def list_candidates(self, datasource_id: str,
                        workflow_id: Optional[str] = None) -> List[RelationshipCandidate]:
        with self._lock:
            matches = [
                c for c in self._candidates.values()
                if c.datasource_id == datasource_id and (workflow_id is None or c.workflow_id == workflow_id)
            ]
            return [copy.deepcopy(c) for c in sorted(matches, key=lambda c: c.pair_key)]

    def delete_candidates(self, datasource_id: str, keep_user_decided: bool = False) -> int:
        with self._lock:
            doomed = [
                k for k, c in self._candidates.items()
                if c.datasource_id == datasource_id and not (keep_user_decided and c.is_user_decided)
            ]
            for key in doomed:
                del self._candidates[key]
            return len(doomed)

    # Column metadata

    def get_column_metadata(self, project_id: str, table_name: str,
                            column_name: str) -> Optional[ColumnMetadata]:
        with self._lock:
            metadata = self._column_metadata.get((project_id, table_name, column_name))
            return copy.deepcopy(metadata) if metadata else None

    def upsert_column_metadata(self, metadata: ColumnMetadata) -> None:
        with self._lock:
            key = (metadata.project_id, metadata.table_name, metadata.column_name)
            self._column_metadata[key] = copy.deepcopy(metadata)

    def list_column_metadata(self, project_id: str,
                             table_name: Optional[str] = None) -> List[ColumnMetadata]:
        with self._lock:
            matches = [
                m for (p, t, _), m in self._column_metadata.items()
                if p == project_id and (table_name is None or t == table_name)
            ]
            return [copy.deepcopy(m) for m in sorted(matches, key=lambda m: m.key)]

    # Entities

    def save_entity(self, entity: OntologyEntity) -> None:
        with self._lock:
            stored = copy.deepcopy(entity)
            stored.updated_at = self._clock()
            self._entities[entity.id] = stored

    def get_entity_by_name(self, project_id: str, name: str) -> Optional[OntologyEntity]:
        with self._lock:
            lowered = name.lower()
            for entity in self._entities.values():
                if entity.project_id == project_id and entity.name.lower() == lowered:
                    return copy.deepcopy(entity)
            return None

    def list_entities(self, project_id: str, include_deleted: bool = False) -> List[OntologyEntity]:
        with self._lock:
            matches = [
                e for e in self._entities.values()
                if e.project_id == project_id and (include_deleted or not e.is_deleted)
            ]
            return [copy.deepcopy(e) for e in sorted(matches, key=lambda e: e.name)]

    def save_occurrence(self, occurrence: OntologyEntityOccurrence) -> None:
        with self._lock:
            for existing in self._occurrences.values():
                if (existing.entity_id == occurrence.entity_id
                        and existing.location == occurrence.location
                        and existing.id != occurrence.id):
                    occurrence = copy.deepcopy(occurrence)
                    occurrence.id = existing.id
                    break
            self._occurrences[occurrence.id] = copy.deepcopy(occurrence)

    def list_occurrences(self, entity_id: str) -> List[OntologyEntityOccurrence]:
        with self._lock:
            matches = [o for o in self._occurrences.values() if o.entity_id == entity_id]
            return [copy.deepcopy(o) for o in sorted(matches, key=lambda o: o.location)]

    def mark_inference_entities_stale(self, project_id: str) -> int:
        with self._lock:
            count = 0
            for entity in self._entities.values():
                if entity.project_id == project_id and entity.source == EntitySource.INFERENCE:
                    entity.is_stale = True
                    count += 1
            return count

    def delete_inference_entities(self, project_id: str) -> int:
        with self._lock:
            doomed = {
                k for k, e in self._entities.items()
                if e.project_id == project_id and e.source == EntitySource.INFERENCE
            }
            for key in doomed:
                del self._entities[key]
            for key in [k for k, o in self._occurrences.items() if o.entity_id in doomed]:
                del self._occurrences[key]
            return len(doomed)

    # Ontologies

    def save_ontology(self, ontology: Ontology) -> None:
        with self._lock:
            versions = [o for o in self._ontologies.values() if o.project_id == ontology.project_id]
            stored = copy.deepcopy(ontology)
            if ontology.id not in self._ontologies:
                stored.version = max((o.version for o in versions), default=0) + 1
            for other in versions:
                if other.id != ontology.id:
                    other.is_active = False
            stored.is_active = True
            stored.updated_at = self._clock()
            self._ontologies[ontology.id] = stored

    def get_active_ontology(self, project_id: str) -> Optional[Ontology]:
        with self._lock:
            for ontology in self._ontologies.values():
                if ontology.project_id == project_id and ontology.is_active:
                    return copy.deepcopy(ontology)
            return None

    def delete_ontologies(self, project_id: str) -> int:
        with self._lock:
            doomed = [k for k, o in self._ontologies.items() if o.project_id == project_id]
            for key in doomed:
                del self._ontologies[key]
            return len(doomed)

    # Conversations

    def save_conversation(self, conversation: LLMConversation) -> None:
        with self._lock:
            self._conversations.append(copy.deepcopy(conversation))

    def list_conversations(self, project_id: str) -> List[LLMConversation]:
        with self._lock:
            return [copy.deepcopy(c) for c in self._conversations if c.project_id == project_id]
