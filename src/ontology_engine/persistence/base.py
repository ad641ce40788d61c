"""
Persistence Collaborator Contracts

Repository interfaces for every record the engine stores. Implementations must
make lease claims atomic (compare-and-swap) and treat saves as idempotent upserts.
Reads return detached copies; callers persist changes through an explicit save.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..models import (
    ColumnMetadata,
    DAGNode,
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


class DAGRepository(ABC):
    """Extraction runs and their nodes"""

    @abstractmethod
    def create_dag(self, dag: OntologyDAG) -> OntologyDAG:
        pass

    @abstractmethod
    def get_dag(self, dag_id: str) -> Optional[OntologyDAG]:
        pass

    @abstractmethod
    def get_latest_dag(self, project_id: str, datasource_id: str) -> Optional[OntologyDAG]:
        pass

    @abstractmethod
    def list_dags(self, project_id: str) -> List[OntologyDAG]:
        pass

    @abstractmethod
    def update_dag(self, dag: OntologyDAG, owner_id: Optional[str] = None) -> None:
        """
        Persist DAG-level fields and every node. Lease fields are left untouched
        and a stored cancel request is never cleared. When ``owner_id`` is given
        the write is refused with LeaseError unless that instance holds the lease.
        """
        pass

    @abstractmethod
    def update_node(self, dag_id: str, node: DAGNode, owner_id: Optional[str] = None) -> None:
        """Persist one node; guarded by ``owner_id`` like update_dag"""
        pass

    @abstractmethod
    def request_dag_cancel(self, dag_id: str) -> OntologyDAG:
        """
        Record a cancel request from any instance. An unowned non-terminal DAG
        is cancelled immediately; an owned one gets cancel_requested set for
        its owner to act on. Returns the stored DAG after the change.
        """
        pass

    @abstractmethod
    def claim_dag_lease(self, dag_id: str, owner_id: str, stale_seconds: float) -> bool:
        """
        Atomically take ownership when the DAG is unowned, already owned by
        ``owner_id``, or its last heartbeat is older than ``stale_seconds``
        """
        pass

    @abstractmethod
    def heartbeat_dag(self, dag_id: str, owner_id: str) -> bool:
        """Refresh last_heartbeat; False when ``owner_id`` no longer holds the lease"""
        pass

    @abstractmethod
    def release_dag_lease(self, dag_id: str, owner_id: str) -> None:
        pass

    @abstractmethod
    def delete_dags(self, project_id: str) -> int:
        pass


class WorkflowRepository(ABC):
    """Workflow-level records"""

    @abstractmethod
    def save_workflow(self, workflow: OntologyWorkflow) -> None:
        pass

    @abstractmethod
    def get_workflow(self, workflow_id: str) -> Optional[OntologyWorkflow]:
        pass

    @abstractmethod
    def get_latest_workflow(self, project_id: str, datasource_id: str,
                            phase: WorkflowPhase) -> Optional[OntologyWorkflow]:
        pass

    @abstractmethod
    def claim_workflow_lease(self, workflow_id: str, owner_id: str, stale_seconds: float) -> bool:
        pass

    @abstractmethod
    def heartbeat_workflow(self, workflow_id: str, owner_id: str) -> bool:
        pass

    @abstractmethod
    def delete_workflows(self, project_id: str) -> int:
        pass


class EntityStateRepository(ABC):
    """Ephemeral per-entity workflow state plus the retained answer audit trail"""

    @abstractmethod
    def upsert_entity_state(self, state: WorkflowEntityState) -> None:
        pass

    @abstractmethod
    def get_entity_state(self, workflow_id: str, entity_type: WorkflowEntityType,
                         entity_key: str) -> Optional[WorkflowEntityState]:
        pass

    @abstractmethod
    def list_entity_states(self, workflow_id: str,
                           entity_type: Optional[WorkflowEntityType] = None,
                           status: Optional[WorkflowEntityStatus] = None) -> List[WorkflowEntityState]:
        pass

    @abstractmethod
    def delete_entity_states(self, workflow_id: str) -> int:
        pass

    @abstractmethod
    def append_audit(self, workflow_id: str, record: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def list_audit(self, workflow_id: str) -> List[Dict[str, Any]]:
        pass


class CandidateRepository(ABC):
    """Relationship candidates, scoped by datasource"""

    @abstractmethod
    def upsert_candidate(self, candidate: RelationshipCandidate) -> None:
        pass

    @abstractmethod
    def get_candidate(self, candidate_id: str) -> Optional[RelationshipCandidate]:
        pass

    @abstractmethod
    def find_candidate(self, datasource_id: str, source_table: str, source_column: str,
                       target_table: str, target_column: str) -> Optional[RelationshipCandidate]:
        pass

    @abstractmethod
    def list_candidates(self, datasource_id: str,
                        workflow_id: Optional[str] = None) -> List[RelationshipCandidate]:
        pass

    @abstractmethod
    def delete_candidates(self, datasource_id: str, keep_user_decided: bool = False) -> int:
        pass


class ColumnMetadataRepository(ABC):

    @abstractmethod
    def get_column_metadata(self, project_id: str, table_name: str,
                            column_name: str) -> Optional[ColumnMetadata]:
        pass

    @abstractmethod
    def upsert_column_metadata(self, metadata: ColumnMetadata) -> None:
        pass

    @abstractmethod
    def list_column_metadata(self, project_id: str,
                             table_name: Optional[str] = None) -> List[ColumnMetadata]:
        pass


class EntityRepository(ABC):
    """Domain entities and their occurrences"""

    @abstractmethod
    def save_entity(self, entity: OntologyEntity) -> None:
        pass

    @abstractmethod
    def get_entity_by_name(self, project_id: str, name: str) -> Optional[OntologyEntity]:
        pass

    @abstractmethod
    def list_entities(self, project_id: str, include_deleted: bool = False) -> List[OntologyEntity]:
        pass

    @abstractmethod
    def save_occurrence(self, occurrence: OntologyEntityOccurrence) -> None:
        pass

    @abstractmethod
    def list_occurrences(self, entity_id: str) -> List[OntologyEntityOccurrence]:
        pass

    @abstractmethod
    def mark_inference_entities_stale(self, project_id: str) -> int:
        pass

    @abstractmethod
    def delete_inference_entities(self, project_id: str) -> int:
        """Remove inference-sourced entities and their occurrences; others survive"""
        pass


class OntologyRepository(ABC):

    @abstractmethod
    def save_ontology(self, ontology: Ontology) -> None:
        """Store ``ontology`` as the active version, deactivating earlier ones"""
        pass

    @abstractmethod
    def get_active_ontology(self, project_id: str) -> Optional[Ontology]:
        pass

    @abstractmethod
    def delete_ontologies(self, project_id: str) -> int:
        pass


class ConversationRepository(ABC):

    @abstractmethod
    def save_conversation(self, conversation: LLMConversation) -> None:
        pass

    @abstractmethod
    def list_conversations(self, project_id: str) -> List[LLMConversation]:
        pass


class OntologyStore(
    DAGRepository,
    WorkflowRepository,
    EntityStateRepository,
    CandidateRepository,
    ColumnMetadataRepository,
    EntityRepository,
    OntologyRepository,
    ConversationRepository,
):
    """Everything the engine persists, behind a single collaborator"""
