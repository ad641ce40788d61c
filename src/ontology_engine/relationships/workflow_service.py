"""
Relationship Workflow Service

Drives relationship detection for a datasource as an OntologyWorkflow:

1. Collect column statistics   one scan_column task per column
2. Match values                sampled overlap between identifier columns and keys
3. Infer names                 naming-convention candidates
4. Test joins                  one test_join task per candidate
5. Analyze                     rejection and review policies, optional model validation
6. Finalize                    workflow completed, ephemeral entity state dropped

Candidates needing review are decided by a person through
update_candidate_decision; save_relationships then materializes entities and
occurrences for everything accepted.
"""
from __future__ import annotations

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from ..adapters.base import BaseDatabaseAdapter, DatabaseSchema
from ..config import SystemConfig
from ..llm_client.structured import StructuredModelClient
from ..models import (
    CandidateStatus,
    ColumnScanData,
    EntitySource,
    EntityWithOccurrences,
    Ontology,
    OntologyEntity,
    OntologyEntityOccurrence,
    OntologyWorkflow,
    RelationshipCandidate,
    TaskType,
    WorkflowEntityStatus,
    WorkflowEntityType,
    WorkflowPhase,
    WorkflowProgress,
    WorkflowQuestion,
    WorkflowState,
    WorkflowTask,
    column_entity_key,
    global_entity_key,
)
from ..persistence.base import EntityRepository, OntologyStore
from ..utils import (
    Heartbeat,
    LeaseError,
    NotFoundError,
    OntologyEngineError,
    RetryPolicy,
    ValidationError,
    get_logger,
    get_metrics_collector,
    log_context,
    log_operation,
)
from ..workflow import EntityStateTracker, TaskQueue
from .candidates import merge_signals
from .discovery import RelationshipDiscoveryEngine, scan_column
from .naming import entity_name_for_table
from .review import apply_user_decision
from .validator import JoinTestResult

logger = get_logger(__name__)

CANCELLED_MESSAGE = "cancelled by user"


@dataclass
class WorkflowStatus:
    """Workflow record plus the counts a reviewer needs"""
    workflow: OntologyWorkflow
    confirmed_count: int = 0
    needs_review_count: int = 0
    rejected_count: int = 0
    entity_count: int = 0
    occurrence_count: int = 0
    island_count: int = 0
    can_save: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow": self.workflow.to_dict(),
            "confirmed_count": self.confirmed_count,
            "needs_review_count": self.needs_review_count,
            "rejected_count": self.rejected_count,
            "entity_count": self.entity_count,
            "occurrence_count": self.occurrence_count,
            "island_count": self.island_count,
            "can_save": self.can_save,
        }


@dataclass
class CandidatesGrouped:
    confirmed: List[RelationshipCandidate] = field(default_factory=list)
    needs_review: List[RelationshipCandidate] = field(default_factory=list)
    rejected: List[RelationshipCandidate] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "confirmed": [c.to_dict() for c in self.confirmed],
            "needs_review": [c.to_dict() for c in self.needs_review],
            "rejected": [c.to_dict() for c in self.rejected],
        }


def find_islands(schema: DatabaseSchema, candidates: List[RelationshipCandidate]) -> List[str]:
    """Tables no surviving candidate touches"""
    connected: Set[str] = set()
    for candidate in candidates:
        if candidate.status != CandidateStatus.REJECTED:
            connected.add(candidate.source_table)
            connected.add(candidate.target_table)
    return [name for name in schema.get_table_names() if name not in connected]


class RelationshipWorkflowService:
    """
    Usage:
        service = RelationshipWorkflowService(store, adapter, config)
        workflow = service.start_detection(project_id, datasource_id)
        status = service.get_status_with_counts(project_id, datasource_id)
    """

    def __init__(
        self,
        store: OntologyStore,
        adapter: BaseDatabaseAdapter,
        config: Optional[SystemConfig] = None,
        client: Optional[StructuredModelClient] = None,
        instance_id: Optional[str] = None,
        background: bool = False,
    ):
        self.store = store
        self.adapter = adapter
        self.config = config or SystemConfig()
        self.client = client
        self.instance_id = instance_id or f"instance-{uuid.uuid4().hex[:12]}"
        self.engine = RelationshipDiscoveryEngine(adapter, store, self.config.relationships, client)
        self.tracker = EntityStateTracker(store)
        get_metrics_collector().configure(self.config.metrics)
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="relationships") if background else None
        self._cancel_events: Dict[str, threading.Event] = {}
        self._heartbeats: Dict[str, Heartbeat] = {}
        self._lock = threading.Lock()

    # Exposed operations

    def start_detection(self, project_id: str, datasource_id: str) -> OntologyWorkflow:
        """Create and run a detection workflow; refuses while one is still active"""
        existing = self.store.get_latest_workflow(project_id, datasource_id, WorkflowPhase.RELATIONSHIPS)
        if existing is not None and not existing.state.is_terminal:
            raise ValidationError(
                f"relationship detection already {existing.state.value} for datasource {datasource_id}",
                field_name="datasource_id",
            )

        ontology = self.store.get_active_ontology(project_id)
        if ontology is None:
            ontology = Ontology(project_id=project_id)
            self.store.save_ontology(ontology)

        schema = self.adapter.get_schema()
        workflow = OntologyWorkflow(
            project_id=project_id,
            datasource_id=datasource_id,
            phase=WorkflowPhase.RELATIONSHIPS,
            config={"max_tables_per_batch": self.config.workflow.max_tables_per_batch},
        )
        self.store.save_workflow(workflow)
        self.tracker.initialize(
            project_id, workflow.id,
            {t.name: [c.name for c in t.columns] for t in schema.tables.values()},
            ontology_id=ontology.id,
        )

        if not self.store.claim_workflow_lease(workflow.id, self.instance_id,
                                               self.config.dag.lease_stale_seconds):
            raise LeaseError(f"could not claim workflow {workflow.id}")
        workflow.transition_to(WorkflowState.RUNNING)
        workflow.progress = WorkflowProgress(current_phase="starting", message="Starting relationship detection")
        self.store.save_workflow(workflow)

        cancel_event = threading.Event()
        with self._lock:
            self._cancel_events[workflow.id] = cancel_event
        self._start_heartbeat(workflow.id, cancel_event)

        logger.info(
            "Relationship detection started",
            extra={"extra_fields": {"workflow_id": workflow.id, "datasource_id": datasource_id}}
        )
        if self._executor is not None:
            self._executor.submit(self._run, workflow.id)
        else:
            self._run(workflow.id)
        return self._require_workflow(workflow.id)

    def get_status_with_counts(self, project_id: str, datasource_id: str) -> WorkflowStatus:
        workflow = self._latest(project_id, datasource_id)
        candidates = self.store.list_candidates(datasource_id)
        entities = self.store.list_entities(project_id)

        status = WorkflowStatus(workflow=workflow)
        for candidate in candidates:
            if candidate.status == CandidateStatus.ACCEPTED:
                status.confirmed_count += 1
            elif candidate.status == CandidateStatus.REJECTED:
                status.rejected_count += 1
            elif candidate.needs_review():
                status.needs_review_count += 1
        status.entity_count = len(entities)
        status.occurrence_count = sum(len(self.store.list_occurrences(e.id)) for e in entities)
        status.island_count = len(find_islands(self.adapter.get_schema(), candidates))
        status.can_save = workflow.state == WorkflowState.COMPLETED and status.needs_review_count == 0
        return status

    def get_candidates_grouped(self, datasource_id: str) -> CandidatesGrouped:
        grouped = CandidatesGrouped()
        for candidate in self.store.list_candidates(datasource_id):
            if candidate.status == CandidateStatus.ACCEPTED:
                grouped.confirmed.append(candidate)
            elif candidate.status == CandidateStatus.REJECTED:
                grouped.rejected.append(candidate)
            else:
                grouped.needs_review.append(candidate)
        return grouped

    def update_candidate_decision(self, datasource_id: str, candidate_id: str,
                                  decision: str) -> RelationshipCandidate:
        candidate = self.store.get_candidate(candidate_id)
        if candidate is None or candidate.datasource_id != datasource_id:
            raise NotFoundError(f"candidate {candidate_id} not found for datasource {datasource_id}")
        apply_user_decision(candidate, decision)
        self.store.upsert_candidate(candidate)
        return candidate

    def cancel(self, workflow_id: str) -> OntologyWorkflow:
        """
        Stop a running workflow.

        A workflow running here stops at its next phase boundary; one with no
        local runner is failed directly.
        """
        workflow = self._require_workflow(workflow_id)
        if workflow.state.is_terminal:
            return workflow
        with self._lock:
            event = self._cancel_events.get(workflow_id)
        if event is not None:
            event.set()
            logger.info("Cancellation requested", extra={"extra_fields": {"workflow_id": workflow_id}})
            if self._executor is not None:
                return self._require_workflow(workflow_id)
        # Inline runs have already returned, so nothing else will finish this one
        self._finish_failed(workflow_id, CANCELLED_MESSAGE)
        return self._require_workflow(workflow_id)

    def save_relationships(self, workflow_id: str) -> int:
        """
        Persist the accepted relationships of a detection workflow as entities
        and occurrences.

        Refused until that workflow is completed and nothing needs review.
        """
        workflow = self._require_workflow(workflow_id)
        if workflow.phase != WorkflowPhase.RELATIONSHIPS:
            raise ValidationError(
                f"workflow {workflow_id} is not a relationship detection workflow",
                field_name="workflow_id",
            )
        if workflow.state != WorkflowState.COMPLETED:
            raise ValidationError(
                f"workflow is {workflow.state.value}; relationships can only be saved once it is completed",
                field_name="workflow_id",
            )
        project_id, datasource_id = workflow.project_id, workflow.datasource_id
        candidates = self.store.list_candidates(datasource_id)
        pending = [c for c in candidates if c.needs_review()]
        if pending:
            raise ValidationError(
                f"{len(pending)} relationship(s) still need review",
                field_name="candidates",
            )

        accepted = [c for c in candidates if c.status == CandidateStatus.ACCEPTED]
        ontology = self.store.get_active_ontology(project_id) or Ontology(project_id=project_id)

        with log_operation(logger, "save_relationships", project_id=project_id,
                           datasource_id=datasource_id, workflow_id=workflow_id) as ctx:
            for candidate in accepted:
                materialize_relationship(self.store, project_id, ontology.id, candidate)
            ontology.relationships = [relationship_summary(c) for c in accepted]
            self.store.save_ontology(ontology)
            ctx["saved"] = len(accepted)
        return len(accepted)

    def get_entities_with_occurrences(self, project_id: str) -> List[EntityWithOccurrences]:
        return [
            EntityWithOccurrences(entity=entity, occurrences=self.store.list_occurrences(entity.id))
            for entity in self.store.list_entities(project_id)
        ]

    def shutdown(self) -> None:
        with self._lock:
            events = list(self._cancel_events.values())
            heartbeats = list(self._heartbeats.values())
        for event in events:
            event.set()
        for heartbeat in heartbeats:
            heartbeat.stop()
        if self._executor is not None:
            self._executor.shutdown(wait=True)

    # Execution

    def _run(self, workflow_id: str) -> None:
        workflow = self._require_workflow(workflow_id)
        cancel_event = self._cancel_events[workflow_id]
        with log_context(project_id=workflow.project_id, workflow_id=workflow_id):
            try:
                self._execute(workflow, cancel_event)
            except OntologyEngineError as e:
                logger.error(
                    "Relationship detection failed",
                    extra={"extra_fields": {"workflow_id": workflow_id, "error": e.message}}
                )
                self._finish_failed(workflow_id, e.message)
            except Exception as e:
                logger.error("Relationship detection crashed", exc_info=True)
                self._finish_failed(workflow_id, str(e))
                raise
            finally:
                self._stop_heartbeat(workflow_id)
                with self._lock:
                    self._cancel_events.pop(workflow_id, None)

    def _execute(self, workflow: OntologyWorkflow, cancel_event: threading.Event) -> None:
        schema = self.adapter.get_schema()
        datasource_id = workflow.datasource_id
        batch_size = int(workflow.config.get("max_tables_per_batch", self.config.workflow.max_tables_per_batch))
        policy = RetryPolicy(
            max_retries=self.config.workflow.task_max_retries,
            initial_delay=self.config.workflow.task_initial_backoff,
            max_delay=self.config.workflow.task_max_backoff,
        )

        def persist_tasks(tasks: List[WorkflowTask]) -> None:
            current = self._require_workflow(workflow.id)
            current.task_queue = tasks
            self.store.save_workflow(current)

        # 1. Column statistics
        if self._cancelled(workflow.id, cancel_event):
            return
        self._progress(workflow.id, "collecting_statistics", 0, 0, "Scanning columns")
        self.tracker.transition(workflow.id, WorkflowEntityType.GLOBAL, global_entity_key(),
                                WorkflowEntityStatus.SCANNING)
        for table_name in schema.get_table_names():
            self.tracker.transition(workflow.id, WorkflowEntityType.TABLE, table_name,
                                    WorkflowEntityStatus.SCANNING)

        scans: Dict[str, ColumnScanData] = {}
        scan_queue = TaskQueue(batch_size, policy, cancel_event, persist_tasks)
        for table in schema.tables.values():
            for column in table.columns:
                scan_queue.enqueue(
                    f"scan {table.name}.{column.name}", TaskType.SCAN_COLUMN,
                    self._scan_task(workflow.id, scans),
                    {"table": table.name, "column": column.name, "data_type": column.data_type},
                )
        failed = scan_queue.run()
        for task in failed:
            self.tracker.transition(
                workflow.id, WorkflowEntityType.COLUMN,
                column_entity_key(task.payload["table"], task.payload["column"]),
                WorkflowEntityStatus.FAILED, error=task.error,
            )
        for table_name in schema.get_table_names():
            self.tracker.transition(workflow.id, WorkflowEntityType.TABLE, table_name,
                                    WorkflowEntityStatus.SCANNED)
        self.tracker.transition(workflow.id, WorkflowEntityType.GLOBAL, global_entity_key(),
                                WorkflowEntityStatus.SCANNED)

        # 2-3. Value matching and name inference
        if self._cancelled(workflow.id, cancel_event):
            return
        self._progress(workflow.id, "matching", 0, 2, "Matching values and names")
        self.engine.discover_declared(datasource_id, schema, workflow.id)
        signals: Dict[str, List[RelationshipCandidate]] = {}
        generator = self.engine.generator

        def match_values(task: WorkflowTask) -> int:
            signals["values"] = generator.match_values(schema, scans, datasource_id, workflow.id)
            return len(signals["values"])

        def infer_names(task: WorkflowTask) -> int:
            signals["names"] = generator.infer_names(schema, scans, datasource_id, workflow.id)
            return len(signals["names"])

        match_queue = TaskQueue(batch_size, policy, cancel_event, persist_tasks)
        match_queue.enqueue("match values", TaskType.MATCH_VALUES, match_values)
        match_queue.enqueue("infer names", TaskType.INFER_NAMES, infer_names)
        failed = match_queue.run()
        if failed:
            raise failed_tasks_error(failed)
        candidates = merge_signals(signals.get("values", []), signals.get("names", []))
        candidates = [c for c in candidates if not self.engine.is_frozen(c)]

        # 4. Join tests
        if self._cancelled(workflow.id, cancel_event):
            return
        total = len(candidates)
        self._progress(workflow.id, "testing_joins", 0, total, f"Testing {total} candidate joins")
        results: Dict[str, JoinTestResult] = {}
        join_queue = TaskQueue(batch_size, policy, cancel_event, persist_tasks)
        for candidate in candidates:
            join_queue.enqueue(
                f"test {candidate.pair_key}", TaskType.TEST_JOIN,
                self._join_task(candidate, results),
                {"candidate": candidate.pair_key},
            )
        join_queue.run()

        # 5. Analysis
        if self._cancelled(workflow.id, cancel_event):
            return
        self._progress(workflow.id, "analyzing", 0, total, "Reviewing candidates")
        self._enter_analysis(workflow.id)
        for i, candidate in enumerate(candidates, 1):
            stored = self.engine.review(candidate, schema, join_attempted=True)
            if stored.needs_review():
                self._ask_about(workflow.id, stored)
            self._progress(workflow.id, "analyzing", i, total, f"Reviewed {candidate.pair_key}")

        self.engine.validate_with_model(
            datasource_id, schema,
            progress_callback=lambda cur, tot, msg: self._progress(workflow.id, "validating", cur, tot, msg),
        )

        # 6. Finalize
        if self._cancelled(workflow.id, cancel_event):
            return
        self._finish_analysis(workflow.id)
        current = self._require_workflow(workflow.id)
        current.progress = WorkflowProgress(current_phase="completed", current=total, total=total,
                                            message="Relationship detection complete")
        current.transition_to(WorkflowState.COMPLETED)
        self.store.save_workflow(current)
        self.tracker.cleanup(workflow.id)
        logger.info(
            "Relationship detection complete",
            extra={"extra_fields": {"workflow_id": workflow.id, "candidates": total}}
        )

    def _scan_task(self, workflow_id: str, scans: Dict[str, ColumnScanData]):
        def run(task: WorkflowTask) -> Dict[str, Any]:
            table, column = task.payload["table"], task.payload["column"]
            scan = scan_column(self.adapter, table, column, task.payload["data_type"])
            with self._lock:
                scans[f"{table}.{column}"] = scan
            self.tracker.record_scan(workflow_id, table, column, scan)
            return scan.to_dict()
        return run

    def _join_task(self, candidate: RelationshipCandidate, results: Dict[str, JoinTestResult]):
        def run(task: WorkflowTask) -> bool:
            result = self.engine.join_tester.test(candidate)
            with self._lock:
                results[candidate.pair_key] = result
            return result.succeeded
        return run

    def _enter_analysis(self, workflow_id: str) -> None:
        for state in self.tracker.list_states(workflow_id):
            if state.status == WorkflowEntityStatus.SCANNED:
                self.tracker.transition(workflow_id, state.entity_type, state.entity_key,
                                        WorkflowEntityStatus.ANALYZING)

    def _finish_analysis(self, workflow_id: str) -> None:
        for state in self.tracker.list_states(workflow_id):
            if state.status == WorkflowEntityStatus.ANALYZING:
                self.tracker.finish_analysis(workflow_id, state.entity_type, state.entity_key)

    def _ask_about(self, workflow_id: str, candidate: RelationshipCandidate) -> None:
        """Attach an optional review question to the source column"""
        question = WorkflowQuestion(
            text=f"Does {candidate.source_key} reference {candidate.target_key}?",
            category="relationship",
            priority=2,
            is_required=False,
            reasoning=f"confidence {candidate.confidence:.2f} is inside the review band",
        )
        try:
            self.tracker.add_questions(
                workflow_id, WorkflowEntityType.COLUMN,
                column_entity_key(candidate.source_table, candidate.source_column), [question],
            )
        except NotFoundError:
            logger.debug(
                "No entity state for candidate source",
                extra={"extra_fields": {"candidate": candidate.pair_key}}
            )

    # Helpers

    def _latest(self, project_id: str, datasource_id: str) -> OntologyWorkflow:
        workflow = self.store.get_latest_workflow(project_id, datasource_id, WorkflowPhase.RELATIONSHIPS)
        if workflow is None:
            raise NotFoundError(f"no relationship workflow for datasource {datasource_id}")
        return workflow

    def _require_workflow(self, workflow_id: str) -> OntologyWorkflow:
        workflow = self.store.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError(f"workflow {workflow_id} not found")
        return workflow

    def _progress(self, workflow_id: str, phase: str, current: int, total: int, message: str) -> None:
        workflow = self._require_workflow(workflow_id)
        workflow.progress = WorkflowProgress(current_phase=phase, current=current, total=total, message=message)
        self.store.save_workflow(workflow)

    def _cancelled(self, workflow_id: str, cancel_event: threading.Event) -> bool:
        if not cancel_event.is_set():
            return False
        self._finish_failed(workflow_id, CANCELLED_MESSAGE)
        return True

    def _finish_failed(self, workflow_id: str, message: str) -> None:
        workflow = self._require_workflow(workflow_id)
        if workflow.state.is_terminal:
            return
        workflow.error = message
        workflow.transition_to(WorkflowState.FAILED)
        self.store.save_workflow(workflow)
        self.tracker.cleanup(workflow_id)

    def _start_heartbeat(self, workflow_id: str, cancel_event: threading.Event) -> None:
        heartbeat = Heartbeat(
            f"workflow:{workflow_id}",
            lambda: self.store.heartbeat_workflow(workflow_id, self.instance_id),
            self.config.dag.heartbeat_interval_seconds,
            on_lost=cancel_event.set,
        )
        with self._lock:
            self._heartbeats[workflow_id] = heartbeat
        heartbeat.start()

    def _stop_heartbeat(self, workflow_id: str) -> None:
        with self._lock:
            heartbeat = self._heartbeats.pop(workflow_id, None)
        if heartbeat is not None:
            heartbeat.stop()


def relationship_summary(candidate: RelationshipCandidate) -> Dict[str, Any]:
    return {
        "source": candidate.source_key,
        "target": candidate.target_key,
        "cardinality": candidate.cardinality.value,
        "detection_method": candidate.detection_method.value,
        "confidence": round(candidate.confidence, 3),
        "source_role": candidate.source_role or None,
    }


def failed_tasks_error(tasks: List[WorkflowTask]) -> OntologyEngineError:
    names = ", ".join(t.name for t in tasks)
    errors = "; ".join(t.error or "unknown error" for t in tasks)
    return OntologyEngineError(f"tasks failed ({names}): {errors}")


def materialize_relationship(store: EntityRepository, project_id: str, ontology_id: Optional[str],
                             candidate: RelationshipCandidate) -> Optional[OntologyEntity]:
    """
    Record an accepted relationship as an entity with two occurrences.

    The entity is named after the referenced table. Soft-deleted entities are
    left alone; returns None in that case.
    """
    name = entity_name_for_table(candidate.target_table)
    entity = store.get_entity_by_name(project_id, name)
    if entity is None:
        entity = OntologyEntity(
            project_id=project_id,
            name=name,
            ontology_id=ontology_id,
            primary_table=candidate.target_table,
            primary_column=candidate.target_column,
            source=EntitySource.INFERENCE,
            description=f"Rows of {candidate.target_table}",
        )
    if entity.is_deleted:
        logger.info(
            "Skipping deleted entity",
            extra={"extra_fields": {"entity": name, "reason": entity.deletion_reason}}
        )
        return None
    entity.is_stale = False
    store.save_entity(entity)

    store.save_occurrence(OntologyEntityOccurrence(
        entity_id=entity.id,
        table_name=candidate.target_table,
        column_name=candidate.target_column,
        role="primary_key",
        confidence=candidate.confidence,
    ))
    store.save_occurrence(OntologyEntityOccurrence(
        entity_id=entity.id,
        table_name=candidate.source_table,
        column_name=candidate.source_column,
        role=candidate.source_role or None,
        confidence=candidate.confidence,
    ))
    return entity
