"""
Extraction DAG nodes

Each node is one stage of the ontology extraction run. Nodes run strictly in
order and share a NodeContext; anything a later node needs is read back from the
store, so a node can be re-run after a crash without in-memory state.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..adapters.base import BaseDatabaseAdapter, ColumnSchema, DatabaseSchema, TableSchema
from ..classification import ColumnFeaturePipeline
from ..config import SystemConfig
from ..llm_client.structured import LLMOutput, StructuredModelClient
from ..models import (
    CandidateStatus,
    ColumnScanData,
    DAGNodeName,
    EntitySource,
    GlossaryTerm,
    Ontology,
    OntologyDAG,
    OntologyEntity,
    OntologyEntityOccurrence,
    OntologyWorkflow,
    TaskStatus,
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
from ..persistence.base import OntologyStore
from ..relationships import (
    RelationshipDiscoveryEngine,
    entity_name_for_table,
    scan_column,
    singularize,
)
from ..relationships.workflow_service import (
    failed_tasks_error,
    materialize_relationship,
    relationship_summary,
)
from ..utils import OntologyEngineError, OntologyMetrics, RetryPolicy, get_logger
from ..workflow import EntityStateTracker, TaskQueue
from ..workflow.questions import (
    clarification_question,
    column_questions,
    missing_primary_key_question,
)
from ..workflow.task_queue import ChangeListener, TaskFn

logger = get_logger(__name__)

ProgressReporter = Callable[[int, int, str], None]


def _no_progress(current: int, total: int, message: str) -> None:
    pass


@dataclass
class NodeContext:
    """Collaborators and identifiers handed to every node"""
    project_id: str
    datasource_id: str
    dag: OntologyDAG
    store: OntologyStore
    adapter: BaseDatabaseAdapter
    config: SystemConfig = field(default_factory=SystemConfig)
    client: Optional[StructuredModelClient] = None
    report: ProgressReporter = _no_progress
    is_cancelled: Callable[[], bool] = lambda: False
    cancel_event: Optional[threading.Event] = None
    _engine: Optional[RelationshipDiscoveryEngine] = field(default=None, repr=False)

    @property
    def schema(self) -> DatabaseSchema:
        return self.adapter.get_schema()

    @property
    def engine(self) -> RelationshipDiscoveryEngine:
        if self._engine is None:
            self._engine = RelationshipDiscoveryEngine(
                self.adapter, self.store, self.config.relationships, self.client,
            )
        return self._engine

    def ontology(self) -> Ontology:
        """The active ontology for the project, created on first use"""
        ontology = self.store.get_active_ontology(self.project_id)
        if ontology is None:
            ontology = Ontology(project_id=self.project_id)
            self.store.save_ontology(ontology)
        return ontology


class NodeExecutor(ABC):
    """
    Abstract base class for DAG nodes

    Subclasses implement execute(); should_skip() lets a node opt out, for
    example when it only adds model-generated content and no model is configured.
    """

    name: DAGNodeName

    def should_skip(self, ctx: NodeContext) -> bool:
        return False

    @abstractmethod
    def execute(self, ctx: NodeContext) -> Dict[str, Any]:
        """Run the stage; returns a summary for logging"""
        pass


# Response schemas for model-assisted nodes

class EntityDescriptionResponse(LLMOutput):
    description: str = ""
    aliases: List[str] = []


class DomainSummaryResponse(LLMOutput):
    summary: str = ""
    domains: List[str] = []


class GlossaryDefinitionResponse(LLMOutput):
    definition: str = ""
    aliases: List[str] = []
    confidence: float = 0.7


def _primary_key_column(table: TableSchema) -> Optional[str]:
    if table.primary_key:
        return table.primary_key[0]
    for column in table.columns:
        if column.is_primary_key:
            return column.name
    return None


def _humanize(name: str) -> str:
    return name.replace("_", " ").strip()


def _is_key_column(column: ColumnSchema) -> bool:
    name = column.name.lower()
    return column.is_primary_key or column.is_foreign_key or name == "id" or name.endswith("_id")


# Ontology workflow helpers

def _task_queue(ctx: NodeContext, workflow: Optional[OntologyWorkflow],
                on_change: Optional[ChangeListener] = None) -> TaskQueue:
    batch_size = ctx.config.workflow.max_tables_per_batch
    if workflow is not None:
        batch_size = int(workflow.config.get("max_tables_per_batch", batch_size))
    policy = RetryPolicy(
        max_retries=ctx.config.workflow.task_max_retries,
        initial_delay=ctx.config.workflow.task_initial_backoff,
        max_delay=ctx.config.workflow.task_max_backoff,
    )
    return TaskQueue(batch_size, policy, ctx.cancel_event, on_change)


def _save_task_history(ctx: NodeContext, workflow_id: str, tasks: List[WorkflowTask]) -> None:
    workflow = ctx.store.get_workflow(workflow_id)
    if workflow is not None:
        workflow.task_queue = tasks
        ctx.store.save_workflow(workflow)


def _resume_workflow(ctx: NodeContext) -> Optional[OntologyWorkflow]:
    """The open ontology workflow, moved back to running; None when there is none"""
    workflow = ctx.store.get_latest_workflow(ctx.project_id, ctx.datasource_id, WorkflowPhase.ONTOLOGY)
    if workflow is None or workflow.state.is_terminal:
        return None
    if workflow.state != WorkflowState.RUNNING:
        workflow.transition_to(WorkflowState.RUNNING)
        ctx.store.save_workflow(workflow)
    return workflow


def _await_answers(ctx: NodeContext, workflow: OntologyWorkflow,
                   tracker: EntityStateTracker) -> OntologyWorkflow:
    """Hold the workflow in awaiting_input while a required question is unanswered"""
    waiting = tracker.has_pending_required(workflow.id)
    if waiting and workflow.state == WorkflowState.RUNNING:
        workflow.transition_to(WorkflowState.AWAITING_INPUT)
        logger.info("Workflow awaiting input", extra={"extra_fields": {"workflow_id": workflow.id}})
    elif not waiting and workflow.state == WorkflowState.AWAITING_INPUT:
        workflow.transition_to(WorkflowState.RUNNING)
    ctx.store.save_workflow(workflow)
    return workflow


def _pause_workflow(ctx: NodeContext, workflow_id: str, tasks: List[WorkflowTask]) -> None:
    workflow = ctx.store.get_workflow(workflow_id)
    if workflow is None:
        return
    workflow.task_queue = tasks
    if workflow.state == WorkflowState.RUNNING:
        workflow.transition_to(WorkflowState.PAUSED)
    ctx.store.save_workflow(workflow)
    logger.info(
        "Workflow paused by cancellation",
        extra={"extra_fields": {"workflow_id": workflow_id, "tasks": len(tasks)}}
    )


# 1

class EntityDiscoveryNode(NodeExecutor):
    """One inferred entity per table with a primary key"""

    name = DAGNodeName.ENTITY_DISCOVERY

    def execute(self, ctx: NodeContext) -> Dict[str, Any]:
        schema = ctx.schema
        ontology = ctx.ontology()
        tables = [schema.tables[n] for n in schema.get_table_names()]
        discovered = skipped = 0

        for i, table in enumerate(tables, 1):
            pk_column = _primary_key_column(table)
            if pk_column is None:
                skipped += 1
                ctx.report(i, len(tables), f"No primary key on {table.name}")
                continue

            name = entity_name_for_table(table.name)
            entity = ctx.store.get_entity_by_name(ctx.project_id, name)
            if entity is not None and entity.is_deleted:
                skipped += 1
                ctx.report(i, len(tables), f"Entity {name} was deleted")
                continue
            if entity is None:
                entity = OntologyEntity(
                    project_id=ctx.project_id,
                    name=name,
                    ontology_id=ontology.id,
                    primary_table=table.name,
                    primary_column=pk_column,
                    source=EntitySource.INFERENCE,
                    confidence=0.8,
                )
            entity.is_stale = False
            ctx.store.save_entity(entity)
            ctx.store.save_occurrence(OntologyEntityOccurrence(
                entity_id=entity.id,
                table_name=table.name,
                column_name=pk_column,
                role="primary_key",
                confidence=1.0,
            ))
            discovered += 1
            ctx.report(i, len(tables), f"Discovered entity {name}")

        return {"entities": discovered, "skipped": skipped}


# 2

class EntityEnrichmentNode(NodeExecutor):
    """
    Profiles every table, describes its entity and raises the questions the
    statistics alone can justify, tracking progress in an ontology workflow.

    Work runs through the task queue in three stages (profile, understand,
    generate questions), one task per table. The workflow waits for input while
    a required question is pending and stays open until OntologyFinalization.
    """

    name = DAGNodeName.ENTITY_ENRICHMENT

    SYSTEM_PROMPT = (
        "You are a data modeling expert. Describe the business entity a database table "
        "represents in one or two sentences, and list common alternative names for it.\n"
        "Respond with valid JSON only."
    )

    def execute(self, ctx: NodeContext) -> Dict[str, Any]:
        schema = ctx.schema
        tracker = EntityStateTracker(ctx.store)
        workflow = self._open_workflow(ctx, tracker, schema)
        entities = {e.primary_table: e for e in ctx.store.list_entities(ctx.project_id)}
        tables = [schema.tables[n] for n in schema.get_table_names()]
        history: List[WorkflowTask] = []

        def persist_tasks(tasks: List[WorkflowTask]) -> None:
            _save_task_history(ctx, workflow.id, history + tasks)

        tracker.advance(workflow.id, WorkflowEntityType.GLOBAL, global_entity_key(),
                        WorkflowEntityStatus.SCANNING, WorkflowEntityStatus.SCANNED,
                        WorkflowEntityStatus.ANALYZING)
        stages = [
            (TaskType.PROFILE_TABLE, "profile", self._profile_task),
            (TaskType.UNDERSTAND_SCHEMA, "understand", self._understand_task),
            (TaskType.GENERATE_QUESTIONS, "questions", self._questions_task),
        ]
        active = list(tables)
        questions: List[WorkflowQuestion] = []
        for step, (task_type, label, make_task) in enumerate(stages, 1):
            queue = _task_queue(ctx, workflow, persist_tasks)
            for table in active:
                queue.enqueue(f"{label} {table.name}", task_type,
                              make_task(ctx, tracker, workflow.id, table, entities.get(table.name), questions),
                              {"table": table.name})
            failed = queue.run()
            history.extend(queue.snapshot())
            if queue.pending():
                _pause_workflow(ctx, workflow.id, history)
                return {"workflow_id": workflow.id, "interrupted": True}
            for task in failed:
                tracker.transition(workflow.id, WorkflowEntityType.TABLE, task.payload["table"],
                                   WorkflowEntityStatus.FAILED, error=task.error)
            failed_tables = {t.payload["table"] for t in failed}
            active = [t for t in active if t.name not in failed_tables]
            ctx.report(step, len(stages), f"Finished {label} stage for {len(active)} tables")

        if not active and tables:
            raise failed_tasks_error([t for t in history if t.status == TaskStatus.FAILED])
        tracker.finish_analysis(workflow.id, WorkflowEntityType.GLOBAL, global_entity_key())

        workflow = ctx.store.get_workflow(workflow.id) or workflow
        workflow.task_queue = history
        workflow.progress = WorkflowProgress(current_phase="entities_enriched", current=len(active),
                                             total=len(tables), message="Entities enriched")
        workflow = _await_answers(ctx, workflow, tracker)
        return {
            "workflow_id": workflow.id,
            "described": sum(1 for t in history if t.task_type == TaskType.UNDERSTAND_SCHEMA and t.result),
            "questions": len(questions),
            "failed_tables": len(tables) - len(active),
            "workflow_state": workflow.state.value,
        }

    def _open_workflow(self, ctx: NodeContext, tracker: EntityStateTracker,
                       schema: DatabaseSchema) -> OntologyWorkflow:
        previous = ctx.store.get_latest_workflow(ctx.project_id, ctx.datasource_id, WorkflowPhase.ONTOLOGY)
        if previous is not None and not previous.state.is_terminal:
            # Left behind by an interrupted or cancelled attempt
            previous.error = "superseded by a new enrichment attempt"
            previous.transition_to(WorkflowState.FAILED)
            ctx.store.save_workflow(previous)
            tracker.cleanup(previous.id)

        workflow = OntologyWorkflow(
            project_id=ctx.project_id,
            datasource_id=ctx.datasource_id,
            phase=WorkflowPhase.ONTOLOGY,
            config={"max_tables_per_batch": ctx.config.workflow.max_tables_per_batch},
        )
        workflow.transition_to(WorkflowState.RUNNING)
        ctx.store.save_workflow(workflow)
        tracker.initialize(ctx.project_id, workflow.id,
                           {t.name: [c.name for c in t.columns] for t in schema.tables.values()},
                           ontology_id=ctx.dag.ontology_id)
        return workflow

    # Stage tasks

    def _profile_task(self, ctx: NodeContext, tracker: EntityStateTracker, workflow_id: str,
                      table: TableSchema, entity: Optional[OntologyEntity],
                      questions: List[WorkflowQuestion]) -> TaskFn:
        def run(task: WorkflowTask) -> Dict[str, Any]:
            # Read everything first so a retried task has not moved any state yet
            sample_limit = ctx.config.classification.sample_limit
            scans = {
                column.name: scan_column(ctx.adapter, table.name, column.name, column.data_type, sample_limit)
                for column in table.columns
            }
            row_count = ctx.adapter.get_row_count(table.name)

            tracker.transition(workflow_id, WorkflowEntityType.TABLE, table.name, WorkflowEntityStatus.SCANNING)
            for column_name, scan in scans.items():
                tracker.record_scan(workflow_id, table.name, column_name, scan)
                tracker.transition(workflow_id, WorkflowEntityType.COLUMN,
                                   column_entity_key(table.name, column_name), WorkflowEntityStatus.ANALYZING)
            tracker.advance(workflow_id, WorkflowEntityType.TABLE, table.name,
                            WorkflowEntityStatus.SCANNED, WorkflowEntityStatus.ANALYZING)
            tracker.update_gathered(workflow_id, WorkflowEntityType.TABLE, table.name,
                                    {"row_count": row_count, "column_count": len(scans)})
            return {"row_count": row_count, "columns": len(scans)}
        return run

    def _understand_task(self, ctx: NodeContext, tracker: EntityStateTracker, workflow_id: str,
                         table: TableSchema, entity: Optional[OntologyEntity],
                         questions: List[WorkflowQuestion]) -> TaskFn:
        def run(task: WorkflowTask) -> bool:
            if entity is None or entity.source != EntitySource.INFERENCE:
                return False
            self._describe(ctx, entity, table)
            tracker.update_gathered(workflow_id, WorkflowEntityType.TABLE, table.name,
                                    {"entity": entity.name, "description": entity.description})
            return True
        return run

    def _questions_task(self, ctx: NodeContext, tracker: EntityStateTracker, workflow_id: str,
                        table: TableSchema, entity: Optional[OntologyEntity],
                        questions: List[WorkflowQuestion]) -> TaskFn:
        def run(task: WorkflowTask) -> int:
            added: List[WorkflowQuestion] = []
            if _primary_key_column(table) is None:
                added += tracker.add_questions(workflow_id, WorkflowEntityType.TABLE, table.name,
                                               [missing_primary_key_question(table.name)])
            for column in table.columns:
                key = column_entity_key(table.name, column.name)
                state = tracker.get(workflow_id, WorkflowEntityType.COLUMN, key)
                scan = state.state_data.gathered.get("scan")
                if scan:
                    added += tracker.add_questions(
                        workflow_id, WorkflowEntityType.COLUMN, key,
                        column_questions(table.name, column.name, ColumnScanData.from_dict(scan),
                                         is_key=_is_key_column(column)),
                    )
                tracker.finish_analysis(workflow_id, WorkflowEntityType.COLUMN, key)
            tracker.finish_analysis(workflow_id, WorkflowEntityType.TABLE, table.name)
            questions.extend(added)
            return len(added)
        return run

    def _describe(self, ctx: NodeContext, entity: OntologyEntity, table: TableSchema) -> None:
        fallback = f"A {_humanize(entity.name)} record, stored in the {table.name} table"
        if ctx.client is None:
            entity.description = entity.description or fallback
            ctx.store.save_entity(entity)
            return
        try:
            result = ctx.client.classify(
                self.build_prompt(entity, table), EntityDescriptionResponse,
                system_prompt=self.SYSTEM_PROMPT, purpose="entity_enrichment",
            )
        except OntologyEngineError as e:
            if not e.recoverable:
                raise
            logger.warning(
                "Entity description failed, using default",
                extra={"extra_fields": {"entity": entity.name, "error": e.message}}
            )
            entity.description = entity.description or fallback
        else:
            entity.description = result.data.description or entity.description or fallback
            for alias in result.data.aliases:
                if alias and alias not in entity.aliases and alias != entity.name:
                    entity.aliases.append(alias)
        ctx.store.save_entity(entity)

    def build_prompt(self, entity: OntologyEntity, table: TableSchema) -> str:
        lines = [
            "# Entity Description",
            "",
            f"**Entity:** {entity.name}",
            f"**Table:** {table.name}",
            "",
            "## Columns",
            "",
        ]
        for column in table.columns:
            flags = []
            if column.is_primary_key:
                flags.append("PK")
            if column.is_foreign_key:
                flags.append("FK")
            suffix = f" ({', '.join(flags)})" if flags else ""
            lines.append(f"- {column.name}: {column.data_type}{suffix}")
        lines.extend([
            "",
            'Respond with JSON: {"description": "...", "aliases": ["..."]}',
        ])
        return "\n".join(lines)


# 3

class FKDiscoveryNode(NodeExecutor):
    """Declared foreign keys become accepted candidates"""

    name = DAGNodeName.FK_DISCOVERY

    def execute(self, ctx: NodeContext) -> Dict[str, Any]:
        candidates = ctx.engine.discover_declared(ctx.datasource_id, ctx.schema)
        ctx.report(len(candidates), len(candidates), f"Recorded {len(candidates)} declared foreign keys")
        return {"declared": len(candidates)}


# 4

class ColumnEnrichmentNode(NodeExecutor):
    """
    Runs the six-phase column feature pipeline. Columns the classifier could
    not settle become required questions on the open ontology workflow.
    """

    name = DAGNodeName.COLUMN_ENRICHMENT

    def execute(self, ctx: NodeContext) -> Dict[str, Any]:
        workflow = _resume_workflow(ctx)
        pipeline = ColumnFeaturePipeline(ctx.adapter, ctx.store, ctx.config.classification, ctx.client)
        result = pipeline.run(ctx.project_id, progress_callback=ctx.report)

        flagged = [f for f in result.features.values() if f.needs_clarification]
        raised = 0
        if workflow is not None:
            tracker = EntityStateTracker(ctx.store)
            for features in flagged:
                raised += len(tracker.raise_questions(
                    workflow.id, WorkflowEntityType.COLUMN,
                    column_entity_key(features.table_name, features.column_name),
                    [clarification_question(features.table_name, features.column_name,
                                            features.clarification_question,
                                            reasoning=f"Classified as {features.classification_path.value} "
                                                      f"with {features.confidence:.0%} confidence")],
                ))
            _await_answers(ctx, ctx.store.get_workflow(workflow.id) or workflow, tracker)
        elif flagged:
            logger.warning("No open ontology workflow for clarification questions",
                           extra={"extra_fields": {"flagged": len(flagged)}})
        return {
            "columns": result.total_columns,
            "classified": len(result.features),
            "stored": result.stored_columns,
            "failed": len(result.failed_items),
            "clarifications": raised,
        }


# 5

class PKMatchDiscoveryNode(NodeExecutor):
    """Inferred candidates measured by real joins and reviewed, without the model"""

    name = DAGNodeName.PK_MATCH_DISCOVERY

    def execute(self, ctx: NodeContext) -> Dict[str, Any]:
        engine = ctx.engine
        schema = ctx.schema
        scans = engine.scan_columns(schema)
        generated = engine.generator.generate(schema, scans, ctx.datasource_id)
        generated = [c for c in generated if not engine.is_frozen(c)]

        results = engine.test_joins(generated, ctx.report)
        reviewed = [engine.review(r.candidate, schema, join_attempted=True) for r in results]
        return {
            "generated": len(generated),
            "accepted": sum(1 for c in reviewed if c.status == CandidateStatus.ACCEPTED),
            "rejected": sum(1 for c in reviewed if c.status == CandidateStatus.REJECTED),
            "needs_review": sum(1 for c in reviewed if c.needs_review()),
        }


# 6

class RelationshipEnrichmentNode(NodeExecutor):
    """Model validation of candidates still awaiting review"""

    name = DAGNodeName.RELATIONSHIP_ENRICHMENT

    def should_skip(self, ctx: NodeContext) -> bool:
        return ctx.client is None or not ctx.config.relationships.use_llm_validation

    def execute(self, ctx: NodeContext) -> Dict[str, Any]:
        validated = ctx.engine.validate_with_model(ctx.datasource_id, ctx.schema, progress_callback=ctx.report)
        return {"validated": validated}


# 7

class OntologyFinalizationNode(NodeExecutor):
    """
    Assembles the tiered ontology from everything stored so far

    Tier 0 (domain summary), tier 1 (entity summaries) and tier 2 (column
    details) are rebuilt in full; the glossary is left to the glossary nodes.
    Questions still open on the ontology workflow are recorded in the ontology
    metadata before the workflow is closed.
    """

    name = DAGNodeName.ONTOLOGY_FINALIZATION

    SYSTEM_PROMPT = (
        "You are a data modeling expert. Summarize the business domain described by a "
        "set of database entities in two or three sentences and name the main domains.\n"
        "Respond with valid JSON only."
    )

    def execute(self, ctx: NodeContext) -> Dict[str, Any]:
        workflow = _resume_workflow(ctx)
        ontology = ctx.ontology()
        candidates = ctx.store.list_candidates(ctx.datasource_id)
        accepted = [c for c in candidates if c.status == CandidateStatus.ACCEPTED]
        total_steps = 4

        for candidate in accepted:
            materialize_relationship(ctx.store, ctx.project_id, ontology.id, candidate)
        ctx.report(1, total_steps, "Materialized relationship entities")

        entities = ctx.store.list_entities(ctx.project_id)

        def build_tiers(task: WorkflowTask) -> int:
            ontology.entity_summaries = {
                entity.name: self._entity_summary(ctx, entity) for entity in entities
            }
            ontology.domain_summary = self._domain_summary(ctx, entities, candidates)
            return len(entities)

        history = list(workflow.task_queue) if workflow is not None else []

        def persist_tasks(tasks: List[WorkflowTask]) -> None:
            if workflow is not None:
                _save_task_history(ctx, workflow.id, history + tasks)

        queue = _task_queue(ctx, workflow, persist_tasks)
        queue.enqueue("build tier 0 and tier 1", TaskType.BUILD_TIER0_AND_TIER1, build_tiers,
                      {"entities": len(entities)})
        failed = queue.run()
        history.extend(queue.snapshot())
        if queue.pending():
            if workflow is not None:
                _pause_workflow(ctx, workflow.id, history)
            return {"ontology_id": ontology.id, "interrupted": True}
        if failed:
            raise failed_tasks_error(failed)

        ontology.column_details = self._column_details(ctx)
        ontology.relationships = [relationship_summary(c) for c in accepted]
        ctx.report(2, total_steps, "Built ontology tiers")

        open_questions = self._open_questions(ctx, workflow)
        ontology.metadata.update({
            "dag_id": ctx.dag.id,
            "datasource_id": ctx.datasource_id,
            "schema_fingerprint": ctx.dag.schema_fingerprint,
            "open_questions": open_questions,
        })
        ctx.store.save_ontology(ontology)
        ctx.dag.ontology_id = ontology.id
        ctx.report(3, total_steps, "Saved ontology")

        if workflow is not None:
            self._close_workflow(ctx, workflow.id, history)
        ctx.report(total_steps, total_steps, "Ontology finalized")
        return {
            "ontology_id": ontology.id,
            "entities": len(entities),
            "relationships": len(accepted),
            "open_questions": len(open_questions),
        }

    def _entity_summary(self, ctx: NodeContext, entity: OntologyEntity) -> Dict[str, Any]:
        occurrences = ctx.store.list_occurrences(entity.id)
        return {
            "description": entity.description,
            "primary_table": entity.primary_table,
            "primary_column": entity.primary_column,
            "aliases": list(entity.aliases),
            "source": entity.source.value,
            "occurrences": [{"location": o.location, "role": o.role} for o in occurrences],
        }

    def _column_details(self, ctx: NodeContext) -> Dict[str, List[Dict[str, Any]]]:
        details: Dict[str, List[Dict[str, Any]]] = {}
        for metadata in ctx.store.list_column_metadata(ctx.project_id):
            details.setdefault(metadata.table_name, []).append({
                "column": metadata.column_name,
                "description": metadata.description,
                "purpose": metadata.purpose,
                "semantic_type": metadata.semantic_type,
                "role": metadata.role,
                "classification_path": metadata.classification_path,
                "features": metadata.features,
            })
        return details

    def _domain_summary(self, ctx: NodeContext, entities: List[OntologyEntity],
                        candidates: List[Any]) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            "table_count": len(ctx.schema.tables),
            "entity_count": len(entities),
            "relationship_count": sum(1 for c in candidates if c.status == CandidateStatus.ACCEPTED),
            "pending_review_count": sum(1 for c in candidates if c.needs_review()),
            "entities": [e.name for e in entities],
            "description": (
                f"{len(entities)} entities across {len(ctx.schema.tables)} tables: "
                + ", ".join(e.name for e in entities)
            ) if entities else "No entities discovered",
            "domains": [],
        }
        if ctx.client is None or not entities:
            return summary

        prompt = "\n".join(
            ["# Domain Summary", "", "## Entities", ""]
            + [f"- {e.name}: {e.description}" for e in entities]
            + ["", 'Respond with JSON: {"summary": "...", "domains": ["..."]}']
        )
        try:
            result = ctx.client.classify(prompt, DomainSummaryResponse,
                                         system_prompt=self.SYSTEM_PROMPT, purpose="domain_summary")
        except OntologyEngineError as e:
            if not e.recoverable:
                raise
            logger.warning("Domain summary failed, keeping counts only",
                           extra={"extra_fields": {"error": e.message}})
            return summary
        if result.data.summary:
            summary["description"] = result.data.summary
        summary["domains"] = list(result.data.domains)
        return summary

    def _open_questions(self, ctx: NodeContext,
                        workflow: Optional[OntologyWorkflow]) -> List[Dict[str, Any]]:
        if workflow is None:
            return []
        return [
            {
                "entity": state.entity_key or "global",
                "question": question.text,
                "category": question.category,
                "priority": question.priority,
                "is_required": question.is_required,
            }
            for state, question in EntityStateTracker(ctx.store).pending_questions(workflow.id)
        ]

    def _close_workflow(self, ctx: NodeContext, workflow_id: str, tasks: List[WorkflowTask]) -> None:
        workflow = ctx.store.get_workflow(workflow_id)
        if workflow is None or workflow.state.is_terminal:
            return
        workflow.task_queue = tasks
        workflow.progress = WorkflowProgress(current_phase="finalized", message="Ontology finalized")
        workflow.transition_to(WorkflowState.COMPLETED)
        ctx.store.save_workflow(workflow)
        EntityStateTracker(ctx.store).cleanup(workflow.id)


# 8

class GlossaryDiscoveryNode(NodeExecutor):
    """Deterministic glossary terms from entities and enumerated columns"""

    name = DAGNodeName.GLOSSARY_DISCOVERY

    def execute(self, ctx: NodeContext) -> Dict[str, Any]:
        ontology = ctx.ontology()
        terms: List[GlossaryTerm] = []

        for entity in ctx.store.list_entities(ctx.project_id):
            occurrences = ctx.store.list_occurrences(entity.id)
            terms.append(GlossaryTerm(
                term=_humanize(entity.name),
                definition=entity.description,
                aliases=list(entity.aliases),
                related_entities=[entity.name],
                related_columns=[o.location for o in occurrences],
                confidence=0.6,
            ))

        for metadata in ctx.store.list_column_metadata(ctx.project_id):
            enum = (metadata.features or {}).get("enum_features")
            if not enum or not enum.get("values"):
                continue
            values = [v.get("value") for v in enum["values"] if v.get("value") is not None]
            terms.append(GlossaryTerm(
                term=f"{_humanize(singularize(metadata.table_name))} {_humanize(metadata.column_name)}",
                definition=(metadata.description or "") + (
                    f" One of: {', '.join(str(v) for v in values)}." if values else ""
                ),
                related_entities=[entity_name_for_table(metadata.table_name)],
                related_columns=[metadata.key],
                confidence=0.5,
            ))

        ontology.glossary = merge_glossary(ontology.glossary, terms)
        ctx.store.save_ontology(ontology)
        ctx.report(len(terms), len(terms), f"Discovered {len(terms)} glossary terms")
        return {"terms": len(ontology.glossary)}


def merge_glossary(existing: List[GlossaryTerm], discovered: List[GlossaryTerm]) -> List[GlossaryTerm]:
    """Discovered terms replace existing ones of the same name unless the existing one is more confident"""
    merged: Dict[str, GlossaryTerm] = {t.term.lower(): t for t in existing}
    for term in discovered:
        key = term.term.lower()
        current = merged.get(key)
        if current is None or current.confidence <= term.confidence:
            merged[key] = term
    return sorted(merged.values(), key=lambda t: t.term.lower())


# 9

class GlossaryEnrichmentNode(NodeExecutor):
    """Model-written definitions for glossary terms"""

    name = DAGNodeName.GLOSSARY_ENRICHMENT

    SYSTEM_PROMPT = (
        "You are a business analyst writing a data glossary. Define the given term for a "
        "non-technical reader in one or two sentences, using the related tables and columns "
        "as evidence.\n"
        "Respond with valid JSON only."
    )

    def should_skip(self, ctx: NodeContext) -> bool:
        return ctx.client is None

    def execute(self, ctx: NodeContext) -> Dict[str, Any]:
        ontology = ctx.ontology()
        total = len(ontology.glossary)
        enriched = 0
        for i, term in enumerate(ontology.glossary, 1):
            try:
                result = ctx.client.classify(
                    self.build_prompt(term), GlossaryDefinitionResponse,
                    system_prompt=self.SYSTEM_PROMPT, purpose="glossary_enrichment",
                )
            except OntologyEngineError as e:
                if not e.recoverable:
                    raise
                logger.warning(
                    "Glossary definition failed, keeping existing",
                    extra={"extra_fields": {"term": term.term, "error": e.message}}
                )
                OntologyMetrics.record_error(type(e).__name__, e.category.value)
            else:
                if result.data.definition:
                    term.definition = result.data.definition
                    term.confidence = max(term.confidence, min(1.0, max(0.0, result.data.confidence)))
                    enriched += 1
                for alias in result.data.aliases:
                    if alias and alias not in term.aliases:
                        term.aliases.append(alias)
            ctx.report(i, total, f"Defined {term.term}")

        ctx.store.save_ontology(ontology)
        return {"terms": total, "enriched": enriched}

    def build_prompt(self, term: GlossaryTerm) -> str:
        lines = [f"# Glossary Term: {term.term}", ""]
        if term.definition:
            lines.append(f"**Current definition:** {term.definition}")
        if term.related_entities:
            lines.append(f"**Entities:** {', '.join(term.related_entities)}")
        if term.related_columns:
            lines.append(f"**Columns:** {', '.join(term.related_columns)}")
        lines.extend(["", 'Respond with JSON: {"definition": "...", "aliases": ["..."], "confidence": 0.8}'])
        return "\n".join(lines)


def default_nodes() -> Dict[DAGNodeName, NodeExecutor]:
    nodes: List[NodeExecutor] = [
        EntityDiscoveryNode(),
        EntityEnrichmentNode(),
        FKDiscoveryNode(),
        ColumnEnrichmentNode(),
        PKMatchDiscoveryNode(),
        RelationshipEnrichmentNode(),
        OntologyFinalizationNode(),
        GlossaryDiscoveryNode(),
        GlossaryEnrichmentNode(),
    ]
    return {node.name: node for node in nodes}
