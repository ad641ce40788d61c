"""
Entity/Workflow State Tracker

Owns the per-entity state machine for a workflow: global, table and column
entities move pending -> scanning -> scanned -> analyzing -> complete, pausing in
needs_input while a required question is unanswered. Answers may cascade to other
entities through events; each answer leaves an audit diff that outlives the
ephemeral state.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..models import (
    ColumnScanData,
    QuestionStatus,
    WorkflowAnswer,
    WorkflowEntityState,
    WorkflowEntityStatus,
    WorkflowEntityType,
    WorkflowQuestion,
    column_entity_key,
    global_entity_key,
    table_entity_key,
)
from ..persistence.base import EntityStateRepository
from ..utils import (
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    get_logger,
    utc_now,
)
from .events import (
    FollowUpQuestionRaised,
    GatheredDataChanged,
    KnowledgeFactRecorded,
    WorkflowEvent,
)

logger = get_logger(__name__)

EventListener = Callable[[str, WorkflowEvent], None]
StateKey = Tuple[WorkflowEntityType, str]


class EntityStateTracker:
    """
    Tracks extraction progress per entity for one or more workflows

    Usage:
        tracker = EntityStateTracker(store)
        tracker.initialize(project_id, workflow_id, {"orders": ["id", "status"]})
        tracker.transition(workflow_id, WorkflowEntityType.TABLE, "orders", WorkflowEntityStatus.SCANNING)
    """

    def __init__(self, store: EntityStateRepository):
        self.store = store
        self._listeners: List[EventListener] = []

    def subscribe(self, listener: EventListener) -> None:
        """Observe every event the tracker applies"""
        self._listeners.append(listener)

    # Lifecycle

    def initialize(self, project_id: str, workflow_id: str,
                   tables: Dict[str, Sequence[str]],
                   ontology_id: Optional[str] = None) -> List[WorkflowEntityState]:
        """Create pending state for the global entity, each table and each column"""
        states = [WorkflowEntityState(
            project_id=project_id, workflow_id=workflow_id, ontology_id=ontology_id,
            entity_type=WorkflowEntityType.GLOBAL, entity_key=global_entity_key(),
        )]
        for table_name, columns in tables.items():
            states.append(WorkflowEntityState(
                project_id=project_id, workflow_id=workflow_id, ontology_id=ontology_id,
                entity_type=WorkflowEntityType.TABLE, entity_key=table_entity_key(table_name),
            ))
            for column_name in columns:
                states.append(WorkflowEntityState(
                    project_id=project_id, workflow_id=workflow_id, ontology_id=ontology_id,
                    entity_type=WorkflowEntityType.COLUMN,
                    entity_key=column_entity_key(table_name, column_name),
                ))
        for state in states:
            self.store.upsert_entity_state(state)

        logger.info(
            "Initialized entity states",
            extra={"extra_fields": {"workflow_id": workflow_id, "entities": len(states)}}
        )
        return states

    def cleanup(self, workflow_id: str) -> int:
        """Drop ephemeral state once the workflow is terminal; the audit trail stays"""
        deleted = self.store.delete_entity_states(workflow_id)
        self.store.append_audit(workflow_id, {
            "event": "workflow_closed",
            "entities_deleted": deleted,
            "at": utc_now().isoformat(),
        })
        logger.info(
            "Cleaned up entity states",
            extra={"extra_fields": {"workflow_id": workflow_id, "deleted": deleted}}
        )
        return deleted

    # Reads

    def get(self, workflow_id: str, entity_type: WorkflowEntityType, entity_key: str) -> WorkflowEntityState:
        state = self.store.get_entity_state(workflow_id, entity_type, entity_key)
        if state is None:
            raise NotFoundError(f"{entity_type.value} entity {entity_key!r} not found in workflow {workflow_id}")
        return state

    def list_states(self, workflow_id: str, entity_type: Optional[WorkflowEntityType] = None,
                    status: Optional[WorkflowEntityStatus] = None) -> List[WorkflowEntityState]:
        return self.store.list_entity_states(workflow_id, entity_type, status)

    def status_counts(self, workflow_id: str) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for state in self.store.list_entity_states(workflow_id):
            counts[state.status.value] = counts.get(state.status.value, 0) + 1
        return counts

    def pending_questions(self, workflow_id: str) -> List[Tuple[WorkflowEntityState, WorkflowQuestion]]:
        """Pending questions across the workflow, highest priority (lowest number) first"""
        pending = [
            (state, question)
            for state in self.store.list_entity_states(workflow_id)
            for question in state.state_data.questions
            if question.is_pending()
        ]
        pending.sort(key=lambda pair: (pair[1].priority, not pair[1].is_required, pair[0].entity_key))
        return pending

    # State changes

    def transition(self, workflow_id: str, entity_type: WorkflowEntityType, entity_key: str,
                   target: WorkflowEntityStatus, error: Optional[str] = None) -> WorkflowEntityState:
        state = self.get(workflow_id, entity_type, entity_key)
        self._move(state, target)
        if target == WorkflowEntityStatus.FAILED:
            state.last_error = error
        self.store.upsert_entity_state(state)
        return state

    def advance(self, workflow_id: str, entity_type: WorkflowEntityType, entity_key: str,
                *targets: WorkflowEntityStatus) -> WorkflowEntityState:
        """Apply several transitions in order and persist once"""
        state = self.get(workflow_id, entity_type, entity_key)
        for target in targets:
            self._move(state, target)
        self.store.upsert_entity_state(state)
        return state

    def update_gathered(self, workflow_id: str, entity_type: WorkflowEntityType, entity_key: str,
                        updates: Dict[str, Any]) -> WorkflowEntityState:
        state = self.get(workflow_id, entity_type, entity_key)
        state.state_data.gathered.update(updates)
        state.updated_at = utc_now()
        self.store.upsert_entity_state(state)
        return state

    def record_scan(self, workflow_id: str, table_name: str, column_name: str,
                    scan: ColumnScanData) -> WorkflowEntityState:
        """Store scan statistics on a column and mark it scanned"""
        state = self.get(workflow_id, WorkflowEntityType.COLUMN, column_entity_key(table_name, column_name))
        if state.status == WorkflowEntityStatus.PENDING:
            self._move(state, WorkflowEntityStatus.SCANNING)
        self._move(state, WorkflowEntityStatus.SCANNED)
        state.state_data.gathered["scan"] = scan.to_dict()
        state.data_fingerprint = scan.value_fingerprint
        self.store.upsert_entity_state(state)
        return state

    def add_questions(self, workflow_id: str, entity_type: WorkflowEntityType, entity_key: str,
                      questions: Iterable[WorkflowQuestion]) -> List[WorkflowQuestion]:
        """Attach questions, dropping any whose content hash is already present"""
        state = self.get(workflow_id, entity_type, entity_key)
        added = self._attach_questions(state, questions)
        if added:
            self.store.upsert_entity_state(state)
        return added

    def raise_questions(self, workflow_id: str, entity_type: WorkflowEntityType, entity_key: str,
                        questions: Iterable[WorkflowQuestion]) -> List[WorkflowQuestion]:
        """
        Attach questions found after analysis. A complete entity that receives
        a new required question moves back to needs_input.
        """
        state = self.get(workflow_id, entity_type, entity_key)
        added = self._attach_questions(state, questions)
        if not added:
            return added
        if state.status == WorkflowEntityStatus.COMPLETE and any(q.is_required for q in added):
            self._move(state, WorkflowEntityStatus.ANALYZING)
            self._move(state, WorkflowEntityStatus.NEEDS_INPUT)
        self.store.upsert_entity_state(state)
        return added

    def has_pending_required(self, workflow_id: str) -> bool:
        return any(q.is_required for _, q in self.pending_questions(workflow_id))

    def finish_analysis(self, workflow_id: str, entity_type: WorkflowEntityType,
                        entity_key: str) -> WorkflowEntityState:
        """analyzing -> needs_input while a required question is pending, else complete"""
        state = self.get(workflow_id, entity_type, entity_key)
        if state.state_data.has_pending_required():
            self._move(state, WorkflowEntityStatus.NEEDS_INPUT)
        else:
            self._move(state, WorkflowEntityStatus.COMPLETE)
        self.store.upsert_entity_state(state)
        return state

    # Answers

    def record_answer(self, workflow_id: str, entity_type: WorkflowEntityType, entity_key: str,
                      question_id: str, answer: str, answered_by: str,
                      events: Sequence[WorkflowEvent] = ()) -> WorkflowAnswer:
        """
        Answer a question and apply its cascading events.

        Every touched entity is persisted together after all events are applied,
        and one audit record captures the resulting diff.
        """
        touched: Dict[StateKey, WorkflowEntityState] = {}
        state = self.get(workflow_id, entity_type, entity_key)
        touched[(entity_type, entity_key)] = state

        question = state.state_data.find_question(question_id)
        if question is None:
            raise NotFoundError(f"question {question_id} not found on {entity_type.value} {entity_key!r}")
        if not question.is_pending():
            raise ValidationError(
                f"question {question_id} is already {question.status.value}",
                field_name="question_id",
            )

        now = utc_now()
        question.status = QuestionStatus.ANSWERED
        question.answer = answer
        question.answered_by = answered_by
        question.answered_at = now
        record = WorkflowAnswer(
            question_id=question_id, answer=answer, answered_by=answered_by, answered_at=now,
        )

        for event in events:
            target = self._resolve(workflow_id, event.entity_type, event.entity_key, touched)
            self._apply_event(event, target, question, record)
            for listener in self._listeners:
                listener(workflow_id, event)

        state.state_data.answers.append(record)
        if state.status == WorkflowEntityStatus.NEEDS_INPUT and not state.state_data.has_pending_required():
            self._move(state, WorkflowEntityStatus.ANALYZING)

        for touched_state in touched.values():
            self.store.upsert_entity_state(touched_state)
        self.store.append_audit(workflow_id, {
            "event": "question_answered",
            "entity_type": entity_type.value,
            "entity_key": entity_key,
            "question": question.text,
            "diff": record.to_dict(),
        })

        logger.info(
            "Recorded answer",
            extra={"extra_fields": {
                "workflow_id": workflow_id,
                "entity": entity_key,
                "question_id": question_id,
                "cascaded_events": len(events),
            }}
        )
        return record

    def skip_question(self, workflow_id: str, entity_type: WorkflowEntityType, entity_key: str,
                      question_id: str) -> WorkflowEntityState:
        state = self.get(workflow_id, entity_type, entity_key)
        question = state.state_data.find_question(question_id)
        if question is None:
            raise NotFoundError(f"question {question_id} not found on {entity_type.value} {entity_key!r}")
        if question.is_required:
            raise ValidationError(f"required question {question_id} cannot be skipped", field_name="question_id")
        question.status = QuestionStatus.SKIPPED
        self.store.upsert_entity_state(state)
        return state

    # Internals

    def _move(self, state: WorkflowEntityState, target: WorkflowEntityStatus) -> None:
        if not state.status.can_transition_to(target):
            raise InvalidTransitionError(state.status.value, target.value, subject=state.entity_type.value)
        logger.debug(
            "Entity transition",
            extra={"extra_fields": {
                "entity": state.entity_key or "global",
                "from": state.status.value,
                "to": target.value,
            }}
        )
        state.status = target
        state.updated_at = utc_now()

    def _resolve(self, workflow_id: str, entity_type: WorkflowEntityType, entity_key: str,
                 touched: Dict[StateKey, WorkflowEntityState]) -> WorkflowEntityState:
        key = (entity_type, entity_key)
        if key not in touched:
            touched[key] = self.get(workflow_id, entity_type, entity_key)
        return touched[key]

    def _attach_questions(self, state: WorkflowEntityState,
                          questions: Iterable[WorkflowQuestion]) -> List[WorkflowQuestion]:
        seen = {q.content_hash for q in state.state_data.questions}
        added = []
        for question in questions:
            if question.content_hash in seen:
                logger.debug(
                    "Dropping duplicate question",
                    extra={"extra_fields": {"entity": state.entity_key, "hash": question.content_hash}}
                )
                continue
            seen.add(question.content_hash)
            state.state_data.questions.append(question)
            added.append(question)
        if added:
            state.updated_at = utc_now()
        return added

    def _reopen(self, state: WorkflowEntityState) -> None:
        if state.status == WorkflowEntityStatus.COMPLETE:
            self._move(state, WorkflowEntityStatus.ANALYZING)

    def _apply_event(self, event: WorkflowEvent, target: WorkflowEntityState,
                     question: WorkflowQuestion, record: WorkflowAnswer) -> None:
        if isinstance(event, GatheredDataChanged):
            target.state_data.gathered.update(event.updates)
            self._reopen(target)
            if target.entity_type == WorkflowEntityType.COLUMN:
                record.column_updates.append(target.entity_key)
            else:
                record.entity_updates.append(target.entity_key or "global")
        elif isinstance(event, FollowUpQuestionRaised):
            follow_up = event.question
            follow_up.parent_id = question.id
            if self._attach_questions(target, [follow_up]):
                record.follow_up_id = follow_up.id
                if follow_up.is_required and target.status == WorkflowEntityStatus.COMPLETE:
                    # A finished entity waits again until the follow-up is answered
                    self._move(target, WorkflowEntityStatus.ANALYZING)
                    self._move(target, WorkflowEntityStatus.NEEDS_INPUT)
        elif isinstance(event, KnowledgeFactRecorded):
            if event.fact:
                record.knowledge_facts.append(event.fact)
        else:
            raise ValidationError(f"unsupported workflow event {event.name}", field_name="events")
