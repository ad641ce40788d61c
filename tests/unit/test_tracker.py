"""
Unit Tests for the Entity State Tracker
"""
import pytest
import sys
import os

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ontology_engine.models import (
    ColumnScanData,
    QuestionStatus,
    WorkflowEntityStatus,
    WorkflowEntityType,
    WorkflowQuestion,
)
from ontology_engine.persistence import InMemoryStore
from ontology_engine.utils import InvalidTransitionError, NotFoundError, ValidationError
from ontology_engine.workflow import (
    EntityStateTracker,
    FollowUpQuestionRaised,
    GatheredDataChanged,
    KnowledgeFactRecorded,
)
from ontology_engine.workflow.questions import clarification_question

WF = "wf-1"
COLUMN = WorkflowEntityType.COLUMN
TABLE = WorkflowEntityType.TABLE
GLOBAL = WorkflowEntityType.GLOBAL
S = WorkflowEntityStatus


class TestTrackerLifecycle:
    """Tests for initialization, reads and cleanup"""

    @pytest.fixture
    def store(self):
        return InMemoryStore()

    @pytest.fixture
    def tracker(self, store):
        tracker = EntityStateTracker(store)
        tracker.initialize("proj-1", WF, {"orders": ["id", "status"], "users": ["id"]}, ontology_id="ont-1")
        return tracker

    def test_initialize_creates_all_entities(self, tracker):
        states = tracker.list_states(WF)

        assert len(states) == 6
        assert len(tracker.list_states(WF, entity_type=COLUMN)) == 3
        assert tracker.get(WF, GLOBAL, "").ontology_id == "ont-1"
        assert tracker.status_counts(WF) == {"pending": 6}

    def test_get_unknown_entity(self, tracker):
        with pytest.raises(NotFoundError):
            tracker.get(WF, COLUMN, "orders.missing")

    def test_cleanup_keeps_audit(self, tracker, store):
        assert tracker.cleanup(WF) == 6
        assert tracker.list_states(WF) == []
        audit = store.list_audit(WF)
        assert audit[-1]["event"] == "workflow_closed"
        assert audit[-1]["entities_deleted"] == 6


class TestTrackerTransitions:
    """Tests for state machine enforcement"""

    @pytest.fixture
    def tracker(self):
        tracker = EntityStateTracker(InMemoryStore())
        tracker.initialize("proj-1", WF, {"orders": ["status"]})
        return tracker

    def test_full_happy_path(self, tracker):
        tracker.advance(WF, TABLE, "orders", S.SCANNING, S.SCANNED, S.ANALYZING)
        state = tracker.finish_analysis(WF, TABLE, "orders")
        assert state.status == S.COMPLETE

    def test_invalid_transition_rejected(self, tracker):
        with pytest.raises(InvalidTransitionError):
            tracker.transition(WF, TABLE, "orders", S.COMPLETE)
        assert tracker.get(WF, TABLE, "orders").status == S.PENDING

    def test_failed_records_error(self, tracker):
        state = tracker.transition(WF, TABLE, "orders", S.FAILED, error="profiling failed")
        assert state.status == S.FAILED
        assert state.last_error == "profiling failed"

        with pytest.raises(InvalidTransitionError):
            tracker.transition(WF, TABLE, "orders", S.ANALYZING)

    def test_record_scan(self, tracker):
        scan = ColumnScanData(
            row_count=1000, non_null_count=990, distinct_count=4,
            sample_values=["a", "b"], is_enum_candidate=True, value_fingerprint="abc",
        )
        state = tracker.record_scan(WF, "orders", "status", scan)

        assert state.status == S.SCANNED
        assert state.data_fingerprint == "abc"
        assert state.state_data.gathered["scan"]["distinct_count"] == 4

    def test_update_gathered(self, tracker):
        tracker.update_gathered(WF, GLOBAL, "", {"domain": "retail"})
        assert tracker.get(WF, GLOBAL, "").state_data.gathered == {"domain": "retail"}


class TestQuestionsAndAnswers:
    """Tests for questions, answers and cascades"""

    @pytest.fixture
    def store(self):
        return InMemoryStore()

    @pytest.fixture
    def tracker(self, store):
        tracker = EntityStateTracker(store)
        tracker.initialize("proj-1", WF, {"orders": ["status", "total"]})
        for key in ("orders.status", "orders.total"):
            tracker.advance(WF, COLUMN, key, S.SCANNING, S.SCANNED, S.ANALYZING)
        return tracker

    def _ask_required(self, tracker, text="What does status 3 mean?"):
        question = WorkflowQuestion(text=text, category="enum", is_required=True, priority=1)
        tracker.add_questions(WF, COLUMN, "orders.status", [question])
        tracker.finish_analysis(WF, COLUMN, "orders.status")
        return question

    def test_duplicate_questions_dropped(self, tracker):
        first = WorkflowQuestion(text="Is total in cents?", category="monetary")
        duplicate = WorkflowQuestion(text="Is total in cents?", category="monetary", priority=1)

        added = tracker.add_questions(WF, COLUMN, "orders.total", [first, duplicate])
        again = tracker.add_questions(WF, COLUMN, "orders.total", [duplicate])

        assert added == [first]
        assert again == []

    def test_required_question_blocks_completion(self, tracker):
        self._ask_required(tracker)
        assert tracker.get(WF, COLUMN, "orders.status").status == S.NEEDS_INPUT

        pending = tracker.pending_questions(WF)
        assert len(pending) == 1
        assert pending[0][0].entity_key == "orders.status"

    def test_answer_resumes_analysis(self, tracker, store):
        question = self._ask_required(tracker)

        record = tracker.record_answer(WF, COLUMN, "orders.status", question.id, "Cancelled", "alice")

        state = tracker.get(WF, COLUMN, "orders.status")
        assert state.status == S.ANALYZING
        assert state.state_data.questions[0].status == QuestionStatus.ANSWERED
        assert state.state_data.questions[0].answered_by == "alice"
        assert record.answer == "Cancelled"
        assert store.list_audit(WF)[-1]["event"] == "question_answered"

    def test_answer_twice_rejected(self, tracker):
        question = self._ask_required(tracker)
        tracker.record_answer(WF, COLUMN, "orders.status", question.id, "Cancelled", "alice")

        with pytest.raises(ValidationError):
            tracker.record_answer(WF, COLUMN, "orders.status", question.id, "Again", "bob")

    def test_answer_unknown_question(self, tracker):
        with pytest.raises(NotFoundError):
            tracker.record_answer(WF, COLUMN, "orders.status", "nope", "x", "alice")

    def test_cascade_reopens_completed_entity(self, tracker):
        question = self._ask_required(tracker)
        tracker.finish_analysis(WF, COLUMN, "orders.total")
        assert tracker.get(WF, COLUMN, "orders.total").status == S.COMPLETE

        seen = []
        tracker.subscribe(lambda wf, event: seen.append(event.name))
        record = tracker.record_answer(
            WF, COLUMN, "orders.status", question.id, "3 means refunded", "alice",
            events=[
                GatheredDataChanged(COLUMN, "orders.total", {"refunds_negative": True}),
                GatheredDataChanged(TABLE, "orders", {"has_refunds": True}),
                KnowledgeFactRecorded(GLOBAL, "", fact="Refunds are stored as negative totals"),
            ],
        )

        total = tracker.get(WF, COLUMN, "orders.total")
        assert total.status == S.ANALYZING
        assert total.state_data.gathered["refunds_negative"] is True
        assert tracker.get(WF, TABLE, "orders").state_data.gathered["has_refunds"] is True
        assert record.column_updates == ["orders.total"]
        assert record.entity_updates == ["orders"]
        assert record.knowledge_facts == ["Refunds are stored as negative totals"]
        assert seen == ["GatheredDataChanged", "GatheredDataChanged", "KnowledgeFactRecorded"]

    def test_required_follow_up_on_completed_entity(self, tracker):
        question = self._ask_required(tracker)
        tracker.finish_analysis(WF, COLUMN, "orders.total")
        follow_up = WorkflowQuestion(text="Which currency is total in?", category="monetary", is_required=True)

        record = tracker.record_answer(
            WF, COLUMN, "orders.status", question.id, "3 means refunded", "alice",
            events=[FollowUpQuestionRaised(COLUMN, "orders.total", question=follow_up)],
        )

        total = tracker.get(WF, COLUMN, "orders.total")
        assert total.status == S.NEEDS_INPUT
        assert total.state_data.questions[0].parent_id == question.id
        assert record.follow_up_id == follow_up.id

    def test_skip_optional_only(self, tracker):
        required = self._ask_required(tracker)
        optional = WorkflowQuestion(text="Anything else?", category="general")
        tracker.add_questions(WF, COLUMN, "orders.status", [optional])

        with pytest.raises(ValidationError):
            tracker.skip_question(WF, COLUMN, "orders.status", required.id)

        state = tracker.skip_question(WF, COLUMN, "orders.status", optional.id)
        skipped = state.state_data.find_question(optional.id)
        assert skipped.status == QuestionStatus.SKIPPED


class TestLateQuestions:
    """Tests for questions raised after an entity finished analysis"""

    @pytest.fixture
    def tracker(self):
        tracker = EntityStateTracker(InMemoryStore())
        tracker.initialize("proj-1", WF, {"orders": ["amount", "note"]})
        for key in ("orders.amount", "orders.note"):
            tracker.advance(WF, COLUMN, key, S.SCANNING, S.SCANNED, S.ANALYZING)
            tracker.finish_analysis(WF, COLUMN, key)
        return tracker

    def test_flagged_column_needs_input(self, tracker):
        question = clarification_question("orders", "amount", "Is amount stored in cents?",
                                          reasoning="Classified as numeric with 30% confidence")

        added = tracker.raise_questions(WF, COLUMN, "orders.amount", [question])

        state = tracker.get(WF, COLUMN, "orders.amount")
        assert added == [question]
        assert state.status == S.NEEDS_INPUT
        assert state.state_data.questions[0].is_required
        assert state.state_data.questions[0].category == "clarification"
        assert state.state_data.questions[0].affects.columns == ["orders.amount"]
        assert tracker.has_pending_required(WF)

    def test_optional_question_keeps_entity_complete(self, tracker):
        tracker.raise_questions(WF, COLUMN, "orders.note",
                                [WorkflowQuestion(text="Is note ever shown to customers?")])

        assert tracker.get(WF, COLUMN, "orders.note").status == S.COMPLETE
        assert not tracker.has_pending_required(WF)

    def test_repeated_flag_not_duplicated(self, tracker):
        first = clarification_question("orders", "amount", "Is amount stored in cents?")
        again = clarification_question("orders", "amount", "Is amount stored in cents?")
        tracker.raise_questions(WF, COLUMN, "orders.amount", [first])

        assert tracker.raise_questions(WF, COLUMN, "orders.amount", [again]) == []
        assert len(tracker.get(WF, COLUMN, "orders.amount").state_data.questions) == 1

    def test_answer_clears_pending_required(self, tracker):
        question = clarification_question("orders", "amount", "Is amount stored in cents?")
        tracker.raise_questions(WF, COLUMN, "orders.amount", [question])

        tracker.record_answer(WF, COLUMN, "orders.amount", question.id, "Yes, cents", "alice")

        assert not tracker.has_pending_required(WF)
        assert tracker.get(WF, COLUMN, "orders.amount").status == S.ANALYZING
