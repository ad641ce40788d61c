"""
Integration Tests for the Relationship Workflow Service
Detection, human review and saving against a real SQLite database
"""
import pytest
import sqlite3
import sys
import os

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ontology_engine.adapters.sqlite_adapter import SQLiteAdapter
from ontology_engine.config import DatabaseConfig, SystemConfig
from ontology_engine.llm_client import LLMResponse, StructuredModelClient
from ontology_engine.models import (
    Cardinality,
    CandidateStatus,
    DetectionMethod,
    OntologyWorkflow,
    RejectionReason,
    UserDecision,
    WorkflowPhase,
    WorkflowState,
)
from ontology_engine.persistence import InMemoryStore
from ontology_engine.relationships import RelationshipWorkflowService
from ontology_engine.utils import NotFoundError, ValidationError

PROJECT = "proj-1"
DATASOURCE = "ds-1"


class MockLLMClient:
    """Mock LLM client for testing"""

    def __init__(self, responses=None):
        self.responses = responses or []
        self.call_count = 0
        self.prompts = []

    @property
    def model_id(self):
        return "mock-model"

    def invoke(self, prompt, system_prompt=None, **kwargs):
        """Return mock response"""
        self.prompts.append(prompt)
        if self.call_count < len(self.responses):
            content = self.responses[self.call_count]
        else:
            content = self.responses[-1] if self.responses else ""

        self.call_count += 1

        return LLMResponse(
            content=content,
            model_id="mock-model",
            input_tokens=100,
            output_tokens=50,
            latency_ms=100.0,
        )

    def invoke_with_retry(self, prompt, system_prompt=None, max_retries=None, **kwargs):
        """Return mock response with retry"""
        return self.invoke(prompt, system_prompt, **kwargs)


@pytest.fixture
def adapter():
    """
    users and products referenced by orders

    orders.user_id follows the naming convention, orders.product_id is a declared
    foreign key and orders.account holds user ids under an unrelated name.
    """
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.execute("CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT)")
    conn.execute("CREATE TABLE products (id INTEGER PRIMARY KEY, title TEXT)")
    conn.execute(
        "CREATE TABLE orders (id INTEGER PRIMARY KEY, user_id INTEGER, "
        "product_id INTEGER REFERENCES products(id), account INTEGER, amount INTEGER)"
    )
    conn.executemany("INSERT INTO users (id, name) VALUES (?, ?)", [(i, f"user {i}") for i in range(1, 11)])
    conn.executemany("INSERT INTO products (id, title) VALUES (?, ?)", [(i, f"product {i}") for i in range(1, 6)])
    conn.executemany(
        "INSERT INTO orders (user_id, product_id, account, amount) VALUES (?, ?, ?, ?)",
        [((i % 10) + 1, (i % 5) + 1, ((i + 3) % 10) + 1, 1000 + i * 7) for i in range(20)],
    )
    conn.commit()

    adapter = SQLiteAdapter(DatabaseConfig(), connection=conn)
    yield adapter
    conn.close()


@pytest.fixture
def store():
    return InMemoryStore()


def by_pair(candidates):
    return {f"{c.source_key}->{c.target_key}": c for c in candidates}


class TestDetection:
    """Tests for a detection run without a model"""

    @pytest.fixture
    def service(self, store, adapter):
        return RelationshipWorkflowService(store, adapter, SystemConfig())

    def test_candidates_classified(self, service, store):
        workflow = service.start_detection(PROJECT, DATASOURCE)

        assert workflow.state == WorkflowState.COMPLETED
        candidates = by_pair(store.list_candidates(DATASOURCE))
        assert len(candidates) == 5

        user = candidates["orders.user_id->users.id"]
        assert user.status == CandidateStatus.ACCEPTED
        assert user.detection_method == DetectionMethod.HYBRID
        assert user.cardinality == Cardinality.MANY_TO_ONE
        assert user.confidence == pytest.approx(0.98)

        product = candidates["orders.product_id->products.id"]
        assert product.status == CandidateStatus.ACCEPTED
        assert product.detection_method == DetectionMethod.FOREIGN_KEY

        account = candidates["orders.account->users.id"]
        assert account.detection_method == DetectionMethod.VALUE_MATCH
        assert account.needs_review()
        assert account.confidence == pytest.approx(0.8)

        for pair in ("orders.user_id->products.id", "orders.account->products.id"):
            assert candidates[pair].status == CandidateStatus.REJECTED
            assert candidates[pair].rejection_reason == RejectionReason.WRONG_DIRECTION

    def test_status_counts(self, service):
        service.start_detection(PROJECT, DATASOURCE)

        status = service.get_status_with_counts(PROJECT, DATASOURCE)

        assert status.workflow.state == WorkflowState.COMPLETED
        assert status.confirmed_count == 2
        assert status.needs_review_count == 1
        assert status.rejected_count == 2
        assert status.island_count == 0
        assert not status.can_save
        assert status.to_dict()["needs_review_count"] == 1

    def test_grouped_candidates(self, service):
        service.start_detection(PROJECT, DATASOURCE)

        grouped = service.get_candidates_grouped(DATASOURCE)

        assert len(grouped.confirmed) == 2
        assert [c.source_key for c in grouped.needs_review] == ["orders.account"]
        assert len(grouped.rejected) == 2

    def test_tasks_and_entity_state(self, service, store):
        workflow = service.start_detection(PROJECT, DATASOURCE)

        stored = store.get_workflow(workflow.id)
        assert stored.task_queue
        assert stored.progress.current_phase == "completed"
        # Ephemeral per-entity state is dropped once the workflow completes
        assert store.list_entity_states(workflow.id) == []
        assert store.get_active_ontology(PROJECT) is not None
        assert stored.owner_id == service.instance_id

    def test_active_workflow_refused(self, service, store):
        running = OntologyWorkflow(project_id=PROJECT, datasource_id=DATASOURCE,
                                   phase=WorkflowPhase.RELATIONSHIPS)
        running.transition_to(WorkflowState.RUNNING)
        store.save_workflow(running)

        with pytest.raises(ValidationError):
            service.start_detection(PROJECT, DATASOURCE)

    def test_status_without_workflow(self, service):
        with pytest.raises(NotFoundError):
            service.get_status_with_counts(PROJECT, DATASOURCE)


class TestReviewAndSave:
    """Tests for human decisions and saving"""

    @pytest.fixture
    def service(self, store, adapter):
        service = RelationshipWorkflowService(store, adapter, SystemConfig())
        service.start_detection(PROJECT, DATASOURCE)
        return service

    def _account(self, store):
        return by_pair(store.list_candidates(DATASOURCE))["orders.account->users.id"]

    def _workflow_id(self, store):
        return store.get_latest_workflow(PROJECT, DATASOURCE, WorkflowPhase.RELATIONSHIPS).id

    def test_save_refused_while_review_pending(self, service, store):
        with pytest.raises(ValidationError):
            service.save_relationships(self._workflow_id(store))

    def test_save_unknown_workflow(self, service):
        with pytest.raises(NotFoundError):
            service.save_relationships("no-such-workflow")

    def test_save_refused_for_unfinished_workflow(self, service, store):
        service.update_candidate_decision(DATASOURCE, self._account(store).id, "rejected")
        running = OntologyWorkflow(project_id=PROJECT, datasource_id=DATASOURCE,
                                   phase=WorkflowPhase.RELATIONSHIPS)
        running.transition_to(WorkflowState.RUNNING)
        store.save_workflow(running)

        with pytest.raises(ValidationError, match="running"):
            service.save_relationships(running.id)

    def test_save_refused_for_ontology_workflow(self, service, store):
        service.update_candidate_decision(DATASOURCE, self._account(store).id, "rejected")
        other = OntologyWorkflow(project_id=PROJECT, datasource_id=DATASOURCE, phase=WorkflowPhase.ONTOLOGY)
        other.transition_to(WorkflowState.RUNNING)
        other.transition_to(WorkflowState.COMPLETED)
        store.save_workflow(other)

        with pytest.raises(ValidationError):
            service.save_relationships(other.id)

    def test_save_after_decision(self, service, store):
        decided = service.update_candidate_decision(DATASOURCE, self._account(store).id, "Rejected")
        assert decided.user_decision == UserDecision.REJECTED
        assert decided.status == CandidateStatus.REJECTED

        status = service.get_status_with_counts(PROJECT, DATASOURCE)
        assert status.can_save

        assert service.save_relationships(self._workflow_id(store)) == 2

        entities = service.get_entities_with_occurrences(PROJECT)
        assert [e.entity.name for e in entities] == ["product", "user"]
        assert sum(len(e.occurrences) for e in entities) == 4
        user = next(e for e in entities if e.entity.name == "user")
        roles = {o.location: o.role for o in user.occurrences}
        assert roles["users.id"] == "primary_key"

        ontology = store.get_active_ontology(PROJECT)
        assert {r["source"] for r in ontology.relationships} == {"orders.user_id", "orders.product_id"}

    def test_decision_survives_rerun(self, service, store):
        service.update_candidate_decision(DATASOURCE, self._account(store).id, "rejected")

        service.start_detection(PROJECT, DATASOURCE)

        account = self._account(store)
        assert account.status == CandidateStatus.REJECTED
        assert account.is_user_decided
        assert len(store.list_candidates(DATASOURCE)) == 5

    def test_unknown_candidate(self, service):
        with pytest.raises(NotFoundError):
            service.update_candidate_decision(DATASOURCE, "missing", "accepted")

    def test_candidate_from_other_datasource(self, service, store):
        with pytest.raises(NotFoundError):
            service.update_candidate_decision("other-ds", self._account(store).id, "accepted")

    def test_invalid_decision(self, service, store):
        with pytest.raises(ValidationError):
            service.update_candidate_decision(DATASOURCE, self._account(store).id, "maybe")


class TestCancel:
    """Tests for cancelling workflows"""

    def test_cancel_without_local_runner(self, store, adapter):
        workflow = OntologyWorkflow(project_id=PROJECT, datasource_id=DATASOURCE,
                                    phase=WorkflowPhase.RELATIONSHIPS)
        workflow.transition_to(WorkflowState.RUNNING)
        store.save_workflow(workflow)
        service = RelationshipWorkflowService(store, adapter)

        cancelled = service.cancel(workflow.id)

        assert cancelled.state == WorkflowState.FAILED
        assert cancelled.error == "cancelled by user"

    def test_cancel_completed_is_noop(self, store, adapter):
        service = RelationshipWorkflowService(store, adapter)
        workflow = service.start_detection(PROJECT, DATASOURCE)

        assert service.cancel(workflow.id).state == WorkflowState.COMPLETED

    def test_cancel_unknown(self, store, adapter):
        with pytest.raises(NotFoundError):
            RelationshipWorkflowService(store, adapter).cancel("missing")


class TestModelValidation:
    """Tests for model validation of candidates awaiting review"""

    def test_confirmed_candidate_accepted(self, store, adapter):
        llm = MockLLMClient([
            '{"is_valid_fk": true, "confidence": 0.9, "cardinality": "N:1", '
            '"reasoning": "account holds user ids", "source_role": "account holder"}'
        ])
        client = StructuredModelClient(llm, conversation_sink=store, project_id=PROJECT)
        service = RelationshipWorkflowService(store, adapter, SystemConfig(), client=client)

        service.start_detection(PROJECT, DATASOURCE)

        # Only the candidate in the review band is sent to the model
        assert llm.call_count == 1
        assert "orders.account" in llm.prompts[0]

        account = by_pair(store.list_candidates(DATASOURCE))["orders.account->users.id"]
        assert account.status == CandidateStatus.ACCEPTED
        assert account.detection_method == DetectionMethod.HYBRID
        assert account.source_role == "account holder"
        assert account.confidence == pytest.approx(0.9)

        status = service.get_status_with_counts(PROJECT, DATASOURCE)
        assert status.confirmed_count == 3
        assert status.can_save
        assert [c.purpose for c in store.list_conversations(PROJECT)] == ["relationship_validation"]

    def test_malformed_verdict_left_for_review(self, store, adapter):
        client = StructuredModelClient(MockLLMClient(["no idea"]))
        service = RelationshipWorkflowService(store, adapter, SystemConfig(), client=client)

        workflow = service.start_detection(PROJECT, DATASOURCE)

        assert workflow.state == WorkflowState.COMPLETED
        assert by_pair(store.list_candidates(DATASOURCE))["orders.account->users.id"].needs_review()
