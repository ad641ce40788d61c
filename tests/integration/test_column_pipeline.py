"""
Integration Tests for the Column Feature Pipeline
Runs all six phases against a real SQLite database
"""
import pytest
import sqlite3
import sys
import os

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ontology_engine.adapters.sqlite_adapter import SQLiteAdapter
from ontology_engine.classification import ColumnFeaturePipeline
from ontology_engine.config import ClassificationConfig, DatabaseConfig
from ontology_engine.llm_client import LLMResponse, StructuredModelClient
from ontology_engine.models import (
    ClassificationPath,
    ColumnMetadata,
    EnumCategory,
    PhaseStatus,
    ProvenanceSource,
)
from ontology_engine.persistence import InMemoryStore


class KeywordLLMClient:
    """Mock LLM client that answers by matching a keyword in the prompt"""

    def __init__(self, responses):
        self.responses = responses
        self.prompts = []

    @property
    def model_id(self):
        return "mock-model"

    def invoke(self, prompt, system_prompt=None, **kwargs):
        """Return the response of the first keyword found in the prompt"""
        self.prompts.append(prompt)
        content = next((text for keyword, text in self.responses if keyword in prompt), "{}")
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
    """SQLite adapter over an orders table with a lifecycle status"""
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.execute("CREATE TABLE orders (id INTEGER PRIMARY KEY, status TEXT, completed_at TIMESTAMP)")
    rows = (
        [("A", None)] * 1000
        + [("P", None)] * 50
        + [("C", "2024-03-01 12:00:00")] * 200
    )
    conn.executemany("INSERT INTO orders (status, completed_at) VALUES (?, ?)", rows)
    conn.commit()

    adapter = SQLiteAdapter(DatabaseConfig(), connection=conn)
    yield adapter
    conn.close()


class TestPipelineWithoutModel:
    """Data-driven phases still run when no model is configured"""

    def test_enum_lifecycle_from_completion_rates(self, adapter):
        store = InMemoryStore()
        pipeline = ColumnFeaturePipeline(adapter, store, ClassificationConfig(batch_size=2))

        result = pipeline.run("proj-1")

        assert result.total_columns == 3
        paths = {p.column_name: p.classification_path for p in result.profiles}
        assert paths == {
            "id": ClassificationPath.NUMERIC,
            "status": ClassificationPath.ENUM,
            "completed_at": ClassificationPath.TIMESTAMP,
        }

        # Numeric and timestamp paths need a model
        assert sorted(result.failed_items) == ["phase2:orders.completed_at", "phase2:orders.id"]

        enum = result.features["orders.status"].enum_features
        assert enum.completion_column == "completed_at"
        assert enum.is_state_machine
        categories = {v.value: v.category for v in enum.values}
        assert categories == {
            "A": EnumCategory.INITIAL,
            "P": EnumCategory.IN_PROGRESS,
            "C": EnumCategory.TERMINAL,
        }
        assert [v.value for v in enum.values] == ["A", "C", "P"]
        assert enum.values[0].percentage == 80.0

    def test_results_stored_with_inference_provenance(self, adapter):
        store = InMemoryStore()
        result = ColumnFeaturePipeline(adapter, store).run("proj-1")

        assert result.stored_columns == 1
        metadata = store.get_column_metadata("proj-1", "orders", "status")
        assert metadata.classification_path == "enum"
        assert metadata.source_of("features") == ProvenanceSource.INFERENCE
        assert metadata.features["enum_features"]["completion_column"] == "completed_at"

    def test_manual_fields_survive_rerun(self, adapter):
        store = InMemoryStore()
        manual = ColumnMetadata(project_id="proj-1", table_name="orders", column_name="status")
        manual.merge({"description": "Fulfilment state set by the warehouse"}, ProvenanceSource.MANUAL)
        store.upsert_column_metadata(manual)

        ColumnFeaturePipeline(adapter, store).run("proj-1")
        ColumnFeaturePipeline(adapter, store).run("proj-1")

        metadata = store.get_column_metadata("proj-1", "orders", "status")
        assert metadata.description == "Fulfilment state set by the warehouse"
        assert metadata.source_of("description") == ProvenanceSource.MANUAL
        assert metadata.classification_path == "enum"

    def test_progress_reported_per_phase(self, adapter):
        reports = []
        result = ColumnFeaturePipeline(adapter, InMemoryStore()).run(
            "proj-1", progress_callback=lambda current, total, message: reports.append((current, total, message))
        )

        assert reports[0][:2] == (0, 3)
        assert all(current <= total for current, total, _ in reports)
        for phase in result.progress.phases:
            assert phase.status == PhaseStatus.COMPLETE

    def test_table_filter(self, adapter):
        result = ColumnFeaturePipeline(adapter, InMemoryStore()).run("proj-1", tables=["other"])
        assert result.total_columns == 0
        assert result.features == {}


class TestPipelineWithModel:
    """Full run with a mocked model answering each phase"""

    RESPONSES = [
        ("VALUE DISTRIBUTION:",
         '{"is_state_machine": true, "state_description": "Order lifecycle", '
         '"description": "Order status", "confidence": 0.9, "values": ['
         '{"value": "A", "label": "Active", "category": "initial"}, '
         '{"value": "P", "label": "Processing", "category": "in_progress"}, '
         '{"value": "C", "label": "Completed", "category": "terminal_success"}]}'),
        ("What does this timestamp record?",
         '{"purpose": "event_time", "is_soft_delete": false, "is_audit_field": false, '
         '"confidence": 0.8, "description": "When the order completed"}'),
        ("small fixed set of values",
         '{"is_state_machine": true, "state_description": "Order lifecycle", '
         '"needs_detailed_analysis": true, "confidence": 0.8, "description": "Current order status"}'),
        ("What does this number represent?",
         '{"numeric_type": "identifier", "confidence": 0.95, "description": "Order id"}'),
    ]

    def test_every_column_classified(self, adapter):
        store = InMemoryStore()
        client = StructuredModelClient(KeywordLLMClient(self.RESPONSES), conversation_sink=store,
                                       project_id="proj-1")

        result = ColumnFeaturePipeline(adapter, store, client=client).run("proj-1")

        assert result.failed_items == []
        assert result.features["orders.id"].role == "primary_key"
        assert result.features["orders.completed_at"].semantic_type == "event_time"

        status = result.features["orders.status"]
        assert status.description == "Order status"
        labels = {v.value: (v.label, v.category) for v in status.enum_features.values}
        assert labels["A"] == ("Active", EnumCategory.INITIAL)
        assert labels["C"] == ("Completed", EnumCategory.TERMINAL_SUCCESS)
        assert status.llm_model_used == "mock-model"

        assert result.stored_columns == 3
        conversations = store.list_conversations("proj-1")
        assert len(conversations) == 4
        assert {c.purpose for c in conversations} == {
            "classify_numeric", "classify_enum", "classify_timestamp", "enum_analysis",
        }

    def test_malformed_response_skips_column(self, adapter):
        responses = [("What does this number represent?", "not json at all")] + self.RESPONSES
        client = StructuredModelClient(KeywordLLMClient(responses))

        result = ColumnFeaturePipeline(adapter, InMemoryStore(), client=client).run("proj-1")

        assert result.failed_items == ["phase2:orders.id"]
        assert "orders.status" in result.features


class TestClarificationFlags:
    """Columns the model cannot settle are flagged for a question"""

    def _run(self, adapter, responses, **config):
        client = StructuredModelClient(KeywordLLMClient(responses + TestPipelineWithModel.RESPONSES))
        pipeline = ColumnFeaturePipeline(adapter, InMemoryStore(), ClassificationConfig(**config), client=client)
        return pipeline.run("proj-1")

    def test_low_confidence_flagged(self, adapter):
        responses = [
            ("What does this timestamp record?",
             '{"purpose": "event_time", "confidence": 0.3, "description": "Some time"}'),
        ]

        result = self._run(adapter, responses)

        completed = result.features["orders.completed_at"]
        assert completed.needs_clarification
        assert "orders.completed_at" in completed.clarification_question
        assert "30%" in completed.clarification_question
        assert not result.features["orders.id"].needs_clarification

    def test_threshold_is_configurable(self, adapter):
        responses = [
            ("What does this timestamp record?",
             '{"purpose": "event_time", "confidence": 0.3, "description": "Some time"}'),
        ]

        result = self._run(adapter, responses, clarification_confidence=0.2)

        assert not result.features["orders.completed_at"].needs_clarification

    def test_model_asks_for_clarification(self, adapter):
        responses = [
            ("What does this number represent?",
             '{"numeric_type": "identifier", "confidence": 0.9, "description": "Order id", '
             '"needs_clarification": true, '
             '"clarification_question": "Is orders.id shared with the billing system?"}'),
        ]

        result = self._run(adapter, responses)

        order_id = result.features["orders.id"]
        assert order_id.needs_clarification
        assert order_id.clarification_question == "Is orders.id shared with the billing system?"

    def test_fallback_never_flagged(self, adapter):
        result = ColumnFeaturePipeline(adapter, InMemoryStore()).run("proj-1")
        assert not any(f.needs_clarification for f in result.features.values())
