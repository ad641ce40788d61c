"""
Unit Tests for Column Routing and Path Classifiers
"""
import pytest
import sys
import os

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ontology_engine.adapters import ColumnSchema, ColumnStats, TableSchema
from ontology_engine.classification import (
    ClassifierRegistry,
    build_profile,
    detect_patterns,
    types_compatible,
)
from ontology_engine.config import ClassificationConfig
from ontology_engine.llm_client import LLMResponse, StructuredModelClient
from ontology_engine.models import (
    ClassificationPath,
    ColumnDataProfile,
    IdentifierType,
    Role,
    is_boolean_value_set,
)
from ontology_engine.utils import LLMError


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


def route(data_type, samples, row_count=1000, distinct_count=None, is_primary_key=False):
    """Build and route a profile for a single column of a table named t"""
    column = ColumnSchema(name="c", data_type=data_type, is_primary_key=is_primary_key)
    table = TableSchema(name="t", columns=[column])
    stats = ColumnStats(
        row_count=row_count,
        null_count=0,
        distinct_count=distinct_count if distinct_count is not None else len(samples),
        sample_values=samples,
    )
    return build_profile(table, column, stats, ClassificationConfig())


class TestBooleanValueSets:
    """Tests for strict boolean detection"""

    @pytest.mark.parametrize("values", [
        ["0", "1"],
        ["true", "false"],
        ["Yes", " no "],
        ["Y"],
        ["t", "f"],
    ])
    def test_boolean_sets(self, values):
        assert is_boolean_value_set(values)

    @pytest.mark.parametrize("values", [
        [],
        ["0", "1", "2"],
        ["yes", "false"],
        ["active", "inactive"],
    ])
    def test_not_boolean(self, values):
        assert not is_boolean_value_set(values)

    def test_distinct_count_overrides_sample(self):
        assert not is_boolean_value_set(["0", "1"], distinct_count=3)


class TestRouting:
    """Tests for deterministic path routing"""

    def test_declared_types(self):
        assert route("TIMESTAMP", ["2024-01-01"]).classification_path == ClassificationPath.TIMESTAMP
        assert route("boolean", ["true"]).classification_path == ClassificationPath.BOOLEAN
        assert route("uuid", ["x"]).classification_path == ClassificationPath.UUID
        assert route("jsonb", ["{}"]).classification_path == ClassificationPath.JSON
        assert route("DECIMAL(10,2)", ["1.50"]).classification_path == ClassificationPath.NUMERIC
        assert route("BLOB", ["\x00"]).classification_path == ClassificationPath.UNKNOWN

    def test_integer_flags_route_to_boolean(self):
        assert route("INTEGER", ["0", "1"], distinct_count=2).classification_path == ClassificationPath.BOOLEAN

    def test_integer_unix_seconds_route_to_timestamp(self):
        samples = ["1700000000", "1700003600", "1700007200"]
        profile = route("BIGINT", samples)
        assert profile.classification_path == ClassificationPath.TIMESTAMP

    def test_low_cardinality_integer_routes_to_enum(self):
        profile = route("INTEGER", ["1", "2", "3", "4", "5"], row_count=10000)
        assert profile.cardinality == pytest.approx(0.0005)
        assert profile.classification_path == ClassificationPath.ENUM

    def test_other_integers_numeric(self):
        samples = [str(i) for i in range(1, 51)]
        assert route("INTEGER", samples, row_count=60).classification_path == ClassificationPath.NUMERIC

    def test_text_uuid_values(self):
        samples = [
            "0b6f2c1e-1a2b-4c3d-8e9f-0a1b2c3d4e5f",
            "1c7e3d2f-2b3c-4d5e-9f0a-1b2c3d4e5f6a",
        ]
        assert route("TEXT", samples, row_count=2).classification_path == ClassificationPath.UUID

    def test_text_external_ids(self):
        samples = ["cus_A1b2C3d4", "cus_Z9y8X7w6", "cus_Q1w2E3r4"]
        profile = route("VARCHAR(64)", samples, row_count=3)
        assert profile.classification_path == ClassificationPath.EXTERNAL_ID
        assert profile.pattern_rate("stripe_id") == 1.0

    def test_text_yes_no_routes_to_boolean(self):
        assert route("TEXT", ["yes", "no"], distinct_count=2).classification_path == ClassificationPath.BOOLEAN

    def test_text_enum_and_free_text(self):
        enum_profile = route("TEXT", ["active", "closed", "pending"], row_count=5000)
        assert enum_profile.classification_path == ClassificationPath.ENUM

        names = [f"name {i}" for i in range(50)]
        assert route("TEXT", names, row_count=60).classification_path == ClassificationPath.TEXT

    def test_routing_is_deterministic(self):
        samples = ["1700000000", "1700003600"]
        assert route("BIGINT", samples).classification_path == route("BIGINT", samples).classification_path

    def test_detect_patterns_only_returns_hits(self):
        patterns = detect_patterns(["alice@example.com", "bob@example.com", "n/a"])
        assert [p.pattern_name for p in patterns] == ["email"]
        assert patterns[0].match_rate == pytest.approx(2 / 3)

    def test_types_compatible(self):
        assert types_compatible("INTEGER", "BIGINT")
        assert types_compatible("VARCHAR(36)", "uuid")
        assert not types_compatible("INTEGER", "TEXT")


class TestClassifierFallbacks:
    """Tests for classification without a model"""

    @pytest.fixture
    def registry(self):
        return ClassifierRegistry()

    def _profile(self, path, column_name="is_active", data_type="INTEGER"):
        return ColumnDataProfile(
            column_id=f"users.{column_name}", column_name=column_name,
            table_id="users", table_name="users", data_type=data_type,
            classification_path=path,
        )

    def test_boolean_fallback(self, registry):
        features = registry.get(ClassificationPath.BOOLEAN).classify(
            self._profile(ClassificationPath.BOOLEAN), None
        )
        assert features.confidence == 0.6
        assert features.boolean_features.true_meaning == "is active"

    def test_enum_fallback_requests_value_analysis(self, registry):
        features = registry.get(ClassificationPath.ENUM).classify(
            self._profile(ClassificationPath.ENUM, "status", "TEXT"), None
        )
        assert features.needs_enum_analysis
        assert features.enum_features is not None

    def test_unknown_never_calls_model(self, registry):
        llm = MockLLMClient(['{"confidence": 0.9}'])
        features = registry.get(ClassificationPath.UNKNOWN).classify(
            self._profile(ClassificationPath.UNKNOWN, "blob", "BLOB"), StructuredModelClient(llm)
        )
        assert llm.call_count == 0
        assert "BLOB" in features.description

    def test_numeric_without_model_fails(self, registry):
        with pytest.raises(LLMError) as exc_info:
            registry.get(ClassificationPath.NUMERIC).classify(
                self._profile(ClassificationPath.NUMERIC, "amount"), None
            )
        assert not exc_info.value.recoverable

    def test_registry_caches_instances(self, registry):
        assert registry.get(ClassificationPath.TEXT) is registry.get(ClassificationPath.TEXT)


class TestClassifiersWithModel:
    """Tests for parsing model responses into features"""

    def _profile(self, column_name, path, data_type="INTEGER", is_primary_key=False):
        return ColumnDataProfile(
            column_id=f"orders.{column_name}", column_name=column_name,
            table_id="orders", table_name="orders", data_type=data_type,
            is_primary_key=is_primary_key, row_count=100, distinct_count=40,
            sample_values=["10", "20"], classification_path=path,
        )

    def test_numeric_identifier_becomes_foreign_key(self):
        llm = MockLLMClient([
            '{"numeric_type": "identifier", "entity_referenced": "user", '
            '"confidence": 0.8, "description": "Buyer"}'
        ])
        features = ClassifierRegistry().get(ClassificationPath.NUMERIC).classify(
            self._profile("buyer_ref", ClassificationPath.NUMERIC), StructuredModelClient(llm)
        )

        assert features.role == Role.FOREIGN_KEY.value
        assert features.needs_fk_resolution
        assert features.identifier_features.identifier_type == IdentifierType.FOREIGN_KEY
        assert features.identifier_features.entity_referenced == "user"
        assert features.llm_model_used == "mock-model"
        assert "SAMPLE VALUES:" in llm.prompts[0]

    def test_numeric_primary_key(self):
        llm = MockLLMClient(['{"numeric_type": "measure", "confidence": 0.7}'])
        features = ClassifierRegistry().get(ClassificationPath.NUMERIC).classify(
            self._profile("id", ClassificationPath.NUMERIC, is_primary_key=True), StructuredModelClient(llm)
        )
        assert features.role == Role.PRIMARY_KEY.value
        assert features.identifier_features.identifier_type == IdentifierType.PRIMARY_KEY

    def test_possible_money_flagged_for_cross_column(self):
        llm = MockLLMClient(['{"numeric_type": "monetary", "may_be_monetary": true, "confidence": 0.75}'])
        features = ClassifierRegistry().get(ClassificationPath.NUMERIC).classify(
            self._profile("total", ClassificationPath.NUMERIC), StructuredModelClient(llm)
        )
        assert features.role == Role.MEASURE.value
        assert features.needs_cross_column_check
        assert features.monetary_features is not None

    def test_enum_state_machine(self):
        llm = MockLLMClient([
            '```json\n{"is_state_machine": true, "state_description": "Order lifecycle", '
            '"needs_detailed_analysis": false, "confidence": 1.4}\n```'
        ])
        features = ClassifierRegistry().get(ClassificationPath.ENUM).classify(
            self._profile("status", ClassificationPath.ENUM, "TEXT"), StructuredModelClient(llm)
        )
        assert features.enum_features.is_state_machine
        assert features.needs_enum_analysis
        assert features.confidence == 1.0

    def test_timestamp_soft_delete(self):
        llm = MockLLMClient(['{"purpose": "SOFT_DELETE", "is_soft_delete": true, "confidence": 0.9}'])
        features = ClassifierRegistry().get(ClassificationPath.TIMESTAMP).classify(
            self._profile("deleted_at", ClassificationPath.TIMESTAMP, "TIMESTAMP"), StructuredModelClient(llm)
        )
        assert features.semantic_type == "soft_delete"
        assert features.timestamp_features.is_soft_delete
        assert features.needs_cross_column_check

    def test_unknown_purpose_coerced(self):
        llm = MockLLMClient(['{"purpose": "birthday", "confidence": 0.5}'])
        features = ClassifierRegistry().get(ClassificationPath.TIMESTAMP).classify(
            self._profile("born_at", ClassificationPath.TIMESTAMP, "TIMESTAMP"), StructuredModelClient(llm)
        )
        assert features.semantic_type == "event_time"
