"""
Unit Tests for Relationship Candidates, Validation and Review
"""
import pytest
from unittest.mock import MagicMock
import sys
import os

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ontology_engine.adapters import (
    ColumnSchema,
    DatabaseSchema,
    ForeignKeySchema,
    JoinAnalysis,
    OverlapResult,
    TableSchema,
)
from ontology_engine.config import RelationshipConfig
from ontology_engine.llm_client import LLMResponse, StructuredModelClient
from ontology_engine.models import (
    CandidateStatus,
    Cardinality,
    ColumnScanData,
    DetectionMethod,
    RejectionReason,
    RelationshipCandidate,
    UserDecision,
)
from ontology_engine.relationships import (
    CandidateGenerator,
    LLMRelationshipValidator,
    NamingAnalyzer,
    RejectionPolicy,
    RelationshipDiscoveryEngine,
    ReviewPolicy,
    apply_join_metrics,
    apply_user_decision,
    apply_validation,
    declared_fk_candidates,
    declared_pairs,
    entity_name_for_table,
    infer_cardinality,
    merge_signals,
    pluralize,
    score_candidate,
    singularize,
)
from ontology_engine.persistence import InMemoryStore
from ontology_engine.utils import ValidationError


class MockLLMClient:
    """Mock LLM client for testing"""

    def __init__(self, responses=None):
        self.responses = responses or []
        self.call_count = 0

    @property
    def model_id(self):
        return "mock-model"

    def invoke(self, prompt, system_prompt=None, **kwargs):
        """Return mock response"""
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


def candidate(source="orders.user_id", target="users.id", method=DetectionMethod.VALUE_MATCH, **kwargs):
    source_table, source_column = source.split(".")
    target_table, target_column = target.split(".")
    return RelationshipCandidate(
        datasource_id="ds-1",
        source_table=source_table,
        source_column=source_column,
        target_table=target_table,
        target_column=target_column,
        detection_method=method,
        **kwargs,
    )


def shop_schema():
    users = TableSchema(
        name="users",
        columns=[
            ColumnSchema(name="id", data_type="INTEGER", is_primary_key=True),
            ColumnSchema(name="name", data_type="TEXT"),
        ],
        primary_key=["id"],
    )
    products = TableSchema(
        name="products",
        columns=[ColumnSchema(name="id", data_type="INTEGER", is_primary_key=True)],
        primary_key=["id"],
    )
    orders = TableSchema(
        name="orders",
        columns=[
            ColumnSchema(name="id", data_type="INTEGER", is_primary_key=True),
            ColumnSchema(name="user_id", data_type="INTEGER"),
            ColumnSchema(name="product_id", data_type="INTEGER", is_foreign_key=True),
            ColumnSchema(name="amount", data_type="INTEGER"),
            ColumnSchema(name="note", data_type="TEXT"),
        ],
        primary_key=["id"],
        foreign_keys=[ForeignKeySchema(
            name="fk_orders_product", columns=["product_id"],
            referenced_table="products", referenced_columns=["id"],
        )],
    )
    return DatabaseSchema(
        database_name="shop", database_type="sqlite",
        tables={"users": users, "products": products, "orders": orders},
    )


class TestNaming:
    """Tests for naming convention analysis"""

    @pytest.fixture
    def naming(self):
        return NamingAnalyzer()

    @pytest.mark.parametrize("column,expected", [
        ("user_id", ["user"]),
        ("fk_user", ["user"]),
        ("user_fk", ["user"]),
        ("id_user", ["user"]),
        ("user_ref", ["user"]),
        ("userid", ["user"]),
        ("id", []),
        ("name", []),
    ])
    def test_stems(self, naming, column, expected):
        assert naming.stems(column) == expected

    def test_table_scores(self, naming):
        assert naming.table_score("user_id", "user") == 1.0
        assert naming.table_score("person_id", "people") == 0.95
        assert naming.table_score("user_id", "users") == 0.9
        assert naming.table_score("owner_user_id", "users") == 0.7
        assert naming.table_score("user_id", "orders") == 0.0

    def test_reference_score_same_column_name(self, naming):
        assert naming.reference_score("user_id", "accounts", "user_id") == 0.9
        assert naming.reference_score("id", "users", "id") == 0.0

    def test_find_matching_tables(self, naming):
        matches = naming.find_matching_tables("owner_user_id", ["orders", "owners", "users"])
        assert matches == [("users", 0.7)]

    @pytest.mark.parametrize("singular,plural", [
        ("user", "users"),
        ("category", "categories"),
        ("box", "boxes"),
        ("day", "days"),
        ("person", "people"),
        ("address", "addresses"),
    ])
    def test_plural_rules(self, singular, plural):
        assert pluralize(singular) == plural
        assert singularize(plural) == singular

    def test_singularize_keeps_double_s(self):
        assert singularize("class") == "class"

    def test_entity_names(self):
        assert entity_name_for_table("order_items") == "order_item"
        assert entity_name_for_table("People") == "person"
        assert entity_name_for_table("users") == "user"


class TestJoinMetrics:
    """Tests for cardinality and join metric derivation"""

    def _join(self, **overrides):
        values = dict(
            source_row_count=20, target_row_count=10, join_count=20,
            source_matched=10, target_matched=10, orphan_count=0,
            reverse_orphan_count=0, source_distinct=10, target_distinct=10,
        )
        values.update(overrides)
        return JoinAnalysis(**values)

    def test_many_to_one(self):
        assert infer_cardinality(self._join()) == Cardinality.MANY_TO_ONE

    def test_one_to_many(self):
        join = self._join(source_row_count=10, target_row_count=20, target_distinct=10)
        assert infer_cardinality(join) == Cardinality.ONE_TO_MANY

    def test_one_to_one(self):
        join = self._join(source_row_count=10, join_count=10)
        assert infer_cardinality(join) == Cardinality.ONE_TO_ONE

    def test_many_to_many(self):
        join = self._join(target_row_count=30, join_count=60)
        assert infer_cardinality(join) == Cardinality.MANY_TO_MANY

    def test_within_tolerance_counts_as_one(self):
        join = self._join(source_row_count=102, source_distinct=100, target_row_count=100,
                          target_distinct=100, join_count=102)
        assert infer_cardinality(join) == Cardinality.ONE_TO_ONE

    def test_empty_join_unknown(self):
        assert infer_cardinality(self._join(join_count=0)) == Cardinality.UNKNOWN

    def test_apply_join_metrics(self):
        c = candidate()
        apply_join_metrics(c, self._join(orphan_count=2, target_matched=8, reverse_orphan_count=2))

        assert c.matched_rows == 18
        assert c.orphan_rows == 2
        assert c.join_match_rate == pytest.approx(0.9)
        assert c.orphan_rate == pytest.approx(0.1)
        assert c.target_coverage == pytest.approx(0.8)
        assert c.reverse_orphan_rate == pytest.approx(0.2)
        assert c.cardinality == Cardinality.MANY_TO_ONE


class TestRejectionPolicy:
    """Tests for the ordered integrity rules"""

    @pytest.fixture
    def policy(self):
        return RejectionPolicy(RelationshipConfig())

    @pytest.fixture
    def schema(self):
        return shop_schema()

    def test_declared_foreign_keys_never_rejected(self, policy, schema):
        fk = candidate("orders.note", "users.id", DetectionMethod.FOREIGN_KEY, value_match_rate=0.0)
        assert policy.evaluate(fk, schema) is None

    def test_type_mismatch_first(self, policy, schema):
        c = candidate("orders.note", "users.id", source_distinct_count=50, target_distinct_count=10)
        assert policy.evaluate(c, schema) == RejectionReason.TYPE_MISMATCH

    def test_unknown_column_is_type_mismatch(self, policy, schema):
        assert policy.evaluate(candidate("orders.ghost", "users.id"), schema) == RejectionReason.TYPE_MISMATCH

    def test_already_exists(self, policy, schema):
        c = candidate("products.id", "orders.product_id")
        assert policy.evaluate(c, schema, declared_pairs(schema)) == RejectionReason.ALREADY_EXISTS

    def test_wrong_direction(self, policy, schema):
        c = candidate(source_distinct_count=20, target_distinct_count=10, orphan_rows=5, source_row_count=20)
        assert policy.evaluate(c, schema) == RejectionReason.WRONG_DIRECTION

    def test_orphan_integrity(self, policy):
        c = candidate(orphan_rows=2, source_row_count=20, reverse_orphan_rate=0.9)
        assert policy.evaluate(c) == RejectionReason.ORPHAN_INTEGRITY

    def test_coincidental_overlap(self, policy):
        c = candidate(orphan_rows=0, source_row_count=20, reverse_orphan_rate=0.6)
        assert policy.evaluate(c) == RejectionReason.COINCIDENTAL_OVERLAP

    def test_low_match_rate_prefers_join_rate(self, policy):
        assert policy.evaluate(candidate(value_match_rate=0.2)) == RejectionReason.LOW_MATCH_RATE
        assert policy.evaluate(candidate(value_match_rate=0.2, join_match_rate=0.96)) is None

    def test_join_failed(self, policy):
        c = candidate(value_match_rate=0.8)
        assert policy.evaluate(c) is None
        assert policy.evaluate(c, join_attempted=True) == RejectionReason.JOIN_FAILED

    def test_clean_candidate_passes(self, policy, schema):
        c = candidate(source_distinct_count=10, target_distinct_count=10, orphan_rows=0,
                      source_row_count=20, reverse_orphan_rate=0.0, join_match_rate=1.0)
        assert policy.evaluate(c, schema, declared_pairs(schema), join_attempted=True) is None


class TestReviewPolicy:
    """Tests for scoring and review bands"""

    @pytest.fixture
    def review(self):
        return ReviewPolicy(RelationshipConfig())

    def test_score_weights(self):
        c = candidate(join_match_rate=1.0, value_match_rate=1.0, name_similarity=0.9)
        assert score_candidate(c) == pytest.approx(0.98)
        assert score_candidate(candidate(method=DetectionMethod.FOREIGN_KEY)) == 1.0

    def test_high_score_accepted(self, review):
        c = candidate(join_match_rate=1.0, value_match_rate=1.0, name_similarity=0.9)
        assert review.apply(c)
        assert c.status == CandidateStatus.ACCEPTED
        assert not c.needs_review()

    def test_middle_band_needs_review(self, review):
        c = candidate(join_match_rate=1.0, value_match_rate=1.0, name_similarity=0.0)
        review.apply(c)
        assert c.confidence == pytest.approx(0.8)
        assert c.status == CandidateStatus.PENDING
        assert c.is_required
        assert c.needs_review()

    def test_low_score_rejected(self, review):
        c = candidate(value_match_rate=1.0)
        review.apply(c)
        assert c.status == CandidateStatus.REJECTED
        assert c.rejection_reason == RejectionReason.LOW_CONFIDENCE

    def test_rejection_reason_wins(self, review):
        c = candidate(join_match_rate=1.0, value_match_rate=1.0, name_similarity=1.0)
        review.apply(c, RejectionReason.WRONG_DIRECTION)
        assert c.status == CandidateStatus.REJECTED
        assert c.rejection_reason == RejectionReason.WRONG_DIRECTION
        assert not c.is_required

    def test_foreign_key_accepted_at_full_confidence(self, review):
        c = candidate(method=DetectionMethod.FOREIGN_KEY, confidence=0.3)
        review.apply(c)
        assert c.confidence == 1.0
        assert c.status == CandidateStatus.ACCEPTED

    def test_user_decision_frozen(self, review):
        c = candidate(join_match_rate=1.0, value_match_rate=1.0, name_similarity=1.0)
        apply_user_decision(c, "rejected")

        assert not review.apply(c)
        assert c.status == CandidateStatus.REJECTED
        assert c.user_decision == UserDecision.REJECTED

    def test_engine_skips_user_decided_pairs(self):
        store = InMemoryStore()
        engine = RelationshipDiscoveryEngine(MagicMock(), store)
        decided = apply_user_decision(candidate(), "rejected")
        store.upsert_candidate(decided)

        assert engine.is_frozen(candidate(join_match_rate=1.0))
        assert not engine.is_frozen(candidate(source="orders.product_id", target="products.id"))

    def test_user_decision_normalized(self):
        c = apply_user_decision(candidate(is_required=True), " Accepted ")
        assert c.status == CandidateStatus.ACCEPTED
        assert not c.is_required

    def test_invalid_user_decision(self):
        with pytest.raises(ValidationError):
            apply_user_decision(candidate(), "maybe")


class TestCandidateSignals:
    """Tests for declared keys, signal merging and generation"""

    def test_declared_fk_candidates(self):
        found = declared_fk_candidates(shop_schema(), "ds-1", workflow_id="wf-1")

        assert len(found) == 1
        fk = found[0]
        assert fk.pair_key == "orders.product_id->products.id"
        assert fk.detection_method == DetectionMethod.FOREIGN_KEY
        assert fk.status == CandidateStatus.ACCEPTED
        assert fk.confidence == 1.0
        assert fk.workflow_id == "wf-1"

    def test_merge_signals(self):
        value_matches = [
            candidate(value_match_rate=1.0, name_similarity=0.0),
            candidate("orders.id", "users.id", DetectionMethod.PK_MATCH, value_match_rate=1.0),
        ]
        name_matches = [
            candidate(method=DetectionMethod.NAME_INFERENCE, name_similarity=0.9),
            candidate("orders.id", "users.id", DetectionMethod.NAME_INFERENCE, name_similarity=0.7),
            candidate("orders.owner_id", "owners.id", DetectionMethod.NAME_INFERENCE, name_similarity=0.9),
        ]

        merged = {c.pair_key: c for c in merge_signals(value_matches, name_matches)}

        assert len(merged) == 3
        hybrid = merged["orders.user_id->users.id"]
        assert hybrid.detection_method == DetectionMethod.HYBRID
        assert hybrid.name_similarity == 0.9
        assert hybrid.value_match_rate == 1.0
        assert merged["orders.id->users.id"].detection_method == DetectionMethod.PK_MATCH
        assert merged["orders.owner_id->owners.id"].detection_method == DetectionMethod.NAME_INFERENCE

    def test_generator_skips_declared_and_low_overlap(self):
        def overlap(source_table, source_column, target_table, target_column, sample_limit=1000):
            if source_column == "user_id" and target_table == "users":
                return OverlapResult(sampled=10, matched=10)
            return OverlapResult(sampled=10, matched=1)

        adapter = MagicMock()
        adapter.check_value_overlap.side_effect = overlap
        scans = {
            "orders.user_id": ColumnScanData(row_count=20, distinct_count=10),
            "orders.amount": ColumnScanData(row_count=20, distinct_count=20),
        }

        found = CandidateGenerator(adapter).generate(shop_schema(), scans, "ds-1")

        assert [c.pair_key for c in found] == ["orders.user_id->users.id"]
        assert found[0].detection_method == DetectionMethod.HYBRID
        assert found[0].value_match_rate == 1.0
        assert found[0].name_similarity == 0.9
        checked = {call.args[1] for call in adapter.check_value_overlap.call_args_list}
        assert "product_id" not in checked
        assert "note" not in checked


class TestModelValidation:
    """Tests for model verdicts on candidates"""

    def test_low_confidence_verdict_downgraded(self):
        llm = MockLLMClient(['{"is_valid_fk": true, "confidence": 0.6, "cardinality": "bogus", "reasoning": "weak"}'])
        validator = LLMRelationshipValidator(StructuredModelClient(llm))
        c = candidate(value_match_rate=0.9)

        response = validator.validate(c, shop_schema())
        apply_validation(c, response)

        assert not response.is_valid_fk
        assert response.cardinality == "N:1"
        assert response.reasoning.startswith("Low confidence")
        assert c.rejection_reason == RejectionReason.LLM_REJECTED

    def test_confirmed_verdict_upgrades_candidate(self):
        llm = MockLLMClient([
            '{"is_valid_fk": true, "confidence": 0.9, "cardinality": "n:1", '
            '"reasoning": "orders belong to users", "source_role": "buyer"}'
        ])
        validator = LLMRelationshipValidator(StructuredModelClient(llm))
        c = candidate(value_match_rate=0.9, confidence=0.4)

        apply_validation(c, validator.validate(c))

        assert c.detection_method == DetectionMethod.HYBRID
        assert c.cardinality == Cardinality.MANY_TO_ONE
        assert c.source_role == "buyer"
        assert c.confidence == 0.9
        assert c.rejection_reason is None

    def test_prompt_includes_join_statistics(self):
        c = candidate(source_row_count=20, matched_rows=18, orphan_rows=2,
                      join_match_rate=0.9, orphan_rate=0.1, target_coverage=0.8)
        prompt = LLMRelationshipValidator(MagicMock()).build_prompt(c, shop_schema())

        assert "**18** of **20** source rows" in prompt
        assert "**Is Primary Key:** True" in prompt
        assert "orders.user_id" in prompt
