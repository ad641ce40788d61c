"""
Unit Tests for Deterministic Question Generation
"""
import pytest
import sys
import os

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ontology_engine.models import ColumnScanData
from ontology_engine.workflow.questions import (
    column_questions,
    cryptic_enum_question,
    cryptic_values,
    format_values,
    high_null_rate_question,
    is_boolean_like,
    is_cryptic_value,
    is_known_optional_column,
    missing_primary_key_question,
)


def scan(row_count=100, non_null=100, distinct=5, samples=()):
    return ColumnScanData(row_count=row_count, non_null_count=non_null,
                          distinct_count=distinct, sample_values=list(samples))


class TestHighNullRate:
    """Tests for the mostly-NULL column question"""

    def test_fires_above_threshold(self):
        question = high_null_rate_question("orders", "region", scan(non_null=10))

        assert question is not None
        assert question.text == "Column orders.region has 90% NULL values - is this expected?"
        assert question.category == "data_quality"
        assert question.detected_pattern == "high_null_rate"
        assert not question.is_required
        assert question.affects.columns == ["orders.region"]

    def test_threshold_is_exclusive(self):
        assert high_null_rate_question("orders", "region", scan(non_null=20)) is None

    def test_empty_table_ignored(self):
        assert high_null_rate_question("orders", "region", scan(row_count=0, non_null=0)) is None

    @pytest.mark.parametrize("column", ["deleted_at", "shipping_notes", "legacy_code", "Middle_Name"])
    def test_known_optional_columns_skipped(self, column):
        assert is_known_optional_column(column)
        assert high_null_rate_question("users", column, scan(non_null=1)) is None


class TestCrypticValues:
    """Tests for spotting short code values"""

    @pytest.mark.parametrize("value", ["A", "7", "123", "NY", "USD", "A1", "3b"])
    def test_cryptic(self, value):
        assert is_cryptic_value(value)

    @pytest.mark.parametrize("value", ["", "1234", "ABCD", "pending", "Shipped", "abc"])
    def test_readable(self, value):
        assert not is_cryptic_value(value)

    def test_mostly_readable_list_rejected(self):
        assert cryptic_values(["pending", "shipped", "cancelled", "returned", "X"]) == []

    def test_half_cryptic_list_accepted(self):
        assert cryptic_values(["A", "B", "pending", "shipped"]) == ["A", "B"]

    def test_boolean_pairs(self):
        assert is_boolean_like(["Y", "N"])
        assert is_boolean_like(["1", "0"])
        assert not is_boolean_like(["Y", "N", "U"])

    def test_format_truncates(self):
        assert format_values(["a", "b"]) == "'a', 'b'"
        assert format_values([str(i) for i in range(8)]) == "'0', '1', '2', '3', '4' (and 3 more)"


class TestCrypticEnumQuestion:
    """Tests for the required enumeration question"""

    def test_status_codes_need_an_answer(self):
        question = cryptic_enum_question("orders", "status", scan(distinct=3, samples=["A", "C", "P"]))

        assert question.text == "What do the values 'A', 'C', 'P' represent in orders.status?"
        assert question.category == "enumeration"
        assert question.priority == 1
        assert question.is_required
        assert question.detected_pattern == "enum_column"

    def test_boolean_column_skipped(self):
        assert cryptic_enum_question("users", "active", scan(distinct=2, samples=["Y", "N"])) is None

    def test_high_cardinality_skipped(self):
        assert cryptic_enum_question("orders", "code", scan(distinct=21, samples=["A", "B", "C"])) is None

    def test_no_samples(self):
        assert cryptic_enum_question("orders", "status", scan(distinct=0)) is None


class TestColumnQuestions:
    """Tests for the combined per-column rules"""

    def test_both_rules_fire(self):
        questions = column_questions("orders", "flag", scan(non_null=5, distinct=3, samples=["A", "B", "C"]))

        assert [q.detected_pattern for q in questions] == ["high_null_rate", "enum_column"]

    def test_key_columns_only_checked_for_nulls(self):
        questions = column_questions("orders", "user_id", scan(distinct=3, samples=["1", "2", "3"]), is_key=True)

        assert questions == []

    def test_missing_primary_key(self):
        question = missing_primary_key_question("audit_log")

        assert question.category == "entity"
        assert question.affects.tables == ["audit_log"]
        assert not question.is_required
