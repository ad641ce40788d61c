"""
Unit Tests for Enum Value Analysis and Glossary Merging
"""
import pytest
from unittest.mock import MagicMock
import sys
import os

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ontology_engine.adapters import ValueCount
from ontology_engine.classification import (
    EnumAnalyzer,
    EnumAnalysisResult,
    find_completion_column,
    label_by_completion,
    merge_enum_analysis,
)
from ontology_engine.models import (
    ClassificationPath,
    ColumnDataProfile,
    ColumnEnumValue,
    ColumnFeatures,
    EnumCategory,
    EnumFeatures,
    GlossaryTerm,
)
from ontology_engine.orchestration import merge_glossary


def _profile(column_name, path, table_name="orders"):
    return ColumnDataProfile(
        column_id=f"{table_name}.{column_name}", column_name=column_name,
        table_id=table_name, table_name=table_name, data_type="TEXT",
        classification_path=path,
    )


class TestLabelByCompletion:
    """Tests for completion-rate labelling"""

    def test_lifecycle_categories(self):
        values = [
            ColumnEnumValue(value="P", count=50, completion_rate=0.0),
            ColumnEnumValue(value="A", count=1000, completion_rate=0.02),
            ColumnEnumValue(value="C", count=200, completion_rate=1.0),
            ColumnEnumValue(value="H", count=30, completion_rate=0.5),
        ]

        label_by_completion(values)

        by_value = {v.value: v.category for v in values}
        # Most frequent low-completion value is the initial state
        assert by_value["A"] == EnumCategory.INITIAL
        assert by_value["P"] == EnumCategory.IN_PROGRESS
        assert by_value["C"] == EnumCategory.TERMINAL
        assert by_value["H"] == EnumCategory.IN_PROGRESS

    def test_outcome_words(self):
        values = [
            ColumnEnumValue(value="delivered", count=10, completion_rate=0.95),
            ColumnEnumValue(value="cancelled", count=5, completion_rate=1.0),
            ColumnEnumValue(value="x9", label="Payment failed", count=2, completion_rate=1.0),
        ]

        label_by_completion(values)

        assert values[0].category == EnumCategory.TERMINAL_SUCCESS
        assert values[1].category == EnumCategory.TERMINAL_ERROR
        assert values[2].category == EnumCategory.TERMINAL_ERROR

    def test_model_outcome_kept(self):
        value = ColumnEnumValue(value="done", count=5, completion_rate=1.0,
                                category=EnumCategory.TERMINAL_ERROR)
        label_by_completion([value])
        assert value.category == EnumCategory.TERMINAL_ERROR

    def test_values_without_rate_untouched(self):
        value = ColumnEnumValue(value="x", count=5)
        label_by_completion([value])
        assert value.category is None


class TestCompletionColumn:
    """Tests for completion column lookup"""

    def test_prefers_known_names(self):
        status = _profile("status", ClassificationPath.ENUM)
        siblings = [
            status,
            _profile("created_at", ClassificationPath.TIMESTAMP),
            _profile("closed_at", ClassificationPath.TIMESTAMP),
            _profile("completed_at", ClassificationPath.TIMESTAMP),
            _profile("completed_at", ClassificationPath.TIMESTAMP, table_name="invoices"),
        ]
        assert find_completion_column(status, siblings) == "completed_at"

    def test_requires_timestamp_path(self):
        status = _profile("status", ClassificationPath.ENUM)
        siblings = [status, _profile("completed_at", ClassificationPath.TEXT)]
        assert find_completion_column(status, siblings) is None


class TestEnumAnalyzer:
    """Tests for EnumAnalyzer with a mocked adapter"""

    def test_distribution_and_state_machine(self):
        adapter = MagicMock()
        adapter.get_value_distribution.return_value = [
            ValueCount(value="open", count=80, completed_count=0),
            ValueCount(value="resolved", count=20, completed_count=20),
        ]
        status = _profile("status", ClassificationPath.ENUM, table_name="tickets")
        siblings = [status, _profile("resolved_at", ClassificationPath.TIMESTAMP, table_name="tickets")]

        result = EnumAnalyzer(adapter).analyze(status, siblings, client=None)

        adapter.get_value_distribution.assert_called_once_with(
            "tickets", "status", completion_column="resolved_at", limit=100
        )
        assert result.completion_column == "resolved_at"
        assert result.is_state_machine
        assert result.values[0].percentage == 80.0
        assert result.values[0].category == EnumCategory.INITIAL
        assert result.values[1].category == EnumCategory.TERMINAL_SUCCESS

    def test_merge_into_features(self):
        features = ColumnFeatures(
            column_id="tickets.status", classification_path=ClassificationPath.ENUM,
            confidence=0.5, needs_enum_analysis=True,
        )
        features.set_path_features(EnumFeatures(state_description="Ticket state"))
        result = EnumAnalysisResult(
            column_id="tickets.status",
            values=[ColumnEnumValue(value="open", count=1)],
            completion_column="resolved_at",
            is_state_machine=True,
            confidence=0.7,
        )

        merge_enum_analysis(features, result)

        assert not features.needs_enum_analysis
        assert features.enum_features.is_state_machine
        assert features.enum_features.state_description == "Ticket state"
        assert features.enum_features.completion_column == "resolved_at"
        assert features.confidence == 0.7


class TestMergeGlossary:
    """Tests for glossary merging"""

    def test_more_confident_existing_wins(self):
        existing = [GlossaryTerm(term="Order", definition="curated", confidence=0.9)]
        discovered = [GlossaryTerm(term="order", definition="guessed", confidence=0.5)]

        merged = merge_glossary(existing, discovered)

        assert len(merged) == 1
        assert merged[0].definition == "curated"

    def test_ties_go_to_discovered_and_sorted(self):
        existing = [GlossaryTerm(term="User", definition="old", confidence=0.5)]
        discovered = [
            GlossaryTerm(term="user", definition="new", confidence=0.5),
            GlossaryTerm(term="Account", definition="acct", confidence=0.4),
        ]

        merged = merge_glossary(existing, discovered)

        assert [t.term for t in merged] == ["Account", "user"]
        assert merged[1].definition == "new"
