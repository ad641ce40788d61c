"""
Enum value analysis

Counts every value of a flagged enum column and, when the table has a completion
timestamp, labels values by how often their rows are completed:

    completion rate >= 0.9  -> terminal (terminal_success / terminal_error when known)
    completion rate <= 0.1  -> initial for the most frequent such value, else in_progress
    anything between        -> in_progress

Model-provided labels are merged on top; confidence is only ever raised.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from pydantic import Field

from ..adapters.base import BaseDatabaseAdapter, ValueCount
from ..config import ClassificationConfig
from ..llm_client.structured import FlexibleEnumValue, LLMOutput, StructuredModelClient
from ..models.column_features import (
    ClassificationPath,
    ColumnDataProfile,
    ColumnEnumValue,
    ColumnFeatures,
    EnumCategory,
    EnumFeatures,
)
from ..utils import get_logger
from .classifiers import profile_context

logger = get_logger(__name__)

COMPLETION_COLUMN_NAMES = (
    "completed_at",
    "finished_at",
    "closed_at",
    "resolved_at",
    "fulfilled_at",
    "delivered_at",
    "done_at",
    "ended_at",
)

_SUCCESS_WORDS = ("complete", "done", "deliver", "paid", "succeed", "success", "fulfil", "resolved", "approved", "closed")
_ERROR_WORDS = ("fail", "error", "cancel", "reject", "refund", "expire", "declin", "void", "abandon")


class EnumAnalysisResponse(LLMOutput):
    is_state_machine: bool = False
    state_description: str = ""
    values: List[FlexibleEnumValue] = Field(default_factory=list)
    description: str = ""
    confidence: float = 0.0


@dataclass
class EnumAnalysisResult:
    column_id: str
    values: List[ColumnEnumValue] = field(default_factory=list)
    completion_column: Optional[str] = None
    is_state_machine: bool = False
    state_description: str = ""
    description: str = ""
    confidence: float = 0.0
    llm_model_used: str = ""


def find_completion_column(profile: ColumnDataProfile,
                           table_profiles: Sequence[ColumnDataProfile]) -> Optional[str]:
    """A timestamp sibling named like a completion marker, in preference order"""
    timestamps = {
        p.column_name.lower(): p.column_name
        for p in table_profiles
        if p.table_name == profile.table_name
        and p.column_name != profile.column_name
        and p.classification_path == ClassificationPath.TIMESTAMP
    }
    for name in COMPLETION_COLUMN_NAMES:
        if name in timestamps:
            return timestamps[name]
    return None


def _outcome_of(value: str) -> Optional[EnumCategory]:
    lowered = value.lower()
    if any(word in lowered for word in _ERROR_WORDS):
        return EnumCategory.TERMINAL_ERROR
    if any(word in lowered for word in _SUCCESS_WORDS):
        return EnumCategory.TERMINAL_SUCCESS
    return None


def label_by_completion(values: List[ColumnEnumValue],
                        config: Optional[ClassificationConfig] = None) -> None:
    """Assign categories from completion rates, in place"""
    config = config or ClassificationConfig()
    initial_assigned = False
    for value in sorted(values, key=lambda v: v.count, reverse=True):
        rate = value.completion_rate
        if rate is None:
            continue
        if rate >= config.terminal_completion_rate:
            if value.category in (EnumCategory.TERMINAL_SUCCESS, EnumCategory.TERMINAL_ERROR):
                continue
            value.category = _outcome_of(value.value) or _outcome_of(value.label) or EnumCategory.TERMINAL
        elif rate <= config.initial_completion_rate:
            value.category = EnumCategory.IN_PROGRESS if initial_assigned else EnumCategory.INITIAL
            initial_assigned = True
        else:
            value.category = EnumCategory.IN_PROGRESS


def _category(raw: Optional[str]) -> Optional[EnumCategory]:
    if not raw:
        return None
    try:
        return EnumCategory(raw)
    except ValueError:
        return None


class EnumAnalyzer:
    """Phase 3: value distribution, completion correlation and model labels"""

    SYSTEM_PROMPT = (
        "You are a database analyst explaining the values of an enumerated column. "
        "For each value give a short human label and, when the column is a lifecycle, a category: "
        "initial, in_progress, terminal, terminal_success or terminal_error. Respond with valid JSON only."
    )

    def __init__(self, adapter: BaseDatabaseAdapter,
                 config: Optional[ClassificationConfig] = None,
                 distribution_limit: int = 100):
        self.adapter = adapter
        self.config = config or ClassificationConfig()
        self.distribution_limit = distribution_limit

    def analyze(self, profile: ColumnDataProfile,
                table_profiles: Sequence[ColumnDataProfile],
                client: Optional[StructuredModelClient] = None) -> EnumAnalysisResult:
        completion_column = find_completion_column(profile, table_profiles)
        distribution = self.adapter.get_value_distribution(
            profile.table_name,
            profile.column_name,
            completion_column=completion_column,
            limit=self.distribution_limit,
        )
        values = self._values_from_distribution(distribution)
        result = EnumAnalysisResult(
            column_id=profile.column_id,
            values=values,
            completion_column=completion_column,
        )

        if client is not None:
            self._apply_model_labels(profile, values, completion_column, client, result)

        if completion_column:
            label_by_completion(values, self.config)
            categories = {v.category for v in values if v.category}
            if any(c.is_terminal for c in categories) and any(not c.is_terminal for c in categories):
                result.is_state_machine = True

        return result

    def _values_from_distribution(self, distribution: List[ValueCount]) -> List[ColumnEnumValue]:
        total = sum(v.count for v in distribution)
        values = []
        for item in distribution:
            completion_rate = None
            if item.completed_count is not None and item.count:
                completion_rate = item.completed_count / item.count
            values.append(ColumnEnumValue(
                value=item.value,
                count=item.count,
                percentage=round(item.count * 100.0 / total, 2) if total else 0.0,
                completion_rate=completion_rate,
            ))
        return values

    def _apply_model_labels(self, profile: ColumnDataProfile, values: List[ColumnEnumValue],
                            completion_column: Optional[str], client: StructuredModelClient,
                            result: EnumAnalysisResult) -> None:
        lines = [profile_context(profile), "", "VALUE DISTRIBUTION:"]
        for v in values:
            line = f"- {v.value}: {v.count} rows ({v.percentage}%)"
            if v.completion_rate is not None:
                line += f", {v.completion_rate:.0%} have {completion_column} set"
            lines.append(line)
        lines.extend([
            "",
            "Respond with JSON in exactly this shape:",
            '{"is_state_machine": true, "state_description": "...", "description": "...", "confidence": 0.85, '
            '"values": [{"value": "A", "label": "Active", "category": "initial"}]}',
        ])
        response = client.classify(
            "\n".join(lines),
            EnumAnalysisResponse,
            system_prompt=self.SYSTEM_PROMPT,
            purpose="enum_analysis",
        ).data

        by_value: Dict[str, ColumnEnumValue] = {v.value: v for v in values}
        for labeled in response.values:
            target = by_value.get(labeled.value)
            if target is None:
                continue
            target.label = labeled.label or target.label
            target.category = _category(labeled.category) or target.category

        result.is_state_machine = response.is_state_machine
        result.state_description = response.state_description
        result.description = response.description
        result.confidence = response.confidence
        result.llm_model_used = client.model_id


def merge_enum_analysis(features: ColumnFeatures, result: EnumAnalysisResult) -> None:
    """Fold a Phase 3 result into the column's features"""
    enum_features = features.enum_features or EnumFeatures()
    enum_features.values = result.values
    enum_features.completion_column = result.completion_column
    enum_features.is_state_machine = enum_features.is_state_machine or result.is_state_machine
    if result.state_description:
        enum_features.state_description = result.state_description
    features.set_path_features(enum_features)

    if result.description:
        features.description = result.description
    if result.confidence > features.confidence:
        features.confidence = result.confidence
    features.needs_enum_analysis = False
