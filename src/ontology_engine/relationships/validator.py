"""
Relationship validation

Turns exact join statistics into candidate metrics and cardinality, applies the
integrity rejection rules, and optionally asks the model for a verdict on
candidates that are neither clearly right nor clearly wrong.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Set

from pydantic import field_validator

from ..adapters.base import BaseDatabaseAdapter, DatabaseSchema, JoinAnalysis
from ..classification.patterns import types_compatible
from ..config import RelationshipConfig
from ..llm_client.structured import LLMOutput, StructuredModelClient
from ..models import (
    Cardinality,
    DetectionMethod,
    RejectionReason,
    RelationshipCandidate,
)
from ..utils import OntologyEngineError, get_logger

logger = get_logger(__name__)

MODEL_CARDINALITIES = (
    Cardinality.ONE_TO_ONE.value,
    Cardinality.MANY_TO_ONE.value,
    Cardinality.ONE_TO_MANY.value,
    Cardinality.MANY_TO_MANY.value,
)


def infer_cardinality(join: JoinAnalysis, tolerance: float = 0.05) -> Cardinality:
    """
    Cardinality from both sides' distinct-value ratios.

    A side counts as "many" when its rows per distinct value exceed 1 by more
    than ``tolerance``: orders.user_id (20 rows, 10 values) against users.id
    (10 rows, 10 values) is N:1.
    """
    if join.join_count == 0 or join.source_distinct == 0 or join.target_distinct == 0:
        return Cardinality.UNKNOWN

    many_sources = join.source_row_count / join.source_distinct > 1.0 + tolerance
    many_targets = join.target_row_count / join.target_distinct > 1.0 + tolerance

    if many_sources and many_targets:
        return Cardinality.MANY_TO_MANY
    if many_sources:
        return Cardinality.MANY_TO_ONE
    if many_targets:
        return Cardinality.ONE_TO_MANY
    return Cardinality.ONE_TO_ONE


def apply_join_metrics(candidate: RelationshipCandidate, join: JoinAnalysis,
                       tolerance: float = 0.05) -> None:
    """Copy exact join counts onto the candidate and derive its rates"""
    candidate.source_row_count = join.source_row_count
    candidate.target_row_count = join.target_row_count
    candidate.source_distinct_count = join.source_distinct
    candidate.target_distinct_count = join.target_distinct
    candidate.orphan_rows = join.orphan_count
    candidate.matched_rows = join.source_row_count - join.orphan_count

    if join.source_row_count > 0:
        candidate.join_match_rate = candidate.matched_rows / join.source_row_count
        candidate.orphan_rate = join.orphan_count / join.source_row_count
    else:
        candidate.join_match_rate = 0.0
        candidate.orphan_rate = 0.0

    candidate.target_coverage = (
        join.target_matched / join.target_distinct if join.target_distinct > 0 else 0.0
    )
    referenced = join.target_matched + join.reverse_orphan_count
    candidate.reverse_orphan_rate = (
        join.reverse_orphan_count / referenced if referenced > 0 else 0.0
    )
    candidate.cardinality = infer_cardinality(join, tolerance)


@dataclass
class JoinTestResult:
    candidate: RelationshipCandidate
    succeeded: bool
    error: str = ""


class JoinTester:
    """Runs the real join behind a shortlisted candidate"""

    def __init__(self, adapter: BaseDatabaseAdapter, config: Optional[RelationshipConfig] = None):
        self.adapter = adapter
        self.config = config or RelationshipConfig()

    def test(self, candidate: RelationshipCandidate) -> JoinTestResult:
        try:
            join = self.adapter.analyze_join(
                candidate.source_table, candidate.source_column,
                candidate.target_table, candidate.target_column,
            )
        except OntologyEngineError as e:
            if not e.recoverable:
                raise
            logger.warning(
                "Join test failed",
                extra={"extra_fields": {"candidate": candidate.pair_key, "error": e.message}}
            )
            return JoinTestResult(candidate=candidate, succeeded=False, error=e.message)

        apply_join_metrics(candidate, join, self.config.cardinality_tolerance)
        return JoinTestResult(candidate=candidate, succeeded=True)


def declared_pairs(schema: DatabaseSchema) -> Set[frozenset]:
    """Unordered column pairs already covered by a declared foreign key"""
    pairs: Set[frozenset] = set()
    for table in schema.tables.values():
        for fk in table.foreign_keys:
            for column, referenced in zip(fk.columns, fk.referenced_columns):
                pairs.add(frozenset({
                    f"{table.name}.{column}",
                    f"{fk.referenced_table}.{referenced}",
                }))
    return pairs


class RejectionPolicy:
    """
    Integrity rules evaluated in a fixed order; the first that applies wins.

    A rule whose metric has not been measured is skipped, so sample-only
    candidates are judged on what is known about them.
    """

    def __init__(self, config: Optional[RelationshipConfig] = None):
        self.config = config or RelationshipConfig()

    def evaluate(self, candidate: RelationshipCandidate,
                 schema: Optional[DatabaseSchema] = None,
                 existing_pairs: Optional[Iterable[frozenset]] = None,
                 join_attempted: bool = False) -> Optional[RejectionReason]:
        if candidate.detection_method == DetectionMethod.FOREIGN_KEY:
            return None

        if schema is not None and not self._types_match(candidate, schema):
            return RejectionReason.TYPE_MISMATCH

        if existing_pairs is not None:
            pair = frozenset({candidate.source_key, candidate.target_key})
            if pair in set(existing_pairs):
                return RejectionReason.ALREADY_EXISTS

        if (candidate.source_distinct_count is not None
                and candidate.target_distinct_count is not None
                and candidate.source_distinct_count > candidate.target_distinct_count):
            return RejectionReason.WRONG_DIRECTION

        if (candidate.orphan_rows is not None and candidate.source_row_count
                and candidate.orphan_rows / candidate.source_row_count > self.config.max_orphan_rate):
            return RejectionReason.ORPHAN_INTEGRITY

        if (candidate.reverse_orphan_rate is not None
                and candidate.reverse_orphan_rate > self.config.max_reverse_orphan_rate):
            return RejectionReason.COINCIDENTAL_OVERLAP

        match_rate = candidate.join_match_rate
        if match_rate is None:
            match_rate = candidate.value_match_rate
        if match_rate is not None and match_rate < self.config.min_value_overlap:
            return RejectionReason.LOW_MATCH_RATE

        if join_attempted and candidate.join_match_rate is None:
            return RejectionReason.JOIN_FAILED
        return None

    def _types_match(self, candidate: RelationshipCandidate, schema: DatabaseSchema) -> bool:
        source = schema.get_table(candidate.source_table)
        target = schema.get_table(candidate.target_table)
        if source is None or target is None:
            return False
        source_col = source.get_column(candidate.source_column)
        target_col = target.get_column(candidate.target_column)
        if source_col is None or target_col is None:
            return False
        return types_compatible(source_col.data_type, target_col.data_type)


class RelationshipValidationResponse(LLMOutput):
    is_valid_fk: bool = False
    confidence: float = 0.0
    cardinality: str = ""
    reasoning: str = ""
    source_role: str = ""

    @field_validator("cardinality", mode="before")
    @classmethod
    def _normalize_cardinality(cls, value: object) -> str:
        return str(value or "").strip().upper()


class LLMRelationshipValidator:
    """Asks the model whether a measured candidate is a real foreign key"""

    SYSTEM_PROMPT = (
        "You are a database schema analyst. Your task is to determine if a candidate "
        "foreign key relationship is valid.\n"
        "Analyze the column metadata, sample values, and join statistics to make your decision.\n"
        "Be conservative - only confirm relationships where there is strong evidence the "
        "columns represent a true FK-PK relationship.\n"
        "Respond with valid JSON only."
    )

    def __init__(self, client: StructuredModelClient, config: Optional[RelationshipConfig] = None):
        self.client = client
        self.config = config or RelationshipConfig()

    def build_prompt(self, candidate: RelationshipCandidate, schema: Optional[DatabaseSchema] = None) -> str:
        lines = ["# Relationship Candidate Validation", ""]
        for heading, table_name, column_name, distinct in (
            ("Source Column (Potential FK)", candidate.source_table, candidate.source_column,
             candidate.source_distinct_count),
            ("Target Column (Potential PK/Unique)", candidate.target_table, candidate.target_column,
             candidate.target_distinct_count),
        ):
            data_type = ""
            is_pk = False
            if schema is not None:
                table = schema.get_table(table_name)
                column = table.get_column(column_name) if table else None
                if column is not None:
                    data_type = column.data_type
                    is_pk = column.is_primary_key
            lines.extend([
                f"## {heading}",
                "",
                f"**Table:** {table_name}",
                f"**Column:** {column_name}",
                f"**Data Type:** {data_type or 'unknown'}",
                f"**Is Primary Key:** {is_pk}",
                f"**Distinct Values:** {distinct if distinct is not None else 'unknown'}",
                "",
            ])

        lines.extend(["## Join Analysis Results", ""])
        if candidate.source_row_count is not None:
            lines.append(
                f"- **{candidate.matched_rows}** of **{candidate.source_row_count}** source rows "
                f"match the target ({(candidate.join_match_rate or 0.0):.1%} match rate)"
            )
            lines.append(
                f"- **{candidate.orphan_rows}** source rows have no match "
                f"({(candidate.orphan_rate or 0.0):.1%} orphan rate)"
            )
            lines.append(f"- Target coverage {(candidate.target_coverage or 0.0):.1%}")
        if candidate.value_match_rate is not None:
            lines.append(f"- Sampled value overlap {candidate.value_match_rate:.1%}")
        if candidate.name_similarity:
            lines.append(f"- Name similarity {candidate.name_similarity:.2f}")

        lines.extend([
            "",
            "## Task",
            "",
            f"Is **{candidate.source_key}** a foreign key referencing **{candidate.target_key}**?",
            "",
            "Consider:",
            "- Do the columns represent the same entity type?",
            "- Is the join direction correct (FK -> PK)?",
            "- Does a high orphan rate suggest a data integrity issue or a false positive?",
            "- What semantic role does the source column play in its table?",
            "",
            "Respond with JSON in exactly this shape:",
            '{"is_valid_fk": true, "confidence": 0.85, "cardinality": "N:1", '
            '"reasoning": "...", "source_role": "owner"}',
        ])
        return "\n".join(lines)

    def validate(self, candidate: RelationshipCandidate,
                 schema: Optional[DatabaseSchema] = None) -> RelationshipValidationResponse:
        result = self.client.classify(
            self.build_prompt(candidate, schema), RelationshipValidationResponse,
            system_prompt=self.SYSTEM_PROMPT, purpose="relationship_validation",
        )
        response = result.data
        if response.cardinality not in MODEL_CARDINALITIES and response.is_valid_fk:
            logger.debug(
                "Invalid cardinality from model, defaulting to N:1",
                extra={"extra_fields": {"received": response.cardinality, "candidate": candidate.pair_key}}
            )
            response.cardinality = Cardinality.MANY_TO_ONE.value
        if response.is_valid_fk and response.confidence < self.config.validation_min_confidence:
            response.is_valid_fk = False
            response.reasoning = (
                f"Low confidence ({response.confidence:.2f} < "
                f"{self.config.validation_min_confidence:.2f} threshold): {response.reasoning}"
            )
        return response


def apply_validation(candidate: RelationshipCandidate, response: RelationshipValidationResponse) -> None:
    """Fold a model verdict into the candidate; the review policy decides its status afterwards"""
    candidate.llm_reasoning = response.reasoning
    if not response.is_valid_fk:
        candidate.rejection_reason = RejectionReason.LLM_REJECTED
        return
    if candidate.detection_method in (DetectionMethod.VALUE_MATCH, DetectionMethod.NAME_INFERENCE):
        candidate.detection_method = DetectionMethod.HYBRID
    if candidate.cardinality == Cardinality.UNKNOWN and response.cardinality in MODEL_CARDINALITIES:
        candidate.cardinality = Cardinality(response.cardinality)
    if response.source_role:
        candidate.source_role = response.source_role
    # The model may raise confidence, never lower a measured score
    candidate.set_confidence(max(candidate.confidence, response.confidence))
