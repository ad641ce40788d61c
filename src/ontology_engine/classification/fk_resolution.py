"""
FK target resolution

For each column flagged as a foreign key, measure value overlap against primary
key columns of other tables with compatible types. A single strong candidate is
taken directly; otherwise the model chooses among the candidates.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from ..adapters.base import BaseDatabaseAdapter, DatabaseSchema
from ..config import ClassificationConfig
from ..llm_client.structured import LLMOutput, StructuredModelClient
from ..models.column_features import (
    ColumnDataProfile,
    ColumnFeatures,
    IdentifierFeatures,
    IdentifierType,
    Role,
)
from ..relationships.naming import NamingAnalyzer
from ..utils import OntologyEngineError, get_logger
from .classifiers import profile_context
from .patterns import types_compatible

logger = get_logger(__name__)

DATA_OVERLAP_MODEL = "data_overlap"
NAME_MATCH_BOOST = 0.05


@dataclass
class FKCandidate:
    table: str
    column: str
    data_type: str
    overlap_rate: float
    matched: int
    sampled: int
    name_score: float = 0.0

    @property
    def score(self) -> float:
        return min(1.0, self.overlap_rate + NAME_MATCH_BOOST * self.name_score)


@dataclass
class FKResolutionResult:
    column_id: str
    fk_target_table: str = ""
    fk_target_column: str = ""
    fk_confidence: float = 0.0
    llm_model_used: str = ""

    @property
    def resolved(self) -> bool:
        return bool(self.fk_target_table)


class FKResolutionResponse(LLMOutput):
    target_table: str = ""
    target_column: str = ""
    confidence: float = 0.0
    reasoning: str = ""


class FKResolver:
    """Phase 4"""

    SYSTEM_PROMPT = (
        "You are a database analyst resolving which primary key a foreign key column references. "
        "Choose ONLY from the listed candidates, using the overlap evidence. Respond with valid JSON only."
    )

    def __init__(self, adapter: BaseDatabaseAdapter,
                 config: Optional[ClassificationConfig] = None,
                 naming: Optional[NamingAnalyzer] = None):
        self.adapter = adapter
        self.config = config or ClassificationConfig()
        self.naming = naming or NamingAnalyzer()

    def find_candidates(self, profile: ColumnDataProfile, schema: DatabaseSchema) -> List[FKCandidate]:
        candidates: List[FKCandidate] = []
        for table in schema.tables.values():
            if table.name == profile.table_name:
                continue
            for pk_name in table.primary_key:
                pk = table.get_column(pk_name)
                if pk is None or not types_compatible(profile.data_type, pk.data_type):
                    continue
                try:
                    overlap = self.adapter.check_value_overlap(
                        profile.table_name, profile.column_name,
                        table.name, pk.name,
                        sample_limit=self.config.fk_overlap_sample,
                    )
                except OntologyEngineError as e:
                    logger.debug(
                        "Overlap check failed, skipping candidate",
                        extra={"extra_fields": {
                            "source": profile.qualified_name,
                            "target": f"{table.name}.{pk.name}",
                            "error": e.message,
                        }}
                    )
                    continue
                if overlap.match_rate < self.config.fk_min_match_rate:
                    continue
                candidates.append(FKCandidate(
                    table=table.name,
                    column=pk.name,
                    data_type=pk.data_type,
                    overlap_rate=overlap.match_rate,
                    matched=overlap.matched,
                    sampled=overlap.sampled,
                    name_score=self.naming.reference_score(profile.column_name, table.name, pk.name),
                ))
        candidates.sort(key=lambda c: (c.score, c.overlap_rate), reverse=True)
        return candidates

    def resolve(self, profile: ColumnDataProfile, schema: DatabaseSchema,
                client: Optional[StructuredModelClient] = None) -> FKResolutionResult:
        candidates = self.find_candidates(profile, schema)
        if not candidates:
            logger.debug(
                "No FK candidates with sufficient overlap",
                extra={"extra_fields": {"column": profile.qualified_name}}
            )
            return FKResolutionResult(column_id=profile.column_id)

        best = candidates[0]
        if (len(candidates) == 1 and best.overlap_rate >= self.config.fk_direct_accept_rate) or client is None:
            return FKResolutionResult(
                column_id=profile.column_id,
                fk_target_table=best.table,
                fk_target_column=best.column,
                fk_confidence=best.overlap_rate,
                llm_model_used=DATA_OVERLAP_MODEL,
            )

        return self._resolve_with_model(profile, candidates, client)

    def _resolve_with_model(self, profile: ColumnDataProfile, candidates: Sequence[FKCandidate],
                            client: StructuredModelClient) -> FKResolutionResult:
        lines = [profile_context(profile), "", "CANDIDATE TARGETS:"]
        for c in candidates:
            lines.append(
                f"- {c.table}.{c.column} ({c.data_type}): {c.overlap_rate:.0%} of "
                f"{c.sampled} sampled values found"
            )
        lines.extend([
            "",
            "Respond with JSON in exactly this shape:",
            '{"target_table": "users", "target_column": "id", "confidence": 0.95, "reasoning": "..."}',
        ])
        result = client.classify(
            "\n".join(lines), FKResolutionResponse,
            system_prompt=self.SYSTEM_PROMPT, purpose="fk_resolution",
        )
        response = result.data

        chosen = next(
            (c for c in candidates
             if c.table.lower() == response.target_table.lower()
             and c.column.lower() == response.target_column.lower()),
            None,
        )
        if chosen is None:
            logger.warning(
                "Model chose a target outside the candidates, using highest overlap",
                extra={"extra_fields": {
                    "choice": f"{response.target_table}.{response.target_column}",
                    "fallback": f"{candidates[0].table}.{candidates[0].column}",
                }}
            )
            chosen = candidates[0]
            confidence = chosen.overlap_rate
        else:
            confidence = response.confidence

        return FKResolutionResult(
            column_id=profile.column_id,
            fk_target_table=chosen.table,
            fk_target_column=chosen.column,
            fk_confidence=confidence,
            llm_model_used=result.model,
        )


def merge_fk_resolution(features: ColumnFeatures, result: FKResolutionResult) -> None:
    identifier = features.identifier_features or IdentifierFeatures()
    identifier.fk_target_table = result.fk_target_table
    identifier.fk_target_column = result.fk_target_column
    identifier.fk_confidence = result.fk_confidence
    if result.resolved:
        identifier.identifier_type = IdentifierType.FOREIGN_KEY
        if not identifier.entity_referenced:
            identifier.entity_referenced = result.fk_target_table
        features.role = Role.FOREIGN_KEY.value
    features.set_path_features(identifier)
    features.needs_fk_resolution = False
