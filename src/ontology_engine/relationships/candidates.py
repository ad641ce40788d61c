"""
Candidate generation

Three independent signals propose relationships:
- Declared foreign keys, taken at face value
- Sampled value overlap between identifier-shaped columns and key columns
- Naming conventions (user_id -> users.id)

A pair found by both overlap and naming becomes a hybrid candidate; a primary
key that points at another table's primary key is a pk_match.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..adapters.base import BaseDatabaseAdapter, ColumnSchema, DatabaseSchema, TableSchema
from ..classification.patterns import (
    is_boolean_type,
    is_decimal_type,
    is_integer_type,
    is_json_type,
    is_text_type,
    is_timestamp_type,
    is_uuid_type,
    types_compatible,
)
from ..config import RelationshipConfig
from ..models import (
    CandidateStatus,
    ColumnScanData,
    DetectionMethod,
    RelationshipCandidate,
)
from ..utils import OntologyEngineError, get_logger
from .naming import NamingAnalyzer

logger = get_logger(__name__)

FOREIGN_KEY_CONFIDENCE = 1.0


@dataclass(frozen=True)
class ColumnRef:
    table: TableSchema
    column: ColumnSchema

    @property
    def key(self) -> str:
        return f"{self.table.name}.{self.column.name}"

    @property
    def is_single_primary_key(self) -> bool:
        return self.table.primary_key == [self.column.name]


def declared_fk_candidates(schema: DatabaseSchema, datasource_id: str,
                           workflow_id: Optional[str] = None) -> List[RelationshipCandidate]:
    """One accepted candidate per column of every declared foreign key"""
    candidates = []
    for table in schema.tables.values():
        for fk in table.foreign_keys:
            for column, referenced in zip(fk.columns, fk.referenced_columns):
                candidates.append(RelationshipCandidate(
                    datasource_id=datasource_id,
                    workflow_id=workflow_id,
                    source_table=table.name,
                    source_column=column,
                    target_table=fk.referenced_table,
                    target_column=referenced,
                    detection_method=DetectionMethod.FOREIGN_KEY,
                    confidence=FOREIGN_KEY_CONFIDENCE,
                    status=CandidateStatus.ACCEPTED,
                    is_required=False,
                    llm_reasoning=f"Declared foreign key {fk.name}" if fk.name else "Declared foreign key",
                ))
    return candidates


class CandidateGenerator:
    """
    Proposes value_match, name_inference, hybrid and pk_match candidates

    Usage:
        generator = CandidateGenerator(adapter, config)
        candidates = generator.generate(schema, scans, datasource_id)
    """

    def __init__(self, adapter: BaseDatabaseAdapter,
                 config: Optional[RelationshipConfig] = None,
                 naming: Optional[NamingAnalyzer] = None):
        self.adapter = adapter
        self.config = config or RelationshipConfig()
        self.naming = naming or NamingAnalyzer()

    # Column selection

    def is_identifier_shaped(self, ref: ColumnRef, scan: Optional[ColumnScanData]) -> bool:
        data_type = ref.column.data_type
        if any(check(data_type) for check in (is_boolean_type, is_timestamp_type, is_json_type)):
            return False
        if is_decimal_type(data_type) and not is_integer_type(data_type):
            return False
        if scan is not None and scan.distinct_count < self.config.min_distinct_for_fk:
            return False
        if is_integer_type(data_type) or is_uuid_type(data_type):
            return True
        # Free text only counts when its name reads like a reference
        return is_text_type(data_type) and bool(self.naming.stems(ref.column.name))

    def target_columns(self, schema: DatabaseSchema) -> List[ColumnRef]:
        targets = []
        for table in schema.tables.values():
            for column in table.columns:
                ref = ColumnRef(table, column)
                if ref.is_single_primary_key or column.is_unique:
                    targets.append(ref)
        return targets

    def source_columns(self, schema: DatabaseSchema,
                       scans: Dict[str, ColumnScanData]) -> List[ColumnRef]:
        declared = declared_source_keys(schema)
        sources = []
        for table in schema.tables.values():
            for column in table.columns:
                ref = ColumnRef(table, column)
                if ref.key in declared:
                    continue
                if ref.is_single_primary_key and not self.naming.stems(column.name):
                    continue
                if self.is_identifier_shaped(ref, scans.get(ref.key)):
                    sources.append(ref)
        return sources

    # Signals

    def match_values(self, schema: DatabaseSchema, scans: Dict[str, ColumnScanData],
                     datasource_id: str, workflow_id: Optional[str] = None) -> List[RelationshipCandidate]:
        """Sampled overlap of each source column against every compatible key column"""
        targets = self.target_columns(schema)
        found: List[RelationshipCandidate] = []

        for source in self.source_columns(schema, scans):
            for target in targets:
                if target.table.name == source.table.name:
                    continue
                if not types_compatible(source.column.data_type, target.column.data_type):
                    continue
                if source.is_single_primary_key and not self.naming.table_score(source.column.name, target.table.name):
                    # Surrogate keys overlap by construction; demand a name link
                    continue
                try:
                    overlap = self.adapter.check_value_overlap(
                        source.table.name, source.column.name,
                        target.table.name, target.column.name,
                        sample_limit=self.config.sample_limit,
                    )
                except OntologyEngineError as e:
                    if not e.recoverable:
                        raise
                    logger.debug(
                        "Overlap check failed, skipping pair",
                        extra={"extra_fields": {"source": source.key, "target": target.key, "error": e.message}}
                    )
                    continue

                if overlap.sampled == 0 or overlap.match_rate < self.config.min_value_overlap:
                    continue

                method = DetectionMethod.PK_MATCH if source.is_single_primary_key else DetectionMethod.VALUE_MATCH
                found.append(self._candidate(
                    source, target, method, datasource_id, workflow_id,
                    value_match_rate=overlap.match_rate,
                    name_similarity=self.naming.reference_score(
                        source.column.name, target.table.name, target.column.name
                    ),
                ))

        logger.info(
            "Value matching complete",
            extra={"extra_fields": {"candidates": len(found)}}
        )
        return found

    def infer_names(self, schema: DatabaseSchema, scans: Dict[str, ColumnScanData],
                    datasource_id: str, workflow_id: Optional[str] = None) -> List[RelationshipCandidate]:
        """Candidates implied by column names alone"""
        declared = declared_source_keys(schema)
        table_names = schema.get_table_names()
        found: List[RelationshipCandidate] = []

        for table in schema.tables.values():
            for column in table.columns:
                source = ColumnRef(table, column)
                if source.key in declared:
                    continue
                for target_table_name, score in self.naming.find_matching_tables(column.name, table_names):
                    target_table = schema.tables[target_table_name]
                    if len(target_table.primary_key) != 1 or target_table_name == table.name:
                        continue
                    target_column = target_table.get_column(target_table.primary_key[0])
                    if target_column is None:
                        continue
                    target = ColumnRef(target_table, target_column)
                    method = (DetectionMethod.PK_MATCH if source.is_single_primary_key
                              else DetectionMethod.NAME_INFERENCE)
                    found.append(self._candidate(
                        source, target, method, datasource_id, workflow_id,
                        name_similarity=score,
                    ))

        logger.info(
            "Name inference complete",
            extra={"extra_fields": {"candidates": len(found)}}
        )
        return found

    def generate(self, schema: DatabaseSchema, scans: Dict[str, ColumnScanData],
                 datasource_id: str, workflow_id: Optional[str] = None) -> List[RelationshipCandidate]:
        value_matches = self.match_values(schema, scans, datasource_id, workflow_id)
        name_matches = self.infer_names(schema, scans, datasource_id, workflow_id)
        return merge_signals(value_matches, name_matches)

    def _candidate(self, source: ColumnRef, target: ColumnRef, method: DetectionMethod,
                   datasource_id: str, workflow_id: Optional[str],
                   value_match_rate: Optional[float] = None,
                   name_similarity: Optional[float] = None) -> RelationshipCandidate:
        return RelationshipCandidate(
            datasource_id=datasource_id,
            workflow_id=workflow_id,
            source_table=source.table.name,
            source_column=source.column.name,
            target_table=target.table.name,
            target_column=target.column.name,
            detection_method=method,
            value_match_rate=value_match_rate,
            name_similarity=name_similarity,
        )


def declared_source_keys(schema: DatabaseSchema) -> Set[str]:
    keys: Set[str] = set()
    for table in schema.tables.values():
        for fk in table.foreign_keys:
            keys.update(f"{table.name}.{column}" for column in fk.columns)
    return keys


def merge_signals(value_matches: Iterable[RelationshipCandidate],
                  name_matches: Iterable[RelationshipCandidate]) -> List[RelationshipCandidate]:
    """
    Combine both signals per column pair.

    A pair seen by both keeps the overlap candidate, takes the name score, and
    becomes hybrid unless it is a pk_match.
    """
    merged: Dict[Tuple[str, str], RelationshipCandidate] = {}
    for candidate in value_matches:
        merged[(candidate.source_key, candidate.target_key)] = candidate

    for candidate in name_matches:
        key = (candidate.source_key, candidate.target_key)
        existing = merged.get(key)
        if existing is None:
            merged[key] = candidate
            continue
        existing.name_similarity = max(existing.name_similarity or 0.0, candidate.name_similarity or 0.0)

    for candidate in merged.values():
        if (candidate.detection_method == DetectionMethod.VALUE_MATCH
                and (candidate.name_similarity or 0.0) > 0):
            candidate.detection_method = DetectionMethod.HYBRID

    return sorted(merged.values(), key=lambda c: c.pair_key)
