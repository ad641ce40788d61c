"""
Relationship Discovery Engine

Proposes candidates from every signal, measures them with real joins, applies the
rejection and review policies, optionally asks the model, and reconciles the result
with what is already stored. Candidates carrying a user decision are never
modified by a later run.
"""
from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from ..adapters.base import BaseDatabaseAdapter, DatabaseSchema
from ..config import RelationshipConfig
from ..llm_client.structured import StructuredModelClient
from ..models import (
    CandidateStatus,
    ColumnScanData,
    DetectionMethod,
    RejectionReason,
    RelationshipCandidate,
)
from ..persistence.base import CandidateRepository
from ..utils import (
    OntologyEngineError,
    OntologyMetrics,
    get_logger,
    log_operation,
    value_fingerprint,
)
from .candidates import CandidateGenerator, declared_fk_candidates
from .naming import NamingAnalyzer
from .review import ReviewPolicy
from .validator import (
    JoinTester,
    JoinTestResult,
    LLMRelationshipValidator,
    RejectionPolicy,
    apply_validation,
    declared_pairs,
)

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int, str], None]


@dataclass
class DiscoveryResult:
    """What one discovery pass produced"""
    candidates: List[RelationshipCandidate] = field(default_factory=list)
    declared: int = 0
    generated: int = 0
    validated: int = 0
    preserved: int = 0

    def count(self, status: CandidateStatus) -> int:
        return sum(1 for c in self.candidates if c.status == status)

    @property
    def needs_review(self) -> int:
        return sum(1 for c in self.candidates if c.needs_review())

    def to_dict(self) -> Dict[str, int]:
        return {
            "declared": self.declared,
            "generated": self.generated,
            "validated": self.validated,
            "preserved": self.preserved,
            "accepted": self.count(CandidateStatus.ACCEPTED),
            "rejected": self.count(CandidateStatus.REJECTED),
            "needs_review": self.needs_review,
        }


def scan_column(adapter: BaseDatabaseAdapter, table_name: str, column_name: str,
                data_type: str, sample_limit: int = 50) -> ColumnScanData:
    """Deterministic statistics for one column; no model involved"""
    stats = adapter.profile_column(table_name, column_name, data_type, sample_limit)
    null_percent = (stats.null_count / stats.row_count * 100.0) if stats.row_count else 0.0
    return ColumnScanData(
        row_count=stats.row_count,
        non_null_count=stats.non_null_count,
        distinct_count=stats.distinct_count,
        null_percent=round(null_percent, 2),
        sample_values=list(stats.sample_values),
        is_enum_candidate=ColumnScanData.enum_candidate(stats.distinct_count, stats.row_count),
        value_fingerprint=value_fingerprint(stats.sample_values),
    )


class RelationshipDiscoveryEngine:
    """
    Main engine that orchestrates all relationship discovery methods

    Usage:
        engine = RelationshipDiscoveryEngine(adapter, store, config, client)
        result = engine.discover_all(datasource_id)
    """

    def __init__(
        self,
        adapter: BaseDatabaseAdapter,
        store: CandidateRepository,
        config: Optional[RelationshipConfig] = None,
        client: Optional[StructuredModelClient] = None,
        naming: Optional[NamingAnalyzer] = None,
    ):
        self.adapter = adapter
        self.store = store
        self.config = config or RelationshipConfig()
        self.client = client
        self.naming = naming or NamingAnalyzer()
        self.generator = CandidateGenerator(adapter, self.config, self.naming)
        self.join_tester = JoinTester(adapter, self.config)
        self.rejection_policy = RejectionPolicy(self.config)
        self.review_policy = ReviewPolicy(self.config)
        self._lock = threading.Lock()

    # Declared keys

    def discover_declared(self, datasource_id: str, schema: Optional[DatabaseSchema] = None,
                          workflow_id: Optional[str] = None) -> List[RelationshipCandidate]:
        schema = schema or self.adapter.get_schema()
        stored = []
        for candidate in declared_fk_candidates(schema, datasource_id, workflow_id):
            self.review_policy.apply(candidate)
            stored.append(self.reconcile(candidate))
        logger.info(
            "Declared foreign keys recorded",
            extra={"extra_fields": {"datasource_id": datasource_id, "candidates": len(stored)}}
        )
        return stored

    # Scanning

    def scan_columns(self, schema: DatabaseSchema) -> Dict[str, ColumnScanData]:
        scans: Dict[str, ColumnScanData] = {}
        for table in schema.tables.values():
            for column in table.columns:
                try:
                    scans[f"{table.name}.{column.name}"] = scan_column(
                        self.adapter, table.name, column.name, column.data_type
                    )
                except OntologyEngineError as e:
                    if not e.recoverable:
                        raise
                    logger.warning(
                        "Column scan failed, continuing without statistics",
                        extra={"extra_fields": {"column": f"{table.name}.{column.name}", "error": e.message}}
                    )
        return scans

    # Measurement

    def test_joins(self, candidates: Sequence[RelationshipCandidate],
                   progress_callback: Optional[ProgressCallback] = None) -> List[JoinTestResult]:
        """Run the real join for every candidate in bounded parallel batches"""
        if not candidates:
            return []
        total = len(candidates)
        done = [0]

        def run(candidate: RelationshipCandidate) -> JoinTestResult:
            result = self.join_tester.test(candidate)
            with self._lock:
                done[0] += 1
                completed = done[0]
            if progress_callback is not None:
                progress_callback(completed, total, f"Tested join {candidate.pair_key}")
            return result

        with ThreadPoolExecutor(max_workers=min(self.config.batch_size, total)) as executor:
            return list(executor.map(run, candidates))

    def review(self, candidate: RelationshipCandidate, schema: DatabaseSchema,
               join_attempted: bool = True) -> RelationshipCandidate:
        """Apply rejection and review policies, then persist through reconcile"""
        rejection = self.rejection_policy.evaluate(
            candidate, schema, declared_pairs(schema), join_attempted=join_attempted,
        )
        self.review_policy.apply(candidate, rejection)
        return self.reconcile(candidate)

    # Model validation

    def validate_with_model(self, datasource_id: str, schema: DatabaseSchema,
                            candidates: Optional[Sequence[RelationshipCandidate]] = None,
                            progress_callback: Optional[ProgressCallback] = None) -> int:
        """
        Ask the model about candidates that still need a human.

        A failed model call leaves the candidate for human review.
        """
        if self.client is None or not self.config.use_llm_validation:
            return 0
        if candidates is None:
            candidates = self.store.list_candidates(datasource_id)
        queue = [c for c in candidates if c.needs_review() and not c.is_user_decided]
        if not queue:
            return 0

        validator = LLMRelationshipValidator(self.client, self.config)
        total = len(queue)
        validated = 0
        if progress_callback is not None:
            progress_callback(0, total, "Starting relationship validation")

        for i, candidate in enumerate(queue, 1):
            try:
                response = validator.validate(candidate, schema)
            except OntologyEngineError as e:
                if not e.recoverable:
                    raise
                logger.warning(
                    "Relationship validation failed, leaving for review",
                    extra={"extra_fields": {"candidate": candidate.pair_key, "error": e.message}}
                )
                OntologyMetrics.record_error(type(e).__name__, e.category.value)
            else:
                apply_validation(candidate, response)
                rejection = candidate.rejection_reason if candidate.rejection_reason == RejectionReason.LLM_REJECTED else None
                self.review_policy.apply(candidate, rejection, rescore=False)
                self.reconcile(candidate)
                validated += 1
            if progress_callback is not None:
                progress_callback(i, total, f"Validated {candidate.pair_key}")

        logger.info(
            "Model validation complete",
            extra={"extra_fields": {"datasource_id": datasource_id, "validated": validated, "queued": total}}
        )
        return validated

    # Persistence

    def reconcile(self, candidate: RelationshipCandidate) -> RelationshipCandidate:
        """
        Merge a freshly reviewed candidate with the stored one for the same pair.

        The stored record wins when a user decided it, or when it is a declared
        foreign key and the new one is not.
        """
        with self._lock:
            existing = self.store.find_candidate(
                candidate.datasource_id,
                candidate.source_table, candidate.source_column,
                candidate.target_table, candidate.target_column,
            )
            if existing is not None:
                if existing.is_user_decided:
                    return existing
                if (existing.detection_method == DetectionMethod.FOREIGN_KEY
                        and candidate.detection_method != DetectionMethod.FOREIGN_KEY):
                    return existing
                candidate.id = existing.id
                candidate.created_at = existing.created_at
            self.store.upsert_candidate(candidate)
            return candidate

    # Full pass

    def discover_all(self, datasource_id: str, workflow_id: Optional[str] = None,
                     use_llm: Optional[bool] = None,
                     progress_callback: Optional[ProgressCallback] = None) -> DiscoveryResult:
        """
        Discover relationships using all available methods

        Returns every candidate for the datasource after reconciliation.
        """
        result = DiscoveryResult()
        start = time.time()

        with log_operation(logger, "relationship_discovery", datasource_id=datasource_id) as ctx:
            schema = self.adapter.get_schema()
            result.declared = len(self.discover_declared(datasource_id, schema, workflow_id))

            scans = self.scan_columns(schema)
            generated = self.generator.generate(schema, scans, datasource_id, workflow_id)
            generated = [c for c in generated if not self.is_frozen(c)]
            result.generated = len(generated)

            for test in self.test_joins(generated, progress_callback):
                self.review(test.candidate, schema, join_attempted=True)

            if use_llm is None or use_llm:
                result.validated = self.validate_with_model(datasource_id, schema)

            result.candidates = self.store.list_candidates(datasource_id)
            result.preserved = sum(1 for c in result.candidates if c.is_user_decided)
            ctx.update(result.to_dict())

        OntologyMetrics.record_phase("relationship_discovery", time.time() - start, result.generated)
        return result

    def is_frozen(self, candidate: RelationshipCandidate) -> bool:
        """True when a stored candidate for the same pair already carries a user decision"""
        existing = self.store.find_candidate(
            candidate.datasource_id,
            candidate.source_table, candidate.source_column,
            candidate.target_table, candidate.target_column,
        )
        return existing is not None and existing.is_user_decided
