"""
Column Feature Pipeline

Runs the six classification phases over a datasource's columns:

1. Data collection    deterministic profiling, pattern detection and routing
2. Classification     one focused request per column on its path
3. Enum analysis      value distributions and completion-rate labelling
4. FK resolution      overlap against primary keys of other tables
5. Cross-column       monetary pairing and soft delete validation, per table
6. Store results      provenance-aware merge into ColumnMetadata

Phase 1 finishes before any later phase publishes its totals. Work inside a phase
runs in bounded batches; a failure on one column or table is logged and skipped.
"""
from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from ..adapters.base import BaseDatabaseAdapter, DatabaseSchema
from ..config import ClassificationConfig
from ..llm_client.structured import StructuredModelClient
from ..models.column_features import (
    ColumnDataProfile,
    ColumnFeatures,
    FeatureExtractionProgress,
    FeaturePhase,
)
from ..models.column_metadata import ColumnMetadata, ProvenanceSource
from ..persistence.base import ColumnMetadataRepository
from ..utils import (
    DatabaseConnectionError,
    OntologyEngineError,
    OntologyMetrics,
    PermanentError,
    get_logger,
    log_operation,
)
from .classifiers import ClassifierRegistry
from .cross_column import CrossColumnAnalyzer, CrossColumnResult, merge_cross_column
from .enum_analysis import EnumAnalysisResult, EnumAnalyzer, merge_enum_analysis
from .fk_resolution import FKResolutionResult, FKResolver, merge_fk_resolution
from .routing import build_profile

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int, str], None]

I = TypeVar("I")
R = TypeVar("R")


@dataclass
class FeatureExtractionResult:
    """Everything the pipeline produced for one run"""
    profiles: List[ColumnDataProfile] = field(default_factory=list)
    features: Dict[str, ColumnFeatures] = field(default_factory=dict)
    failed_items: List[str] = field(default_factory=list)
    stored_columns: int = 0
    progress: FeatureExtractionProgress = field(default_factory=FeatureExtractionProgress)

    @property
    def total_columns(self) -> int:
        return len(self.profiles)

    def features_for_table(self, table_name: str) -> Dict[str, ColumnFeatures]:
        return {
            f.column_name: f for f in self.features.values() if f.table_name == table_name
        }


class ColumnFeaturePipeline:
    """
    Drives the six phases for one project/datasource

    Usage:
        pipeline = ColumnFeaturePipeline(adapter, store, client=structured_client)
        result = pipeline.run(project_id, progress_callback=report)
    """

    def __init__(
        self,
        adapter: BaseDatabaseAdapter,
        store: ColumnMetadataRepository,
        config: Optional[ClassificationConfig] = None,
        client: Optional[StructuredModelClient] = None,
    ):
        self.adapter = adapter
        self.store = store
        self.config = config or ClassificationConfig()
        self.client = client
        self.classifiers = ClassifierRegistry()
        self.enum_analyzer = EnumAnalyzer(adapter, self.config)
        self.fk_resolver = FKResolver(adapter, self.config)
        self.cross_column = CrossColumnAnalyzer(self.config)
        self._progress_lock = threading.Lock()

    def run(self, project_id: str, tables: Optional[Sequence[str]] = None,
            progress_callback: Optional[ProgressCallback] = None) -> FeatureExtractionResult:
        result = FeatureExtractionResult()
        schema = self.adapter.get_schema()

        with log_operation(logger, "column_feature_extraction", project_id=project_id) as ctx:
            result.profiles = self.collect(schema, tables, result, progress_callback)
            if result.profiles:
                self.classify(result, progress_callback)
                self.analyze_enums(result, progress_callback)
                self.resolve_foreign_keys(schema, result, progress_callback)
                self.analyze_cross_columns(result, progress_callback)
                self.store_results(project_id, result, progress_callback)
            ctx["columns"] = result.total_columns
            ctx["classified"] = len(result.features)
            ctx["failed"] = len(result.failed_items)
        return result

    # Phase 1

    def collect(self, schema: DatabaseSchema, tables: Optional[Sequence[str]],
                result: FeatureExtractionResult,
                progress_callback: Optional[ProgressCallback] = None) -> List[ColumnDataProfile]:
        selected = [schema.tables[name] for name in schema.get_table_names()
                    if tables is None or name in tables]
        work = [(table, column) for table in selected for column in table.columns]
        result.progress.total_columns = len(work)

        def profile(item) -> ColumnDataProfile:
            table, column = item
            stats = self.adapter.profile_column(
                table.name, column.name, column.data_type, self.config.sample_limit
            )
            return build_profile(table, column, stats, self.config)

        done = self._run_phase(
            FeaturePhase.DATA_COLLECTION, work, profile,
            lambda item: f"{item[0].name}.{item[1].name}",
            result, progress_callback,
        )
        return [p for _, p in done]

    # Phase 2

    def classify(self, result: FeatureExtractionResult,
                 progress_callback: Optional[ProgressCallback] = None) -> None:
        def classify_one(profile: ColumnDataProfile) -> ColumnFeatures:
            classifier = self.classifiers.get(profile.classification_path)
            return classifier.classify(profile, self.client, self.config.clarification_confidence)

        done = self._run_phase(
            FeaturePhase.COLUMN_CLASSIFICATION, result.profiles, classify_one,
            lambda p: p.qualified_name, result, progress_callback,
        )
        for profile, features in done:
            result.features[profile.column_id] = features

        result.progress.enum_candidates = sum(1 for f in result.features.values() if f.needs_enum_analysis)
        result.progress.fk_candidates = sum(1 for f in result.features.values() if f.needs_fk_resolution)
        result.progress.cross_column_candidates = len(self._cross_column_tables(result))
        logger.info(
            "Column classification complete",
            extra={"extra_fields": {
                "columns_classified": len(result.features),
                "enum_candidates": result.progress.enum_candidates,
                "fk_candidates": result.progress.fk_candidates,
                "cross_column_tables": result.progress.cross_column_candidates,
            }}
        )

    # Phase 3

    def analyze_enums(self, result: FeatureExtractionResult,
                      progress_callback: Optional[ProgressCallback] = None) -> None:
        queue = [p for p in result.profiles
                 if p.column_id in result.features and result.features[p.column_id].needs_enum_analysis]

        def analyze(profile: ColumnDataProfile) -> EnumAnalysisResult:
            return self.enum_analyzer.analyze(profile, result.profiles, self.client)

        done = self._run_phase(
            FeaturePhase.ENUM_ANALYSIS, queue, analyze,
            lambda p: p.qualified_name, result, progress_callback,
        )
        for profile, analysis in done:
            merge_enum_analysis(result.features[profile.column_id], analysis)

    # Phase 4

    def resolve_foreign_keys(self, schema: DatabaseSchema, result: FeatureExtractionResult,
                             progress_callback: Optional[ProgressCallback] = None) -> None:
        queue = [p for p in result.profiles
                 if p.column_id in result.features and result.features[p.column_id].needs_fk_resolution]

        def resolve(profile: ColumnDataProfile) -> FKResolutionResult:
            return self.fk_resolver.resolve(profile, schema, self.client)

        done = self._run_phase(
            FeaturePhase.FK_RESOLUTION, queue, resolve,
            lambda p: p.qualified_name, result, progress_callback,
        )
        for profile, resolution in done:
            merge_fk_resolution(result.features[profile.column_id], resolution)

    # Phase 5

    def _cross_column_tables(self, result: FeatureExtractionResult) -> List[str]:
        return sorted({f.table_name for f in result.features.values() if f.needs_cross_column_check})

    def analyze_cross_columns(self, result: FeatureExtractionResult,
                              progress_callback: Optional[ProgressCallback] = None) -> None:
        queue = self._cross_column_tables(result)

        def analyze(table_name: str) -> CrossColumnResult:
            table_profiles = [p for p in result.profiles if p.table_name == table_name]
            return self.cross_column.analyze(table_name, table_profiles, result.features, self.client)

        done = self._run_phase(
            FeaturePhase.CROSS_COLUMN_ANALYSIS, queue, analyze,
            lambda t: t, result, progress_callback,
        )
        for table_name, analysis in done:
            merge_cross_column(result.features_for_table(table_name), analysis)

    # Phase 6

    def store_results(self, project_id: str, result: FeatureExtractionResult,
                      progress_callback: Optional[ProgressCallback] = None) -> None:
        phase = FeaturePhase.STORE_RESULTS
        items = list(result.features.values())
        start = time.time()
        self._start(result, phase, len(items), progress_callback)

        for features in items:
            metadata = self.store.get_column_metadata(project_id, features.table_name, features.column_name)
            if metadata is None:
                metadata = ColumnMetadata(
                    project_id=project_id,
                    table_name=features.table_name,
                    column_name=features.column_name,
                )
            changed = metadata.merge_features(features, ProvenanceSource.INFERENCE)
            self.store.upsert_column_metadata(metadata)
            if changed:
                result.stored_columns += 1
            self._advance(result, phase, features.column_id, progress_callback)

        result.progress.finish_phase(phase)
        OntologyMetrics.record_phase(phase.value, time.time() - start, len(items))

    # Batching

    def _start(self, result: FeatureExtractionResult, phase: FeaturePhase, total: int,
               progress_callback: Optional[ProgressCallback]) -> None:
        with self._progress_lock:
            result.progress.start_phase(phase, total)
            description = result.progress.phase_description
        if progress_callback is not None:
            progress_callback(0, total, description)

    def _advance(self, result: FeatureExtractionResult, phase: FeaturePhase, item: str,
                 progress_callback: Optional[ProgressCallback]) -> None:
        with self._progress_lock:
            result.progress.advance(phase, item)
            phase_progress = result.progress.get_phase(phase)
            current, total = phase_progress.completed_items, phase_progress.total_items or 0
        if progress_callback is not None:
            progress_callback(current, total, f"{phase_progress.phase_name}: {item}")

    def _run_phase(self, phase: FeaturePhase, items: Sequence[I], fn: Callable[[I], R],
                   describe: Callable[[I], str], result: FeatureExtractionResult,
                   progress_callback: Optional[ProgressCallback]) -> List[Tuple[I, R]]:
        """
        Apply ``fn`` to every item in batches of ``batch_size``.

        Results come back in input order. Engine errors on one item are logged and
        the item is skipped; an unreachable datasource or a permanent error aborts
        the phase.
        """
        start = time.time()
        self._start(result, phase, len(items), progress_callback)
        done: List[Tuple[I, R]] = []

        def run_one(item: I) -> Optional[R]:
            name = describe(item)
            try:
                return fn(item)
            except (DatabaseConnectionError, PermanentError):
                raise
            except OntologyEngineError as e:
                logger.warning(
                    f"Skipping {name} in {phase.value}",
                    extra={"extra_fields": {"item": name, "error": e.message, "category": e.category.value}}
                )
                OntologyMetrics.record_error(type(e).__name__, e.category.value)
                with self._progress_lock:
                    result.failed_items.append(f"{phase.value}:{name}")
                return None
            finally:
                self._advance(result, phase, name, progress_callback)

        if items:
            with ThreadPoolExecutor(max_workers=min(self.config.batch_size, len(items))) as executor:
                outcomes = list(executor.map(run_one, items))
            done = [(item, outcome) for item, outcome in zip(items, outcomes) if outcome is not None]

        result.progress.finish_phase(phase)
        OntologyMetrics.record_phase(phase.value, time.time() - start, len(items))
        return done
