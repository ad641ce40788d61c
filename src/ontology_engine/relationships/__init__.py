"""
Relationship Discovery
Finds, measures and reviews column-to-column relationships
"""
# naming has no package-internal dependencies beyond models; classification imports it
from .naming import (
    NamingAnalyzer,
    entity_name_for_table,
    pluralize,
    singularize,
)
from .candidates import (
    FOREIGN_KEY_CONFIDENCE,
    ColumnRef,
    CandidateGenerator,
    declared_fk_candidates,
    declared_source_keys,
    merge_signals,
)
from .validator import (
    infer_cardinality,
    apply_join_metrics,
    JoinTestResult,
    JoinTester,
    declared_pairs,
    RejectionPolicy,
    RelationshipValidationResponse,
    LLMRelationshipValidator,
    apply_validation,
)
from .review import score_candidate, ReviewPolicy, apply_user_decision
from .discovery import DiscoveryResult, RelationshipDiscoveryEngine, scan_column
from .workflow_service import (
    WorkflowStatus,
    CandidatesGrouped,
    RelationshipWorkflowService,
    find_islands,
)

__all__ = [
    "NamingAnalyzer",
    "entity_name_for_table",
    "pluralize",
    "singularize",
    "FOREIGN_KEY_CONFIDENCE",
    "ColumnRef",
    "CandidateGenerator",
    "declared_fk_candidates",
    "declared_source_keys",
    "merge_signals",
    "infer_cardinality",
    "apply_join_metrics",
    "JoinTestResult",
    "JoinTester",
    "declared_pairs",
    "RejectionPolicy",
    "RelationshipValidationResponse",
    "LLMRelationshipValidator",
    "apply_validation",
    "score_candidate",
    "ReviewPolicy",
    "apply_user_decision",
    "DiscoveryResult",
    "RelationshipDiscoveryEngine",
    "scan_column",
    "WorkflowStatus",
    "CandidatesGrouped",
    "RelationshipWorkflowService",
    "find_islands",
]
