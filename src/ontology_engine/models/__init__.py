"""
Data model for ontology extraction
"""
from .dag import (
    DAGStatus,
    DAGNodeStatus,
    DAGNodeName,
    NODE_ORDER,
    all_node_names,
    DAGNodeProgress,
    DAGNode,
    OntologyDAG,
)
from .workflow import (
    WorkflowState,
    WorkflowPhase,
    TaskType,
    TaskStatus,
    WorkflowTask,
    WorkflowProgress,
    OntologyWorkflow,
)
from .workflow_state import (
    WorkflowEntityType,
    WorkflowEntityStatus,
    QuestionStatus,
    QuestionAffects,
    WorkflowQuestion,
    WorkflowAnswer,
    ColumnScanData,
    WorkflowStateData,
    WorkflowEntityState,
    global_entity_key,
    table_entity_key,
    column_entity_key,
)
from .column_features import (
    ClassificationPath,
    Purpose,
    Role,
    TimestampPurpose,
    BooleanType,
    EnumCategory,
    IdentifierType,
    CurrencyUnit,
    DetectedPattern,
    ColumnDataProfile,
    TimestampFeatures,
    BooleanFeatures,
    ColumnEnumValue,
    EnumFeatures,
    IdentifierFeatures,
    MonetaryFeatures,
    ColumnFeatures,
    FeaturePhase,
    PhaseStatus,
    PhaseProgress,
    FeatureExtractionProgress,
    is_boolean_value_set,
)
from .column_metadata import ProvenanceSource, ColumnMetadata
from .relationship import (
    DetectionMethod,
    Cardinality,
    CandidateStatus,
    UserDecision,
    RejectionReason,
    RelationshipCandidate,
    clamp_confidence,
)
from .entity import EntitySource, OntologyEntity, OntologyEntityOccurrence, EntityWithOccurrences
from .ontology import GlossaryTerm, Ontology, LLMConversation

__all__ = [
    # DAG
    "DAGStatus",
    "DAGNodeStatus",
    "DAGNodeName",
    "NODE_ORDER",
    "all_node_names",
    "DAGNodeProgress",
    "DAGNode",
    "OntologyDAG",
    # Workflow
    "WorkflowState",
    "WorkflowPhase",
    "TaskType",
    "TaskStatus",
    "WorkflowTask",
    "WorkflowProgress",
    "OntologyWorkflow",
    # Entity state
    "WorkflowEntityType",
    "WorkflowEntityStatus",
    "QuestionStatus",
    "QuestionAffects",
    "WorkflowQuestion",
    "WorkflowAnswer",
    "ColumnScanData",
    "WorkflowStateData",
    "WorkflowEntityState",
    "global_entity_key",
    "table_entity_key",
    "column_entity_key",
    # Column features
    "ClassificationPath",
    "Purpose",
    "Role",
    "TimestampPurpose",
    "BooleanType",
    "EnumCategory",
    "IdentifierType",
    "CurrencyUnit",
    "DetectedPattern",
    "ColumnDataProfile",
    "TimestampFeatures",
    "BooleanFeatures",
    "ColumnEnumValue",
    "EnumFeatures",
    "IdentifierFeatures",
    "MonetaryFeatures",
    "ColumnFeatures",
    "FeaturePhase",
    "PhaseStatus",
    "PhaseProgress",
    "FeatureExtractionProgress",
    "is_boolean_value_set",
    # Metadata
    "ProvenanceSource",
    "ColumnMetadata",
    # Relationships
    "DetectionMethod",
    "Cardinality",
    "CandidateStatus",
    "UserDecision",
    "RejectionReason",
    "RelationshipCandidate",
    "clamp_confidence",
    # Entities
    "EntitySource",
    "OntologyEntity",
    "OntologyEntityOccurrence",
    "EntityWithOccurrences",
    # Ontology
    "GlossaryTerm",
    "Ontology",
    "LLMConversation",
]
