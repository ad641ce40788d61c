"""
Ontology Engine
===============

Extracts a business ontology from a relational datasource: entities, column
semantics, relationships and a glossary, tracked as a resumable nine-node DAG.

Features:
- Nine-stage extraction DAG with lease-based ownership and crash resume
- Six-phase column feature classification (timestamps, booleans, enums,
  identifiers, monetary columns)
- Relationship discovery from declared keys, value overlap, naming and real joins
- Per-entity workflow state with clarification questions and an audit trail
- AWS Bedrock Claude for model-assisted steps (optional)
- Thread-safe operation; structured logging and metrics

Quick Start:
------------

    from ontology_engine import DAGService, InMemoryStore, SQLiteAdapter, DatabaseConfig

    adapter = SQLiteAdapter(DatabaseConfig(db_type="sqlite", sqlite_path="shop.db"))
    adapter.connect()

    service = DAGService(InMemoryStore(), adapter)
    dag = service.start(project_id="shop", datasource_id="primary")
    print(dag.status)

Relationship Review:
--------------------

    from ontology_engine import RelationshipWorkflowService

    workflow_service = RelationshipWorkflowService(store, adapter)
    workflow = workflow_service.start_detection("shop", "primary")
    grouped = workflow_service.get_candidates_grouped("primary")
    for candidate in grouped.needs_review:
        workflow_service.update_candidate_decision("primary", candidate.id, "accepted")
    workflow_service.save_relationships(workflow.id)
"""

__version__ = "1.0.0"
__author__ = "Ontology Engine Team"

# Configuration
from .config import (
    DatabaseType,
    LLMProvider,
    LogLevel,
    DatabaseConfig,
    LLMConfig,
    DAGConfig,
    ClassificationConfig,
    RelationshipConfig,
    WorkflowConfig,
    MetricsConfig,
    SystemConfig,
    get_config,
    set_config,
    reset_config,
)

# Profiling Adapters
from .adapters import (
    BaseDatabaseAdapter,
    DatabaseAdapterRegistry,
    DatabaseSchema,
    TableSchema,
    ColumnSchema,
    ForeignKeySchema,
    ColumnStats,
    JoinAnalysis,
    create_adapter,
    get_supported_databases,
    SQLiteAdapter,
)

# LLM Client
from .llm_client import (
    BaseLLMClient,
    BedrockClaudeClient,
    LLMClientFactory,
    LLMResponse,
    get_llm_client,
    StructuredModelClient,
    ClassificationResult,
)

# Models
from .models import (
    OntologyDAG,
    DAGNode,
    DAGNodeName,
    DAGNodeStatus,
    DAGStatus,
    OntologyWorkflow,
    WorkflowState,
    WorkflowPhase,
    WorkflowEntityState,
    WorkflowEntityStatus,
    WorkflowQuestion,
    ColumnFeatures,
    ColumnMetadata,
    RelationshipCandidate,
    CandidateStatus,
    OntologyEntity,
    OntologyEntityOccurrence,
    Ontology,
    GlossaryTerm,
)

# Persistence
from .persistence import OntologyStore, InMemoryStore

# Engines and services
from .classification import ColumnFeaturePipeline
from .relationships import RelationshipDiscoveryEngine, RelationshipWorkflowService
from .workflow import EntityStateTracker, TaskQueue
from .orchestration import DAGService, NodeContext, NodeExecutor

# Utilities
from .utils import (
    setup_logging,
    get_logger,
    OntologyEngineError,
    DatabaseConnectionError,
    LLMError,
    ValidationError,
    LeaseError,
    NotFoundError,
    PermanentError,
    get_metrics_collector,
    OntologyMetrics,
)

__all__ = [
    # Version
    "__version__",
    # Configuration
    "DatabaseType",
    "LLMProvider",
    "LogLevel",
    "DatabaseConfig",
    "LLMConfig",
    "DAGConfig",
    "ClassificationConfig",
    "RelationshipConfig",
    "WorkflowConfig",
    "MetricsConfig",
    "SystemConfig",
    "get_config",
    "set_config",
    "reset_config",
    # Adapters
    "BaseDatabaseAdapter",
    "DatabaseAdapterRegistry",
    "DatabaseSchema",
    "TableSchema",
    "ColumnSchema",
    "ForeignKeySchema",
    "ColumnStats",
    "JoinAnalysis",
    "create_adapter",
    "get_supported_databases",
    "SQLiteAdapter",
    # LLM
    "BaseLLMClient",
    "BedrockClaudeClient",
    "LLMClientFactory",
    "LLMResponse",
    "get_llm_client",
    "StructuredModelClient",
    "ClassificationResult",
    # Models
    "OntologyDAG",
    "DAGNode",
    "DAGNodeName",
    "DAGNodeStatus",
    "DAGStatus",
    "OntologyWorkflow",
    "WorkflowState",
    "WorkflowPhase",
    "WorkflowEntityState",
    "WorkflowEntityStatus",
    "WorkflowQuestion",
    "ColumnFeatures",
    "ColumnMetadata",
    "RelationshipCandidate",
    "CandidateStatus",
    "OntologyEntity",
    "OntologyEntityOccurrence",
    "Ontology",
    "GlossaryTerm",
    # Persistence
    "OntologyStore",
    "InMemoryStore",
    # Engines and services
    "ColumnFeaturePipeline",
    "RelationshipDiscoveryEngine",
    "RelationshipWorkflowService",
    "EntityStateTracker",
    "TaskQueue",
    "DAGService",
    "NodeContext",
    "NodeExecutor",
    # Utilities
    "setup_logging",
    "get_logger",
    "OntologyEngineError",
    "DatabaseConnectionError",
    "LLMError",
    "ValidationError",
    "LeaseError",
    "NotFoundError",
    "PermanentError",
    "get_metrics_collector",
    "OntologyMetrics",
]
