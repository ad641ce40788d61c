"""
Orchestration Package
Runs the nine-node ontology extraction DAG
"""
from .nodes import (
    NodeContext,
    NodeExecutor,
    EntityDiscoveryNode,
    EntityEnrichmentNode,
    FKDiscoveryNode,
    ColumnEnrichmentNode,
    PKMatchDiscoveryNode,
    RelationshipEnrichmentNode,
    OntologyFinalizationNode,
    GlossaryDiscoveryNode,
    GlossaryEnrichmentNode,
    merge_glossary,
    default_nodes,
)
from .dag_service import DAGService

__all__ = [
    "NodeContext",
    "NodeExecutor",
    "EntityDiscoveryNode",
    "EntityEnrichmentNode",
    "FKDiscoveryNode",
    "ColumnEnrichmentNode",
    "PKMatchDiscoveryNode",
    "RelationshipEnrichmentNode",
    "OntologyFinalizationNode",
    "GlossaryDiscoveryNode",
    "GlossaryEnrichmentNode",
    "merge_glossary",
    "default_nodes",
    "DAGService",
]
