"""
Persistence Package

Repository contracts plus the in-memory reference store.
"""
from .base import (
    DAGRepository,
    WorkflowRepository,
    EntityStateRepository,
    CandidateRepository,
    ColumnMetadataRepository,
    EntityRepository,
    OntologyRepository,
    ConversationRepository,
    OntologyStore,
)
from .memory import InMemoryStore

__all__ = [
    "DAGRepository",
    "WorkflowRepository",
    "EntityStateRepository",
    "CandidateRepository",
    "ColumnMetadataRepository",
    "EntityRepository",
    "OntologyRepository",
    "ConversationRepository",
    "OntologyStore",
    "InMemoryStore",
]
