"""
Profiling Adapters Package
Provides the datasource-agnostic statistics contract used during extraction
"""
from .base import (
    BaseDatabaseAdapter,
    DatabaseAdapterRegistry,
    DatabaseSchema,
    TableSchema,
    ColumnSchema,
    ForeignKeySchema,
    QueryResult,
    ColumnStats,
    ValueCount,
    OverlapResult,
    JoinAnalysis,
    MAX_SAMPLE_VALUES,
    is_numeric_type,
    is_text_type,
    register_adapter,
)

# Import adapters to register them
from .sqlite_adapter import SQLiteAdapter

from ..config import DatabaseConfig


def create_adapter(config: DatabaseConfig) -> BaseDatabaseAdapter:
    """
    Factory function to create a profiling adapter from configuration

    Raises:
        ValueError: If database type is not supported
    """
    return DatabaseAdapterRegistry.create_adapter(config)


def get_supported_databases() -> list:
    """Get list of supported database types"""
    return DatabaseAdapterRegistry.get_supported_types()


__all__ = [
    "BaseDatabaseAdapter",
    "DatabaseAdapterRegistry",
    "DatabaseSchema",
    "TableSchema",
    "ColumnSchema",
    "ForeignKeySchema",
    "QueryResult",
    "ColumnStats",
    "ValueCount",
    "OverlapResult",
    "JoinAnalysis",
    "MAX_SAMPLE_VALUES",
    "is_numeric_type",
    "is_text_type",
    "register_adapter",
    "SQLiteAdapter",
    "create_adapter",
    "get_supported_databases",
]
