"""
Base Profiling Adapter Module
Defines the abstract profiling contract using the Template Method pattern

Concrete adapters supply connection handling, schema introspection and identifier
quoting; the statistics queries are written once here in portable SQL.
"""
from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Type

from ..config import DatabaseConfig, DatabaseType
from ..utils.clock import utc_now
from ..utils.errors import ProfilingError, classify_database_error
from ..utils.hashing import schema_fingerprint
from ..utils.logging import get_logger
from ..utils.metrics import OntologyMetrics

logger = get_logger(__name__)

MAX_SAMPLE_VALUES = 50

_NUMERIC_TYPE_MARKERS = ("int", "real", "float", "double", "numeric", "decimal", "number")
_TEXT_TYPE_MARKERS = ("char", "text", "clob", "string", "varchar")


def is_numeric_type(data_type: str) -> bool:
    lowered = (data_type or "").lower()
    return any(marker in lowered for marker in _NUMERIC_TYPE_MARKERS)


def is_text_type(data_type: str) -> bool:
    lowered = (data_type or "").lower()
    return any(marker in lowered for marker in _TEXT_TYPE_MARKERS)


@dataclass
class ColumnSchema:
    """Schema information for a database column"""
    name: str
    data_type: str
    nullable: bool = True
    default_value: Optional[str] = None
    is_primary_key: bool = False
    is_foreign_key: bool = False
    is_unique: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "data_type": self.data_type,
            "nullable": self.nullable,
            "default_value": self.default_value,
            "is_primary_key": self.is_primary_key,
            "is_foreign_key": self.is_foreign_key,
            "is_unique": self.is_unique,
        }


@dataclass
class ForeignKeySchema:
    """Declared foreign key constraint"""
    name: str
    columns: List[str]
    referenced_table: str
    referenced_columns: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "columns": self.columns,
            "referenced_table": self.referenced_table,
            "referenced_columns": self.referenced_columns,
        }


@dataclass
class TableSchema:
    """Schema information for a database table"""
    name: str
    columns: List[ColumnSchema]
    primary_key: List[str] = field(default_factory=list)
    foreign_keys: List[ForeignKeySchema] = field(default_factory=list)
    row_count: Optional[int] = None

    def get_column(self, name: str) -> Optional[ColumnSchema]:
        for column in self.columns:
            if column.name == name or column.name.lower() == name.lower():
                return column
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "columns": [c.to_dict() for c in self.columns],
            "primary_key": self.primary_key,
            "foreign_keys": [fk.to_dict() for fk in self.foreign_keys],
            "row_count": self.row_count,
        }

    def to_ddl_string(self) -> str:
        """DDL-like rendering used in model prompts"""
        lines = [f"TABLE {self.name} ("]
        for col in self.columns:
            nullable = "" if col.nullable else " NOT NULL"
            lines.append(f"    {col.name} {col.data_type}{nullable},")
        if self.primary_key:
            lines.append(f"    PRIMARY KEY ({', '.join(self.primary_key)}),")
        for fk in self.foreign_keys:
            lines.append(
                f"    FOREIGN KEY ({', '.join(fk.columns)}) "
                f"REFERENCES {fk.referenced_table}({', '.join(fk.referenced_columns)}),"
            )
        if lines[-1].endswith(","):
            lines[-1] = lines[-1][:-1]
        lines.append(");")
        return "\n".join(lines)


@dataclass
class DatabaseSchema:
    """Complete datasource schema"""
    database_name: str
    database_type: str
    tables: Dict[str, TableSchema] = field(default_factory=dict)
    retrieved_at: datetime = field(default_factory=utc_now)

    def get_table(self, name: str) -> Optional[TableSchema]:
        if name in self.tables:
            return self.tables[name]
        name_lower = name.lower()
        for table_name, table in self.tables.items():
            if table_name.lower() == name_lower:
                return table
        return None

    def get_table_names(self) -> List[str]:
        return sorted(self.tables.keys())

    def fingerprint(self) -> str:
        """Hash of structure only (tables, columns, types, keys); row counts excluded"""
        shape = {
            name: {
                "columns": [(c.name, c.data_type, c.nullable) for c in table.columns],
                "primary_key": table.primary_key,
                "foreign_keys": [
                    (fk.columns, fk.referenced_table, fk.referenced_columns)
                    for fk in table.foreign_keys
                ],
            }
            for name, table in sorted(self.tables.items())
        }
        return schema_fingerprint(shape)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "database_name": self.database_name,
            "database_type": self.database_type,
            "tables": {k: v.to_dict() for k, v in self.tables.items()},
            "retrieved_at": self.retrieved_at.isoformat(),
        }


@dataclass
class QueryResult:
    """Result of a SQL query execution"""
    success: bool
    columns: List[str] = field(default_factory=list)
    rows: List[Tuple[Any, ...]] = field(default_factory=list)
    row_count: int = 0
    execution_time_ms: float = 0.0
    error_message: Optional[str] = None


@dataclass
class ColumnStats:
    """Answer to profile_column"""
    row_count: int
    null_count: int
    distinct_count: int
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    avg_value: Optional[float] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    sample_values: List[str] = field(default_factory=list)

    @property
    def non_null_count(self) -> int:
        return self.row_count - self.null_count


@dataclass
class ValueCount:
    value: str
    count: int
    completed_count: Optional[int] = None


@dataclass
class OverlapResult:
    """Sample-based estimate of how many source values exist in the target"""
    sampled: int
    matched: int

    @property
    def match_rate(self) -> float:
        return self.matched / self.sampled if self.sampled else 0.0


@dataclass
class JoinAnalysis:
    """
    Exact counts from joining source to target.

    orphan_count counts non-null source rows with no target match, so
    matched rows + orphan rows always equals source_row_count.
    """
    source_row_count: int
    target_row_count: int
    join_count: int
    source_matched: int
    target_matched: int
    orphan_count: int
    reverse_orphan_count: int
    source_distinct: int
    target_distinct: int


class BaseDatabaseAdapter(ABC):
    """
    Abstract base class for profiling adapters

    All statistics queries are read-only. Failures surface as
    ProfilingError/DatabaseConnectionError via classify_database_error.
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._connection = None
        self._schema_cache: Optional[DatabaseSchema] = None
        self._schema_cache_time: Optional[float] = None
        self._lock = threading.RLock()

    @property
    @abstractmethod
    def database_type(self) -> DatabaseType:
        """Return the database type"""
        pass

    @abstractmethod
    def connect(self) -> None:
        """Establish database connection"""
        pass

    @abstractmethod
    def disconnect(self) -> None:
        """Close database connection"""
        pass

    @abstractmethod
    def is_connected(self) -> bool:
        """Check if connection is active"""
        pass

    @abstractmethod
    def execute_query(self, sql: str, params: Optional[Tuple[Any, ...]] = None) -> QueryResult:
        """Execute a SQL query and return results"""
        pass

    @abstractmethod
    def _fetch_tables(self) -> List[TableSchema]:
        """Fetch table schemas from database"""
        pass

    @abstractmethod
    def quote_identifier(self, name: str) -> str:
        """Dialect-specific identifier quoting"""
        pass

    def length_function(self) -> str:
        return "LENGTH"

    def limit_clause(self, limit: int) -> str:
        return f"LIMIT {int(limit)}"

    def text_cast(self, expr: str) -> str:
        """Cast used when comparing columns whose declared types differ"""
        return f"CAST({expr} AS TEXT)"

    def get_schema(self, force_refresh: bool = False) -> DatabaseSchema:
        """
        Get database schema with optional caching

        Args:
            force_refresh: Force schema refresh from database

        Returns:
            DatabaseSchema object
        """
        cache_ttl = self.config.schema_cache_ttl

        with self._lock:
            if (
                not force_refresh
                and self._schema_cache is not None
                and self._schema_cache_time is not None
                and time.monotonic() - self._schema_cache_time < cache_ttl
            ):
                return self._schema_cache

            tables = self._fetch_tables()
            self._schema_cache = DatabaseSchema(
                database_name=self.config.database,
                database_type=DatabaseType(self.database_type).value,
                tables={t.name: t for t in tables},
            )
            self._schema_cache_time = time.monotonic()
            return self._schema_cache

    def __enter__(self) -> "BaseDatabaseAdapter":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.disconnect()

    def _run(self, sql: str, query_type: str, table_name: Optional[str] = None,
             column_name: Optional[str] = None,
             params: Optional[Tuple[Any, ...]] = None) -> QueryResult:
        """Execute a statistics query, converting failures into engine errors"""
        start = time.time()
        result = self.execute_query(sql, params)
        db_label = DatabaseType(self.database_type).value
        OntologyMetrics.record_profiling_query(time.time() - start, db_label, query_type)
        if not result.success:
            error = classify_database_error(Exception(result.error_message or "query failed"), db_label)
            if isinstance(error, ProfilingError):
                error.table_name = table_name
                error.column_name = column_name
                error.context.table_name = table_name
                error.context.column_name = column_name
            logger.warning(
                f"Profiling query failed: {query_type}",
                extra={"extra_fields": {
                    "table": table_name,
                    "column": column_name,
                    "error": result.error_message,
                }}
            )
            raise error
        return result

    def get_row_count(self, table_name: str) -> int:
        t = self.quote_identifier(table_name)
        result = self._run(f"SELECT COUNT(*) FROM {t}", "row_count", table_name)
        return int(result.rows[0][0]) if result.rows else 0

    def profile_column(self, table_name: str, column_name: str,
                       data_type: Optional[str] = None,
                       sample_limit: int = MAX_SAMPLE_VALUES) -> ColumnStats:
        """
        Row/null/distinct counts, numeric or length ranges, and up to 50 distinct
        non-null sample values
        """
        t = self.quote_identifier(table_name)
        c = self.quote_identifier(column_name)
        sample_limit = min(sample_limit, MAX_SAMPLE_VALUES)

        counts = self._run(
            f"SELECT COUNT(*), COUNT({c}), COUNT(DISTINCT {c}) FROM {t}",
            "column_counts", table_name, column_name,
        )
        row_count, non_null, distinct = (int(v or 0) for v in counts.rows[0])
        stats = ColumnStats(
            row_count=row_count,
            null_count=row_count - non_null,
            distinct_count=distinct,
        )

        if data_type is not None and is_numeric_type(data_type):
            ranges = self._run(
                f"SELECT MIN({c}), MAX({c}), AVG({c}) FROM {t} WHERE {c} IS NOT NULL",
                "numeric_range", table_name, column_name,
            )
            low, high, avg = ranges.rows[0]
            stats.min_value = _to_float(low)
            stats.max_value = _to_float(high)
            stats.avg_value = _to_float(avg)
        elif data_type is None or is_text_type(data_type):
            length = self.length_function()
            lengths = self._run(
                f"SELECT MIN({length}({c})), MAX({length}({c})) FROM {t} WHERE {c} IS NOT NULL",
                "text_length", table_name, column_name,
            )
            low, high = lengths.rows[0]
            stats.min_length = int(low) if low is not None else None
            stats.max_length = int(high) if high is not None else None

        stats.sample_values = self.get_distinct_values(table_name, column_name, sample_limit)
        return stats

    def get_distinct_values(self, table_name: str, column_name: str, limit: int) -> List[str]:
        t = self.quote_identifier(table_name)
        c = self.quote_identifier(column_name)
        result = self._run(
            f"SELECT DISTINCT {c} FROM {t} WHERE {c} IS NOT NULL ORDER BY {c} {self.limit_clause(limit)}",
            "distinct_values", table_name, column_name,
        )
        return [_to_text(row[0]) for row in result.rows]

    def get_value_distribution(self, table_name: str, column_name: str,
                               completion_column: Optional[str] = None,
                               limit: int = 100) -> List[ValueCount]:
        """
        Per-value row counts, most frequent first. With ``completion_column`` each
        value also carries how many of its rows have that column populated.
        """
        t = self.quote_identifier(table_name)
        c = self.quote_identifier(column_name)
        completed = ""
        if completion_column:
            completed = f", COUNT({self.quote_identifier(completion_column)})"
        result = self._run(
            f"SELECT {c}, COUNT(*){completed} FROM {t} WHERE {c} IS NOT NULL "
            f"GROUP BY {c} ORDER BY COUNT(*) DESC {self.limit_clause(limit)}",
            "value_distribution", table_name, column_name,
        )
        return [
            ValueCount(
                value=_to_text(row[0]),
                count=int(row[1]),
                completed_count=int(row[2]) if completion_column else None,
            )
            for row in result.rows
        ]

    def check_value_overlap(self, source_table: str, source_column: str,
                            target_table: str, target_column: str,
                            sample_limit: int = 1000) -> OverlapResult:
        """Fraction of sampled distinct source values present in the target column"""
        s = self.quote_identifier(source_table)
        sc = self.quote_identifier(source_column)
        t = self.quote_identifier(target_table)
        tc = self.quote_identifier(target_column)
        result = self._run(
            f"SELECT COUNT(*), "
            f"SUM(CASE WHEN EXISTS (SELECT 1 FROM {t} tt WHERE {self.text_cast('tt.' + tc)} = "
            f"{self.text_cast('sv.v')}) THEN 1 ELSE 0 END) "
            f"FROM (SELECT DISTINCT {sc} AS v FROM {s} WHERE {sc} IS NOT NULL "
            f"{self.limit_clause(sample_limit)}) sv",
            "value_overlap", source_table, source_column,
        )
        sampled, matched = result.rows[0]
        return OverlapResult(sampled=int(sampled or 0), matched=int(matched or 0))

    def analyze_join(self, source_table: str, source_column: str,
                     target_table: str, target_column: str) -> JoinAnalysis:
        """Exact join statistics in both directions"""
        s = self.quote_identifier(source_table)
        sc = "s." + self.quote_identifier(source_column)
        t = self.quote_identifier(target_table)
        tc = "t." + self.quote_identifier(target_column)
        s_key = self.text_cast(sc)
        t_key = self.text_cast(tc)

        source_side = self._run(
            f"SELECT COUNT(*), COUNT(DISTINCT {sc}), "
            f"SUM(CASE WHEN NOT EXISTS (SELECT 1 FROM {t} t WHERE {t_key} = {s_key}) THEN 1 ELSE 0 END) "
            f"FROM {s} s WHERE {sc} IS NOT NULL",
            "join_source_side", source_table, source_column,
        )
        source_rows, source_distinct, orphans = source_side.rows[0]

        target_side = self._run(
            f"SELECT COUNT(*), COUNT(DISTINCT {tc}), "
            f"COUNT(DISTINCT CASE WHEN NOT EXISTS (SELECT 1 FROM {s} s WHERE {s_key} = {t_key}) "
            f"THEN {tc} END) "
            f"FROM {t} t WHERE {tc} IS NOT NULL",
            "join_target_side", target_table, target_column,
        )
        target_rows, target_distinct, reverse_orphans = target_side.rows[0]

        joined = self._run(
            f"SELECT COUNT(*), COUNT(DISTINCT {sc}), COUNT(DISTINCT {tc}) "
            f"FROM {s} s JOIN {t} t ON {s_key} = {t_key}",
            "join_counts", source_table, source_column,
        )
        join_count, source_matched, target_matched = joined.rows[0]

        return JoinAnalysis(
            source_row_count=int(source_rows or 0),
            target_row_count=int(target_rows or 0),
            join_count=int(join_count or 0),
            source_matched=int(source_matched or 0),
            target_matched=int(target_matched or 0),
            orphan_count=int(orphans or 0),
            reverse_orphan_count=int(reverse_orphans or 0),
            source_distinct=int(source_distinct or 0),
            target_distinct=int(target_distinct or 0),
        )


def _to_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


AdapterClass = Type[BaseDatabaseAdapter]


class DatabaseAdapterRegistry:
    """Registry for profiling adapters using Factory pattern"""

    _adapters: Dict[str, AdapterClass] = {}
    _lock = threading.Lock()

    @classmethod
    def register(cls, db_type: DatabaseType, adapter_class: AdapterClass) -> None:
        with cls._lock:
            cls._adapters[DatabaseType(db_type).value] = adapter_class

    @classmethod
    def get_adapter_class(cls, db_type: DatabaseType) -> AdapterClass:
        key = DatabaseType(db_type).value
        with cls._lock:
            if key not in cls._adapters:
                raise ValueError(f"No adapter registered for database type: {db_type}")
            return cls._adapters[key]

    @classmethod
    def create_adapter(cls, config: DatabaseConfig) -> BaseDatabaseAdapter:
        adapter_class = cls.get_adapter_class(config.db_type)
        return adapter_class(config)

    @classmethod
    def get_supported_types(cls) -> List[str]:
        with cls._lock:
            return list(cls._adapters.keys())


def register_adapter(db_type: DatabaseType):
    """Decorator to register a profiling adapter class"""
    def decorator(cls: AdapterClass) -> AdapterClass:
        DatabaseAdapterRegistry.register(db_type, cls)
        return cls
    return decorator
