"""
SQLite Profiling Adapter
Implements schema introspection and statistics queries for SQLite
"""
from __future__ import annotations

import sqlite3
import time
from typing import Any, Dict, List, Optional, Tuple

from ..config import DatabaseConfig, DatabaseType
from ..utils.errors import classify_database_error
from ..utils.logging import get_logger
from .base import (
    BaseDatabaseAdapter,
    ColumnSchema,
    ForeignKeySchema,
    QueryResult,
    TableSchema,
    register_adapter,
)

logger = get_logger(__name__)


@register_adapter(DatabaseType.SQLITE)
class SQLiteAdapter(BaseDatabaseAdapter):
    """SQLite profiling adapter"""

    def __init__(self, config: DatabaseConfig, connection: Optional[sqlite3.Connection] = None):
        super().__init__(config)
        # An injected connection is shared with the caller and never closed here
        self._connection = connection
        self._owns_connection = connection is None

    @property
    def database_type(self) -> DatabaseType:
        return DatabaseType.SQLITE

    def connect(self) -> None:
        """Establish SQLite connection"""
        if self._connection is not None:
            return
        db_path = self.config.sqlite_path or self.config.database or ":memory:"
        try:
            self._connection = sqlite3.connect(
                db_path,
                timeout=self.config.connection_timeout,
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            raise classify_database_error(e, DatabaseType.SQLITE.value) from e
        self._owns_connection = True
        logger.debug(f"Connected to SQLite database: {db_path}")

    def disconnect(self) -> None:
        """Close SQLite connection"""
        if self._connection is not None and self._owns_connection:
            self._connection.close()
            self._connection = None

    def is_connected(self) -> bool:
        if self._connection is None:
            return False
        try:
            self._connection.execute("SELECT 1")
            return True
        except sqlite3.ProgrammingError:
            return False

    def quote_identifier(self, name: str) -> str:
        return '"' + name.replace('"', '""') + '"'

    def execute_query(self, sql: str, params: Optional[Tuple[Any, ...]] = None) -> QueryResult:
        """Execute a read-only statistics query"""
        if not self.is_connected():
            self.connect()

        start_time = time.time()
        with self._lock:
            try:
                cursor = self._connection.execute(sql, params or ())
                if cursor.description:
                    columns = [desc[0] for desc in cursor.description]
                    rows = [tuple(row) for row in cursor.fetchall()]
                else:
                    columns, rows = [], []
                cursor.close()
            except sqlite3.Error as e:
                return QueryResult(
                    success=False,
                    execution_time_ms=(time.time() - start_time) * 1000,
                    error_message=str(e),
                )

        return QueryResult(
            success=True,
            columns=columns,
            rows=rows,
            row_count=len(rows),
            execution_time_ms=(time.time() - start_time) * 1000,
        )

    def _fetch_tables(self) -> List[TableSchema]:
        """Fetch all table schemas"""
        result = self._run(
            "SELECT name FROM sqlite_master "
            "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name",
            "list_tables",
        )

        tables = []
        for (table_name,) in result.rows:
            columns = self._fetch_columns(table_name)
            foreign_keys = self._fetch_foreign_keys(table_name)
            unique_columns = self._fetch_unique_columns(table_name)

            fk_columns = {col for fk in foreign_keys for col in fk.columns}
            for column in columns:
                column.is_foreign_key = column.name in fk_columns
                column.is_unique = column.is_primary_key or column.name in unique_columns

            tables.append(TableSchema(
                name=table_name,
                columns=columns,
                primary_key=[c.name for c in columns if c.is_primary_key],
                foreign_keys=foreign_keys,
                row_count=self.get_row_count(table_name),
            ))
        return tables

    def _fetch_columns(self, table_name: str) -> List[ColumnSchema]:
        result = self._run(f"PRAGMA table_info({self.quote_identifier(table_name)})",
                           "table_info", table_name)
        # cid, name, type, notnull, dflt_value, pk
        ordered = sorted(result.rows, key=lambda row: row[0])
        return [
            ColumnSchema(
                name=row[1],
                data_type=row[2] or "TEXT",
                nullable=not row[3] and not row[5],
                default_value=row[4],
                is_primary_key=bool(row[5]),
            )
            for row in ordered
        ]

    def _fetch_foreign_keys(self, table_name: str) -> List[ForeignKeySchema]:
        result = self._run(f"PRAGMA foreign_key_list({self.quote_identifier(table_name)})",
                           "foreign_keys", table_name)

        # id, seq, table, from, to, on_update, on_delete, match
        grouped: Dict[int, Dict[str, Any]] = {}
        for row in result.rows:
            entry = grouped.setdefault(row[0], {"table": row[2], "from": [], "to": []})
            entry["from"].append(row[3])
            entry["to"].append(row[4])

        foreign_keys = []
        for fk_id, entry in sorted(grouped.items()):
            referenced = entry["to"]
            if any(col is None for col in referenced):
                # REFERENCES parent without a column list targets the parent's primary key
                referenced = [c.name for c in self._fetch_columns(entry["table"]) if c.is_primary_key]
            foreign_keys.append(ForeignKeySchema(
                name=f"fk_{table_name}_{fk_id}",
                columns=entry["from"],
                referenced_table=entry["table"],
                referenced_columns=referenced,
            ))
        return foreign_keys

    def _fetch_unique_columns(self, table_name: str) -> set:
        """Columns covered alone by a unique index"""
        result = self._run(f"PRAGMA index_list({self.quote_identifier(table_name)})",
                           "index_list", table_name)
        unique = set()
        # seq, name, unique, origin, partial
        for row in result.rows:
            if not row[2]:
                continue
            info = self._run(f"PRAGMA index_info({self.quote_identifier(row[1])})",
                             "index_info", table_name)
            if len(info.rows) == 1:
                unique.add(info.rows[0][2])
        return unique
