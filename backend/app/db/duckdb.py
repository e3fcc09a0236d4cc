"""DuckDB connection manager for the historical record store."""

import threading
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import duckdb
import polars as pl

from app.core.config import settings


class DuckDBManager:
    """Manager for DuckDB connections and operations.

    DuckDB is used for:
    - transactions_proj (lean projection scanned by sampling)
    - Predicate-filtered stratum queries

    永続接続を保持し、カーソルベースで読み取りクエリを実行する。
    カーソルはスレッドごとに独立しているため、層別クエリを並列に発行できる。
    """

    def __init__(self, db_path: Path | None = None) -> None:
        """Initialize DuckDB manager.

        Args:
            db_path: Path to DuckDB file. Defaults to settings.duckdb_path.
        """
        self.db_path = db_path or settings.duckdb_path
        self._conn: duckdb.DuckDBPyConnection | None = None
        self._lock = threading.Lock()
        self._ensure_directory()

    def _ensure_directory(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the persistent connection."""
        if self._conn is None:
            with self._lock:
                if self._conn is None:
                    self._conn = duckdb.connect(str(self.db_path))
                    self._conn.execute(f"SET threads TO {settings.sampler_max_workers}")
        return self._conn

    @contextmanager
    def connect(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        """Create a cursor context manager on the persistent connection.

        Example:
            >>> with db.connect() as conn:
            ...     rows = conn.execute("SELECT COUNT(*) FROM transactions_proj").fetchall()
        """
        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            yield cursor
        finally:
            cursor.close()

    def execute(
        self, query: str, params: list[Any] | None = None
    ) -> list[tuple[Any, ...]]:
        """Execute a query and return result tuples."""
        with self.connect() as cursor:
            result = cursor.execute(query, params) if params else cursor.execute(query)
            return result.fetchall()

    def execute_df(self, query: str, params: list[Any] | None = None) -> pl.DataFrame:
        """Execute a query and return results as Polars DataFrame.

        Args:
            query: SQL query to execute.
            params: Query parameters.

        Returns:
            Polars DataFrame with query results.
        """
        with self.connect() as cursor:
            result = cursor.execute(query, params) if params else cursor.execute(query)
            return result.pl()

    def insert_df(self, table_name: str, df: pl.DataFrame) -> int:
        """Insert a Polars DataFrame into a table, matching columns by name.

        Columns missing from ``df`` take the table defaults.

        Returns:
            Number of rows inserted.
        """
        with self.connect() as cursor:
            cursor.register("df_to_insert", df.to_arrow())
            try:
                cursor.execute(f"INSERT INTO {table_name} BY NAME SELECT * FROM df_to_insert")
            finally:
                cursor.unregister("df_to_insert")
        return len(df)

    def table_exists(self, table_name: str) -> bool:
        query = """
            SELECT COUNT(*) FROM information_schema.tables
            WHERE table_name = ?
        """
        result = self.execute(query, [table_name])
        return result[0][0] > 0

    def get_table_count(self, table_name: str) -> int:
        result = self.execute(f"SELECT COUNT(*) FROM {table_name}")
        return result[0][0]

    def close(self) -> None:
        """Close the persistent connection."""
        if self._conn is not None:
            with self._lock:
                if self._conn is not None:
                    self._conn.close()
                    self._conn = None

    def initialize_schema(self) -> None:
        """Create the transaction projection and its indexes."""
        from app.db.schema import DUCKDB_SCHEMA

        conn = self._get_connection()
        for statement in DUCKDB_SCHEMA.split(";"):
            lines = [
                line
                for line in statement.split("\n")
                if line.strip() and not line.strip().startswith("--")
            ]
            clean_stmt = "\n".join(lines).strip()
            if clean_stmt:
                conn.execute(clean_stmt)


# Global instance
duckdb_manager = DuckDBManager()


def get_db() -> DuckDBManager:
    """Get global DuckDB manager instance."""
    return duckdb_manager
