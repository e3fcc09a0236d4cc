"""SQLite connection manager for governance data."""

import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from app.core.config import settings


class SQLiteManager:
    """Manager for SQLite connections and operations.

    SQLite is used for:
    - Rule suggestions and their governance state
    - Active rule registry and version history
    - Audit trail
    - Rule generation call log
    """

    def __init__(self, db_path: Path | None = None) -> None:
        """Initialize SQLite manager.

        Args:
            db_path: Path to SQLite file. Defaults to settings.sqlite_path.
        """
        self.db_path = db_path or settings.sqlite_path
        self._ensure_directory()

    def _ensure_directory(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Create a connection context manager.

        Example:
            >>> with db.connect() as conn:
            ...     rows = conn.execute("SELECT * FROM rule_suggestions").fetchall()
        """
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Run several statements atomically.

        Takes the write lock up front (BEGIN IMMEDIATE) so concurrent writers
        serialize; commits on success and rolls back on any exception.

        Example:
            >>> with db.transaction() as conn:
            ...     conn.execute("UPDATE rule_suggestions SET status = ? WHERE id = ?", ...)
            ...     conn.execute("INSERT INTO audit_trail ...", ...)
        """
        with self.connect() as conn:
            conn.isolation_level = None
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def execute(
        self,
        query: str,
        params: tuple[Any, ...] | dict[str, Any] | None = None,
    ) -> list[sqlite3.Row]:
        """Execute a query and return results.

        Args:
            query: SQL query to execute.
            params: Query parameters.

        Returns:
            List of result rows.
        """
        with self.connect() as conn:
            cursor = conn.execute(query, params) if params else conn.execute(query)
            rows = cursor.fetchall()
            conn.commit()
            return rows

    def insert(
        self,
        table: str,
        data: dict[str, Any],
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Insert a single row.

        Args:
            table: Table name.
            data: Column-value mapping.
            conn: Optional open connection (inside ``transaction()``).

        Returns:
            ID of inserted row.
        """
        columns = ", ".join(data.keys())
        placeholders = ", ".join("?" * len(data))
        query = f"INSERT INTO {table} ({columns}) VALUES ({placeholders})"

        if conn is not None:
            return conn.execute(query, tuple(data.values())).lastrowid or 0

        with self.connect() as own_conn:
            cursor = own_conn.execute(query, tuple(data.values()))
            own_conn.commit()
            return cursor.lastrowid or 0

    def update(
        self,
        table: str,
        data: dict[str, Any],
        where: str,
        where_params: tuple[Any, ...],
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Update rows matching condition.

        Args:
            table: Table name.
            data: Column-value mapping to update.
            where: WHERE clause.
            where_params: Parameters for WHERE clause.
            conn: Optional open connection (inside ``transaction()``).

        Returns:
            Number of rows updated.
        """
        set_clause = ", ".join(f"{k} = ?" for k in data)
        query = f"UPDATE {table} SET {set_clause} WHERE {where}"
        params = tuple(data.values()) + where_params

        if conn is not None:
            return conn.execute(query, params).rowcount

        with self.connect() as own_conn:
            cursor = own_conn.execute(query, params)
            own_conn.commit()
            return cursor.rowcount

    def initialize_schema(self) -> None:
        """Initialize the governance database schema."""
        from app.db.schema import SQLITE_SCHEMA

        with self.connect() as conn:
            conn.executescript(SQLITE_SCHEMA)
            conn.commit()


# Global instance
sqlite_manager = SQLiteManager()
