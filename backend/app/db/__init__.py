"""Database modules for RuleGuard."""

from app.db.duckdb import DuckDBManager, duckdb_manager, get_db
from app.db.sqlite import SQLiteManager, sqlite_manager

__all__ = ["DuckDBManager", "SQLiteManager", "duckdb_manager", "sqlite_manager", "get_db"]
