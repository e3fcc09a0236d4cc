"""Health check endpoints."""

import sqlite3

import duckdb
from fastapi import APIRouter

from app.core.cache import generation_cache
from app.core.config import settings
from app.db import get_db, sqlite_manager
from app.services.impact import RecordStore
from app.services.rules import get_catalog

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """
    APIヘルスチェックエンドポイント。

    Returns:
        dict: ヘルスステータス
    """
    return {
        "status": "healthy",
        "app": settings.app_name,
        "version": settings.app_version,
    }


@router.get("/status")
def get_status() -> dict:
    """Get detailed application status.

    Returns:
        Application status including database connectivity.
    """
    duckdb_manager = get_db()

    # Check DuckDB
    duckdb_status = "healthy"
    store_summary = None
    try:
        if duckdb_manager.table_exists("transactions_proj"):
            store_summary = RecordStore(duckdb_manager).summary()
    except duckdb.Error as e:
        duckdb_status = f"error: {e}"

    # Check SQLite
    sqlite_status = "healthy"
    try:
        sqlite_manager.execute("SELECT 1")
    except sqlite3.Error as e:
        sqlite_status = f"error: {e}"

    return {
        "app": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "catalog_version": get_catalog().version,
        "llm": {
            "provider": settings.llm_provider,
            "model": settings.llm_model,
            "cache": generation_cache.stats,
        },
        "databases": {
            "duckdb": {
                "status": duckdb_status,
                "record_store": store_summary,
            },
            "sqlite": {
                "status": sqlite_status,
            },
        },
    }
