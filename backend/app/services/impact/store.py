"""Historical record store backed by the DuckDB transaction projection."""

import logging
from typing import Any

import polars as pl

from app.core.exceptions import InvalidInputError
from app.db import DuckDBManager, get_db
from app.db.schema import TRANSACTION_COLUMNS

logger = logging.getLogger(__name__)

TABLE = "transactions_proj"


class RecordStore:
    """Read-mostly access to ``transactions_proj``.

    Records are never mutated by the rule pipeline; ``load_records`` exists
    for seeding and tests.
    """

    def __init__(self, db: DuckDBManager | None = None) -> None:
        self.db = db or get_db()

    def load_records(self, records: pl.DataFrame) -> int:
        """Append projected records.

        Columns outside the projection are dropped; missing optional
        columns take the table defaults.

        Raises:
            InvalidInputError: If ``txn_id``, ``timestamp`` or ``amount`` is absent.
        """
        for required in ("txn_id", "timestamp", "amount"):
            if required not in records.columns:
                raise InvalidInputError(
                    f"Records must include a {required} column",
                    field=required,
                )
        projected = records.select([c for c in TRANSACTION_COLUMNS if c in records.columns])
        count = self.db.insert_df(TABLE, projected)
        logger.info("Loaded %d records into %s", count, TABLE)
        return count

    def count(self) -> int:
        return self.db.get_table_count(TABLE)

    def summary(self) -> dict[str, Any]:
        """Row count, time span and flagged/disputed count."""
        total, earliest, latest, flagged = self.db.execute(
            f"""
            SELECT
                COUNT(*),
                MIN(timestamp),
                MAX(timestamp),
                COUNT(*) FILTER (WHERE flagged OR disputed)
            FROM {TABLE}
            """
        )[0]
        return {
            "records": total,
            "earliest": earliest.isoformat() if earliest else None,
            "latest": latest.isoformat() if latest else None,
            "flagged_or_disputed": flagged,
        }
