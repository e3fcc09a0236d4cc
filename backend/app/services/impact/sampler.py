"""Stratified sampling of historical transactions.

Uniform sampling under-represents what a new fraud rule usually targets,
so the sample is drawn from five independent strata, each with a fixed
share of the requested size:

=================  =====  ============================================
stratum            share  predicate
=================  =====  ============================================
recent             30%    within ``recent_window_days`` of ``as_of``
weekend_off_hours  15%    Saturday/Sunday, or outside business hours
flagged            20%    previously flagged or disputed
high_value         15%    amount >= ``high_value_threshold``
random             20%    uniform
=================  =====  ============================================

Shortfalls in one stratum are accepted, not redistributed. The stratum
queries have no ordering dependency and run concurrently, one DuckDB cursor
each. Records appearing in several strata are kept once, tagged with the
first stratum in the table order.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import duckdb
import polars as pl

from app.core.config import settings
from app.core.exceptions import SampleUnavailableError
from app.core.logging import perf_log
from app.db import DuckDBManager, get_db
from app.db.schema import TRANSACTION_COLUMNS

logger = logging.getLogger(__name__)

TABLE = "transactions_proj"

# Order matters: it decides the stratum tag of records found in several strata.
STRATA_SHARES: dict[str, float] = {
    "recent": 0.30,
    "weekend_off_hours": 0.15,
    "flagged": 0.20,
    "high_value": 0.15,
    "random": 0.20,
}


@dataclass
class Sample:
    """Deduplicated stratified sample.

    Attributes:
        records: One row per txn_id, with an extra ``stratum`` column.
        strata_counts: Rows kept per stratum after deduplication.
        requested_size: Size asked for.
        raw_count: Rows fetched before deduplication.
    """

    records: pl.DataFrame
    strata_counts: dict[str, int] = field(default_factory=dict)
    requested_size: int = 0
    raw_count: int = 0
    elapsed_ms: float = 0.0

    @property
    def size(self) -> int:
        return self.records.height

    def to_dict(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "requested_size": self.requested_size,
            "raw_count": self.raw_count,
            "duplicates_removed": self.raw_count - self.size,
            "strata_counts": self.strata_counts,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }

    @classmethod
    def from_records(cls, records: pl.DataFrame, stratum: str = "provided") -> "Sample":
        """Wrap an already-materialized set of records (tests, what-if runs)."""
        deduped = records.unique(subset=["txn_id"], keep="first", maintain_order=True)
        if "stratum" not in deduped.columns:
            deduped = deduped.with_columns(pl.lit(stratum).alias("stratum"))
        return cls(
            records=deduped,
            strata_counts=_count_strata(deduped),
            requested_size=records.height,
            raw_count=records.height,
        )


def _count_strata(records: pl.DataFrame) -> dict[str, int]:
    counts = records.group_by("stratum").len()
    return {row["stratum"]: row["len"] for row in counts.iter_rows(named=True)}


def allocate(size: int) -> dict[str, int]:
    """Split ``size`` across strata by share; rounding remainder goes to random."""
    targets = {name: int(size * share) for name, share in STRATA_SHARES.items()}
    targets["random"] += size - sum(targets.values())
    return targets


class StratifiedSampler:
    """Draws stratified samples from the transaction projection."""

    def __init__(
        self,
        db: DuckDBManager | None = None,
        max_workers: int | None = None,
    ) -> None:
        """Initialize sampler.

        Args:
            db: DuckDB manager holding ``transactions_proj``.
            max_workers: Parallel stratum queries.
        """
        self.db = db or get_db()
        self.max_workers = max_workers or settings.sampler_max_workers

    def _stratum_query(self, stratum: str, limit: int, as_of: datetime) -> tuple[str, list[Any]]:
        columns = ", ".join(TRANSACTION_COLUMNS)
        select = f"SELECT {columns}, '{stratum}' AS stratum FROM {TABLE}"

        if stratum == "recent":
            since = as_of - timedelta(days=settings.recent_window_days)
            return (
                f"{select} WHERE timestamp >= ? AND timestamp <= ? "
                f"ORDER BY timestamp DESC LIMIT {limit}",
                [since, as_of],
            )
        if stratum == "weekend_off_hours":
            # dayofweek: 0 = Sunday, 6 = Saturday
            return (
                f"{select} WHERE dayofweek(timestamp) IN (0, 6) "
                "OR hour < ? OR hour >= ? "
                f"ORDER BY timestamp DESC LIMIT {limit}",
                [settings.off_hours_end, settings.off_hours_start],
            )
        if stratum == "flagged":
            return (
                f"{select} WHERE flagged OR disputed "
                f"ORDER BY timestamp DESC LIMIT {limit}",
                [],
            )
        if stratum == "high_value":
            return (
                f"{select} WHERE amount >= ? ORDER BY amount DESC LIMIT {limit}",
                [settings.high_value_threshold],
            )
        if stratum == "random":
            return f"{select} ORDER BY random() LIMIT {limit}", []
        raise ValueError(f"Unknown stratum: {stratum}")

    def _fetch(self, stratum: str, limit: int, as_of: datetime) -> pl.DataFrame:
        query, params = self._stratum_query(stratum, limit, as_of)
        return self.db.execute_df(query, params or None)

    def sample(self, size: int | None = None, as_of: datetime | None = None) -> Sample:
        """Draw a deduplicated stratified sample.

        Args:
            size: Requested sample size, clamped to ``[1, max_sample_size]``.
            as_of: Reference time for the recent stratum. Defaults to now.

        Returns:
            Sample with per-record stratum tags.

        Raises:
            SampleUnavailableError: If the store fails or returns no records.
        """
        size = max(1, min(size or settings.default_sample_size, settings.max_sample_size))
        as_of = as_of or datetime.now()
        targets = allocate(size)
        start_time = time.perf_counter()

        try:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = {
                    name: executor.submit(self._fetch, name, limit, as_of)
                    for name, limit in targets.items()
                    if limit > 0
                }
                frames = [futures[name].result() for name in STRATA_SHARES if name in futures]
        except duckdb.Error as e:
            logger.error("Sampling failed: %s", e)
            raise SampleUnavailableError(
                f"Record store unavailable: {e}", requested_size=size
            ) from e

        non_empty = [f for f in frames if f.height > 0]
        if not non_empty:
            raise SampleUnavailableError(
                "No historical records available for sampling", requested_size=size
            )

        combined = pl.concat(non_empty, how="vertical_relaxed")
        records = combined.unique(subset=["txn_id"], keep="first", maintain_order=True)
        elapsed_ms = (time.perf_counter() - start_time) * 1000

        sample = Sample(
            records=records,
            strata_counts=_count_strata(records),
            requested_size=size,
            raw_count=combined.height,
            elapsed_ms=elapsed_ms,
        )
        perf_log.info(
            "stratified_sample",
            extra={"sample_size": sample.size, "duration_ms": elapsed_ms},
        )
        logger.debug(
            "Sampled %d records (%d before dedup): %s",
            sample.size,
            sample.raw_count,
            sample.strata_counts,
        )
        return sample
