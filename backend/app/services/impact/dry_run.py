"""Dry-run impact simulation.

Evaluates a proposed rule against a sample of historical records and
compares the baseline decision distribution with the distribution after
layering the rule on top of existing decisions (block > review > allow,
never downgrading). Evaluation is vectorized; aggregation is count-based.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any

import polars as pl

from app.core.config import settings
from app.core.exceptions import SampleUnavailableError
from app.services.impact.sampler import Sample
from app.services.rules.base import Decision
from app.services.rules.catalog import FeatureCatalog, get_catalog
from app.services.rules.conditions import Rule
from app.services.rules.policy_gate import strip_pii

logger = logging.getLogger(__name__)

MAX_EXAMPLES = 10
_DECISIONS = [d.value for d in Decision]
_RANK = {d.value: d.precedence for d in Decision}


@dataclass(frozen=True)
class FalsePositiveRisk:
    """Share of newly caught records with no prior flag or dispute."""

    level: str  # "low", "medium", "high"
    unflagged_caught: int
    total_caught: int
    fp_rate_estimate: float
    warning: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "risk_level": self.level,
            "unflagged_caught": self.unflagged_caught,
            "total_caught": self.total_caught,
            "fp_rate_estimate": self.fp_rate_estimate,
            "warning": self.warning,
        }


@dataclass(frozen=True)
class ImpactReport:
    """Result of a dry run. Rates are percentages with 2 decimals."""

    sample_size: int
    match_count: int
    match_rate: float
    change_count: int
    change_rate: float
    baseline_rates: dict[str, float]
    proposed_rates: dict[str, float]
    deltas: dict[str, float]
    examples: tuple[dict[str, Any], ...]
    fp_risk: FalsePositiveRisk
    strata_counts: dict[str, int] = field(default_factory=dict)
    rule_fingerprint: str | None = None
    elapsed_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "sample_size": self.sample_size,
            "match_count": self.match_count,
            "match_rate": self.match_rate,
            "change_count": self.change_count,
            "change_rate": self.change_rate,
            "baseline": self.baseline_rates,
            "proposed": self.proposed_rates,
            "deltas": self.deltas,
            "examples": list(self.examples),
            "false_positive_risk": self.fp_risk.to_dict(),
            "strata_counts": self.strata_counts,
            "rule_fingerprint": self.rule_fingerprint,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }


def _pct(count: int, total: int) -> float:
    return round(count / total * 100, 2) if total else 0.0


def _rank(column: str) -> pl.Expr:
    return pl.col(column).replace_strict(_RANK, default=0, return_dtype=pl.Int8)


class DryRunEngine:
    """Simulates a single rule against a sample."""

    def __init__(self, catalog: FeatureCatalog | None = None) -> None:
        self.catalog = catalog or get_catalog()

    def prepare(self, records: pl.DataFrame) -> pl.DataFrame:
        """Add null columns for catalog fields the records lack, normalize baseline."""
        missing = [
            pl.lit(None, dtype=feature.polars_dtype).alias(name)
            for name, feature in self.catalog.features.items()
            if name not in records.columns
        ]
        if "decision" not in records.columns:
            missing.append(pl.lit(Decision.ALLOW.value).alias("decision"))
        for flag in ("flagged", "disputed"):
            if flag not in records.columns and flag not in self.catalog.features:
                missing.append(pl.lit(False).alias(flag))
        df = records.with_columns(missing) if missing else records

        return df.with_columns(
            pl.when(pl.col("decision").is_in(_DECISIONS))
            .then(pl.col("decision"))
            .otherwise(pl.lit(Decision.ALLOW.value))
            .alias("baseline_decision")
        )

    def annotate(self, rule: Rule, records: pl.DataFrame) -> pl.DataFrame:
        """Per-record baseline, rule-alone and layered decisions."""
        df = self.prepare(records)
        df = df.with_columns(rule.evaluate(df).alias("rule_decision"))
        return df.with_columns(
            pl.when(_rank("rule_decision") > _rank("baseline_decision"))
            .then(pl.col("rule_decision"))
            .otherwise(pl.col("baseline_decision"))
            .alias("proposed_decision"),
            (pl.col("rule_decision") != Decision.ALLOW.value).alias("matched"),
        ).with_columns(
            (pl.col("proposed_decision") != pl.col("baseline_decision")).alias("changed")
        )

    def run(self, rule: Rule, sample: Sample | pl.DataFrame) -> ImpactReport:
        """Dry-run ``rule`` over ``sample``.

        Raises:
            SampleUnavailableError: If the sample is empty.
        """
        if isinstance(sample, pl.DataFrame):
            sample = Sample.from_records(sample)
        if sample.size == 0:
            raise SampleUnavailableError("Sample is empty; impact could not be computed")

        start_time = time.perf_counter()
        df = self.annotate(rule, sample.records)
        total = df.height

        baseline_counts = self._counts(df, "baseline_decision")
        proposed_counts = self._counts(df, "proposed_decision")
        baseline_rates = {d: _pct(baseline_counts[d], total) for d in _DECISIONS}
        proposed_rates = {d: _pct(proposed_counts[d], total) for d in _DECISIONS}
        deltas = {d: round(proposed_rates[d] - baseline_rates[d], 2) for d in _DECISIONS}

        match_count = int(df["matched"].sum())
        change_count = int(df["changed"].sum())

        report = ImpactReport(
            sample_size=total,
            match_count=match_count,
            match_rate=_pct(match_count, total),
            change_count=change_count,
            change_rate=_pct(change_count, total),
            baseline_rates=baseline_rates,
            proposed_rates=proposed_rates,
            deltas=deltas,
            examples=self._examples(df),
            fp_risk=self._false_positive_risk(df),
            strata_counts=dict(sample.strata_counts),
            rule_fingerprint=rule.fingerprint,
            elapsed_ms=(time.perf_counter() - start_time) * 1000,
        )
        logger.debug(
            "Dry run %s: %d/%d matched, %d changed",
            rule.ruleset_name,
            match_count,
            total,
            change_count,
        )
        return report

    @staticmethod
    def _counts(df: pl.DataFrame, column: str) -> dict[str, int]:
        counts = dict.fromkeys(_DECISIONS, 0)
        for row in df.group_by(column).len().iter_rows(named=True):
            counts[row[column]] = row["len"]
        return counts

    def _examples(self, df: pl.DataFrame) -> tuple[dict[str, Any], ...]:
        changed = (
            df.filter(pl.col("changed"))
            .sort("amount", descending=True, nulls_last=True)
            .head(MAX_EXAMPLES)
        )
        examples = []
        for row in changed.iter_rows(named=True):
            examples.append(
                strip_pii(
                    {
                        "txn_id": row["txn_id"],
                        "amount": row["amount"],
                        "device": row["device"],
                        "baseline": row["baseline_decision"],
                        "proposed": row["proposed_decision"],
                        "change": f'{row["baseline_decision"]} -> {row["proposed_decision"]}',
                    },
                    self.catalog,
                )
            )
        return tuple(examples)

    @staticmethod
    def _false_positive_risk(df: pl.DataFrame) -> FalsePositiveRisk:
        caught = df.filter(
            (pl.col("baseline_decision") == Decision.ALLOW.value) & pl.col("changed")
        )
        total_caught = caught.height
        prior_signal = pl.col("flagged").fill_null(False) | pl.col("disputed").fill_null(False)
        unflagged = caught.filter(~prior_signal).height
        fp_rate = _pct(unflagged, total_caught)

        if fp_rate > settings.fp_risk_high_pct:
            level = "high"
            warning = (
                f"{fp_rate}% of newly caught transactions have no prior flag or "
                "dispute; expect a high false-positive rate"
            )
        elif fp_rate > settings.fp_risk_medium_pct:
            level = "medium"
            warning = (
                f"{fp_rate}% of newly caught transactions have no prior flag or "
                "dispute; review examples before approving"
            )
        else:
            level = "low"
            warning = None

        return FalsePositiveRisk(
            level=level,
            unflagged_caught=unflagged,
            total_caught=total_caught,
            fp_rate_estimate=fp_rate,
            warning=warning,
        )


def dry_run(rule: Rule, sample: Sample | pl.DataFrame) -> ImpactReport:
    """Module-level shortcut for ``DryRunEngine().run``."""
    return DryRunEngine().run(rule, sample)
