"""Overlap (redundancy) analysis between a proposed rule and active rules.

Match-sets are the txn_ids a rule alone moves off ``allow`` on a shared
sample. Similarity is the Jaccard index of two match-sets.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import polars as pl

from app.core.config import settings
from app.services.impact.dry_run import DryRunEngine
from app.services.impact.sampler import Sample
from app.services.rule_registry import ActiveRule
from app.services.rules.conditions import Rule

logger = logging.getLogger(__name__)

HIGH_OVERLAP_WARNING = "High overlap - consider merging or adjusting"


def jaccard_index(a: set[Any], b: set[Any]) -> float:
    """|A ∩ B| / |A ∪ B|; 0.0 when both sets are empty."""
    union = len(a | b)
    if union == 0:
        return 0.0
    return len(a & b) / union


def overlap_tier(score: float) -> str:
    if score > settings.overlap_high_threshold:
        return "high"
    if score > settings.overlap_moderate_threshold:
        return "moderate"
    return "low"


@dataclass(frozen=True)
class OverlapEntry:
    rule_id: str
    rule_name: str
    jaccard_score: float
    intersection_count: int
    proposed_matches: int
    existing_matches: int
    tier: str
    warning: str | None = None

    @property
    def overlap_pct(self) -> str:
        return f"{self.jaccard_score * 100:.1f}%"

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "jaccard_score": self.jaccard_score,
            "overlap_pct": self.overlap_pct,
            "intersection_count": self.intersection_count,
            "proposed_matches": self.proposed_matches,
            "existing_matches": self.existing_matches,
            "tier": self.tier,
            "warning": self.warning,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OverlapEntry":
        return cls(
            rule_id=data["rule_id"],
            rule_name=data["rule_name"],
            jaccard_score=data["jaccard_score"],
            intersection_count=data["intersection_count"],
            proposed_matches=data["proposed_matches"],
            existing_matches=data["existing_matches"],
            tier=data["tier"],
            warning=data.get("warning"),
        )


class OverlapAnalyzer:
    """Compares a proposed rule against every active rule on one sample."""

    def __init__(
        self,
        engine: DryRunEngine | None = None,
        top_n: int | None = None,
        min_score: float | None = None,
    ) -> None:
        self.engine = engine or DryRunEngine()
        self.top_n = top_n if top_n is not None else settings.overlap_top_n
        self.min_score = min_score if min_score is not None else settings.overlap_min_score

    def match_set(self, rule: Rule, records: pl.DataFrame) -> set[str]:
        """txn_ids the rule alone does not allow."""
        df = self.engine.prepare(records)
        return set(df.filter(rule.match_mask(df))["txn_id"].to_list())

    def analyze(
        self,
        rule: Rule,
        sample: Sample | pl.DataFrame,
        active_rules: Iterable[ActiveRule],
    ) -> list[OverlapEntry]:
        """Top overlapping active rules, highest score first."""
        records = sample.records if isinstance(sample, Sample) else sample
        proposed = self.match_set(rule, records)

        entries = []
        for active in active_rules:
            existing = self.match_set(active.rule, records)
            score = round(jaccard_index(proposed, existing), 4)
            if score < self.min_score:
                continue
            tier = overlap_tier(score)
            entries.append(
                OverlapEntry(
                    rule_id=active.id,
                    rule_name=active.ruleset_name,
                    jaccard_score=score,
                    intersection_count=len(proposed & existing),
                    proposed_matches=len(proposed),
                    existing_matches=len(existing),
                    tier=tier,
                    warning=HIGH_OVERLAP_WARNING if tier == "high" else None,
                )
            )

        entries.sort(key=lambda e: (-e.jaccard_score, e.rule_id))
        top = entries[: self.top_n]
        if any(e.tier == "high" for e in top):
            logger.info(
                "Rule %s highly overlaps %s",
                rule.ruleset_name,
                [e.rule_name for e in top if e.tier == "high"],
            )
        return top

    def overlap_examples(
        self,
        rule_a: Rule,
        rule_b: Rule,
        sample: Sample | pl.DataFrame,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        """Records matched by both rules, highest amount first."""
        records = sample.records if isinstance(sample, Sample) else sample
        df = self.engine.prepare(records)
        both = (
            df.filter(rule_a.match_mask(df) & rule_b.match_mask(df))
            .sort("amount", descending=True, nulls_last=True)
            .head(limit)
        )
        same = rule_a.decision == rule_b.decision
        return [
            {
                "txn_id": row["txn_id"],
                "amount": row["amount"],
                "device": row["device"],
                "proposed_decision": rule_a.decision.value,
                "existing_decision": rule_b.decision.value,
                "match_type": "same_decision" if same else "different_decision",
            }
            for row in both.iter_rows(named=True)
        ]
