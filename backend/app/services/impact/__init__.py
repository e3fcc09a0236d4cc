"""Impact analysis: stratified sampling, dry-run simulation and overlap."""

from app.services.impact.dry_run import DryRunEngine, FalsePositiveRisk, ImpactReport, dry_run
from app.services.impact.overlap import OverlapAnalyzer, OverlapEntry, jaccard_index
from app.services.impact.sampler import STRATA_SHARES, Sample, StratifiedSampler, allocate
from app.services.impact.store import RecordStore

__all__ = [
    "DryRunEngine",
    "FalsePositiveRisk",
    "ImpactReport",
    "dry_run",
    "OverlapAnalyzer",
    "OverlapEntry",
    "jaccard_index",
    "STRATA_SHARES",
    "Sample",
    "StratifiedSampler",
    "allocate",
    "RecordStore",
]
