"""Fraud rule model, catalog and safety checks.

This package provides:
- Base enums and result records
- Feature catalog and policy constants
- Condition model (leaf / all / any) compiled to Polars predicates
- Structure and catalog validators
- Policy gate (instruction and rule scanning, PII redaction)
"""

from app.services.rules.base import (
    Decision,
    FeatureType,
    IssueKind,
    RuleCategory,
    Severity,
    ValidationIssue,
    ValidationResult,
    Violation,
    ViolationType,
)
from app.services.rules.catalog import (
    FeatureCatalog,
    FeatureDescriptor,
    PolicyConfig,
    get_catalog,
)
from app.services.rules.conditions import AllOf, AnyOf, Condition, Leaf, Rule
from app.services.rules.policy_gate import (
    gate,
    has_blocking_violations,
    strip_pii,
    summarize_violations,
)
from app.services.rules.structure import validate_structure
from app.services.rules.validator import validate_against_catalog

__all__ = [
    "Decision",
    "FeatureType",
    "IssueKind",
    "RuleCategory",
    "Severity",
    "ValidationIssue",
    "ValidationResult",
    "Violation",
    "ViolationType",
    "FeatureCatalog",
    "FeatureDescriptor",
    "PolicyConfig",
    "get_catalog",
    "Condition",
    "Leaf",
    "AllOf",
    "AnyOf",
    "Rule",
    "gate",
    "has_blocking_violations",
    "strip_pii",
    "summarize_violations",
    "validate_structure",
    "validate_against_catalog",
]
