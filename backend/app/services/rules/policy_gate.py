"""Policy gate.

Runs twice per suggestion: on the raw instruction before generation, and
on the generated rule afterwards. Error-severity violations block the
pipeline; warnings are attached to the suggestion and never block.
"""

import logging
import re
from collections import Counter
from functools import lru_cache
from typing import Any

from app.services.rules.base import Severity, Violation, ViolationType
from app.services.rules.catalog import FeatureCatalog, SensitivePattern, get_catalog

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"


@lru_cache(maxsize=1)
def _compiled_patterns(
    patterns: tuple[SensitivePattern, ...],
) -> tuple[tuple[SensitivePattern, re.Pattern[str]], ...]:
    return tuple((p, re.compile(p.regex, re.IGNORECASE)) for p in patterns)


def gate(
    instruction: str | None = None,
    rule: dict[str, Any] | None = None,
    catalog: FeatureCatalog | None = None,
) -> list[Violation]:
    """Scan an instruction and/or a rule for policy violations.

    Args:
        instruction: Raw analyst instruction.
        rule: Generated rule dict (nested groups are scanned).
        catalog: Catalog supplying policy constants.

    Returns:
        Violations in discovery order (instruction first).
    """
    catalog = catalog or get_catalog()
    violations: list[Violation] = []

    if instruction:
        violations.extend(_scan_instruction(instruction, catalog))
    if rule:
        violations.extend(_scan_rule(rule, catalog))

    if violations:
        logger.debug("Policy gate found %d violation(s)", len(violations))
    return violations


def _scan_instruction(instruction: str, catalog: FeatureCatalog) -> list[Violation]:
    violations = []
    for pattern, compiled in _compiled_patterns(catalog.policy.sensitive_patterns):
        match = compiled.search(instruction)
        if match:
            violations.append(
                Violation(
                    type=ViolationType.SENSITIVE_LANGUAGE,
                    severity=Severity.ERROR,
                    message=(
                        f'Instruction contains sensitive term "{match.group(0)}" '
                        f"({pattern.label}); rules must not target protected or "
                        "personal attributes"
                    ),
                    pattern=pattern.regex,
                    suggestion=pattern.suggestion,
                )
            )
    return violations


def _walk_leaves(conditions: Any):
    if not isinstance(conditions, list):
        return
    for condition in conditions:
        if not isinstance(condition, dict):
            continue
        if "all" in condition or "any" in condition:
            yield from _walk_leaves(condition.get("all", condition.get("any")))
        else:
            yield condition


def _scan_rule(rule: dict[str, Any], catalog: FeatureCatalog) -> list[Violation]:
    policy = catalog.policy
    violations = []
    conditions = rule.get("conditions")

    for leaf in _walk_leaves(conditions):
        field = leaf.get("field")
        if not isinstance(field, str):
            continue
        if field in policy.disallowed_fields:
            violations.append(
                Violation(
                    type=ViolationType.DISALLOWED_FIELD,
                    severity=Severity.ERROR,
                    message=(
                        f'Field "{field}" is disallowed by policy '
                        "(compliance/fairness reasons)"
                    ),
                    field=field,
                    suggestion="Remove this condition or use an allowed behavioral field",
                )
            )
        elif field in policy.pii_fields:
            violations.append(
                Violation(
                    type=ViolationType.PII_FIELD,
                    severity=Severity.WARNING,
                    message=f'Field "{field}" contains PII - ensure proper handling',
                    field=field,
                    suggestion="PII will be masked in reviewer displays",
                )
            )

        if leaf.get("op") == "not_in" and isinstance(leaf.get("value"), list) and len(leaf["value"]) == 1:
            violations.append(_broad_negation(field, "not_in excluding a single value"))

    # A rule that is nothing but one inequality matches almost everything
    if isinstance(conditions, list) and len(conditions) == 1:
        only = conditions[0]
        if isinstance(only, dict) and only.get("op") == "!=":
            violations.append(_broad_negation(only.get("field"), "a single != condition"))

    return violations


def _broad_negation(field: str | None, shape: str) -> Violation:
    return Violation(
        type=ViolationType.BROAD_NEGATION,
        severity=Severity.WARNING,
        message=f'Rule on "{field}" uses {shape}, which likely matches most traffic',
        field=field,
        suggestion='Prefer positive conditions ("==" or "in") combined with other signals',
    )


def has_blocking_violations(violations: list[Violation]) -> bool:
    return any(v.blocking for v in violations)


def summarize_violations(violations: list[Violation]) -> dict[str, Any]:
    """Counts by severity and type."""
    by_severity = Counter(v.severity.value for v in violations)
    return {
        "total": len(violations),
        "errors": by_severity.get(Severity.ERROR.value, 0),
        "warnings": by_severity.get(Severity.WARNING.value, 0),
        "by_type": dict(Counter(v.type.value for v in violations)),
        "blocking": has_blocking_violations(violations),
    }


def strip_pii(record: dict[str, Any], catalog: FeatureCatalog | None = None) -> dict[str, Any]:
    """Copy of ``record`` with PII values replaced by ``[REDACTED]``."""
    catalog = catalog or get_catalog()
    redact = catalog.policy.pii_fields | catalog.policy.always_redact
    return {
        key: (REDACTED if key in redact and value is not None else value)
        for key, value in record.items()
    }
