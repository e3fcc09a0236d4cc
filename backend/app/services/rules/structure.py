"""Rule structure validation.

Checks the shape of a rule only: required keys, naming convention,
description bounds, decision and category enums, and condition-array
bounds. Field, operator and value legality belong to the catalog
validator.
"""

import re
from typing import Any

from app.services.rules.base import (
    ALL_OPERATORS,
    Decision,
    IssueKind,
    RuleCategory,
    ValidationIssue,
    ValidationResult,
)
from app.services.rules.catalog import FeatureCatalog, get_catalog

REQUIRED_FIELDS = ("ruleset_name", "description", "decision", "conditions")
RULESET_NAME_PATTERN = re.compile(r"^[a-z0-9-]+$")
RULESET_NAME_LENGTH = (3, 100)
DESCRIPTION_LENGTH = (10, 500)
MAX_NESTING_DEPTH = 3


def _error(path: str, message: str) -> ValidationIssue:
    return ValidationIssue(path, message, IssueKind.STRUCTURAL)


def validate_structure(
    rule: Any, catalog: FeatureCatalog | None = None
) -> ValidationResult:
    """Validate the shape of a rule dict.

    Args:
        rule: Candidate rule, usually straight from the generator.
        catalog: Catalog supplying the condition-count limit.

    Returns:
        ValidationResult with structural errors and warnings.
    """
    catalog = catalog or get_catalog()
    result = ValidationResult()

    if not isinstance(rule, dict):
        result.errors.append(_error("", "rule must be an object"))
        return result

    for name in REQUIRED_FIELDS:
        if rule.get(name) in (None, "", []):
            result.errors.append(_error(name, f"{name} is required"))

    _check_ruleset_name(rule.get("ruleset_name"), result)
    _check_description(rule.get("description"), result)
    _check_decision(rule.get("decision"), result)
    _check_category(rule.get("category"), result)
    _check_conditions(
        rule.get("conditions"), catalog.policy.max_conditions_per_rule, result
    )
    return result


def _check_ruleset_name(name: Any, result: ValidationResult) -> None:
    if name in (None, ""):
        return
    if not isinstance(name, str):
        result.errors.append(_error("ruleset_name", "ruleset_name must be a string"))
        return
    if not RULESET_NAME_PATTERN.match(name):
        result.errors.append(
            _error(
                "ruleset_name",
                "ruleset_name must be kebab-case (lowercase letters, numbers, "
                f'hyphens only). Got: "{name}"',
            )
        )
    low, high = RULESET_NAME_LENGTH
    if len(name) < low:
        result.errors.append(
            _error("ruleset_name", f"ruleset_name must be at least {low} characters")
        )
    if len(name) > high:
        result.errors.append(
            _error("ruleset_name", f"ruleset_name must be at most {high} characters")
        )


def _check_description(description: Any, result: ValidationResult) -> None:
    if description in (None, ""):
        return
    if not isinstance(description, str):
        result.errors.append(_error("description", "description must be a string"))
        return
    low, high = DESCRIPTION_LENGTH
    if len(description) < low:
        result.errors.append(
            _error("description", f"description must be at least {low} characters")
        )
    if len(description) > high:
        result.errors.append(
            _error("description", f"description must be at most {high} characters")
        )


def _check_decision(decision: Any, result: ValidationResult) -> None:
    if decision in (None, ""):
        return
    valid = [d.value for d in Decision]
    if decision not in valid:
        result.errors.append(
            _error(
                "decision",
                f'decision must be one of: {", ".join(valid)}. Got: "{decision}"',
            )
        )


def _check_category(category: Any, result: ValidationResult) -> None:
    if category is None:
        return
    valid = [c.value for c in RuleCategory]
    if category not in valid:
        result.warnings.append(
            _error(
                "category",
                f'category should be one of: {", ".join(valid)}. Got: "{category}"',
            )
        )


def _check_conditions(conditions: Any, limit: int, result: ValidationResult) -> None:
    if conditions is None or conditions == []:
        # Reported as missing above
        return
    if not isinstance(conditions, list):
        result.errors.append(_error("conditions", "conditions must be a non-empty array"))
        return
    if len(conditions) > limit:
        result.errors.append(
            _error(
                "conditions",
                f"conditions array cannot have more than {limit} items "
                "(policy: max_conditions_per_rule)",
            )
        )
        return
    for idx, condition in enumerate(conditions):
        _check_condition_shape(condition, f"conditions[{idx}]", 1, result)


def _check_condition_shape(
    condition: Any, path: str, depth: int, result: ValidationResult
) -> None:
    if not isinstance(condition, dict):
        result.errors.append(_error(path, "condition must be an object"))
        return

    group_keys = [k for k in ("all", "any") if k in condition]
    if group_keys:
        if len(group_keys) > 1 or "field" in condition:
            result.errors.append(
                _error(path, 'condition must be either a leaf or a single "all"/"any" group')
            )
            return
        key = group_keys[0]
        children = condition[key]
        if not isinstance(children, list) or not children:
            result.errors.append(_error(f"{path}.{key}", "group must be a non-empty array"))
            return
        if depth >= MAX_NESTING_DEPTH:
            result.errors.append(
                _error(path, f"condition groups cannot nest deeper than {MAX_NESTING_DEPTH}")
            )
            return
        for idx, child in enumerate(children):
            _check_condition_shape(child, f"{path}.{key}[{idx}]", depth + 1, result)
        return

    field = condition.get("field")
    op = condition.get("op")
    if not field or not isinstance(field, str):
        result.errors.append(_error(path, "field is required"))
        return
    if not op:
        result.errors.append(_error(path, "op (operator) is required"))
        return
    if not isinstance(op, str):
        result.errors.append(_error(f"{path}.op", "op must be a string"))
        return
    if op not in ALL_OPERATORS:
        result.errors.append(
            _error(
                f"{path}.op",
                f'Invalid operator "{op}". Must be one of: {", ".join(sorted(ALL_OPERATORS))}',
            )
        )
        return
    if "value" not in condition:
        result.errors.append(_error(path, f'value is required for operator "{op}"'))
