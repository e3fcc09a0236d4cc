"""Catalog-driven condition validation.

Resolves every condition (recursively through ``all``/``any`` groups)
against the feature catalog and rejects unknown fields, operators illegal
for the field's type, type mismatches, out-of-range numbers, unknown enum
values, over-long strings and nulls on not-null fields. Values are never
coerced. Pure and deterministic: the same rule always yields the same
result.
"""

from typing import Any

from app.services.rules.base import (
    CONTAINMENT_OPERATORS,
    MEMBERSHIP_OPERATORS,
    ORDERING_OPERATORS,
    FeatureType,
    IssueKind,
    ValidationIssue,
    ValidationResult,
)
from app.services.rules.catalog import FeatureCatalog, FeatureDescriptor, get_catalog
from app.services.rules.conditions import Rule


def _issue(path: str, message: str) -> ValidationIssue:
    return ValidationIssue(path, message, IssueKind.CATALOG)


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "float"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _fmt(number: float | None) -> str:
    if isinstance(number, float) and number.is_integer():
        return str(int(number))
    return str(number)


def count_leaf_conditions(conditions: Any) -> int:
    """Number of leaf conditions, looking through nested groups."""
    if not isinstance(conditions, list):
        return 0
    total = 0
    for condition in conditions:
        if isinstance(condition, dict) and ("all" in condition or "any" in condition):
            total += count_leaf_conditions(condition.get("all", condition.get("any")))
        else:
            total += 1
    return total


def validate_against_catalog(
    rule: dict[str, Any] | Rule, catalog: FeatureCatalog | None = None
) -> ValidationResult:
    """Validate every condition of ``rule`` against the catalog.

    Args:
        rule: Rule dict (or Rule) whose conditions are checked.
        catalog: Catalog to check against. Defaults to the process catalog.

    Returns:
        ValidationResult with path-qualified catalog errors.
    """
    catalog = catalog or get_catalog()
    if isinstance(rule, Rule):
        rule = rule.to_dict()

    result = ValidationResult()
    conditions = rule.get("conditions") if isinstance(rule, dict) else None
    if not isinstance(conditions, list) or not conditions:
        result.errors.append(_issue("conditions", "conditions must be a non-empty array"))
        return result

    limit = catalog.policy.max_conditions_per_rule
    leaf_count = count_leaf_conditions(conditions)
    if leaf_count > limit:
        # Per-condition detail is skipped once the limit is exceeded
        result.errors.append(
            _issue(
                "conditions",
                f"Too many conditions ({leaf_count}). Maximum allowed: {limit} "
                "(policy: max_conditions_per_rule)",
            )
        )
        return result

    for idx, condition in enumerate(conditions):
        _validate_condition(condition, f"conditions[{idx}]", catalog, result)
    return result


def _validate_condition(
    condition: Any, path: str, catalog: FeatureCatalog, result: ValidationResult
) -> None:
    if not isinstance(condition, dict):
        result.errors.append(_issue(path, "condition must be an object"))
        return

    for key in ("all", "any"):
        if key in condition:
            children = condition[key]
            if not isinstance(children, list) or not children:
                result.errors.append(_issue(f"{path}.{key}", "group must be a non-empty array"))
                return
            for idx, child in enumerate(children):
                _validate_condition(child, f"{path}.{key}[{idx}]", catalog, result)
            return

    field = condition.get("field")
    op = condition.get("op")
    if not field:
        result.errors.append(_issue(path, "field is required"))
        return
    if not isinstance(field, str):
        result.errors.append(_issue(f"{path}.field", "field must be a string"))
        return
    if not op:
        result.errors.append(_issue(path, "op (operator) is required"))
        return
    if not isinstance(op, str):
        result.errors.append(_issue(f"{path}.op", "op must be a string"))
        return

    feature = catalog.get(field)
    if feature is None:
        result.errors.append(
            _issue(
                path,
                f'Unknown field "{field}". Must be one of: {", ".join(catalog.field_names)}',
            )
        )
        return

    valid_ops = catalog.operators_for(feature)
    if op not in valid_ops:
        result.errors.append(
            _issue(
                path,
                f'Operator "{op}" not valid for field "{field}" (type: {feature.type.value}). '
                f'Valid operators: {", ".join(sorted(valid_ops))}',
            )
        )
        return

    if "value" not in condition:
        result.errors.append(_issue(path, f'value is required for operator "{op}"'))
        return

    value = condition["value"]
    value_path = f"{path}.value"

    if op in MEMBERSHIP_OPERATORS:
        if not isinstance(value, (list, tuple)):
            result.errors.append(_issue(value_path, f'Operator "{op}" requires an array value'))
            return
        if not value:
            result.errors.append(
                _issue(value_path, f'Operator "{op}" requires a non-empty array')
            )
            return
        for idx, element in enumerate(value):
            _validate_scalar(feature, element, f"{value_path}[{idx}]", result)
        return

    if value is None:
        if op in ORDERING_OPERATORS or op in CONTAINMENT_OPERATORS:
            result.errors.append(_issue(value_path, f'Operator "{op}" requires a non-null value'))
        elif not feature.nullable:
            result.errors.append(
                _issue(value_path, f"{field} cannot be null (field is not_null)")
            )
        return

    _validate_scalar(feature, value, value_path, result)


def _validate_scalar(
    feature: FeatureDescriptor, value: Any, path: str, result: ValidationResult
) -> None:
    name = feature.name

    if value is None:
        if not feature.nullable:
            result.errors.append(_issue(path, f"{name} cannot be null (field is not_null)"))
        return

    if feature.type == FeatureType.BOOLEAN:
        if not isinstance(value, bool):
            result.errors.append(
                _issue(path, f'Field "{name}" requires boolean, got {_type_name(value)}')
            )
        return

    if feature.is_numeric:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            result.errors.append(
                _issue(path, f'Field "{name}" requires number, got {_type_name(value)}')
            )
            return
        if feature.type == FeatureType.INTEGER and isinstance(value, float):
            result.errors.append(
                _issue(path, f'Field "{name}" requires integer, got float: {value}')
            )
            return
        if feature.has_range and not (feature.min <= value <= feature.max):
            result.errors.append(
                _issue(
                    path,
                    f'Value {value} out of range for "{name}". '
                    f"Valid range: [{_fmt(feature.min)}, {_fmt(feature.max)}]",
                )
            )
        return

    if feature.type == FeatureType.STRING:
        if not isinstance(value, str):
            result.errors.append(
                _issue(path, f'Field "{name}" requires string, got {_type_name(value)}')
            )
            return
        if feature.max_length is not None and len(value) > feature.max_length:
            result.errors.append(
                _issue(
                    path,
                    f'String too long for "{name}". '
                    f"Max {feature.max_length} chars, got {len(value)}",
                )
            )
        return

    if feature.type == FeatureType.ENUM:
        if not isinstance(value, str) or value not in feature.values:
            result.errors.append(
                _issue(
                    path,
                    f'"{value}" is not a valid value for "{name}". '
                    f'Valid values: {", ".join(feature.values)}',
                )
            )
