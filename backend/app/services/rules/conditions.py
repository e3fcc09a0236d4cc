"""Rule and condition model.

A condition is a closed tagged variant:

- ``Leaf``   ``{"field": ..., "op": ..., "value": ...}``
- ``AllOf``  ``{"all": [condition, ...]}``
- ``AnyOf``  ``{"any": [condition, ...]}``

A rule's top-level condition list is an implicit ``AllOf``. Conditions
compile to a single vectorized Polars predicate for dry-run and overlap
evaluation.

Null handling: a null field value fails every comparison except the
negative ones (``!=``, ``not_in``, ``not_contains``), which hold. ``== null``
and ``!= null`` test for null and not-null.
"""

import hashlib
import json
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, Union

import polars as pl

from app.core.exceptions import StructuralError
from app.services.rules.base import Decision


@dataclass(frozen=True)
class Leaf:
    field: str
    op: str
    value: Any

    def to_dict(self) -> dict[str, Any]:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        return {"field": self.field, "op": self.op, "value": value}


@dataclass(frozen=True)
class AllOf:
    conditions: tuple["Condition", ...]

    def to_dict(self) -> dict[str, Any]:
        return {"all": [c.to_dict() for c in self.conditions]}


@dataclass(frozen=True)
class AnyOf:
    conditions: tuple["Condition", ...]

    def to_dict(self) -> dict[str, Any]:
        return {"any": [c.to_dict() for c in self.conditions]}


Condition = Union[Leaf, AllOf, AnyOf]


def parse_condition(data: Any, path: str = "conditions") -> Condition:
    """Build a Condition from its dict form.

    Raises:
        StructuralError: If ``data`` is not a leaf or a non-empty group.
    """
    if not isinstance(data, dict):
        raise StructuralError(
            f"{path}: condition must be an object",
            errors=[{"path": path, "message": "condition must be an object"}],
        )
    for key, group in (("all", AllOf), ("any", AnyOf)):
        if key in data:
            children = data[key]
            if not isinstance(children, list) or not children:
                raise StructuralError(
                    f"{path}.{key}: group must be a non-empty array",
                    errors=[{"path": f"{path}.{key}", "message": "group must be a non-empty array"}],
                )
            return group(
                tuple(
                    parse_condition(child, f"{path}.{key}[{i}]")
                    for i, child in enumerate(children)
                )
            )
    if "field" not in data or "op" not in data:
        raise StructuralError(
            f"{path}: condition requires field and op",
            errors=[{"path": path, "message": "condition requires field and op"}],
        )
    value = data.get("value")
    if isinstance(value, list):
        value = tuple(value)
    return Leaf(field=data["field"], op=data["op"], value=value)


def iter_leaves(conditions: tuple[Condition, ...] | list[Condition]) -> Iterator[Leaf]:
    """Depth-first walk over every leaf."""
    for condition in conditions:
        if isinstance(condition, Leaf):
            yield condition
        else:
            yield from iter_leaves(condition.conditions)


def compile_condition(condition: Condition) -> pl.Expr:
    """Compile a condition into a boolean Polars expression (never null)."""
    if isinstance(condition, AllOf):
        return pl.all_horizontal([compile_condition(c) for c in condition.conditions])
    if isinstance(condition, AnyOf):
        return pl.any_horizontal([compile_condition(c) for c in condition.conditions])
    return _compile_leaf(condition)


def _compile_leaf(leaf: Leaf) -> pl.Expr:
    col = pl.col(leaf.field)
    op, value = leaf.op, leaf.value

    if op == "==":
        if value is None:
            return col.is_null()
        return (col == pl.lit(value)).fill_null(False)
    if op == "!=":
        if value is None:
            return col.is_not_null()
        return (col != pl.lit(value)).fill_null(True)
    if op == ">":
        return (col > value).fill_null(False)
    if op == "<":
        return (col < value).fill_null(False)
    if op == ">=":
        return (col >= value).fill_null(False)
    if op == "<=":
        return (col <= value).fill_null(False)
    if op == "in":
        return col.is_in(list(value)).fill_null(False)
    if op == "not_in":
        return (~col.is_in(list(value))).fill_null(True)
    if op == "contains":
        return col.str.contains(str(value), literal=True).fill_null(False)
    if op == "not_contains":
        return (~col.str.contains(str(value), literal=True)).fill_null(True)
    raise StructuralError(
        f'Unsupported operator "{op}"',
        errors=[{"path": leaf.field, "message": f'unsupported operator "{op}"'}],
    )


@dataclass(frozen=True)
class Rule:
    """Proposed or active fraud rule. Conditions are AND-ed."""

    ruleset_name: str
    description: str
    decision: Decision
    conditions: tuple[Condition, ...]
    category: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Rule":
        """Build a Rule from a structurally valid dict.

        Raises:
            StructuralError: On shape problems the structure validator
                would also report.
        """
        try:
            decision = Decision(data["decision"])
            raw_conditions = data["conditions"]
            name = data["ruleset_name"]
        except (KeyError, ValueError, TypeError) as e:
            raise StructuralError(
                f"Rule cannot be constructed: {e}",
                errors=[{"path": "", "message": str(e)}],
            ) from e
        if not isinstance(raw_conditions, list):
            raise StructuralError(
                "conditions must be an array",
                errors=[{"path": "conditions", "message": "conditions must be an array"}],
            )
        return cls(
            ruleset_name=name,
            description=data.get("description", ""),
            decision=decision,
            category=data.get("category"),
            conditions=tuple(
                parse_condition(c, f"conditions[{i}]") for i, c in enumerate(raw_conditions)
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "ruleset_name": self.ruleset_name,
            "description": self.description,
            "decision": self.decision.value,
            "conditions": [c.to_dict() for c in self.conditions],
        }
        if self.category is not None:
            data["category"] = self.category
        return data

    @property
    def fingerprint(self) -> str:
        """SHA-256 over the canonical JSON form."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    def leaves(self) -> list[Leaf]:
        return list(iter_leaves(self.conditions))

    def predicate(self) -> pl.Expr:
        """Boolean expression: True where every condition holds."""
        return compile_condition(AllOf(self.conditions))

    def evaluate(self, df: pl.DataFrame) -> pl.Series:
        """Rule-alone decision per row: ``decision`` where matched, else allow."""
        return df.select(
            pl.when(self.predicate())
            .then(pl.lit(self.decision.value))
            .otherwise(pl.lit(Decision.ALLOW.value))
            .alias("rule_decision")
        ).to_series()

    def match_mask(self, df: pl.DataFrame) -> pl.Series:
        """True where the rule alone yields a decision other than allow."""
        if self.decision == Decision.ALLOW:
            return pl.Series("matched", [False] * df.height, dtype=pl.Boolean)
        return df.select(self.predicate().alias("matched")).to_series()
