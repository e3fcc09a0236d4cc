"""Base types for fraud rules.

Provides the shared enums and result records used by the catalog,
validators, policy gate and impact analysis.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class Decision(StrEnum):
    """Outcome a rule assigns to a matching transaction."""

    ALLOW = "allow"
    REVIEW = "review"
    BLOCK = "block"

    @property
    def precedence(self) -> int:
        return _DECISION_PRECEDENCE[self]


_DECISION_PRECEDENCE = {Decision.ALLOW: 0, Decision.REVIEW: 1, Decision.BLOCK: 2}


class RuleCategory(StrEnum):
    """Category of fraud rules."""

    HIGH_RISK = "high_risk"
    VALIDATION = "validation"
    VELOCITY = "velocity"
    BEHAVIORAL = "behavioral"
    COMPLIANCE = "compliance"


class FeatureType(StrEnum):
    """Semantic type of a catalog field."""

    NUMBER = "number"
    INTEGER = "integer"
    STRING = "string"
    ENUM = "enum"
    BOOLEAN = "boolean"


class Severity(StrEnum):
    """Severity of a policy violation."""

    ERROR = "error"  # 処理を停止する
    WARNING = "warning"  # 提案に添付するのみ


class ViolationType(StrEnum):
    SENSITIVE_LANGUAGE = "sensitive_language"
    DISALLOWED_FIELD = "disallowed_field"
    PII_FIELD = "pii_field"
    BROAD_NEGATION = "broad_negation"


class IssueKind(StrEnum):
    STRUCTURAL = "structural"
    CATALOG = "catalog"


# Operator groups
EQUALITY_OPERATORS = frozenset({"==", "!="})
ORDERING_OPERATORS = frozenset({">", "<", ">=", "<="})
MEMBERSHIP_OPERATORS = frozenset({"in", "not_in"})
CONTAINMENT_OPERATORS = frozenset({"contains", "not_contains"})
ALL_OPERATORS = (
    EQUALITY_OPERATORS | ORDERING_OPERATORS | MEMBERSHIP_OPERATORS | CONTAINMENT_OPERATORS
)


@dataclass(frozen=True)
class ValidationIssue:
    """Single path-qualified validation message."""

    path: str
    message: str
    kind: IssueKind

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "message": self.message, "kind": self.kind.value}

    def __str__(self) -> str:
        return f"{self.path}: {self.message}" if self.path else self.message


@dataclass
class ValidationResult:
    """Outcome of structural or catalog validation."""

    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        """Combine two results, keeping message order."""
        return ValidationResult(
            errors=[*self.errors, *other.errors],
            warnings=[*self.warnings, *other.warnings],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ValidationResult":
        def _issues(items: list[dict[str, Any]]) -> list[ValidationIssue]:
            return [
                ValidationIssue(i["path"], i["message"], IssueKind(i["kind"]))
                for i in items
            ]

        return cls(
            errors=_issues(data.get("errors", [])),
            warnings=_issues(data.get("warnings", [])),
        )


@dataclass(frozen=True)
class Violation:
    """Policy gate finding."""

    type: ViolationType
    severity: Severity
    message: str
    field: str | None = None
    pattern: str | None = None
    suggestion: str | None = None

    @property
    def blocking(self) -> bool:
        return self.severity == Severity.ERROR

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "field": self.field,
            "pattern": self.pattern,
            "suggestion": self.suggestion,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Violation":
        return cls(
            type=ViolationType(data["type"]),
            severity=Severity(data["severity"]),
            message=data["message"],
            field=data.get("field"),
            pattern=data.get("pattern"),
            suggestion=data.get("suggestion"),
        )
