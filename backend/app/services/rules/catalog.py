"""Feature catalog.

Static registry of the transaction fields a rule may reference, the
operators legal for each semantic type, and the policy constants enforced
by the policy gate. Built once per process by ``get_catalog()``.
"""

from dataclasses import dataclass, field
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Mapping

import polars as pl

from app.services.rules.base import (
    CONTAINMENT_OPERATORS,
    EQUALITY_OPERATORS,
    MEMBERSHIP_OPERATORS,
    ORDERING_OPERATORS,
    FeatureType,
)

CATALOG_VERSION = "2025.1"

_POLARS_DTYPES = {
    FeatureType.NUMBER: pl.Float64,
    FeatureType.INTEGER: pl.Int64,
    FeatureType.STRING: pl.Utf8,
    FeatureType.ENUM: pl.Utf8,
    FeatureType.BOOLEAN: pl.Boolean,
}


@dataclass(frozen=True)
class FeatureDescriptor:
    """One evaluable transaction field."""

    name: str
    type: FeatureType
    description: str = ""
    min: float | None = None
    max: float | None = None
    values: tuple[str, ...] = ()
    max_length: int | None = None
    nullable: bool = True
    pii: bool = False

    @property
    def is_numeric(self) -> bool:
        return self.type in (FeatureType.NUMBER, FeatureType.INTEGER)

    @property
    def has_range(self) -> bool:
        return self.min is not None and self.max is not None

    @property
    def polars_dtype(self) -> pl.DataType:
        return _POLARS_DTYPES[self.type]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "type": self.type.value}
        if self.description:
            data["description"] = self.description
        if self.has_range:
            data["range"] = [self.min, self.max]
        if self.values:
            data["values"] = list(self.values)
        if self.max_length is not None:
            data["max_length"] = self.max_length
        data["nullable"] = self.nullable
        data["pii"] = self.pii
        return data


@dataclass(frozen=True)
class SensitivePattern:
    """Instruction pattern that signals a discrimination proxy or PII."""

    label: str
    regex: str
    suggestion: str = "Rephrase using transaction attributes only"


@dataclass(frozen=True)
class PolicyConfig:
    """Policy constants enforced by the gate."""

    disallowed_fields: frozenset[str]
    pii_fields: frozenset[str]
    max_conditions_per_rule: int
    sensitive_patterns: tuple[SensitivePattern, ...]
    always_redact: frozenset[str] = frozenset()


@dataclass(frozen=True)
class FeatureCatalog:
    """Immutable view over fields, operators and policy."""

    version: str
    features: Mapping[str, FeatureDescriptor]
    operators: Mapping[FeatureType, frozenset[str]]
    policy: PolicyConfig = field(repr=False)

    def get(self, name: str) -> FeatureDescriptor | None:
        return self.features.get(name)

    @property
    def field_names(self) -> list[str]:
        return list(self.features)

    def operators_for(self, feature: FeatureDescriptor) -> frozenset[str]:
        return self.operators[feature.type]

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "features": [f.to_dict() for f in self.features.values()],
            "operators": {t.value: sorted(ops) for t, ops in self.operators.items()},
            "policy": {
                "disallowed_fields": sorted(self.policy.disallowed_fields),
                "pii_fields": sorted(self.policy.pii_fields),
                "max_conditions_per_rule": self.policy.max_conditions_per_rule,
            },
        }


_FEATURES = (
    FeatureDescriptor(
        "amount",
        FeatureType.NUMBER,
        "Transaction amount in USD",
        min=0,
        max=1_000_000,
        nullable=False,
    ),
    FeatureDescriptor("hour", FeatureType.INTEGER, "Hour of day (0-23)", min=0, max=23),
    FeatureDescriptor(
        "device",
        FeatureType.ENUM,
        "Originating device class",
        values=("web", "mobile", "tablet"),
    ),
    FeatureDescriptor(
        "agent_id",
        FeatureType.STRING,
        "Automated agent identifier (openai, anthropic, google, meta, ...)",
        max_length=50,
    ),
    FeatureDescriptor(
        "partner",
        FeatureType.ENUM,
        "Payment partner",
        values=("amazon", "shopify", "stripe", "paypal", "square", "adyen", "checkout"),
    ),
    FeatureDescriptor(
        "intent",
        FeatureType.ENUM,
        "Transaction intent",
        values=("purchase", "refund", "transfer", "withdrawal"),
    ),
    FeatureDescriptor(
        "account_age_days",
        FeatureType.INTEGER,
        "Days since account creation",
        min=0,
        max=36_500,
    ),
    FeatureDescriptor(
        "is_first_transaction", FeatureType.BOOLEAN, "First transaction on the account"
    ),
    FeatureDescriptor("flagged", FeatureType.BOOLEAN, "Previously flagged by an analyst"),
    FeatureDescriptor("disputed", FeatureType.BOOLEAN, "Disputed by the customer"),
    FeatureDescriptor("declined", FeatureType.BOOLEAN, "Previously declined"),
    FeatureDescriptor(
        "seller_name",
        FeatureType.STRING,
        "Merchant display name",
        max_length=200,
        pii=True,
    ),
)

_SENSITIVE_PATTERNS = (
    SensitivePattern("geographic", r"geograph"),
    SensitivePattern("ethnic", r"ethnic"),
    SensitivePattern("national", r"national"),
    SensitivePattern("race", r"\brace\b"),
    SensitivePattern("religion", r"relig"),
    SensitivePattern("gender", r"gender"),
    SensitivePattern("country", r"\bcountry\b"),
    SensitivePattern("state", r"\bstate\b"),
    SensitivePattern("region", r"\bregion\b"),
    SensitivePattern("zipcode", r"\bzipcode\b"),
    SensitivePattern("postal", r"\bpostal\b"),
    SensitivePattern(
        "personal_identifier",
        r"user_?id|email|ssn|tax|passport|phone|address",
        suggestion="Do not target individuals; describe transaction behavior instead",
    ),
)


def build_catalog() -> FeatureCatalog:
    """Assemble the catalog from the static definitions above."""
    numeric_ops = EQUALITY_OPERATORS | ORDERING_OPERATORS | MEMBERSHIP_OPERATORS
    return FeatureCatalog(
        version=CATALOG_VERSION,
        features=MappingProxyType({f.name: f for f in _FEATURES}),
        operators=MappingProxyType(
            {
                FeatureType.NUMBER: numeric_ops,
                FeatureType.INTEGER: numeric_ops,
                FeatureType.STRING: EQUALITY_OPERATORS
                | MEMBERSHIP_OPERATORS
                | CONTAINMENT_OPERATORS,
                FeatureType.ENUM: EQUALITY_OPERATORS | MEMBERSHIP_OPERATORS,
                FeatureType.BOOLEAN: EQUALITY_OPERATORS,
            }
        ),
        policy=PolicyConfig(
            disallowed_fields=frozenset(
                {
                    "country_of_origin",
                    "zipcode",
                    "country",
                    "region",
                    "ip_city",
                    "ethnicity",
                    "religion",
                    "nationality",
                    "user_email",
                }
            ),
            pii_fields=frozenset(f.name for f in _FEATURES if f.pii),
            max_conditions_per_rule=10,
            sensitive_patterns=_SENSITIVE_PATTERNS,
            always_redact=frozenset({"user_email", "ip_address"}),
        ),
    )


@lru_cache(maxsize=1)
def get_catalog() -> FeatureCatalog:
    """Process-wide catalog instance."""
    return build_catalog()
