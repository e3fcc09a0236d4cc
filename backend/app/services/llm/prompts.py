"""Prompt and tool schema for rule generation.

The field list and operators in the system prompt are rendered from the
feature catalog so the model only ever sees what the validators accept.
"""

from typing import Any

from app.services.rules.base import Decision, RuleCategory
from app.services.rules.catalog import FeatureCatalog, FeatureDescriptor, get_catalog

TOOL_NAME = "generate_fraud_rule"
TOOL_DESCRIPTION = "Generate a structured fraud detection rule from a natural language instruction"

REQUIRED_KEYS = ("ruleset_name", "description", "decision", "conditions")

_EXAMPLES = """\
Instruction: "Review mobile transactions over $10k outside business hours"
Response:
{
  "ruleset_name": "high-value-mobile-after-hours",
  "description": "Large mobile transactions outside 9am-5pm pose higher risk due to lack of customer service availability for verification",
  "decision": "review",
  "category": "high_risk",
  "conditions": [
    {"field": "amount", "op": ">", "value": 10000},
    {"field": "device", "op": "==", "value": "mobile"},
    {"any": [
      {"field": "hour", "op": "<", "value": 9},
      {"field": "hour", "op": ">=", "value": 17}
    ]}
  ]
}

Instruction: "Block first-time transactions over $50k"
Response:
{
  "ruleset_name": "block-high-value-first-transaction",
  "description": "First transactions with very high amounts are statistically more likely to be fraudulent account takeovers",
  "decision": "block",
  "category": "high_risk",
  "conditions": [
    {"field": "amount", "op": ">", "value": 50000},
    {"field": "is_first_transaction", "op": "==", "value": true}
  ]
}"""

_GUIDELINES = """\
1. Use multiple conditions to be precise (avoid overly broad rules)
2. Prefer positive conditions (use "in" instead of "!=")
3. Always include an explanation that focuses on WHY (fraud risk rationale)
4. Use kebab-case for ruleset_name
5. Be specific with thresholds (don't use round numbers like 10000 unless justified)"""


def _describe_feature(feature: FeatureDescriptor) -> str:
    line = f"- {feature.name}: {feature.type.value}"
    if feature.has_range:
        line += f" ({feature.min:.0f}-{feature.max:.0f})"
    if feature.values:
        line += f" [{', '.join(feature.values)}]"
    if feature.max_length:
        line += f" (max {feature.max_length} chars)"
    if feature.description:
        line += f" - {feature.description}"
    return line


def build_system_prompt(catalog: FeatureCatalog | None = None) -> str:
    """System prompt listing policy, fields, operators and examples."""
    catalog = catalog or get_catalog()
    policy = catalog.policy

    fields = "\n".join(_describe_feature(f) for f in catalog.features.values())
    operators = "\n".join(
        f"- {ftype.value}: {', '.join(sorted(ops))}" for ftype, ops in catalog.operators.items()
    )

    return f"""You are a fraud detection rule assistant. Your job is to convert natural language instructions into precise fraud detection rules.

CRITICAL POLICY REQUIREMENTS:
1. NEVER use these fields: {', '.join(sorted(policy.disallowed_fields))}
2. NEVER target geography, ethnicity, religion, nationality or gender
3. Avoid PII fields ({', '.join(sorted(policy.pii_fields))}) unless absolutely necessary
4. Rules must be objective, data-driven, and non-discriminatory
5. At most {policy.max_conditions_per_rule} conditions per rule

AVAILABLE TRANSACTION FIELDS:
{fields}

DECISION TYPES:
- "allow": Let transaction through
- "review": Send to manual review queue
- "block": Automatically block transaction

OPERATORS BY FIELD TYPE:
{operators}
"in" and "not_in" take a non-empty array of values.

RULE STRUCTURE:
Conditions are AND-ed. Use {{"any": [...]}} for OR and {{"all": [...]}} to group.

EXAMPLES:

{_EXAMPLES}

QUALITY GUIDELINES:
{_GUIDELINES}

Now, convert the following instruction into a fraud rule:"""


def _leaf_schema(catalog: FeatureCatalog) -> dict[str, Any]:
    all_ops = sorted(set().union(*catalog.operators.values()))
    return {
        "type": "object",
        "properties": {
            "field": {"type": "string", "enum": catalog.field_names},
            "op": {"type": "string", "enum": all_ops},
            "value": {"description": "Comparison value (array for in / not_in)"},
        },
        "required": ["field", "op", "value"],
    }


def rule_parameters_schema(catalog: FeatureCatalog | None = None) -> dict[str, Any]:
    """JSON schema of the tool arguments."""
    catalog = catalog or get_catalog()
    leaf = _leaf_schema(catalog)
    group = {
        "type": "object",
        "description": 'Nested group: {"all": [...]} or {"any": [...]}',
        "properties": {
            "all": {"type": "array", "items": leaf, "minItems": 1},
            "any": {"type": "array", "items": leaf, "minItems": 1},
        },
    }
    return {
        "type": "object",
        "properties": {
            "ruleset_name": {
                "type": "string",
                "description": "Descriptive kebab-case identifier",
                "pattern": "^[a-z0-9-]+$",
            },
            "description": {
                "type": "string",
                "description": "Why this rule exists (fraud risk rationale), 10-500 characters",
            },
            "decision": {"type": "string", "enum": [d.value for d in Decision]},
            "category": {"type": "string", "enum": [c.value for c in RuleCategory]},
            "conditions": {
                "type": "array",
                "items": {"anyOf": [leaf, group]},
                "minItems": 1,
                "maxItems": catalog.policy.max_conditions_per_rule,
            },
        },
        "required": ["ruleset_name", "description", "decision", "category", "conditions"],
    }


def anthropic_tool(catalog: FeatureCatalog | None = None) -> dict[str, Any]:
    return {
        "name": TOOL_NAME,
        "description": TOOL_DESCRIPTION,
        "input_schema": rule_parameters_schema(catalog),
    }


def openai_tool(catalog: FeatureCatalog | None = None) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": TOOL_NAME,
            "description": TOOL_DESCRIPTION,
            "parameters": rule_parameters_schema(catalog),
        },
    }
