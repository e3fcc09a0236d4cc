"""Pydantic models for RuleGuard API requests."""

from app.models.suggestion import (
    ApproveRuleRequest,
    DryRunRequest,
    RejectRuleRequest,
    SetRuleEnabledRequest,
    SuggestRuleRequest,
)

__all__ = [
    "SuggestRuleRequest",
    "ApproveRuleRequest",
    "RejectRuleRequest",
    "DryRunRequest",
    "SetRuleEnabledRequest",
]
