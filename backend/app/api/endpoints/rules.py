"""Rule suggestion endpoints.

ルール提案・ドライラン・承認/却下APIエンドポイント。
業務ロジックは持たず、SuggestionPipeline / GovernanceService に委譲する。
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from functools import lru_cache
from typing import Any

from fastapi import APIRouter, Depends, Query

from app.models.suggestion import (
    ApproveRuleRequest,
    DryRunRequest,
    RejectRuleRequest,
    SetRuleEnabledRequest,
    SuggestRuleRequest,
)
from app.services.governance import SuggestionStatus
from app.services.rules import get_catalog
from app.services.suggestion_service import SuggestionPipeline

logger = logging.getLogger(__name__)

router = APIRouter()


@lru_cache
def get_pipeline() -> SuggestionPipeline:
    """Get SuggestionPipeline instance."""
    return SuggestionPipeline()


@router.get("/catalog")
def get_feature_catalog() -> dict[str, Any]:
    """Fields, operators and policy constants rules are validated against."""
    return get_catalog().to_dict()


@router.post("/suggest", status_code=201)
def suggest_rule(
    body: SuggestRuleRequest,
    pipeline: SuggestionPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Generate, validate and analyse a rule from an instruction.

    Returns:
        The pending suggestion with its impact report and overlap.
    """
    suggestion = pipeline.submit_suggestion(
        body.instruction, body.author_id, sample_size=body.sample_size
    )
    return {"suggestion": suggestion.to_dict()}


@router.post("/dry-run")
def dry_run_rule(
    body: DryRunRequest,
    pipeline: SuggestionPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Validate and simulate a rule without persisting it."""
    result = pipeline.dry_run(
        body.rule,
        sample_size=body.sample_size,
        include_overlap=body.include_overlap,
    )
    return result.to_dict()


@router.get("/suggestions")
def list_suggestions(
    status: SuggestionStatus | None = Query(None, description="Filter by status"),
    created_by: str | None = Query(None, description="Filter by author"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    pipeline: SuggestionPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Get suggestions, newest first."""
    result = pipeline.governance.list_suggestions(
        status=status, created_by=created_by, limit=limit, offset=offset
    )
    return {
        "suggestions": [s.to_dict() for s in result["suggestions"]],
        "total": result["total"],
    }


@router.get("/suggestions/{suggestion_id}")
def get_suggestion(
    suggestion_id: str,
    pipeline: SuggestionPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Get a single suggestion by ID."""
    return {"suggestion": pipeline.governance.get(suggestion_id).to_dict()}


@router.post("/suggestions/{suggestion_id}/approve")
def approve_suggestion(
    suggestion_id: str,
    body: ApproveRuleRequest,
    pipeline: SuggestionPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Approve a pending suggestion and promote its rule.

    The approver must differ from the author.
    """
    suggestion = pipeline.approve_suggestion(
        suggestion_id,
        body.approver_id,
        body.notes,
        body.acknowledge_impact,
        body.expected_impact,
    )
    return {"suggestion": suggestion.to_dict()}


@router.post("/suggestions/{suggestion_id}/reject")
def reject_suggestion(
    suggestion_id: str,
    body: RejectRuleRequest,
    pipeline: SuggestionPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Reject a pending suggestion."""
    suggestion = pipeline.reject_suggestion(suggestion_id, body.reviewer_id, body.notes)
    return {"suggestion": suggestion.to_dict()}


@router.post("/suggestions/expire")
def expire_suggestions(
    pipeline: SuggestionPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Run the expiry sweep now."""
    expired = pipeline.governance.expire_stale()
    return {"expired": expired, "count": len(expired)}


@router.get("/active")
def list_active_rules(
    pipeline: SuggestionPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Enabled production rules."""
    rules = pipeline.registry.list_active()
    return {"rules": [r.to_dict() for r in rules], "total": len(rules)}


@router.get("/active/{rule_id}/versions")
def get_rule_versions(
    rule_id: str,
    pipeline: SuggestionPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Version history of an active rule."""
    pipeline.registry.get(rule_id)
    return {"rule_id": rule_id, "versions": pipeline.registry.list_versions(rule_id)}


@router.get("/suggestions/{suggestion_id}/overlap/{rule_id}/examples")
def get_overlap_examples(
    suggestion_id: str,
    rule_id: str,
    limit: int = Query(10, ge=1, le=100),
    sample_size: int | None = Query(None, ge=1),
    pipeline: SuggestionPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Sampled records matched by both the suggestion and an active rule."""
    examples = pipeline.overlap_examples(
        suggestion_id, rule_id, sample_size=sample_size, limit=limit
    )
    return {"suggestion_id": suggestion_id, "rule_id": rule_id, "examples": examples}


@router.post("/active/{rule_id}/enabled")
def set_rule_enabled(
    rule_id: str,
    body: SetRuleEnabledRequest,
    pipeline: SuggestionPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Enable or disable an active rule."""
    rule = pipeline.set_rule_enabled(rule_id, body.enabled, body.actor_id)
    return {"rule": rule.to_dict()}


@router.get("/models")
def get_generation_models(
    pipeline: SuggestionPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Models available for rule generation, grouped by provider."""
    models = pipeline.generator.get_available_models()
    return {
        "current": {
            "provider": pipeline.generator.config.provider,
            "model": pipeline.generator.config.model,
        },
        "models": {p: [asdict(m) for m in infos] for p, infos in models.items()},
    }


@router.get("/generations")
def list_generation_calls(
    limit: int = Query(50, ge=1, le=500),
    pipeline: SuggestionPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Recent rule generation calls, newest first."""
    return {"calls": pipeline.generator.list_calls(limit=limit)}
