"""Business logic services for RuleGuard.

Services:
- SuggestionPipeline: Instruction → validated, analysed pending suggestion
- RuleGenerationService: Forced tool-call rule generation
- GovernanceService: Two-person approval state machine
- ActiveRuleRegistry: Production rules and version history
- AuditService: Append-only audit trail
"""

from app.services.audit_service import AuditService
from app.services.governance import (
    ExpirySweeper,
    GovernanceService,
    Suggestion,
    SuggestionStatus,
)
from app.services.llm import RuleGenerationService
from app.services.rule_registry import ActiveRule, ActiveRuleRegistry
from app.services.suggestion_service import DryRunResult, SuggestionPipeline

__all__ = [
    # Pipeline
    "SuggestionPipeline",
    "DryRunResult",
    "RuleGenerationService",
    # Governance
    "GovernanceService",
    "ExpirySweeper",
    "Suggestion",
    "SuggestionStatus",
    "ActiveRule",
    "ActiveRuleRegistry",
    "AuditService",
]
