"""Rule suggestion pipeline.

ルール提案の一連の処理を統括する。

    instruction → policy gate (instruction) → rule generation
    → structure validation → catalog validation + policy gate (rule)
    → stratified sample → dry run → overlap → pending suggestion

Each stage either passes its result on or halts the request with a typed
error; every halt is audited. Only a sample outage is tolerated: the
suggestion is then persisted with ``impact_status = "unavailable"``.
"""

import logging
from dataclasses import dataclass
from typing import Any

from app.core.config import settings
from app.core.exceptions import (
    CatalogViolationError,
    GenerationFailure,
    InvalidInputError,
    PolicyViolationError,
    SampleUnavailableError,
    StructuralError,
)
from app.core.logging import LogContext, security_log
from app.services.audit_service import AuditService
from app.services.governance import AuditAction, GovernanceService, Suggestion
from app.services.impact import (
    DryRunEngine,
    ImpactReport,
    OverlapAnalyzer,
    OverlapEntry,
    StratifiedSampler,
)
from app.services.llm import RuleGenerationService
from app.services.rule_registry import ActiveRule, ActiveRuleRegistry
from app.services.rules import (
    FeatureCatalog,
    Rule,
    ValidationResult,
    Violation,
    gate,
    get_catalog,
    has_blocking_violations,
    summarize_violations,
    validate_against_catalog,
    validate_structure,
)

logger = logging.getLogger(__name__)

MIN_INSTRUCTION_LENGTH = 10


@dataclass(frozen=True)
class DryRunResult:
    """Standalone dry run: validation, policy findings, impact and overlap."""

    rule: dict[str, Any]
    validation: ValidationResult
    violations: list[Violation]
    impact: ImpactReport
    overlap: list[OverlapEntry] | None = None
    sample: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule": self.rule,
            "validation": self.validation.to_dict(),
            "violations": [v.to_dict() for v in self.violations],
            "policy_summary": summarize_violations(self.violations),
            "impact": self.impact.to_dict(),
            "overlap": (
                [entry.to_dict() for entry in self.overlap] if self.overlap is not None else None
            ),
            "sample": self.sample,
        }


class SuggestionPipeline:
    """Orchestrates ``submit_suggestion`` and the standalone ``dry_run``."""

    def __init__(
        self,
        generator: RuleGenerationService | None = None,
        sampler: StratifiedSampler | None = None,
        engine: DryRunEngine | None = None,
        governance: GovernanceService | None = None,
        registry: ActiveRuleRegistry | None = None,
        audit: AuditService | None = None,
        catalog: FeatureCatalog | None = None,
    ) -> None:
        self.catalog = catalog or get_catalog()
        self.governance = governance or GovernanceService()
        self.audit = audit or self.governance.audit
        self.registry = registry or self.governance.registry
        self.generator = generator or RuleGenerationService(
            db=self.governance.db, catalog=self.catalog
        )
        self.sampler = sampler or StratifiedSampler()
        self.engine = engine or DryRunEngine(self.catalog)
        self.overlap = OverlapAnalyzer(self.engine)

    # ------------------------------------------------------------------
    # 公開操作
    # ------------------------------------------------------------------

    def submit_suggestion(
        self,
        instruction: str,
        author_id: str,
        sample_size: int | None = None,
    ) -> Suggestion:
        """Turn an analyst instruction into a pending, fully analysed suggestion.

        Raises:
            InvalidInputError: Instruction shorter than 10 characters.
            PolicyViolationError: Blocking policy violation (instruction or rule).
            GenerationFailure: Generation failed, timed out or was rate limited.
            StructuralError: Generated rule has a malformed shape.
            CatalogViolationError: Generated rule is not catalog-legal.
        """
        if not isinstance(instruction, str) or len(instruction.strip()) < MIN_INSTRUCTION_LENGTH:
            raise InvalidInputError(
                f"Instruction must be at least {MIN_INSTRUCTION_LENGTH} characters",
                field="instruction",
            )
        instruction = instruction.strip()

        with LogContext(logger, "rule suggestion", actor=author_id):
            pre_violations = gate(instruction=instruction, catalog=self.catalog)
            if has_blocking_violations(pre_violations):
                security_log.warning(
                    "Instruction blocked by policy gate",
                    extra={"actor": author_id, "action": AuditAction.SUGGEST_RULE_REJECTED},
                )
                self._audit_halt(
                    author_id,
                    AuditAction.SUGGEST_RULE_REJECTED,
                    "Instruction violates policy",
                    {"stage": "instruction", "violations": [v.to_dict() for v in pre_violations]},
                )
                raise PolicyViolationError(
                    "Instruction violates policy",
                    violations=[v.to_dict() for v in pre_violations],
                    stage="instruction",
                )

            try:
                generation = self.generator.generate(instruction, actor=author_id)
            except GenerationFailure as e:
                self._audit_halt(
                    author_id,
                    AuditAction.SUGGEST_RULE_REJECTED,
                    e.message,
                    {"stage": "generation", "error_code": e.error_code, **e.detail},
                )
                raise

            rule, validation, violations = self._validate(
                generation.rule, actor=author_id, audit=True
            )
            violations = [*pre_violations, *violations]

            impact_report: dict[str, Any] | None = None
            impact_error: str | None = None
            overlap: list[dict[str, Any]] = []
            try:
                sample = self.sampler.sample(sample_size)
                impact_report = self.engine.run(rule, sample).to_dict()
                overlap = [
                    entry.to_dict()
                    for entry in self.overlap.analyze(rule, sample, self.registry.list_active())
                ]
            except SampleUnavailableError as e:
                logger.warning("Impact unavailable for %s: %s", rule.ruleset_name, e.message)
                impact_error = e.message

            return self.governance.create(
                instruction=instruction,
                instruction_hash=generation.content_hash,
                rule=rule,
                validation=validation,
                violations=violations,
                author_id=author_id,
                impact_report=impact_report,
                impact_error=impact_error,
                overlap=overlap,
                generation=generation.metadata(),
            )

    def dry_run(
        self,
        rule: dict[str, Any],
        sample_size: int | None = None,
        include_overlap: bool = True,
    ) -> DryRunResult:
        """Validate and simulate a rule without persisting anything.

        Raises:
            StructuralError | CatalogViolationError | PolicyViolationError:
                Rule is not valid.
            SampleUnavailableError: No sample could be drawn.
        """
        parsed, validation, violations = self._validate(rule, actor=None, audit=False)
        size = sample_size or settings.default_sample_size
        sample = self.sampler.sample(size)
        impact = self.engine.run(parsed, sample)
        overlap = (
            self.overlap.analyze(parsed, sample, self.registry.list_active())
            if include_overlap
            else None
        )
        return DryRunResult(
            rule=parsed.to_dict(),
            validation=validation,
            violations=violations,
            impact=impact,
            overlap=overlap,
            sample=sample.to_dict(),
        )

    # 委譲
    def approve_suggestion(
        self,
        suggestion_id: str,
        approver_id: str,
        notes: str,
        acknowledge_impact: bool,
        expected_impact: str | None = None,
    ) -> Suggestion:
        return self.governance.approve(
            suggestion_id, approver_id, notes, acknowledge_impact, expected_impact
        )

    def reject_suggestion(self, suggestion_id: str, reviewer_id: str, notes: str) -> Suggestion:
        return self.governance.reject(suggestion_id, reviewer_id, notes)

    def overlap_examples(
        self,
        suggestion_id: str,
        rule_id: str,
        sample_size: int | None = None,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        """Sampled records matched by both a suggestion and an active rule."""
        suggestion = self.governance.get(suggestion_id)
        active = self.registry.get(rule_id)
        sample = self.sampler.sample(sample_size)
        return self.overlap.overlap_examples(
            Rule.from_dict(suggestion.rule), active.rule, sample, limit=limit
        )

    def set_rule_enabled(self, rule_id: str, enabled: bool, actor_id: str) -> ActiveRule:
        active = self.registry.set_enabled(rule_id, enabled)
        self.audit.log_event(
            actor_id,
            AuditAction.ENABLE_RULE if enabled else AuditAction.DISABLE_RULE,
            resource_type="active_rule",
            resource_id=rule_id,
            payload={"ruleset_name": active.ruleset_name},
        )
        logger.info("Rule %s %s by %s", rule_id, "enabled" if enabled else "disabled", actor_id)
        return active

    # ------------------------------------------------------------------
    # 内部処理
    # ------------------------------------------------------------------

    def _validate(
        self, rule: Any, *, actor: str | None, audit: bool
    ) -> tuple[Rule, ValidationResult, list[Violation]]:
        """Structure, then catalog and policy. Policy errors take precedence."""
        structure = validate_structure(rule, self.catalog)
        if not structure.valid:
            error = StructuralError(
                "Generated rule has an invalid structure"
                if audit
                else "Rule has an invalid structure",
                errors=[e.to_dict() for e in structure.errors],
                warnings=[w.to_dict() for w in structure.warnings],
            )
            if audit:
                self._audit_halt(
                    actor,
                    AuditAction.SUGGEST_RULE_VALIDATION_FAILED,
                    error.message,
                    {"stage": "structure", "errors": error.detail["errors"]},
                )
            raise error

        catalog_result = validate_against_catalog(rule, self.catalog)
        violations = gate(rule=rule, catalog=self.catalog)

        # Disallowed fields are absent from the catalog; report them as policy errors
        if has_blocking_violations(violations):
            error = PolicyViolationError(
                "Rule violates policy",
                violations=[v.to_dict() for v in violations],
                stage="rule",
            )
            if audit:
                security_log.warning(
                    "Generated rule blocked by policy gate",
                    extra={"actor": actor, "rule_name": rule.get("ruleset_name")},
                )
                self._audit_halt(
                    actor,
                    AuditAction.SUGGEST_RULE_REJECTED,
                    error.message,
                    {"stage": "rule", "violations": error.detail["violations"]},
                )
            raise error

        if not catalog_result.valid:
            error = CatalogViolationError(
                "Rule conditions are not valid for the feature catalog",
                errors=[e.to_dict() for e in catalog_result.errors],
                warnings=[w.to_dict() for w in catalog_result.warnings],
                catalog_version=self.catalog.version,
            )
            if audit:
                self._audit_halt(
                    actor,
                    AuditAction.SUGGEST_RULE_VALIDATION_FAILED,
                    error.message,
                    {"stage": "catalog", "errors": error.detail["errors"]},
                )
            raise error

        return Rule.from_dict(rule), structure.merge(catalog_result), violations

    def _audit_halt(
        self,
        actor: str | None,
        action: AuditAction,
        message: str,
        payload: dict[str, Any],
    ) -> None:
        self.audit.log_event(
            actor or "unknown",
            action,
            resource_type="rule_suggestion",
            payload=payload,
            success=False,
            error_message=message,
        )
