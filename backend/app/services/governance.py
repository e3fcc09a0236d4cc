"""Suggestion governance state machine.

提案のライフサイクルを管理する。

    pending ──approve──▶ approved   (終端)
       │ ─────reject──▶ rejected   (終端)
       └─────expire───▶ expired    (終端, 期限切れスイープのみ)

Transitions are status-guarded updates inside one SQLite transaction, so
of two concurrent approvals exactly one succeeds. Every attempt, failed or
not, is written to the audit trail. Nothing here reads a suggestion and
changes it implicitly: expiry is applied only by ``expire_stale``.
"""

import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from app.core.config import settings
from app.core.exceptions import GovernanceViolationError, ResourceNotFoundError
from app.core.logging import log_function_call, security_log
from app.db import SQLiteManager
from app.services.audit_service import AuditService, to_utc_iso
from app.services.rule_registry import ActiveRuleRegistry
from app.services.rules.base import ValidationResult, Violation
from app.services.rules.conditions import Rule

logger = logging.getLogger(__name__)

RESOURCE_TYPE = "rule_suggestion"


class SuggestionStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self != SuggestionStatus.PENDING


class AuditAction(StrEnum):
    SUGGEST_RULE = "suggest_rule"
    SUGGEST_RULE_REJECTED = "suggest_rule_rejected"
    SUGGEST_RULE_VALIDATION_FAILED = "suggest_rule_validation_failed"
    APPLY_RULE = "apply_rule"
    APPLY_RULE_REJECTED_TWO_PERSON = "apply_rule_rejected_two_person"
    REJECT_RULE = "reject_rule"
    EXPIRE_RULE = "expire_rule"
    ENABLE_RULE = "enable_rule"
    DISABLE_RULE = "disable_rule"


@dataclass
class Suggestion:
    """Persisted rule proposal with its review snapshot."""

    id: str
    status: SuggestionStatus
    instruction: str
    instruction_hash: str
    rule: dict[str, Any]
    rule_fingerprint: str
    validation: ValidationResult
    violations: list[Violation]
    created_by: str
    created_at: str
    expires_at: str
    impact_status: str = "computed"  # "computed" or "unavailable"
    impact_report: dict[str, Any] | None = None
    impact_error: str | None = None
    overlap: list[dict[str, Any]] = field(default_factory=list)
    generation: dict[str, Any] = field(default_factory=dict)
    approved_by: str | None = None
    approval_notes: str | None = None
    expected_impact: str | None = None
    impact_acknowledged: bool = False
    rejected_by: str | None = None
    rejection_notes: str | None = None
    approved_at: str | None = None
    rejected_at: str | None = None
    expired_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "instruction": self.instruction,
            "instruction_hash": self.instruction_hash,
            "rule": self.rule,
            "rule_fingerprint": self.rule_fingerprint,
            "validation": self.validation.to_dict(),
            "violations": [v.to_dict() for v in self.violations],
            "impact_status": self.impact_status,
            "impact_report": self.impact_report,
            "impact_error": self.impact_error,
            "overlap": self.overlap,
            "generation": self.generation,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "approved_by": self.approved_by,
            "approval_notes": self.approval_notes,
            "expected_impact": self.expected_impact,
            "impact_acknowledged": self.impact_acknowledged,
            "rejected_by": self.rejected_by,
            "rejection_notes": self.rejection_notes,
            "approved_at": self.approved_at,
            "rejected_at": self.rejected_at,
            "expired_at": self.expired_at,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Suggestion":
        return cls(
            id=row["id"],
            status=SuggestionStatus(row["status"]),
            instruction=row["instruction"],
            instruction_hash=row["instruction_hash"],
            rule=json.loads(row["generated_rule"]),
            rule_fingerprint=row["rule_fingerprint"],
            validation=ValidationResult.from_dict(json.loads(row["validation_result"])),
            violations=[Violation.from_dict(v) for v in json.loads(row["violations"])],
            impact_status=row["impact_status"],
            impact_report=json.loads(row["impact_report"]) if row["impact_report"] else None,
            impact_error=row["impact_error"],
            overlap=json.loads(row["overlap"]),
            generation={
                "model": row["llm_model"],
                "cached": bool(row["llm_cached"]),
                "latency_ms": row["llm_latency_ms"],
                "tokens": row["llm_tokens"],
            },
            created_by=row["created_by"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            approved_by=row["approved_by"],
            approval_notes=row["approval_notes"],
            expected_impact=row["expected_impact"],
            impact_acknowledged=bool(row["impact_acknowledged"]),
            rejected_by=row["rejected_by"],
            rejection_notes=row["rejection_notes"],
            approved_at=row["approved_at"],
            rejected_at=row["rejected_at"],
            expired_at=row["expired_at"],
        )


class GovernanceService:
    """The only mutation path for suggestion status."""

    def __init__(
        self,
        db: SQLiteManager | None = None,
        audit: AuditService | None = None,
        registry: ActiveRuleRegistry | None = None,
    ) -> None:
        self.db = db or SQLiteManager()
        self.audit = audit or AuditService(self.db)
        self.registry = registry or ActiveRuleRegistry(self.db)

    # ------------------------------------------------------------------
    # 作成・取得
    # ------------------------------------------------------------------

    def create(
        self,
        *,
        instruction: str,
        instruction_hash: str,
        rule: Rule,
        validation: ValidationResult,
        violations: list[Violation],
        author_id: str,
        impact_report: dict[str, Any] | None = None,
        impact_error: str | None = None,
        overlap: list[dict[str, Any]] | None = None,
        generation: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> Suggestion:
        """Persist a new pending suggestion and audit ``suggest_rule``."""
        now = now or datetime.now(UTC)
        generation = generation or {}
        suggestion = Suggestion(
            id=f"sug_{uuid.uuid4().hex[:16]}",
            status=SuggestionStatus.PENDING,
            instruction=instruction,
            instruction_hash=instruction_hash,
            rule=rule.to_dict(),
            rule_fingerprint=rule.fingerprint,
            validation=validation,
            violations=list(violations),
            impact_status="computed" if impact_report is not None else "unavailable",
            impact_report=impact_report,
            impact_error=impact_error,
            overlap=overlap or [],
            generation=generation,
            created_by=author_id,
            created_at=to_utc_iso(now),
            expires_at=to_utc_iso(now + timedelta(days=settings.suggestion_ttl_days)),
        )

        with self.db.transaction() as conn:
            self.db.insert(
                "rule_suggestions",
                {
                    "id": suggestion.id,
                    "status": suggestion.status.value,
                    "instruction": instruction,
                    "instruction_hash": instruction_hash,
                    "generated_rule": json.dumps(suggestion.rule, ensure_ascii=False),
                    "rule_fingerprint": suggestion.rule_fingerprint,
                    "validation_result": json.dumps(validation.to_dict()),
                    "violations": json.dumps([v.to_dict() for v in violations]),
                    "impact_status": suggestion.impact_status,
                    "impact_report": json.dumps(impact_report) if impact_report else None,
                    "impact_error": impact_error,
                    "overlap": json.dumps(suggestion.overlap),
                    "llm_model": generation.get("model"),
                    "llm_cached": int(bool(generation.get("cached"))),
                    "llm_latency_ms": generation.get("latency_ms", 0),
                    "llm_tokens": generation.get("tokens", 0),
                    "created_by": author_id,
                    "created_at": suggestion.created_at,
                    "expires_at": suggestion.expires_at,
                },
                conn=conn,
            )
            self.audit.log_event(
                author_id,
                AuditAction.SUGGEST_RULE,
                resource_type=RESOURCE_TYPE,
                resource_id=suggestion.id,
                payload={
                    "ruleset_name": rule.ruleset_name,
                    "rule_fingerprint": suggestion.rule_fingerprint,
                    "impact_status": suggestion.impact_status,
                    "warnings": len(violations),
                },
                conn=conn,
            )

        logger.info(
            "Suggestion %s created by %s (%s)",
            suggestion.id,
            author_id,
            rule.ruleset_name,
            extra={"suggestion_id": suggestion.id, "rule_name": rule.ruleset_name},
        )
        return suggestion

    def get(self, suggestion_id: str) -> Suggestion:
        rows = self.db.execute(
            "SELECT * FROM rule_suggestions WHERE id = ?", (suggestion_id,)
        )
        if not rows:
            raise ResourceNotFoundError(
                f"Suggestion not found: {suggestion_id}",
                resource_type=RESOURCE_TYPE,
                resource_id=suggestion_id,
            )
        return Suggestion.from_row(rows[0])

    def list_suggestions(
        self,
        *,
        status: SuggestionStatus | str | None = None,
        created_by: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        """Suggestions newest first, with the unpaged total."""
        conditions: list[str] = []
        params: list[Any] = []
        if status:
            conditions.append("status = ?")
            params.append(str(status))
        if created_by:
            conditions.append("created_by = ?")
            params.append(created_by)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        total = self.db.execute(
            f"SELECT COUNT(*) FROM rule_suggestions {where}", tuple(params) or None
        )[0][0]
        rows = self.db.execute(
            f"""
            SELECT * FROM rule_suggestions
            {where}
            ORDER BY created_at DESC, id
            LIMIT ? OFFSET ?
            """,
            tuple(params + [limit, offset]),
        )
        return {"suggestions": [Suggestion.from_row(r) for r in rows], "total": total}

    # ------------------------------------------------------------------
    # 状態遷移
    # ------------------------------------------------------------------

    def approve(
        self,
        suggestion_id: str,
        approver_id: str | None,
        notes: str | None,
        acknowledge_impact: bool,
        expected_impact: str | None = None,
        now: datetime | None = None,
    ) -> Suggestion:
        """pending → approved, promoting the rule to the active registry.

        Raises:
            ResourceNotFoundError: Unknown suggestion.
            GovernanceViolationError: Any precondition fails; state is unchanged.
        """
        now = now or datetime.now(UTC)
        suggestion = self.get(suggestion_id)
        actor = approver_id or "unknown"

        try:
            self._check_approval(suggestion, approver_id, notes, acknowledge_impact, now)
            approved_at = to_utc_iso(now)

            with self.db.transaction() as conn:
                updated = self.db.update(
                    "rule_suggestions",
                    {
                        "status": SuggestionStatus.APPROVED.value,
                        "approved_by": approver_id,
                        "approval_notes": notes,
                        "expected_impact": expected_impact,
                        "impact_acknowledged": 1,
                        "approved_at": approved_at,
                    },
                    "id = ? AND status = ? AND created_by != ?",
                    (suggestion_id, SuggestionStatus.PENDING.value, approver_id),
                    conn=conn,
                )
                if updated == 0:
                    raise self._lost_race(suggestion_id, conn)

                active = self.registry.promote(
                    Rule.from_dict(suggestion.rule),
                    created_by=suggestion.created_by,
                    approved_by=approver_id,
                    suggestion_id=suggestion_id,
                    notes=notes,
                    expected_impact=expected_impact,
                    impact_snapshot=suggestion.impact_report,
                    overlap_snapshot=suggestion.overlap,
                    conn=conn,
                )
                self.audit.log_event(
                    actor,
                    AuditAction.APPLY_RULE,
                    resource_type=RESOURCE_TYPE,
                    resource_id=suggestion_id,
                    payload={
                        "rule_id": active.id,
                        "ruleset_name": active.ruleset_name,
                        "rule_fingerprint": suggestion.rule_fingerprint,
                        "author": suggestion.created_by,
                        "expected_impact": expected_impact,
                    },
                    conn=conn,
                )
        except GovernanceViolationError as e:
            self._audit_failure(actor, suggestion_id, e)
            raise

        logger.info(
            "Suggestion %s approved by %s",
            suggestion_id,
            approver_id,
            extra={"suggestion_id": suggestion_id, "actor": approver_id},
        )
        return self.get(suggestion_id)

    def reject(
        self,
        suggestion_id: str,
        reviewer_id: str | None,
        notes: str | None,
        now: datetime | None = None,
    ) -> Suggestion:
        """pending → rejected. No promotion."""
        now = now or datetime.now(UTC)
        suggestion = self.get(suggestion_id)
        actor = reviewer_id or "unknown"

        try:
            if not reviewer_id:
                raise GovernanceViolationError(
                    "Reviewer identity is required",
                    reason="missing_reviewer",
                    suggestion_id=suggestion_id,
                )
            self._check_pending(suggestion)
            self._check_notes(suggestion_id, notes)

            with self.db.transaction() as conn:
                updated = self.db.update(
                    "rule_suggestions",
                    {
                        "status": SuggestionStatus.REJECTED.value,
                        "rejected_by": reviewer_id,
                        "rejection_notes": notes,
                        "rejected_at": to_utc_iso(now),
                    },
                    "id = ? AND status = ?",
                    (suggestion_id, SuggestionStatus.PENDING.value),
                    conn=conn,
                )
                if updated == 0:
                    raise self._lost_race(suggestion_id, conn)
                self.audit.log_event(
                    actor,
                    AuditAction.REJECT_RULE,
                    resource_type=RESOURCE_TYPE,
                    resource_id=suggestion_id,
                    payload={"notes": notes, "author": suggestion.created_by},
                    conn=conn,
                )
        except GovernanceViolationError as e:
            self._audit_failure(actor, suggestion_id, e, AuditAction.REJECT_RULE)
            raise

        logger.info("Suggestion %s rejected by %s", suggestion_id, reviewer_id)
        return self.get(suggestion_id)

    @log_function_call(logger)
    def expire_stale(self, now: datetime | None = None) -> list[str]:
        """Expire every pending suggestion whose expiry time has passed.

        Returns:
            IDs of the suggestions that were expired by this call.
        """
        now_iso = to_utc_iso(now or datetime.now(UTC))
        rows = self.db.execute(
            "SELECT id FROM rule_suggestions WHERE status = ? AND expires_at <= ? ORDER BY id",
            (SuggestionStatus.PENDING.value, now_iso),
        )

        expired = []
        for row in rows:
            with self.db.transaction() as conn:
                updated = self.db.update(
                    "rule_suggestions",
                    {"status": SuggestionStatus.EXPIRED.value, "expired_at": now_iso},
                    "id = ? AND status = ?",
                    (row["id"], SuggestionStatus.PENDING.value),
                    conn=conn,
                )
                # 同時に承認・却下された提案はそのまま
                if updated == 0:
                    continue
                self.audit.log_event(
                    "system",
                    AuditAction.EXPIRE_RULE,
                    resource_type=RESOURCE_TYPE,
                    resource_id=row["id"],
                    payload={"expired_at": now_iso},
                    conn=conn,
                )
            expired.append(row["id"])

        if expired:
            logger.info("Expired %d stale suggestion(s)", len(expired))
        return expired

    # ------------------------------------------------------------------
    # 前提条件チェック
    # ------------------------------------------------------------------

    def _check_approval(
        self,
        suggestion: Suggestion,
        approver_id: str | None,
        notes: str | None,
        acknowledge_impact: bool,
        now: datetime,
    ) -> None:
        if not approver_id:
            raise GovernanceViolationError(
                "Approver identity is required",
                reason="missing_reviewer",
                suggestion_id=suggestion.id,
            )
        self._check_pending(suggestion)

        if approver_id == suggestion.created_by:
            security_log.warning(
                "Self-approval attempt blocked",
                extra={"actor": approver_id, "suggestion_id": suggestion.id},
            )
            raise GovernanceViolationError(
                "Two-person rule violation: you cannot approve your own suggestion",
                reason="two_person_rule",
                suggestion_id=suggestion.id,
                current_status=suggestion.status.value,
            )

        self._check_notes(suggestion.id, notes)

        if not acknowledge_impact:
            raise GovernanceViolationError(
                "You must acknowledge the impact analysis before approving",
                reason="impact_not_acknowledged",
                suggestion_id=suggestion.id,
            )
        if not suggestion.validation.valid:
            raise GovernanceViolationError(
                "Suggestion has validation errors and cannot be approved",
                reason="invalid_rule",
                suggestion_id=suggestion.id,
            )
        if to_utc_iso(now) >= suggestion.expires_at:
            raise GovernanceViolationError(
                f"Suggestion expired at {suggestion.expires_at}",
                reason="expired",
                suggestion_id=suggestion.id,
                current_status=suggestion.status.value,
            )

    @staticmethod
    def _check_pending(suggestion: Suggestion) -> None:
        if suggestion.status.is_terminal:
            raise GovernanceViolationError(
                f"Suggestion is already {suggestion.status.value}",
                reason="terminal_state",
                suggestion_id=suggestion.id,
                current_status=suggestion.status.value,
            )

    @staticmethod
    def _check_notes(suggestion_id: str, notes: str | None) -> None:
        minimum = settings.min_approval_notes_length
        if not notes or len(notes.strip()) < minimum:
            raise GovernanceViolationError(
                f"Notes must be at least {minimum} characters",
                reason="notes_too_short",
                suggestion_id=suggestion_id,
            )

    @staticmethod
    def _lost_race(suggestion_id: str, conn: sqlite3.Connection) -> GovernanceViolationError:
        row = conn.execute(
            "SELECT status FROM rule_suggestions WHERE id = ?", (suggestion_id,)
        ).fetchone()
        return GovernanceViolationError(
            "Suggestion was modified by a concurrent transition",
            reason="concurrent_transition",
            suggestion_id=suggestion_id,
            current_status=row["status"] if row else None,
        )

    def _audit_failure(
        self,
        actor: str,
        suggestion_id: str,
        error: GovernanceViolationError,
        action: AuditAction = AuditAction.APPLY_RULE,
    ) -> None:
        reason = error.detail.get("reason")
        if reason == "two_person_rule":
            action = AuditAction.APPLY_RULE_REJECTED_TWO_PERSON
        self.audit.log_event(
            actor,
            action,
            resource_type=RESOURCE_TYPE,
            resource_id=suggestion_id,
            payload={"reason": reason},
            success=False,
            error_message=error.message,
        )


class ExpirySweeper:
    """Background thread that periodically runs ``expire_stale``."""

    def __init__(
        self,
        service: GovernanceService | None = None,
        interval_seconds: float | None = None,
    ) -> None:
        self.service = service or GovernanceService()
        self.interval_seconds = interval_seconds or settings.expiry_sweep_interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="expiry-sweeper", daemon=True)
        self._thread.start()
        logger.info("Expiry sweeper started (interval=%ss)", self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Expiry sweeper stopped")

    def run_once(self) -> list[str]:
        return self.service.expire_stale()

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except sqlite3.Error:
                # 次回のスイープで再試行する
                logger.exception("Expiry sweep failed")
