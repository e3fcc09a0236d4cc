"""Active rule registry.

Enabled production rules live in the ``active_rules`` table. They are the
comparison set for overlap analysis and the promotion target of approved
suggestions. Every promotion also appends an immutable ``rule_versions``
row.
"""

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Any

from app.core.exceptions import ResourceNotFoundError
from app.db import SQLiteManager
from app.services.audit_service import utcnow_iso
from app.services.rules.conditions import Rule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActiveRule:
    """A rule currently evaluated in production."""

    id: str
    rule: Rule
    enabled: bool = True
    version: int = 1
    created_by: str | None = None
    approved_by: str | None = None
    suggestion_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def ruleset_name(self) -> str:
        return self.rule.ruleset_name

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ruleset_name": self.ruleset_name,
            "rule": self.rule.to_dict(),
            "fingerprint": self.rule.fingerprint,
            "enabled": self.enabled,
            "version": self.version,
            "created_by": self.created_by,
            "approved_by": self.approved_by,
            "suggestion_id": self.suggestion_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ActiveRule":
        return cls(
            id=row["id"],
            rule=Rule.from_dict(json.loads(row["rule_json"])),
            enabled=bool(row["enabled"]),
            version=row["version"],
            created_by=row["created_by"],
            approved_by=row["approved_by"],
            suggestion_id=row["suggestion_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class ActiveRuleRegistry:
    """Read and promote production rules."""

    def __init__(self, db: SQLiteManager | None = None) -> None:
        self.db = db or SQLiteManager()

    def list_active(self) -> list[ActiveRule]:
        """Enabled rules ordered by id."""
        rows = self.db.execute("SELECT * FROM active_rules WHERE enabled = 1 ORDER BY id")
        return [ActiveRule.from_row(row) for row in rows]

    def get(self, rule_id: str) -> ActiveRule:
        rows = self.db.execute("SELECT * FROM active_rules WHERE id = ?", (rule_id,))
        if not rows:
            raise ResourceNotFoundError(
                f"Active rule not found: {rule_id}",
                resource_type="active_rule",
                resource_id=rule_id,
            )
        return ActiveRule.from_row(rows[0])

    def promote(
        self,
        rule: Rule,
        *,
        created_by: str | None,
        approved_by: str | None = None,
        suggestion_id: str | None = None,
        notes: str | None = None,
        expected_impact: str | None = None,
        impact_snapshot: dict[str, Any] | None = None,
        overlap_snapshot: list[dict[str, Any]] | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> ActiveRule:
        """Insert ``rule`` as a new active rule and record version 1.

        Pass ``conn`` to join the caller's transaction; otherwise both writes
        run in a transaction of their own.
        """
        if conn is None:
            with self.db.transaction() as own_conn:
                return self.promote(
                    rule,
                    created_by=created_by,
                    approved_by=approved_by,
                    suggestion_id=suggestion_id,
                    notes=notes,
                    expected_impact=expected_impact,
                    impact_snapshot=impact_snapshot,
                    overlap_snapshot=overlap_snapshot,
                    conn=own_conn,
                )

        now = utcnow_iso()
        active = ActiveRule(
            id=f"rule_{uuid.uuid4().hex[:12]}",
            rule=rule,
            created_by=created_by,
            approved_by=approved_by,
            suggestion_id=suggestion_id,
            created_at=now,
            updated_at=now,
        )
        rule_json = json.dumps(rule.to_dict(), ensure_ascii=False)

        self.db.insert(
            "active_rules",
            {
                "id": active.id,
                "ruleset_name": rule.ruleset_name,
                "rule_json": rule_json,
                "rule_fingerprint": rule.fingerprint,
                "enabled": 1,
                "version": active.version,
                "created_by": created_by,
                "approved_by": approved_by,
                "suggestion_id": suggestion_id,
                "created_at": now,
                "updated_at": now,
            },
            conn=conn,
        )
        self.db.insert(
            "rule_versions",
            {
                "rule_id": active.id,
                "version": active.version,
                "change_type": "created",
                "rule_snapshot": rule_json,
                "rule_fingerprint": rule.fingerprint,
                "impact_snapshot": json.dumps(impact_snapshot) if impact_snapshot else None,
                "overlap_snapshot": json.dumps(overlap_snapshot or []),
                "created_by": created_by,
                "approved_by": approved_by,
                "notes": notes,
                "expected_impact": expected_impact,
                "suggestion_id": suggestion_id,
                "created_at": now,
            },
            conn=conn,
        )
        logger.info("Promoted %s as %s", rule.ruleset_name, active.id)
        return active

    def set_enabled(self, rule_id: str, enabled: bool) -> ActiveRule:
        """Enable or disable a rule. Disabled rules drop out of overlap comparison."""
        updated = self.db.update(
            "active_rules",
            {"enabled": int(enabled), "updated_at": utcnow_iso()},
            "id = ?",
            (rule_id,),
        )
        if not updated:
            raise ResourceNotFoundError(
                f"Active rule not found: {rule_id}",
                resource_type="active_rule",
                resource_id=rule_id,
            )
        return self.get(rule_id)

    def list_versions(self, rule_id: str) -> list[dict[str, Any]]:
        """Version history, oldest first."""
        rows = self.db.execute(
            "SELECT * FROM rule_versions WHERE rule_id = ? ORDER BY version",
            (rule_id,),
        )
        versions = []
        for row in rows:
            version = dict(row)
            version["rule_snapshot"] = json.loads(row["rule_snapshot"])
            if row["impact_snapshot"]:
                version["impact_snapshot"] = json.loads(row["impact_snapshot"])
            if row["overlap_snapshot"]:
                version["overlap_snapshot"] = json.loads(row["overlap_snapshot"])
            versions.append(version)
        return versions
