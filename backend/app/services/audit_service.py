"""Audit trail service.

監査証跡の記録・取得を行うサービス。
監査証跡は追記専用で、更新・削除は行わない。
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import UTC, datetime
from typing import Any

from app.core.logging import audit_log, get_request_id
from app.db import SQLiteManager

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, timestamp, actor, action, resource_type, resource_id, "
    "payload, success, error_message, request_id"
)


def to_utc_iso(dt: datetime) -> str:
    """ISO-8601 UTC string; naive datetimes are taken as UTC.

    Stored timestamps share this format so they compare correctly as text.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def utcnow_iso() -> str:
    """Current UTC time as an ISO-8601 string (microsecond precision)."""
    return to_utc_iso(datetime.now(UTC))


def _row_to_event(row: sqlite3.Row) -> dict[str, Any]:
    payload = row["payload"]
    if payload and isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Audit event %s has a non-JSON payload", row["id"])

    return {
        "id": row["id"],
        "timestamp": row["timestamp"],
        "actor": row["actor"],
        "action": row["action"],
        "resource_type": row["resource_type"],
        "resource_id": row["resource_id"],
        "payload": payload,
        "success": bool(row["success"]),
        "error_message": row["error_message"],
        "request_id": row["request_id"],
    }


class AuditService:
    """監査証跡の記録・取得サービス。"""

    def __init__(self, db: SQLiteManager | None = None) -> None:
        self.db = db or SQLiteManager()

    def log_event(
        self,
        actor: str,
        action: str,
        *,
        resource_type: str | None = None,
        resource_id: str | None = None,
        payload: dict[str, Any] | None = None,
        success: bool = True,
        error_message: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """監査イベントを記録する。

        Args:
            actor: 操作者ID
            action: アクション (suggest_rule, apply_rule, reject_rule, expire_rule, ...)
            resource_type: リソース種別 (rule_suggestion, active_rule)
            resource_id: リソースID
            payload: 追加詳細情報 (JSON)
            success: 操作が成功したか
            error_message: 失敗時のエラーメッセージ
            conn: 状態遷移と同一トランザクションで書き込む場合の接続

        Returns:
            挿入された行のID
        """
        payload_json = (
            json.dumps(payload, ensure_ascii=False, default=str) if payload else None
        )

        row_id = self.db.insert(
            "audit_trail",
            {
                "timestamp": utcnow_iso(),
                "actor": actor,
                "action": action,
                "resource_type": resource_type,
                "resource_id": resource_id,
                "payload": payload_json,
                "success": int(success),
                "error_message": error_message,
                "request_id": get_request_id(),
            },
            conn=conn,
        )

        audit_log.info(
            f"{action} by {actor}",
            extra={
                "actor": actor,
                "action": action,
                "suggestion_id": resource_id,
                "success": success,
            },
        )
        logger.debug("Audit event logged: %s by %s (id=%d)", action, actor, row_id)
        return row_id

    def get_events(
        self,
        *,
        action: str | None = None,
        actor: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> dict[str, Any]:
        """監査イベントを取得する。

        Args:
            action: フィルタ: アクション
            actor: フィルタ: 操作者
            resource_type: フィルタ: リソース種別
            resource_id: フィルタ: リソースID
            limit: 取得件数上限
            offset: オフセット

        Returns:
            events一覧とtotal件数
        """
        conditions: list[str] = []
        params: list[Any] = []

        for column, value in (
            ("action", action),
            ("actor", actor),
            ("resource_type", resource_type),
            ("resource_id", resource_id),
        ):
            if value:
                conditions.append(f"{column} = ?")
                params.append(value)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        # 件数取得
        count_rows = self.db.execute(
            f"SELECT COUNT(*) FROM audit_trail {where}", tuple(params) or None
        )
        total = count_rows[0][0] if count_rows else 0

        # データ取得
        rows = self.db.execute(
            f"""
            SELECT {_COLUMNS}
            FROM audit_trail
            {where}
            ORDER BY id DESC
            LIMIT ? OFFSET ?
            """,
            tuple(params + [limit, offset]),
        )

        return {"events": [_row_to_event(row) for row in rows], "total": total}

    def get_event_by_id(self, event_id: int) -> dict[str, Any] | None:
        """IDで監査イベントを1件取得する。"""
        rows = self.db.execute(
            f"SELECT {_COLUMNS} FROM audit_trail WHERE id = ?",
            (event_id,),
        )
        if not rows:
            return None
        return _row_to_event(rows[0])
