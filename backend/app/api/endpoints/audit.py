"""Audit trail endpoints.

監査証跡の取得APIエンドポイント。
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query

from app.core.exceptions import ResourceNotFoundError
from app.services.audit_service import AuditService

logger = logging.getLogger(__name__)

router = APIRouter()


def get_audit_service() -> AuditService:
    """Get AuditService instance."""
    return AuditService()


@router.get("")
def get_audit_events(
    action: str | None = Query(None, description="Filter by action"),
    actor: str | None = Query(None, description="Filter by actor"),
    resource_type: str | None = Query(None, description="Filter by resource type"),
    resource_id: str | None = Query(None, description="Filter by resource ID"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    service: AuditService = Depends(get_audit_service),
) -> dict[str, Any]:
    """Get audit trail events.

    Returns:
        Paginated list of audit events.
    """
    return service.get_events(
        action=action,
        actor=actor,
        resource_type=resource_type,
        resource_id=resource_id,
        limit=limit,
        offset=offset,
    )


@router.get("/{event_id}")
def get_audit_event(
    event_id: int,
    service: AuditService = Depends(get_audit_service),
) -> dict[str, Any]:
    """Get a single audit event by ID.

    Args:
        event_id: Audit event ID.

    Returns:
        Audit event details.
    """
    event = service.get_event_by_id(event_id)
    if event is None:
        raise ResourceNotFoundError(
            "Audit event not found",
            resource_type="audit_event",
            resource_id=str(event_id),
        )
    return event
