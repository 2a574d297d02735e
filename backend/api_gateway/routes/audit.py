"""
Audit Log Routes
================
Admin view of the audit trail.
"""

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from shared.config import settings
from shared.models import Actor, AuditEntry, AuditEventType, Role
from services.audit_log import AuditLog

from ..dependencies import get_audit_log
from ..middleware.auth import require_role

router = APIRouter()


@router.get("/audit-log", response_model=List[AuditEntry])
async def list_audit_events(
    invoice_id: Optional[str] = Query(None),
    actor_id: Optional[str] = Query(None),
    event_type: Optional[AuditEventType] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    limit: int = Query(settings.audit_list_default_limit, ge=1, le=settings.audit_list_max_limit),
    actor: Actor = Depends(require_role(Role.ADMIN)),
    audit_log: AuditLog = Depends(get_audit_log),
) -> List[AuditEntry]:
    """Newest events first, filtered by invoice, actor, type and date range."""
    return await audit_log.list(
        subject_id=invoice_id,
        actor_id=actor_id,
        event_type=event_type,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        newest_first=True,
    )
