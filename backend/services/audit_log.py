"""
Audit Log
=========
Append-only event store for every state-changing action.

Writes are best-effort: a failed append is logged and counted, never raised,
so a committed business change is not undone by a missing audit row.
"""

from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from shared.config import settings
from shared.db_models import AuditEvent, Profile
from shared.metrics import MetricsCollector, get_metrics
from shared.models import AuditEntry, utcnow

logger = structlog.get_logger(__name__)

SYSTEM_ACTOR_NAME = "System"


def _enum_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "value", value)


class AuditLog:
    """Append-only audit trail backed by the audit_events table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        metrics: Optional[MetricsCollector] = None,
    ):
        self._session_factory = session_factory
        self._metrics = metrics or get_metrics()

    async def append(
        self,
        subject_id: Optional[str],
        actor_id: Optional[str],
        event_type: Any,
        from_status: Any = None,
        to_status: Any = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Write one event in its own transaction. Never raises."""
        event_type = _enum_value(event_type)
        try:
            async with self._session_factory() as session:
                session.add(
                    AuditEvent(
                        invoice_id=subject_id,
                        actor_user_id=actor_id,
                        event_type=event_type,
                        from_status=_enum_value(from_status),
                        to_status=_enum_value(to_status),
                        payload=payload or {},
                        created_at=utcnow(),
                    )
                )
                await session.commit()
        except Exception as e:
            self._metrics.record_audit_failure()
            logger.error(
                "Audit event insert failed",
                invoice_id=subject_id,
                actor_id=actor_id,
                event_type=event_type,
                error=str(e),
            )
            return

        logger.info(
            "Audit event logged",
            invoice_id=subject_id,
            actor_id=actor_id,
            event_type=event_type,
            from_status=_enum_value(from_status),
            to_status=_enum_value(to_status),
        )

    async def list(
        self,
        subject_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        event_type: Any = None,
        date_from: Optional[Union[date, datetime]] = None,
        date_to: Optional[Union[date, datetime]] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[AuditEntry]:
        """
        Query events in creation order with actor names resolved.

        A plain `date` for `date_to` includes the whole day.
        """
        limit = limit or settings.audit_list_default_limit
        limit = max(1, min(limit, settings.audit_list_max_limit))

        query = select(AuditEvent)
        if subject_id:
            query = query.where(AuditEvent.invoice_id == subject_id)
        if actor_id:
            query = query.where(AuditEvent.actor_user_id == actor_id)
        if event_type:
            query = query.where(AuditEvent.event_type == _enum_value(event_type))
        if date_from:
            if not isinstance(date_from, datetime):
                date_from = datetime.combine(date_from, datetime.min.time())
            query = query.where(AuditEvent.created_at >= date_from)
        if date_to:
            if isinstance(date_to, datetime):
                query = query.where(AuditEvent.created_at <= date_to)
            else:
                day_after = datetime.combine(date_to + timedelta(days=1), datetime.min.time())
                query = query.where(AuditEvent.created_at < day_after)

        if newest_first:
            query = query.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
        else:
            query = query.order_by(AuditEvent.created_at.asc(), AuditEvent.id.asc())
        query = query.limit(limit)

        async with self._session_factory() as session:
            events = (await session.execute(query)).scalars().all()

            actor_ids = {e.actor_user_id for e in events if e.actor_user_id}
            names: Dict[str, str] = {}
            if actor_ids:
                rows = await session.execute(
                    select(Profile.id, Profile.full_name).where(Profile.id.in_(actor_ids))
                )
                names = {row.id: row.full_name or row.id for row in rows}

        return [
            AuditEntry(
                id=e.id,
                invoice_id=e.invoice_id,
                actor_user_id=e.actor_user_id,
                actor_name=(
                    names.get(e.actor_user_id, e.actor_user_id)
                    if e.actor_user_id
                    else SYSTEM_ACTOR_NAME
                ),
                event_type=e.event_type,
                from_status=e.from_status,
                to_status=e.to_status,
                payload=e.payload or {},
                created_at=e.created_at,
            )
            for e in events
        ]
