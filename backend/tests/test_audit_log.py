"""
Audit trail writes and queries.
"""

from datetime import date, datetime

from shared.db_models import AuditEvent
from shared.models import AuditEventType, WorkflowStatus
from services.audit_log import SYSTEM_ACTOR_NAME, AuditLog


async def backdate(session_factory, when):
    """Move every event not yet backdated to `when`."""
    table = AuditEvent.__table__
    async with session_factory() as session:
        await session.execute(
            table.update().where(table.c.created_at > datetime(2026, 3, 1)).values(created_at=when)
        )
        await session.commit()


async def test_actor_names_resolved_at_read_time(audit_log, people):
    await audit_log.append("inv-1", "u-mgr", AuditEventType.STATUS_CHANGED, "pending_manager", "approved_by_manager")
    await audit_log.append("inv-1", None, "reminder_sent")
    await audit_log.append("inv-1", "u-gone", AuditEventType.STATUS_CHANGED)

    entries = await audit_log.list(subject_id="inv-1")

    assert [e.actor_name for e in entries] == ["Mia Manager", SYSTEM_ACTOR_NAME, "u-gone"]
    assert entries[0].from_status == "pending_manager"
    assert entries[0].to_status == "approved_by_manager"
    assert entries[1].event_type == "reminder_sent"


async def test_enum_statuses_are_stored_as_values(audit_log, session_factory):
    await audit_log.append(
        "inv-1", "u-adm", AuditEventType.STATUS_CHANGED,
        WorkflowStatus.APPROVED_BY_MANAGER, WorkflowStatus.READY_FOR_PAYMENT,
        {"version": 4},
    )
    (entry,) = await audit_log.list()
    assert entry.from_status == "approved_by_manager"
    assert entry.to_status == "ready_for_payment"
    assert entry.payload == {"version": 4}


async def test_creation_order_and_newest_first(audit_log):
    for n in range(3):
        await audit_log.append("inv-1", "u-adm", AuditEventType.STATUS_CHANGED, payload={"n": n})

    oldest_first = [e.payload["n"] for e in await audit_log.list(subject_id="inv-1")]
    newest_first = [e.payload["n"] for e in await audit_log.list(subject_id="inv-1", newest_first=True)]

    assert oldest_first == [0, 1, 2]
    assert newest_first == [2, 1, 0]


async def test_filters(audit_log):
    await audit_log.append("inv-1", "u-adm", AuditEventType.STATUS_CHANGED)
    await audit_log.append("inv-2", "u-adm", AuditEventType.BANK_DETAILS_CONFIRMED)
    await audit_log.append("inv-2", "u-mgr", AuditEventType.STATUS_CHANGED)

    assert len(await audit_log.list(subject_id="inv-2")) == 2
    assert len(await audit_log.list(actor_id="u-adm")) == 2
    assert [e.invoice_id for e in await audit_log.list(event_type=AuditEventType.BANK_DETAILS_CONFIRMED)] == ["inv-2"]
    assert len(await audit_log.list(subject_id="inv-2", actor_id="u-mgr")) == 1


async def test_date_range_covers_whole_end_day(audit_log, session_factory):
    await audit_log.append("inv-1", "u-adm", AuditEventType.STATUS_CHANGED)
    await backdate(session_factory, datetime(2026, 2, 10, 23, 59, 30))
    await audit_log.append("inv-1", "u-adm", AuditEventType.STATUS_CHANGED)
    await backdate(session_factory, datetime(2026, 2, 11, 0, 0, 10))

    assert len(await audit_log.list(date_from=date(2026, 2, 10), date_to=date(2026, 2, 10))) == 1
    assert len(await audit_log.list(date_to=datetime(2026, 2, 10, 23, 0))) == 0
    assert len(await audit_log.list(date_from=date(2026, 2, 11))) == 1


async def test_limit_is_clamped(audit_log):
    for _ in range(4):
        await audit_log.append("inv-1", None, AuditEventType.STATUS_CHANGED)

    assert len(await audit_log.list(limit=2)) == 2
    assert len(await audit_log.list(limit=-5)) == 1


async def test_append_never_raises(metrics):
    def broken_factory():
        raise RuntimeError("database is down")

    audit_log = AuditLog(broken_factory, metrics)
    await audit_log.append("inv-1", "u-adm", AuditEventType.STATUS_CHANGED)

    assert metrics.registry.get_sample_value("invoice_approvals_audit_failures_total") == 1.0
