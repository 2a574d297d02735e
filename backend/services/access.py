"""
Invoice Access Resolver
=======================
Decides whether an actor may see an invoice.

`can_access` is the pure rule set; `AccessResolver` loads the rows it needs.
Every missing piece of data resolves to "no access".
"""

from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from shared.db_models import Invoice, InvoiceWorkflow, OperationsRoomMember
from shared.errors import NotFound
from shared.models import (
    Actor,
    InvoiceCategory,
    InvoiceSnapshot,
    Role,
    WorkflowSnapshot,
    WorkflowStatus,
)

logger = structlog.get_logger(__name__)

OTHER_INVOICES_ENTITLEMENT = "other_invoices"

FINANCE_VISIBLE_STATUSES = frozenset({
    WorkflowStatus.READY_FOR_PAYMENT,
    WorkflowStatus.PAID,
    WorkflowStatus.ARCHIVED,
})

# TODO: replace description parsing with an explicit producer_user_id column on invoices
PRODUCER_PREFIX = "producer:"


def parse_producer(service_description: Optional[str]) -> Optional[str]:
    """Return the value of the first 'Producer:' line, if any."""
    if not service_description:
        return None
    for line in service_description.split("\n"):
        line = line.strip()
        if line.lower().startswith(PRODUCER_PREFIX):
            value = line[line.index(":") + 1:].strip()
            return value or None
    return None


def _names_match(producer: Optional[str], full_name: Optional[str]) -> bool:
    if not producer or not full_name:
        return False
    return producer.strip().lower() == full_name.strip().lower()


def can_access(
    actor: Optional[Actor],
    invoice: Optional[InvoiceSnapshot],
    workflow: Optional[WorkflowSnapshot],
    in_operations_room: bool = False,
) -> bool:
    """Ordered rules, first match wins."""
    if actor is None or not actor.is_active or invoice is None:
        return False

    if actor.role in (Role.ADMIN, Role.OPERATIONS):
        return True

    if actor.role == Role.VIEWER:
        restricted = (
            invoice.category == InvoiceCategory.OTHER
            and OTHER_INVOICES_ENTITLEMENT not in (actor.allowed_pages or [])
        )
        if not restricted:
            return True

    if invoice.submitter_user_id and invoice.submitter_user_id == actor.id:
        return True

    if _names_match(parse_producer(invoice.service_description), actor.full_name):
        return True

    if actor.role == Role.MANAGER:
        return workflow is not None and workflow.manager_user_id == actor.id

    if actor.role == Role.FINANCE:
        return workflow is not None and workflow.status in FINANCE_VISIBLE_STATUSES

    return bool(in_operations_room)


class AccessResolver:
    """Loads invoice, workflow and allowlist rows and applies `can_access`."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _load(self, session: AsyncSession, actor: Actor, invoice_id: str):
        invoice = await session.get(Invoice, invoice_id)
        if invoice is None:
            return None, None, False
        workflow = await session.get(InvoiceWorkflow, invoice_id)
        in_room = (
            await session.execute(
                select(OperationsRoomMember.id).where(OperationsRoomMember.user_id == actor.id)
            )
        ).first() is not None
        return (
            InvoiceSnapshot.model_validate(invoice),
            WorkflowSnapshot.model_validate(workflow) if workflow else None,
            in_room,
        )

    async def can_access_invoice(self, actor: Optional[Actor], invoice_id: str) -> bool:
        if actor is None:
            return False
        async with self._session_factory() as session:
            invoice, workflow, in_room = await self._load(session, actor, invoice_id)
        return can_access(actor, invoice, workflow, in_room)

    async def get_visible_invoice(self, actor: Optional[Actor], invoice_id: str) -> InvoiceSnapshot:
        """Return the invoice, or NotFound when it is missing or not visible."""
        if actor is not None:
            async with self._session_factory() as session:
                invoice, workflow, in_room = await self._load(session, actor, invoice_id)
            if can_access(actor, invoice, workflow, in_room):
                return invoice
        logger.info("Invoice hidden from actor", invoice_id=invoice_id, actor_id=getattr(actor, "id", None))
        raise NotFound("Invoice not found")

    async def filter_visible(self, actor: Optional[Actor], invoice_ids: Iterable[str]) -> List[str]:
        """Subset of `invoice_ids` the actor may see, in input order."""
        ids = list(dict.fromkeys(invoice_ids))
        if actor is None or not ids:
            return []
        async with self._session_factory() as session:
            invoices = {
                inv.id: InvoiceSnapshot.model_validate(inv)
                for inv in (await session.execute(select(Invoice).where(Invoice.id.in_(ids)))).scalars()
            }
            workflows = {
                wf.invoice_id: WorkflowSnapshot.model_validate(wf)
                for wf in (
                    await session.execute(select(InvoiceWorkflow).where(InvoiceWorkflow.invoice_id.in_(ids)))
                ).scalars()
            }
            in_room = (
                await session.execute(
                    select(OperationsRoomMember.id).where(OperationsRoomMember.user_id == actor.id)
                )
            ).first() is not None
        return [
            invoice_id for invoice_id in ids
            if can_access(actor, invoices.get(invoice_id), workflows.get(invoice_id), in_room)
        ]
