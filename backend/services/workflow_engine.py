"""
Workflow Engine
===============
Invoice approval lifecycle state machine.

Every transition goes through the same steps: look up the rule for
(current state, target state), check the actor's role and the rule's
predicate, write through the version guard, then append one audit event.
The audit write is best-effort and never undoes a committed state change.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from shared.db_models import ApprovalDelegation, ExtractedFields, Invoice, InvoiceWorkflow, Profile
from shared.errors import ApprovalError, Forbidden, InvalidRequest, InvalidTransition, NotFound, VersionConflict
from shared.metrics import MetricsCollector, get_metrics
from shared.models import (
    Actor,
    AuditEventType,
    BulkFailure,
    BulkTransitionResult,
    InvoiceCategory,
    InvoiceSnapshot,
    NotificationKind,
    Role,
    TransitionResult,
    VersionedUpdate,
    WorkflowSnapshot,
    WorkflowStatus,
    utcnow,
)
from shared.notifier import NotificationDispatcher

from .audit_log import AuditLog
from .concurrency import ConcurrencyGuard
from .manager_assignment import ManagerAssignmentResolver

logger = structlog.get_logger(__name__)

S = WorkflowStatus


@dataclass(frozen=True)
class TransitionContext:
    """What a rule predicate may look at."""
    actor: Actor
    invoice: InvoiceSnapshot
    workflow: WorkflowSnapshot
    is_delegate: bool = False


@dataclass(frozen=True)
class TransitionRule:
    """One allowed edge of the state machine."""
    to_state: WorkflowStatus
    roles: FrozenSet[Role]
    predicate: Optional[Callable[[TransitionContext], bool]] = None
    requires_reason: bool = False

    def permits(self, ctx: TransitionContext) -> bool:
        if ctx.actor.role not in self.roles:
            return False
        return self.predicate is None or self.predicate(ctx)


def is_assigned_manager(ctx: TransitionContext) -> bool:
    """The assigned manager, or someone holding an active delegation from them."""
    if ctx.workflow.manager_user_id is None:
        return False
    return ctx.workflow.manager_user_id == ctx.actor.id or ctx.is_delegate


def manager_must_be_assigned(ctx: TransitionContext) -> bool:
    return ctx.actor.role != Role.MANAGER or is_assigned_manager(ctx)


def submitter_must_own(ctx: TransitionContext) -> bool:
    return ctx.actor.role != Role.SUBMITTER or ctx.invoice.submitter_user_id == ctx.actor.id


def not_own_invoice(ctx: TransitionContext) -> bool:
    return ctx.actor.role == Role.ADMIN or ctx.invoice.submitter_user_id != ctx.actor.id


def all_of(*predicates: Callable[[TransitionContext], bool]) -> Callable[[TransitionContext], bool]:
    def check(ctx: TransitionContext) -> bool:
        return all(predicate(ctx) for predicate in predicates)
    return check


# Approving or rejecting your own invoice is reserved to admins.
REVIEW_STATES = frozenset({WorkflowStatus.APPROVED_BY_MANAGER, WorkflowStatus.REJECTED})

MAX_BULK = 50

ADMIN_OR_OPERATIONS = frozenset({Role.ADMIN, Role.OPERATIONS})
MANAGER_OR_ADMIN = frozenset({Role.MANAGER, Role.ADMIN})
FINANCE_OR_ADMIN = frozenset({Role.FINANCE, Role.ADMIN})

SUBMIT_ROLES = frozenset({Role.SUBMITTER, Role.MANAGER, Role.ADMIN, Role.OPERATIONS})

_REJECT = TransitionRule(
    S.REJECTED,
    MANAGER_OR_ADMIN,
    all_of(manager_must_be_assigned, not_own_invoice),
    requires_reason=True,
)

TRANSITIONS: Dict[WorkflowStatus, Tuple[TransitionRule, ...]] = {
    S.SUBMITTED: (
        TransitionRule(
            S.PENDING_MANAGER,
            frozenset({Role.ADMIN, Role.OPERATIONS, Role.SUBMITTER}),
            submitter_must_own,
        ),
        _REJECT,
    ),
    S.PENDING_MANAGER: (
        TransitionRule(
            S.APPROVED_BY_MANAGER,
            frozenset({Role.MANAGER}),
            all_of(is_assigned_manager, not_own_invoice),
        ),
        _REJECT,
    ),
    S.APPROVED_BY_MANAGER: (
        TransitionRule(S.PENDING_ADMIN, ADMIN_OR_OPERATIONS),
        TransitionRule(S.READY_FOR_PAYMENT, ADMIN_OR_OPERATIONS),
    ),
    S.PENDING_ADMIN: (
        TransitionRule(S.READY_FOR_PAYMENT, ADMIN_OR_OPERATIONS),
        _REJECT,
    ),
    S.READY_FOR_PAYMENT: (
        TransitionRule(S.PAID, FINANCE_OR_ADMIN),
    ),
    S.PAID: (
        TransitionRule(S.ARCHIVED, FINANCE_OR_ADMIN),
    ),
    S.ARCHIVED: (),
    S.REJECTED: (
        TransitionRule(S.PENDING_MANAGER, frozenset({Role.SUBMITTER, Role.ADMIN}), submitter_must_own),
    ),
}


def find_rule(from_state: WorkflowStatus, to_state: WorkflowStatus) -> Optional[TransitionRule]:
    for rule in TRANSITIONS.get(from_state, ()):
        if rule.to_state == to_state:
            return rule
    return None


def authorize_transition(
    ctx: TransitionContext,
    to_state: WorkflowStatus,
    reason: Optional[str] = None,
) -> TransitionRule:
    """
    Resolve the rule for a requested transition.

    Raises:
        InvalidTransition: no such edge, or a required reason is missing
        Forbidden: the edge exists but the actor may not take it
    """
    from_state = ctx.workflow.status
    rule = find_rule(from_state, to_state)
    if rule is None:
        raise InvalidTransition(
            f"Cannot move from {from_state.value} to {to_state.value}",
            from_status=from_state.value,
            to_status=to_state.value,
        )
    if not ctx.actor.is_active:
        raise Forbidden()
    if to_state in REVIEW_STATES and not not_own_invoice(ctx):
        raise Forbidden("You cannot approve or reject your own invoice")
    if not rule.permits(ctx):
        raise Forbidden()
    if rule.requires_reason and not (reason or "").strip():
        raise InvalidTransition("A rejection reason is required")
    return rule


def allowed_next_states(ctx: TransitionContext) -> List[WorkflowStatus]:
    """Target states this actor may move the workflow to right now."""
    if not ctx.actor.is_active:
        return []
    return [rule.to_state for rule in TRANSITIONS.get(ctx.workflow.status, ()) if rule.permits(ctx)]


class WorkflowEngine:
    """
    Invoice workflow state machine backed by invoice_workflows.

    The workflow row is the only serialization point per invoice; concurrent
    callers race on the version guard and the loser gets VersionConflict.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit_log: AuditLog,
        assignment: ManagerAssignmentResolver,
        notifications: NotificationDispatcher,
        guard: Optional[ConcurrencyGuard] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.audit_log = audit_log
        self.assignment = assignment
        self.notifications = notifications
        self._clock = clock
        self._metrics = metrics or get_metrics()
        self.guard = guard or ConcurrencyGuard(self._metrics)
        self.logger = logger.bind(service="WorkflowEngine")

    # ============== Creation ==============

    async def submit_invoice(
        self,
        actor: Actor,
        department_id: Optional[str] = None,
        program_id: Optional[str] = None,
        category: InvoiceCategory = InvoiceCategory.GUEST,
        service_description: Optional[str] = None,
        amount: Optional[Decimal] = None,
        currency: str = "GBP",
        extracted: Optional[Dict[str, Any]] = None,
        invoice_id: Optional[str] = None,
    ) -> WorkflowSnapshot:
        """Create an invoice and its workflow together, in `submitted`."""
        if not actor.is_active or actor.role not in SUBMIT_ROLES:
            raise Forbidden()

        invoice_id = invoice_id or str(uuid.uuid4())
        async with self._session_factory() as session:
            session.add(
                Invoice(
                    id=invoice_id,
                    submitter_user_id=actor.id,
                    department_id=department_id,
                    program_id=program_id,
                    category=InvoiceCategory(category),
                    service_description=service_description,
                    amount=amount,
                    currency=currency,
                )
            )
            session.add(InvoiceWorkflow(invoice_id=invoice_id, status=S.SUBMITTED, version=1))
            if extracted:
                session.add(ExtractedFields(invoice_id=invoice_id, **extracted))
            await session.commit()

        snapshot = WorkflowSnapshot(invoice_id=invoice_id, status=S.SUBMITTED, version=1)

        await self.audit_log.append(
            invoice_id,
            actor.id,
            AuditEventType.INVOICE_SUBMITTED,
            to_status=S.SUBMITTED,
            payload={"category": InvoiceCategory(category).value},
        )
        self.logger.info("Invoice submitted", invoice_id=invoice_id, submitter=actor.id)
        return snapshot

    # ============== Reads ==============

    async def get_workflow(self, invoice_id: str) -> WorkflowSnapshot:
        async with self._session_factory() as session:
            workflow = await session.get(InvoiceWorkflow, invoice_id)
        if workflow is None:
            raise NotFound("Invoice not found")
        return WorkflowSnapshot.model_validate(workflow)

    async def available_transitions(self, actor: Actor, invoice_id: str) -> List[WorkflowStatus]:
        async with self._session_factory() as session:
            ctx = await self._load_context(session, actor, invoice_id)
        return allowed_next_states(ctx)

    async def _load_context(self, session: AsyncSession, actor: Actor, invoice_id: str) -> TransitionContext:
        invoice = await session.get(Invoice, invoice_id)
        workflow = await session.get(InvoiceWorkflow, invoice_id)
        if invoice is None or workflow is None:
            raise NotFound("Invoice not found")
        is_delegate = False
        if actor.role == Role.MANAGER and workflow.manager_user_id and workflow.manager_user_id != actor.id:
            is_delegate = await self._holds_delegation(session, workflow.manager_user_id, actor.id)
        return TransitionContext(
            actor=actor,
            invoice=InvoiceSnapshot.model_validate(invoice),
            workflow=WorkflowSnapshot.model_validate(workflow),
            is_delegate=is_delegate,
        )

    async def _holds_delegation(self, session: AsyncSession, delegator_id: str, delegate_id: str) -> bool:
        today = self._clock().date()
        result = await session.execute(
            select(ApprovalDelegation.id)
            .where(ApprovalDelegation.delegator_user_id == delegator_id)
            .where(ApprovalDelegation.delegate_user_id == delegate_id)
            .where(ApprovalDelegation.valid_from <= today)
            .where(ApprovalDelegation.valid_until >= today)
            .limit(1)
        )
        return result.first() is not None

    # ============== Transitions ==============

    async def transition(
        self,
        actor: Actor,
        invoice_id: str,
        to_status: Any,
        expected_version: int,
        reason: Optional[str] = None,
        payment_reference: Optional[str] = None,
    ) -> TransitionResult:
        """
        Move an invoice to `to_status`.

        Raises:
            NotFound, InvalidTransition, Forbidden, VersionConflict
        """
        return await self._transition(actor, invoice_id, to_status, expected_version, reason, payment_reference)

    async def _transition(
        self,
        actor: Actor,
        invoice_id: str,
        to_status: Any,
        expected_version: int,
        reason: Optional[str],
        payment_reference: Optional[str],
        bulk: bool = False,
    ) -> TransitionResult:
        try:
            to_status = WorkflowStatus(to_status)
        except ValueError:
            raise InvalidTransition(f"Unknown status: {to_status}")

        async with self._session_factory() as session:
            ctx = await self._load_context(session, actor, invoice_id)
            authorize_transition(ctx, to_status, reason)
            fields = await self._fields_for(session, ctx, to_status, reason, payment_reference)

            result = await self.guard.update_with_version(session, invoice_id, expected_version, fields)
            if not result.ok:
                await session.rollback()
                raise VersionConflict()
            await session.commit()

        from_status = ctx.workflow.status
        payload: Dict[str, Any] = {"version": result.version}
        if to_status == S.REJECTED:
            payload["rejection_reason"] = reason.strip()
        if to_status == S.PENDING_MANAGER:
            payload["manager_user_id"] = fields.get("manager_user_id")
        if to_status == S.PAID and payment_reference:
            payload["payment_reference"] = payment_reference
        if bulk:
            payload["bulk"] = True

        await self.audit_log.append(
            invoice_id,
            actor.id,
            AuditEventType.STATUS_CHANGED,
            from_status=from_status,
            to_status=to_status,
            payload=payload,
        )

        self._metrics.record_transition(from_status.value, to_status.value)
        self.logger.info(
            "State transition",
            invoice_id=invoice_id,
            from_state=from_status.value,
            to_state=to_status.value,
            actor=actor.id,
            version=result.version,
        )

        await self._notify(ctx, to_status, fields, reason)

        return TransitionResult(
            invoice_id=invoice_id,
            from_status=from_status,
            to_status=to_status,
            version=result.version,
        )

    async def _fields_for(
        self,
        session: AsyncSession,
        ctx: TransitionContext,
        to_status: WorkflowStatus,
        reason: Optional[str],
        payment_reference: Optional[str],
    ) -> Dict[str, Any]:
        fields: Dict[str, Any] = {"status": to_status}
        today = self._clock().date()

        if to_status == S.PENDING_MANAGER:
            manager_id = ctx.workflow.manager_user_id or await self.assignment.resolve_in(
                session, ctx.invoice.department_id, ctx.invoice.program_id
            )
            if manager_id is None:
                raise InvalidTransition("No manager could be assigned to this invoice")
            fields.update(
                manager_user_id=manager_id,
                pending_manager_since=today,
                rejection_reason=None,
            )
        elif to_status == S.REJECTED:
            fields["rejection_reason"] = reason.strip()
        elif to_status == S.PAID:
            fields.update(paid_date=today, payment_reference=payment_reference)

        return fields

    # ============== Bulk ==============

    async def bulk_transition(
        self,
        actor: Actor,
        items: Sequence[Tuple[str, Optional[int]]],
        to_status: Any,
        reason: Optional[str] = None,
        payment_reference: Optional[str] = None,
    ) -> BulkTransitionResult:
        """
        Move many invoices to the same status, each under its own rules.

        Items are (invoice_id, expected_version) pairs; a None version takes
        the current one. Per-invoice failures are collected, not raised.

        Raises:
            InvalidRequest: empty batch or more than MAX_BULK invoices
            InvalidTransition: unknown target status
        """
        try:
            to_status = WorkflowStatus(to_status)
        except ValueError:
            raise InvalidTransition(f"Unknown status: {to_status}")

        batch: Dict[str, Optional[int]] = {}
        for invoice_id, version in items:
            if invoice_id and invoice_id not in batch:
                batch[invoice_id] = version
        if not batch:
            raise InvalidRequest("At least one invoice is required")
        if len(batch) > MAX_BULK:
            raise InvalidRequest(f"At most {MAX_BULK} invoices per request")

        outcome = BulkTransitionResult()
        for invoice_id, version in batch.items():
            try:
                if version is None:
                    version = (await self.get_workflow(invoice_id)).version
                result = await self._transition(
                    actor, invoice_id, to_status, version, reason, payment_reference, bulk=True
                )
            except ApprovalError as e:
                outcome.failed.append(BulkFailure(invoice_id=invoice_id, error=e.code, detail=e.message))
            else:
                outcome.succeeded.append(result)

        self.logger.info(
            "Bulk transition",
            to_state=to_status.value,
            actor=actor.id,
            succeeded=len(outcome.succeeded),
            failed=len(outcome.failed),
        )
        return outcome

    # ============== Bank Details ==============

    async def confirm_bank_details(
        self,
        actor: Actor,
        invoice_id: str,
        expected_version: int,
    ) -> VersionedUpdate:
        """
        Assigned manager confirms the extracted bank details.

        Allowed only in pending_manager; bumps the version but not the status.
        """
        if not actor.is_active or actor.role != Role.MANAGER:
            raise Forbidden()

        async with self._session_factory() as session:
            ctx = await self._load_context(session, actor, invoice_id)
            if ctx.workflow.status != S.PENDING_MANAGER:
                raise InvalidTransition("Bank details can only be confirmed while pending manager approval")
            if not is_assigned_manager(ctx):
                raise Forbidden()

            result = await self.guard.update_with_version(session, invoice_id, expected_version)
            if not result.ok:
                await session.rollback()
                raise VersionConflict()

            now = self._clock()
            extracted = await session.get(ExtractedFields, invoice_id)
            if extracted is None:
                extracted = ExtractedFields(invoice_id=invoice_id)
                session.add(extracted)
            extracted.manager_confirmed = True
            extracted.confirmed_by = actor.id
            extracted.confirmed_at = now
            await session.commit()

        await self.audit_log.append(
            invoice_id,
            actor.id,
            AuditEventType.BANK_DETAILS_CONFIRMED,
            payload={"version": result.version},
        )
        self.logger.info("Bank details confirmed", invoice_id=invoice_id, manager=actor.id)
        return result

    # ============== Notifications ==============

    async def _notify(
        self,
        ctx: TransitionContext,
        to_status: WorkflowStatus,
        fields: Dict[str, Any],
        reason: Optional[str],
    ) -> None:
        """Queue notifications for a committed transition. Never raises."""
        data = {"invoice_id": ctx.invoice.id, "status": to_status.value}
        try:
            async with self._session_factory() as session:
                if to_status == S.PENDING_MANAGER:
                    email = await self._email_of(session, fields.get("manager_user_id"))
                    self.notifications.dispatch(NotificationKind.APPROVAL_REQUESTED, email, data)
                elif to_status == S.APPROVED_BY_MANAGER:
                    email = await self._email_of(session, ctx.invoice.submitter_user_id)
                    self.notifications.dispatch(NotificationKind.MANAGER_APPROVED, email, data)
                elif to_status == S.REJECTED:
                    email = await self._email_of(session, ctx.invoice.submitter_user_id)
                    self.notifications.dispatch(
                        NotificationKind.INVOICE_REJECTED, email, {**data, "reason": reason}
                    )
                elif to_status == S.READY_FOR_PAYMENT:
                    rows = await session.execute(
                        select(Profile.email)
                        .where(Profile.role == Role.FINANCE)
                        .where(Profile.is_active.is_(True))
                    )
                    for (email,) in rows:
                        self.notifications.dispatch(NotificationKind.READY_FOR_PAYMENT, email, data)
                elif to_status == S.PAID:
                    email = await self._email_of(session, ctx.invoice.submitter_user_id)
                    self.notifications.dispatch(NotificationKind.INVOICE_PAID, email, data)
        except Exception as e:
            self.logger.warning("Failed to queue notifications", invoice_id=ctx.invoice.id, error=str(e))

    @staticmethod
    async def _email_of(session: AsyncSession, user_id: Optional[str]) -> Optional[str]:
        if not user_id:
            return None
        profile = await session.get(Profile, user_id)
        return profile.email if profile and profile.is_active else None
