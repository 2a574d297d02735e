"""
Invoice Routes
==============
Submission, visibility and workflow transition endpoints.

Every read goes through the access resolver and answers 404 for invoices the
caller cannot see. Mutations carry the workflow version the client last read.
"""

from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Path, Query, status
from pydantic import BaseModel, Field
import structlog

from shared.models import (
    Actor,
    AuditEntry,
    BulkTransitionResult,
    InvoiceCategory,
    InvoiceSnapshot,
    TransitionResult,
    VersionedUpdate,
    WorkflowSnapshot,
    WorkflowStatus,
)
from services.access import AccessResolver
from services.audit_log import AuditLog
from services.workflow_engine import WorkflowEngine

from ..dependencies import get_access, get_audit_log, get_workflow
from ..middleware.auth import require_actor

logger = structlog.get_logger(__name__)

router = APIRouter()


# ============== Request / Response Models ==============

class BankDetails(BaseModel):
    """Extracted bank fields supplied with a submission."""
    beneficiary_name: Optional[str] = None
    account_number: Optional[str] = None
    sort_code: Optional[str] = None
    iban: Optional[str] = None
    swift_bic: Optional[str] = None
    invoice_number: Optional[str] = None
    gross_amount: Optional[Decimal] = None


class SubmitInvoiceRequest(BaseModel):
    """New invoice submission."""
    department_id: Optional[str] = None
    program_id: Optional[str] = None
    category: InvoiceCategory = InvoiceCategory.GUEST
    service_description: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: str = Field("GBP", min_length=3, max_length=3)
    extracted: Optional[BankDetails] = None


class StatusChangeRequest(BaseModel):
    """Workflow transition request."""
    to_status: WorkflowStatus
    version: int = Field(..., ge=1)
    reason: Optional[str] = None
    payment_reference: Optional[str] = None


class BulkStatusRequest(BaseModel):
    """One target status for many invoices."""
    invoice_ids: List[str] = Field(..., min_length=1)
    to_status: WorkflowStatus
    versions: Dict[str, int] = Field(default_factory=dict, description="Expected version per invoice id")
    reason: Optional[str] = None
    payment_reference: Optional[str] = None


class VersionRequest(BaseModel):
    """Mutation that only needs the version the client last read."""
    version: int = Field(..., ge=1)


class InvoiceResponse(BaseModel):
    """Invoice with its workflow and the caller's next steps."""
    invoice: InvoiceSnapshot
    workflow: WorkflowSnapshot
    allowed_transitions: List[WorkflowStatus]


# ============== Endpoints ==============

@router.post("/invoices", status_code=status.HTTP_201_CREATED, response_model=WorkflowSnapshot)
async def submit_invoice(
    request: SubmitInvoiceRequest,
    actor: Actor = Depends(require_actor),
    workflow: WorkflowEngine = Depends(get_workflow),
) -> WorkflowSnapshot:
    """Create an invoice and its workflow in `submitted`."""
    return await workflow.submit_invoice(
        actor,
        department_id=request.department_id,
        program_id=request.program_id,
        category=request.category,
        service_description=request.service_description,
        amount=request.amount,
        currency=request.currency,
        extracted=request.extracted.model_dump(exclude_none=True) if request.extracted else None,
    )


@router.get("/invoices", response_model=List[str])
async def list_visible_invoices(
    ids: List[str] = Query(..., description="Candidate invoice ids"),
    actor: Actor = Depends(require_actor),
    access: AccessResolver = Depends(get_access),
) -> List[str]:
    """Return the subset of `ids` the caller may see."""
    return await access.filter_visible(actor, ids)


@router.get("/invoices/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(
    invoice_id: str = Path(...),
    actor: Actor = Depends(require_actor),
    access: AccessResolver = Depends(get_access),
    workflow: WorkflowEngine = Depends(get_workflow),
) -> InvoiceResponse:
    invoice = await access.get_visible_invoice(actor, invoice_id)
    return InvoiceResponse(
        invoice=invoice,
        workflow=await workflow.get_workflow(invoice_id),
        allowed_transitions=await workflow.available_transitions(actor, invoice_id),
    )


@router.patch("/invoices/{invoice_id}/status", response_model=TransitionResult)
async def change_status(
    request: StatusChangeRequest,
    invoice_id: str = Path(...),
    actor: Actor = Depends(require_actor),
    workflow: WorkflowEngine = Depends(get_workflow),
) -> TransitionResult:
    """Move the workflow; 409 when `version` is stale."""
    return await workflow.transition(
        actor,
        invoice_id,
        request.to_status,
        request.version,
        reason=request.reason,
        payment_reference=request.payment_reference,
    )


@router.post("/invoices/bulk-status", response_model=BulkTransitionResult)
async def bulk_change_status(
    request: BulkStatusRequest,
    actor: Actor = Depends(require_actor),
    workflow: WorkflowEngine = Depends(get_workflow),
) -> BulkTransitionResult:
    """Apply one transition to each invoice; failures are reported per invoice."""
    return await workflow.bulk_transition(
        actor,
        [(invoice_id, request.versions.get(invoice_id)) for invoice_id in request.invoice_ids],
        request.to_status,
        reason=request.reason,
        payment_reference=request.payment_reference,
    )


@router.post("/invoices/{invoice_id}/confirm-bank-details", response_model=VersionedUpdate)
async def confirm_bank_details(
    request: VersionRequest,
    invoice_id: str = Path(...),
    actor: Actor = Depends(require_actor),
    workflow: WorkflowEngine = Depends(get_workflow),
) -> VersionedUpdate:
    return await workflow.confirm_bank_details(actor, invoice_id, request.version)


@router.get("/invoices/{invoice_id}/audit", response_model=List[AuditEntry])
async def invoice_history(
    invoice_id: str = Path(...),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    actor: Actor = Depends(require_actor),
    access: AccessResolver = Depends(get_access),
    audit_log: AuditLog = Depends(get_audit_log),
) -> List[AuditEntry]:
    """Audit trail of one visible invoice, oldest first."""
    await access.get_visible_invoice(actor, invoice_id)
    return await audit_log.list(subject_id=invoice_id, date_from=date_from, date_to=date_to)
