"""
Shared Pydantic Models
======================
Data models used across multiple services.
"""

from datetime import date, datetime, timezone
from typing import Optional, List, Dict, Any
from enum import Enum
from pydantic import BaseModel, Field, ConfigDict


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the datastore columns are declared."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============== Enums ==============

class Role(str, Enum):
    """Profile roles."""
    SUBMITTER = "submitter"
    MANAGER = "manager"
    ADMIN = "admin"
    FINANCE = "finance"
    VIEWER = "viewer"
    OPERATIONS = "operations"


class WorkflowStatus(str, Enum):
    """Invoice approval lifecycle states."""
    SUBMITTED = "submitted"
    PENDING_MANAGER = "pending_manager"
    APPROVED_BY_MANAGER = "approved_by_manager"
    PENDING_ADMIN = "pending_admin"
    READY_FOR_PAYMENT = "ready_for_payment"
    PAID = "paid"
    ARCHIVED = "archived"
    REJECTED = "rejected"


class InvoiceCategory(str, Enum):
    """Invoice category."""
    GUEST = "guest"
    FREELANCER = "freelancer"
    OTHER = "other"


class AuditEventType(str, Enum):
    """Audit event types written by the core."""
    INVOICE_SUBMITTED = "invoice_submitted"
    STATUS_CHANGED = "status_changed"
    BANK_DETAILS_CONFIRMED = "bank_details_confirmed"


class NotificationKind(str, Enum):
    """Notification kinds handed to the notifier."""
    APPROVAL_REQUESTED = "approval_requested"
    MANAGER_APPROVED = "manager_approved"
    INVOICE_REJECTED = "invoice_rejected"
    READY_FOR_PAYMENT = "ready_for_payment"
    INVOICE_PAID = "invoice_paid"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_LOCKED_ADMIN = "account_locked_admin"
    MFA_OTP = "mfa_otp"


# ============== Identity ==============

class Actor(BaseModel):
    """Authenticated caller, as supplied by the identity provider."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    role: Role
    full_name: Optional[str] = None
    email: Optional[str] = None
    department_id: Optional[str] = None
    program_ids: List[str] = Field(default_factory=list)
    allowed_pages: List[str] = Field(default_factory=list)
    is_active: bool = True


# ============== Invoice Snapshots ==============

class InvoiceSnapshot(BaseModel):
    """The invoice fields access decisions depend on."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    submitter_user_id: Optional[str] = None
    department_id: Optional[str] = None
    program_id: Optional[str] = None
    category: InvoiceCategory = InvoiceCategory.GUEST
    service_description: Optional[str] = None


class WorkflowSnapshot(BaseModel):
    """Point-in-time view of an invoice workflow row."""
    model_config = ConfigDict(from_attributes=True)

    invoice_id: str
    status: WorkflowStatus
    version: int = 1
    manager_user_id: Optional[str] = None
    rejection_reason: Optional[str] = None


# ============== Results ==============

class VersionedUpdate(BaseModel):
    """Outcome of an optimistic-concurrency write."""
    ok: bool
    version: Optional[int] = None


class TransitionResult(BaseModel):
    """Outcome of a successful workflow transition."""
    ok: bool = True
    invoice_id: str
    from_status: WorkflowStatus
    to_status: WorkflowStatus
    version: int


class BulkFailure(BaseModel):
    """One invoice a bulk transition could not move."""
    invoice_id: str
    error: str
    detail: str


class BulkTransitionResult(BaseModel):
    """Per-invoice outcome of a bulk transition."""
    succeeded: List[TransitionResult] = Field(default_factory=list)
    failed: List[BulkFailure] = Field(default_factory=list)


class Delegation(BaseModel):
    """Approval delegation with both parties' names resolved."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    delegator_user_id: str
    delegator_name: Optional[str] = None
    delegate_user_id: str
    delegate_name: Optional[str] = None
    valid_from: date
    valid_until: date


class LockStatus(BaseModel):
    """Current lockout state for a login identity."""
    is_locked: bool
    locked_until: Optional[datetime] = None


class FailureResult(BaseModel):
    """Outcome of recording a failed login."""
    is_locked: bool
    attempts: int = 0
    locked_until: Optional[datetime] = None


class OtpIssueResult(BaseModel):
    """Outcome of issuing a one-time code (the code itself is only sent)."""
    ok: bool = True
    expires_at: datetime


class NotificationResult(BaseModel):
    """Outcome of a notifier send."""
    success: bool
    error: Optional[str] = None


class AuditEntry(BaseModel):
    """Audit event as returned by the audit log, with the actor resolved."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_id: Optional[str] = None
    actor_user_id: Optional[str] = None
    actor_name: str
    event_type: str
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
