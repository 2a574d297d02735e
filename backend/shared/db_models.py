"""
SQLAlchemy Database Models
===========================
ORM models for the approval core.
"""

from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, JSON, ForeignKey, Enum as SQLEnum, Numeric, Index, Date
from sqlalchemy.orm import relationship

from .database import Base
from .models import InvoiceCategory, Role, WorkflowStatus, utcnow


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Profile(Base):
    """User profiles (the identity provider owns credentials)."""
    __tablename__ = "profiles"

    id = Column(String(50), primary_key=True)
    full_name = Column(String(255))
    email = Column(String(255), unique=True, index=True)
    role = Column(SQLEnum(Role, name="app_role", values_callable=_enum_values), nullable=False, index=True)
    department_id = Column(String(50), index=True)
    program_ids = Column(JSON, default=list)
    allowed_pages = Column(JSON, default=list)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)


class Program(Base):
    """Programs invoices are booked against."""
    __tablename__ = "programs"

    id = Column(String(50), primary_key=True)
    name = Column(String(255), nullable=False)
    department_id = Column(String(50), index=True)


class DepartmentManager(Base):
    """Ordered default managers per department."""
    __tablename__ = "department_managers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    department_id = Column(String(50), nullable=False, index=True)
    manager_user_id = Column(String(50), ForeignKey("profiles.id"), nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)


class ProgramManagerOverride(Base):
    """Explicit manager per normalized program name."""
    __tablename__ = "program_manager_overrides"

    program_name_key = Column(String(255), primary_key=True)
    manager_user_id = Column(String(50), ForeignKey("profiles.id"), nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class OperationsRoomMember(Base):
    """Operations-room allowlist."""
    __tablename__ = "operations_room_members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(50), ForeignKey("profiles.id"), unique=True, nullable=False)


class ApprovalDelegation(Base):
    """Date-bounded hand-over of a manager's approvals to another user."""
    __tablename__ = "approval_delegations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    delegator_user_id = Column(String(50), ForeignKey("profiles.id"), nullable=False, index=True)
    delegate_user_id = Column(String(50), ForeignKey("profiles.id"), nullable=False, index=True)
    valid_from = Column(Date, nullable=False)
    valid_until = Column(Date, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)


class Invoice(Base):
    """Invoice records."""
    __tablename__ = "invoices"

    id = Column(String(50), primary_key=True)
    submitter_user_id = Column(String(50), ForeignKey("profiles.id"), index=True)
    department_id = Column(String(50), index=True)
    program_id = Column(String(50), index=True)
    category = Column(
        SQLEnum(InvoiceCategory, name="invoice_category", values_callable=_enum_values),
        default=InvoiceCategory.GUEST,
        nullable=False,
    )
    service_description = Column(Text)
    currency = Column(String(3), default="GBP")
    amount = Column(Numeric(15, 2))

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    workflow = relationship("InvoiceWorkflow", back_populates="invoice", uselist=False)
    extracted_fields = relationship("ExtractedFields", back_populates="invoice", uselist=False)


class InvoiceWorkflow(Base):
    """Approval state, one row per invoice."""
    __tablename__ = "invoice_workflows"

    invoice_id = Column(String(50), ForeignKey("invoices.id", ondelete="CASCADE"), primary_key=True)
    status = Column(
        SQLEnum(WorkflowStatus, name="workflow_status", values_callable=_enum_values),
        default=WorkflowStatus.SUBMITTED,
        nullable=False,
        index=True,
    )
    version = Column(Integer, default=1, nullable=False)
    manager_user_id = Column(String(50), ForeignKey("profiles.id"), index=True)
    rejection_reason = Column(Text)
    pending_manager_since = Column(Date)
    payment_reference = Column(String(100))
    paid_date = Column(Date)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    invoice = relationship("Invoice", back_populates="workflow")


class ExtractedFields(Base):
    """Bank and invoice fields extracted from the uploaded document."""
    __tablename__ = "invoice_extracted_fields"

    invoice_id = Column(String(50), ForeignKey("invoices.id", ondelete="CASCADE"), primary_key=True)
    beneficiary_name = Column(String(255))
    account_number = Column(String(50))
    sort_code = Column(String(20))
    iban = Column(String(50))
    swift_bic = Column(String(20))
    invoice_number = Column(String(100))
    gross_amount = Column(Numeric(15, 2))
    manager_confirmed = Column(Boolean, default=False, nullable=False)
    confirmed_by = Column(String(50))
    confirmed_at = Column(DateTime)

    invoice = relationship("Invoice", back_populates="extracted_fields")


class AuditEvent(Base):
    """Immutable audit trail."""
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_id = Column(String(50), index=True)
    actor_user_id = Column(String(50), index=True)
    event_type = Column(String(50), nullable=False, index=True)
    from_status = Column(String(50))
    to_status = Column(String(50))
    payload = Column(JSON, default=dict)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("idx_audit_invoice_time", "invoice_id", "created_at"),
        Index("idx_audit_actor_time", "actor_user_id", "created_at"),
    )


class FailedLoginAttempt(Base):
    """Failure counter and lockout window per login identity."""
    __tablename__ = "login_failed_attempts"

    identity = Column(String(320), primary_key=True)
    attempt_count = Column(Integer, default=0, nullable=False)
    locked_until = Column(DateTime)
    updated_at = Column(DateTime, default=utcnow, nullable=False)


class MfaOtpCode(Base):
    """Active email one-time code, at most one per user."""
    __tablename__ = "mfa_otp_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(50), unique=True, nullable=False, index=True)
    code = Column(String(6), nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
