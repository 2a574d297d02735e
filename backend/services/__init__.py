"""
Backend Services
================
Approval workflow, access, audit and login security services.
"""

from .access import AccessResolver, can_access
from .audit_log import AuditLog
from .concurrency import ConcurrencyGuard, retry_on_conflict
from .delegations import ApprovalDelegations
from .login_security import LoginLockout, MfaService, role_requires_mfa
from .manager_assignment import ManagerAssignmentResolver
from .workflow_engine import WorkflowEngine, allowed_next_states

__all__ = [
    "AccessResolver",
    "can_access",
    "AuditLog",
    "ConcurrencyGuard",
    "retry_on_conflict",
    "ApprovalDelegations",
    "LoginLockout",
    "MfaService",
    "role_requires_mfa",
    "ManagerAssignmentResolver",
    "WorkflowEngine",
    "allowed_next_states",
]
