"""
Service Dependencies
====================
FastAPI dependencies returning the services built in the app lifespan.
"""

from fastapi import Request

from shared.identity import IdentityProvider
from services.access import AccessResolver
from services.audit_log import AuditLog
from services.delegations import ApprovalDelegations
from services.login_security import LoginLockout, MfaService
from services.workflow_engine import WorkflowEngine


def get_workflow(request: Request) -> WorkflowEngine:
    return request.app.state.workflow


def get_access(request: Request) -> AccessResolver:
    return request.app.state.access


def get_audit_log(request: Request) -> AuditLog:
    return request.app.state.audit_log


def get_lockout(request: Request) -> LoginLockout:
    return request.app.state.lockout


def get_mfa(request: Request) -> MfaService:
    return request.app.state.mfa


def get_identity_provider(request: Request) -> IdentityProvider:
    return request.app.state.identity_provider


def get_delegations(request: Request) -> ApprovalDelegations:
    return request.app.state.delegations
