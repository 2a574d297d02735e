"""
Authentication Routes
=====================
Lockout-guarded login and email one-time-code MFA.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
import structlog

from shared.errors import InvalidCredentials, InvalidRequest
from shared.identity import IdentityProvider
from shared.models import Actor
from services.login_security import LoginLockout, MfaService, find_actor, role_requires_mfa

from ..dependencies import get_identity_provider, get_lockout, get_mfa
from ..middleware.auth import create_access_token, require_session_actor

logger = structlog.get_logger(__name__)

router = APIRouter()


class LoginRequest(BaseModel):
    """Email/password login."""
    email: str
    password: str


class TokenResponse(BaseModel):
    """Issued access token."""
    ok: bool = True
    access_token: str
    token_type: str = "bearer"
    mfa_required: bool = False


class OtpSentResponse(BaseModel):
    ok: bool = True
    expires_at: datetime


class OtpVerifyRequest(BaseModel):
    code: str


@router.post("/auth/login", response_model=TokenResponse)
async def login(
    body: LoginRequest,
    request: Request,
    lockout: LoginLockout = Depends(get_lockout),
    identity: IdentityProvider = Depends(get_identity_provider),
) -> TokenResponse:
    """
    Check the lockout, then the identity provider.

    Three failures lock the account for thirty minutes (423 with Retry-After);
    the failure that triggers the lock notifies the user and the admins.
    """
    email = body.email.strip().lower()
    if not email or not body.password:
        raise InvalidRequest("Email and password required")

    async def verify() -> bool:
        return await identity.verify_password(email, body.password)

    await lockout.authenticate(email, verify)

    actor: Optional[Actor] = await find_actor(request.app.state.session_factory, email)
    if actor is None:
        logger.warning("Login for unknown or inactive profile", email=email)
        raise InvalidCredentials()

    mfa_required = role_requires_mfa(actor.role)
    logger.info("Login succeeded", user_id=actor.id, mfa_required=mfa_required)
    return TokenResponse(
        access_token=create_access_token(actor, mfa_verified=not mfa_required),
        mfa_required=mfa_required,
    )


@router.post("/auth/mfa/send-otp", response_model=OtpSentResponse)
async def send_otp(
    actor: Actor = Depends(require_session_actor),
    mfa: MfaService = Depends(get_mfa),
) -> OtpSentResponse:
    result = await mfa.issue_otp(actor)
    return OtpSentResponse(expires_at=result.expires_at)


@router.post("/auth/mfa/verify", response_model=TokenResponse)
async def verify_otp(
    body: OtpVerifyRequest,
    actor: Actor = Depends(require_session_actor),
    mfa: MfaService = Depends(get_mfa),
) -> TokenResponse:
    """Exchange a valid code for an MFA-verified token. The code is consumed either way."""
    if not await mfa.verify_otp(actor, body.code):
        raise InvalidRequest("Invalid or expired code")
    return TokenResponse(access_token=create_access_token(actor, mfa_verified=True))
