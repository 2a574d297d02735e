"""
Authentication Middleware
=========================
Bearer JWT to Actor, plus the MFA gate.

Tokens are issued after the lockout-guarded login. Roles that need MFA get a
token with `mfa=false` that is only good for the MFA endpoints until a code
has been verified and a new token issued.
"""

from datetime import timedelta
from typing import List, Optional

from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, Field
import structlog

from shared.config import settings
from shared.errors import Forbidden
from shared.models import Actor, Role, utcnow
from services.login_security import role_requires_mfa

logger = structlog.get_logger(__name__)

# Bearer token extractor
security = HTTPBearer(auto_error=False)


class TokenPayload(BaseModel):
    """JWT token payload."""
    sub: str
    role: Role
    name: Optional[str] = None
    email: Optional[str] = None
    department_id: Optional[str] = None
    program_ids: List[str] = Field(default_factory=list)
    allowed_pages: List[str] = Field(default_factory=list)
    mfa: bool = False


def create_access_token(
    actor: Actor,
    mfa_verified: bool = False,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a signed access token for `actor`."""
    expire = utcnow() + (expires_delta or timedelta(minutes=settings.jwt_expiry_minutes))
    to_encode = {
        "sub": actor.id,
        "role": actor.role.value,
        "name": actor.full_name,
        "email": actor.email,
        "department_id": actor.department_id,
        "program_ids": actor.program_ids,
        "allowed_pages": actor.allowed_pages,
        "mfa": mfa_verified,
        "exp": expire,
    }
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Optional[TokenPayload]:
    """Decode and validate a JWT token."""
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        return TokenPayload(**payload)
    except (JWTError, ValueError) as e:
        logger.warning("Token decode failed", error=str(e))
        return None


def _actor_from(payload: TokenPayload) -> Actor:
    return Actor(
        id=payload.sub,
        role=payload.role,
        full_name=payload.name,
        email=payload.email,
        department_id=payload.department_id,
        program_ids=payload.program_ids,
        allowed_pages=payload.allowed_pages,
    )


async def require_session(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> TokenPayload:
    """Valid token, MFA not yet required. Raises 401 otherwise."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token_payload = decode_token(credentials.credentials)
    if not token_payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token_payload


async def require_session_actor(payload: TokenPayload = Depends(require_session)) -> Actor:
    return _actor_from(payload)


async def require_actor(payload: TokenPayload = Depends(require_session)) -> Actor:
    """Authenticated actor that has passed MFA where its role needs it."""
    if role_requires_mfa(payload.role) and not payload.mfa:
        raise Forbidden("MFA verification required")
    return _actor_from(payload)


def require_role(*roles: Role):
    """
    Dependency factory for role-based authorization.

    Usage:
        @router.get("/admin/audit-log", dependencies=[Depends(require_role(Role.ADMIN))])
    """
    allowed = frozenset(roles)

    async def check_role(actor: Actor = Depends(require_actor)) -> Actor:
        if actor.role not in allowed:
            raise Forbidden()
        return actor

    return check_role
