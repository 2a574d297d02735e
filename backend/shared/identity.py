"""
Identity Provider Client
========================
Primary credential check against the external identity provider.

The approval core never stores passwords; it only asks the provider whether
an email/password pair is valid and applies lockout around that answer.
"""

from abc import ABC, abstractmethod
from typing import Optional

import httpx
import structlog

from .config import settings
from .errors import UpstreamFailure

logger = structlog.get_logger(__name__)


class IdentityProvider(ABC):
    """Answers whether a credential pair is valid."""

    @abstractmethod
    async def verify_password(self, email: str, password: str) -> bool:
        ...


class PasswordGrantIdentityProvider(IdentityProvider):
    """
    Password-grant token endpoint.

    2xx means valid, 400/401/403 mean invalid credentials, anything else is
    reported as an upstream failure so it does not count towards lockout.
    """

    def __init__(
        self,
        token_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token_url = token_url
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def verify_password(self, email: str, password: str) -> bool:
        if not self.token_url:
            raise UpstreamFailure("Identity provider not configured")

        headers = {"apikey": self.api_key} if self.api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.token_url,
                    json={"email": email, "password": password},
                    headers=headers,
                )
        except httpx.HTTPError as e:
            logger.error("Identity provider request failed", error=str(e))
            raise UpstreamFailure("Identity provider unavailable")

        if response.is_success:
            return True
        if response.status_code in (400, 401, 403):
            return False

        logger.error("Identity provider error", status_code=response.status_code)
        raise UpstreamFailure("Identity provider unavailable")


def create_identity_provider() -> IdentityProvider:
    return PasswordGrantIdentityProvider(settings.identity_token_url, settings.identity_api_key)
