"""
Login Security
==============
Failed-login lockout and email one-time codes (MFA).

Lockout state lives in login_failed_attempts, one row per identity. Both the
lock check and the failure count are single SQL statements so concurrent
attempts against one account cannot slip past the threshold.
"""

import hmac
import re
import secrets
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import case, delete, null, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from shared.cache import Cache, RateCounter
from shared.config import settings
from shared.db_models import FailedLoginAttempt, MfaOtpCode, Profile
from shared.errors import AccountLocked, InvalidCredentials, InvalidRequest, RateLimited
from shared.metrics import MetricsCollector, get_metrics
from shared.models import (
    Actor,
    FailureResult,
    LockStatus,
    NotificationKind,
    OtpIssueResult,
    Role,
    utcnow,
)
from shared.notifier import NotificationDispatcher

logger = structlog.get_logger(__name__)

MFA_ROLES = frozenset({Role.MANAGER, Role.ADMIN, Role.FINANCE, Role.OPERATIONS, Role.VIEWER})

_OTP_PATTERN = re.compile(r"^\d{6}$")

attempts_table = FailedLoginAttempt.__table__


def normalize_identity(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def role_requires_mfa(role) -> bool:
    try:
        return Role(role) in MFA_ROLES
    except ValueError:
        return False


def generate_otp() -> str:
    """Uniform 6-digit code without a leading zero."""
    return str(secrets.randbelow(900000) + 100000)


def _upsert_for(session: AsyncSession):
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


class LoginLockout:
    """
    Failure counter and lockout window per identity.

    `record_failure` returns is_locked=True only for the call that moves the
    identity into the locked state, so the lockout notice goes out once.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifications: Optional[NotificationDispatcher] = None,
        max_attempts: Optional[int] = None,
        lockout_minutes: Optional[int] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.notifications = notifications
        self.max_attempts = max_attempts or settings.login_max_attempts
        self.lockout_minutes = lockout_minutes or settings.login_lockout_minutes
        self._metrics = metrics or get_metrics()
        self._clock = clock

    async def check_lock(self, identity: str) -> LockStatus:
        """Report the active lock, clearing an expired one in the same statement."""
        identity = normalize_identity(identity)
        now = self._clock()
        expired = attempts_table.c.locked_until <= now
        stmt = (
            update(attempts_table)
            .where(attempts_table.c.identity == identity)
            .where(attempts_table.c.locked_until.isnot(None))
            .values(
                attempt_count=case((expired, 0), else_=attempts_table.c.attempt_count),
                locked_until=case((expired, null()), else_=attempts_table.c.locked_until),
            )
            .returning(attempts_table.c.locked_until)
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).first()
            await session.commit()

        if row is None or row.locked_until is None:
            return LockStatus(is_locked=False)
        return LockStatus(is_locked=True, locked_until=row.locked_until)

    async def record_failure(
        self,
        identity: str,
        max_attempts: Optional[int] = None,
        lockout_minutes: Optional[int] = None,
    ) -> FailureResult:
        """
        Count one failed login in a single upsert.

        Reaching `max_attempts` sets locked_until and resets the counter.
        While a lock is active the conflict update is skipped and nothing is
        returned, so only the locking call sees a fresh locked_until.
        """
        identity = normalize_identity(identity)
        max_attempts = max_attempts or self.max_attempts
        lockout_minutes = lockout_minutes or self.lockout_minutes
        now = self._clock()
        lock_until = now + timedelta(minutes=lockout_minutes)

        c = attempts_table.c
        unlocked = or_(c.locked_until.is_(None), c.locked_until <= now)
        next_count = c.attempt_count + 1
        locks_at_once = max_attempts <= 1

        async with self._session_factory() as session:
            insert = _upsert_for(session)
            stmt = insert(attempts_table).values(
                identity=identity,
                attempt_count=0 if locks_at_once else 1,
                locked_until=lock_until if locks_at_once else None,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[c.identity],
                set_={
                    "attempt_count": case((next_count >= max_attempts, 0), else_=next_count),
                    "locked_until": case((next_count >= max_attempts, lock_until), else_=null()),
                    "updated_at": now,
                },
                where=unlocked,
            ).returning(c.attempt_count, c.locked_until)
            row = (await session.execute(stmt)).first()
            if row is None:
                current = (
                    await session.execute(
                        select(c.attempt_count, c.locked_until).where(c.identity == identity)
                    )
                ).one()
            await session.commit()

        if row is None:
            logger.info("Login failure while locked", identity=identity)
            self._metrics.record_login_failure(locked=False)
            return FailureResult(
                is_locked=False,
                attempts=current.attempt_count,
                locked_until=current.locked_until,
            )

        just_locked = row.locked_until is not None
        self._metrics.record_login_failure(locked=just_locked)
        if just_locked:
            logger.warning("Login locked", identity=identity, locked_until=lock_until.isoformat())
        else:
            logger.info("Login failure recorded", identity=identity, attempts=row.attempt_count)

        return FailureResult(
            is_locked=just_locked,
            attempts=row.attempt_count,
            locked_until=row.locked_until,
        )

    async def record_success(self, identity: str) -> None:
        identity = normalize_identity(identity)
        async with self._session_factory() as session:
            await session.execute(delete(attempts_table).where(attempts_table.c.identity == identity))
            await session.commit()

    async def authenticate(
        self,
        identity: str,
        verify_credentials: Callable[[], Awaitable[bool]],
    ) -> None:
        """
        Gate a primary credential check with the lockout.

        Raises:
            AccountLocked: inside a lockout window, or this failure caused one
            InvalidCredentials: the check failed below the threshold
        """
        identity = normalize_identity(identity)
        if not identity:
            raise InvalidRequest("Email and password required")

        lock = await self.check_lock(identity)
        if lock.is_locked:
            raise AccountLocked(
                f"Account locked. Try again after {lock.locked_until:%H:%M} UTC.",
                retry_after=self._seconds_until(lock.locked_until),
                locked_until=lock.locked_until.isoformat(),
            )

        if await verify_credentials():
            await self.record_success(identity)
            return

        failure = await self.record_failure(identity)
        if failure.is_locked:
            await self._notify_locked(identity)
            raise AccountLocked(
                f"Too many failed attempts. Account locked for {self.lockout_minutes} minutes.",
                retry_after=self.lockout_minutes * 60,
                locked_until=failure.locked_until.isoformat(),
            )
        raise InvalidCredentials()

    def _seconds_until(self, moment: datetime) -> int:
        return int((moment - self._clock()).total_seconds()) + 1

    async def _notify_locked(self, identity: str) -> None:
        if self.notifications is None:
            return
        data = {"email": identity, "lockout_minutes": self.lockout_minutes}
        self.notifications.dispatch(NotificationKind.ACCOUNT_LOCKED, identity, data)
        async with self._session_factory() as session:
            admins = await session.execute(
                select(Profile.email)
                .where(Profile.role == Role.ADMIN)
                .where(Profile.is_active.is_(True))
            )
            for (email,) in admins:
                self.notifications.dispatch(NotificationKind.ACCOUNT_LOCKED_ADMIN, email, data)


class MfaService:
    """Email one-time codes: at most one live code per user, consumed on verify."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: Cache,
        notifications: NotificationDispatcher,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.cache = cache
        self.rate_counter = RateCounter(cache, namespace="mfa-verify")
        self.notifications = notifications
        self._metrics = metrics or get_metrics()
        self._clock = clock

    @staticmethod
    def _require_mfa(actor: Actor) -> None:
        if not role_requires_mfa(actor.role):
            raise InvalidRequest("MFA not required for your role")

    async def issue_otp(self, actor: Actor, email: Optional[str] = None) -> OtpIssueResult:
        """Replace the actor's code with a fresh one and email it."""
        self._require_mfa(actor)
        recipient = email or actor.email
        if not recipient:
            raise InvalidRequest("No email address on file")

        cooldown_key = f"mfa-send:{actor.id}"
        if await self.cache.get(cooldown_key):
            raise RateLimited(
                "Please wait a few seconds before requesting a new code",
                retry_after=settings.otp_send_cooldown_seconds,
            )
        await self.cache.set(cooldown_key, True, settings.otp_send_cooldown_seconds)

        now = self._clock()
        window_start = now - timedelta(seconds=settings.otp_resend_window_seconds)
        code = generate_otp()
        expires_at = now + timedelta(minutes=settings.otp_expiry_minutes)

        async with self._session_factory() as session:
            recent = (
                await session.execute(
                    select(MfaOtpCode.created_at)
                    .where(MfaOtpCode.user_id == actor.id)
                    .where(MfaOtpCode.created_at >= window_start)
                    .limit(1)
                )
            ).first()
            if recent is not None:
                wait = settings.otp_resend_window_seconds - int((now - recent.created_at).total_seconds())
                raise RateLimited(
                    "Please wait a minute before requesting a new code",
                    retry_after=wait,
                )

            await session.execute(delete(MfaOtpCode).where(MfaOtpCode.user_id == actor.id))
            session.add(MfaOtpCode(user_id=actor.id, code=code, expires_at=expires_at, created_at=now))
            await session.commit()

        self.notifications.dispatch(
            NotificationKind.MFA_OTP,
            recipient,
            {"code": code, "expires_in_minutes": settings.otp_expiry_minutes},
        )
        self._metrics.record_otp_issued()
        logger.info("MFA code issued", user_id=actor.id, expires_at=expires_at.isoformat())
        return OtpIssueResult(expires_at=expires_at)

    async def verify_otp(self, actor: Actor, code: Optional[str]) -> bool:
        """
        Check a code once. The live code is deleted whatever the outcome,
        so a guessed-wrong code has to be re-issued.
        """
        self._require_mfa(actor)

        decision = await self.rate_counter.hit(
            actor.id,
            settings.otp_verify_limit,
            settings.otp_verify_window_seconds,
        )
        if not decision.ok:
            raise RateLimited(
                "Too many verification attempts. Please try again later.",
                retry_after=decision.retry_after,
            )

        code = (code or "").strip()
        if not _OTP_PATTERN.match(code):
            self._metrics.record_otp_verification(ok=False)
            return False

        now = self._clock()
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    delete(MfaOtpCode)
                    .where(MfaOtpCode.user_id == actor.id)
                    .returning(MfaOtpCode.code, MfaOtpCode.expires_at)
                    .execution_options(synchronize_session=False)
                )
            ).first()
            await session.commit()

        ok = (
            row is not None
            and row.expires_at > now
            and hmac.compare_digest(row.code.encode(), code.encode())
        )
        self._metrics.record_otp_verification(ok=ok)
        logger.info("MFA code checked", user_id=actor.id, verified=ok, had_code=row is not None)
        return ok


async def find_actor(
    session_factory: async_sessionmaker[AsyncSession],
    email: str,
) -> Optional[Actor]:
    """Active profile for a login email, as an Actor."""
    async with session_factory() as session:
        profile = (
            await session.execute(select(Profile).where(Profile.email == normalize_identity(email)))
        ).scalar_one_or_none()
    if profile is None or not profile.is_active:
        return None
    return Actor.model_validate(profile)
