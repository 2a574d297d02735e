"""
Manager Assignment
==================
Maps an invoice's department/program to the manager who approves it.

Priority:
1. explicit override keyed by the normalized program name
2. the department's ordered default-manager list
3. the first active manager whose programs (then department) match
4. nobody
"""

import re
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from shared.db_models import DepartmentManager, Profile, Program, ProgramManagerOverride
from shared.models import Role

logger = structlog.get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_program_key(name: Optional[str]) -> str:
    """Lower-case, trimmed, inner whitespace collapsed."""
    return _WHITESPACE.sub(" ", (name or "").strip().lower())


def match_override_key(program_name: str, keys: List[str]) -> Optional[str]:
    """Exact normalized match first, then the longest key contained in the name."""
    normalized = normalize_program_key(program_name)
    if not normalized:
        return None
    if normalized in keys:
        return normalized
    contained = [k for k in keys if k and k in normalized]
    if not contained:
        return None
    return sorted(contained, key=lambda k: (-len(k), k))[0]


class ManagerAssignmentResolver:
    """Deterministic manager lookup for new and resubmitted invoices."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def resolve(self, department_id: Optional[str], program_id: Optional[str]) -> Optional[str]:
        async with self._session_factory() as session:
            return await self.resolve_in(session, department_id, program_id)

    async def resolve_in(
        self,
        session: AsyncSession,
        department_id: Optional[str],
        program_id: Optional[str],
    ) -> Optional[str]:
        """Same as `resolve`, reusing the caller's session."""
        if program_id:
            manager_id = await self._from_override(session, program_id)
            if manager_id:
                logger.debug("Manager from program override", program_id=program_id, manager_id=manager_id)
                return manager_id

        if department_id:
            row = (
                await session.execute(
                    select(DepartmentManager.manager_user_id)
                    .where(DepartmentManager.department_id == department_id)
                    .order_by(DepartmentManager.sort_order, DepartmentManager.id)
                    .limit(1)
                )
            ).first()
            if row:
                return row.manager_user_id

        if program_id or department_id:
            managers = (
                await session.execute(
                    select(Profile)
                    .where(Profile.role == Role.MANAGER)
                    .where(Profile.is_active.is_(True))
                    .order_by(Profile.created_at, Profile.id)
                )
            ).scalars().all()
            if program_id:
                for manager in managers:
                    if program_id in (manager.program_ids or []):
                        return manager.id
            if department_id:
                for manager in managers:
                    if manager.department_id == department_id:
                        return manager.id

        logger.info("No manager resolved", department_id=department_id, program_id=program_id)
        return None

    async def _from_override(self, session: AsyncSession, program_id: str) -> Optional[str]:
        program = await session.get(Program, program_id)
        if program is None or not program.name:
            return None

        overrides = {
            row.program_name_key: row.manager_user_id
            for row in await session.execute(
                select(ProgramManagerOverride.program_name_key, ProgramManagerOverride.manager_user_id)
            )
        }
        key = match_override_key(program.name, list(overrides))
        if key is None:
            return None

        manager = await session.get(Profile, overrides[key])
        if manager is None or not manager.is_active or manager.role != Role.MANAGER:
            logger.warning("Override manager unavailable", program_name_key=key)
            return None
        return manager.id
