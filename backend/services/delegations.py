"""
Approval Delegations
====================
Admin-managed, date-bounded hand-over of a manager's approvals.

A delegation from A to B lets B act as the assigned manager on A's
invoices for every day in [valid_from, valid_until]; the workflow engine
checks it when building a transition context.
"""

from datetime import date
from typing import List

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from shared.db_models import ApprovalDelegation, Profile
from shared.errors import InvalidRequest, NotFound
from shared.models import Actor, Delegation

logger = structlog.get_logger(__name__)


class ApprovalDelegations:
    """CRUD over approval_delegations."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def list(self) -> List[Delegation]:
        """All delegations, latest start date first, with names resolved."""
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(ApprovalDelegation).order_by(
                        ApprovalDelegation.valid_from.desc(), ApprovalDelegation.id.desc()
                    )
                )
            ).scalars().all()

            user_ids = {r.delegator_user_id for r in rows} | {r.delegate_user_id for r in rows}
            names = {}
            if user_ids:
                result = await session.execute(
                    select(Profile.id, Profile.full_name).where(Profile.id.in_(user_ids))
                )
                names = {row.id: row.full_name for row in result}

        return [
            Delegation(
                id=r.id,
                delegator_user_id=r.delegator_user_id,
                delegator_name=names.get(r.delegator_user_id),
                delegate_user_id=r.delegate_user_id,
                delegate_name=names.get(r.delegate_user_id),
                valid_from=r.valid_from,
                valid_until=r.valid_until,
            )
            for r in rows
        ]

    async def create(
        self,
        actor: Actor,
        delegator_user_id: str,
        delegate_user_id: str,
        valid_from: date,
        valid_until: date,
    ) -> Delegation:
        """
        Record a new delegation.

        Raises:
            InvalidRequest: same user on both sides, inverted dates, or an unknown user
        """
        if delegator_user_id == delegate_user_id:
            raise InvalidRequest("Delegator and delegate cannot be the same user")
        if valid_until < valid_from:
            raise InvalidRequest("valid_until must be on or after valid_from")

        async with self._session_factory() as session:
            profiles = {
                p.id: p
                for p in (
                    await session.execute(
                        select(Profile).where(Profile.id.in_([delegator_user_id, delegate_user_id]))
                    )
                ).scalars()
            }
            if len(profiles) != 2:
                raise InvalidRequest("Unknown delegator or delegate")

            row = ApprovalDelegation(
                delegator_user_id=delegator_user_id,
                delegate_user_id=delegate_user_id,
                valid_from=valid_from,
                valid_until=valid_until,
            )
            session.add(row)
            await session.commit()
            delegation_id = row.id

        logger.info(
            "Approval delegation created",
            delegation_id=delegation_id,
            delegator=delegator_user_id,
            delegate=delegate_user_id,
            valid_from=valid_from.isoformat(),
            valid_until=valid_until.isoformat(),
            admin=actor.id,
        )
        return Delegation(
            id=delegation_id,
            delegator_user_id=delegator_user_id,
            delegator_name=profiles[delegator_user_id].full_name,
            delegate_user_id=delegate_user_id,
            delegate_name=profiles[delegate_user_id].full_name,
            valid_from=valid_from,
            valid_until=valid_until,
        )

    async def remove(self, actor: Actor, delegation_id: int) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(ApprovalDelegation).where(ApprovalDelegation.id == delegation_id)
            )
            await session.commit()
        if result.rowcount == 0:
            raise NotFound("Delegation not found")
        logger.info("Approval delegation removed", delegation_id=delegation_id, admin=actor.id)
