"""
Approval Delegation Routes
==========================
Admin management of manager approval delegations.
"""

from datetime import date
from typing import List

from fastapi import APIRouter, Depends, Path, status
from pydantic import BaseModel, Field

from shared.models import Actor, Delegation, Role
from services.delegations import ApprovalDelegations

from ..dependencies import get_delegations
from ..middleware.auth import require_role

router = APIRouter()


class CreateDelegationRequest(BaseModel):
    """New delegation; both dates are inclusive."""
    delegator_user_id: str = Field(..., min_length=1)
    delegate_user_id: str = Field(..., min_length=1)
    valid_from: date
    valid_until: date


@router.get("/approval-delegations", response_model=List[Delegation])
async def list_delegations(
    actor: Actor = Depends(require_role(Role.ADMIN)),
    delegations: ApprovalDelegations = Depends(get_delegations),
) -> List[Delegation]:
    return await delegations.list()


@router.post("/approval-delegations", status_code=status.HTTP_201_CREATED, response_model=Delegation)
async def create_delegation(
    request: CreateDelegationRequest,
    actor: Actor = Depends(require_role(Role.ADMIN)),
    delegations: ApprovalDelegations = Depends(get_delegations),
) -> Delegation:
    return await delegations.create(
        actor,
        request.delegator_user_id,
        request.delegate_user_id,
        request.valid_from,
        request.valid_until,
    )


@router.delete("/approval-delegations/{delegation_id}")
async def delete_delegation(
    delegation_id: int = Path(...),
    actor: Actor = Depends(require_role(Role.ADMIN)),
    delegations: ApprovalDelegations = Depends(get_delegations),
):
    await delegations.remove(actor, delegation_id)
    return {"ok": True}
