"""
Approval delegation management.
"""

from datetime import date

import pytest

from shared.errors import InvalidRequest, NotFound
from services.delegations import ApprovalDelegations


@pytest.fixture
def delegations(session_factory):
    return ApprovalDelegations(session_factory)


async def test_create_and_list_latest_first(delegations, people):
    admin = people["u-adm"]
    older = await delegations.create(admin, "u-mgr", "u-mgr2", date(2026, 1, 5), date(2026, 1, 9))
    newer = await delegations.create(admin, "u-mgr2", "u-mgr", date(2026, 4, 1), date(2026, 4, 1))

    listed = await delegations.list()

    assert [d.id for d in listed] == [newer.id, older.id]
    assert listed[1].delegator_name == "Mia Manager"
    assert listed[1].delegate_name == "Max Manager"


@pytest.mark.parametrize(
    "delegate,valid_from,valid_until,message",
    [
        ("u-mgr", date(2026, 1, 1), date(2026, 1, 2), "Delegator and delegate cannot be the same user"),
        ("u-mgr2", date(2026, 1, 2), date(2026, 1, 1), "valid_until must be on or after valid_from"),
        ("u-ghost", date(2026, 1, 1), date(2026, 1, 2), "Unknown delegator or delegate"),
    ],
)
async def test_rejected_requests(delegations, people, delegate, valid_from, valid_until, message):
    with pytest.raises(InvalidRequest) as exc:
        await delegations.create(people["u-adm"], "u-mgr", delegate, valid_from, valid_until)
    assert exc.value.message == message
    assert await delegations.list() == []


async def test_remove(delegations, people):
    created = await delegations.create(people["u-adm"], "u-mgr", "u-mgr2", date(2026, 1, 1), date(2026, 1, 1))

    await delegations.remove(people["u-adm"], created.id)

    assert await delegations.list() == []
    with pytest.raises(NotFound):
        await delegations.remove(people["u-adm"], created.id)
