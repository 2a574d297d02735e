"""
Invoice visibility rules.
"""

import pytest

from shared.db_models import OperationsRoomMember
from shared.errors import NotFound
from shared.models import Actor, InvoiceCategory, InvoiceSnapshot, Role, WorkflowSnapshot, WorkflowStatus
from services.access import AccessResolver, can_access, parse_producer


ALL_STATUSES = list(WorkflowStatus)
FINANCE_STATUSES = {WorkflowStatus.READY_FOR_PAYMENT, WorkflowStatus.PAID, WorkflowStatus.ARCHIVED}

ACTORS = {
    "admin": Actor(id="a1", role=Role.ADMIN, full_name="Ada"),
    "operations": Actor(id="o1", role=Role.OPERATIONS, full_name="Olly"),
    "viewer": Actor(id="v1", role=Role.VIEWER, full_name="Vera"),
    "submitter": Actor(id="s2", role=Role.SUBMITTER, full_name="Sue"),
    "assigned_manager": Actor(id="m1", role=Role.MANAGER, full_name="Mia"),
    "other_manager": Actor(id="m2", role=Role.MANAGER, full_name="Max"),
    "finance": Actor(id="f1", role=Role.FINANCE, full_name="Finn"),
}


def expected_visibility(actor_key: str, status: WorkflowStatus) -> bool:
    return {
        "admin": True,
        "operations": True,
        "viewer": True,
        "submitter": False,
        "assigned_manager": True,
        "other_manager": False,
        "finance": status in FINANCE_STATUSES,
    }[actor_key]


def make_invoice(**overrides) -> InvoiceSnapshot:
    data = dict(
        id="inv-1",
        submitter_user_id="s1",
        category=InvoiceCategory.GUEST,
        service_description="Studio guest",
    )
    data.update(overrides)
    return InvoiceSnapshot(**data)


def make_workflow(status=WorkflowStatus.PENDING_MANAGER, manager="m1") -> WorkflowSnapshot:
    return WorkflowSnapshot(invoice_id="inv-1", status=status, version=1, manager_user_id=manager)


@pytest.mark.parametrize("status", ALL_STATUSES, ids=lambda s: s.value)
@pytest.mark.parametrize("actor_key", list(ACTORS))
def test_role_and_status_table(actor_key, status):
    actor = ACTORS[actor_key]
    assert can_access(actor, make_invoice(), make_workflow(status)) is expected_visibility(actor_key, status)


class TestViewerRule:

    def test_other_category_needs_entitlement(self):
        viewer = ACTORS["viewer"]
        assert can_access(viewer, make_invoice(category=InvoiceCategory.OTHER), make_workflow()) is False

    def test_entitlement_unlocks_other_category(self):
        viewer = Actor(id="v1", role=Role.VIEWER, allowed_pages=["other_invoices"])
        assert can_access(viewer, make_invoice(category=InvoiceCategory.OTHER), make_workflow()) is True

    def test_restricted_viewer_falls_through_to_ownership(self):
        viewer = Actor(id="s1", role=Role.VIEWER)
        assert can_access(viewer, make_invoice(category=InvoiceCategory.OTHER), make_workflow()) is True

    def test_restricted_viewer_falls_through_to_operations_room(self):
        viewer = ACTORS["viewer"]
        invoice = make_invoice(category=InvoiceCategory.OTHER)
        assert can_access(viewer, invoice, make_workflow(), in_operations_room=True) is True


class TestOwnershipRules:

    def test_submitter_sees_own_invoice_in_every_state(self):
        owner = Actor(id="s1", role=Role.SUBMITTER)
        for status in ALL_STATUSES:
            assert can_access(owner, make_invoice(), make_workflow(status)) is True

    def test_producer_line_matches_case_insensitively(self):
        producer = Actor(id="p1", role=Role.SUBMITTER, full_name="  pat PRODUCER ")
        invoice = make_invoice(service_description="Panel show\nProducer:  Pat Producer \nDate: Monday")
        assert can_access(producer, invoice, make_workflow()) is True

    def test_producer_match_overrides_manager_assignment(self):
        manager = Actor(id="m2", role=Role.MANAGER, full_name="Max")
        invoice = make_invoice(service_description="producer: max")
        assert can_access(manager, invoice, make_workflow(manager="m1")) is True

    def test_producer_name_mismatch(self):
        actor = Actor(id="p1", role=Role.SUBMITTER, full_name="Pat Producer")
        invoice = make_invoice(service_description="Producer: Pat Producers")
        assert can_access(actor, invoice, make_workflow()) is False


class TestTerminalRules:

    def test_unassigned_manager_not_rescued_by_operations_room(self):
        assert can_access(ACTORS["other_manager"], make_invoice(), make_workflow(), in_operations_room=True) is False

    def test_finance_not_rescued_by_operations_room(self):
        workflow = make_workflow(WorkflowStatus.SUBMITTED)
        assert can_access(ACTORS["finance"], make_invoice(), workflow, in_operations_room=True) is False

    def test_submitter_in_operations_room(self):
        assert can_access(ACTORS["submitter"], make_invoice(), make_workflow(), in_operations_room=True) is True


class TestFailClosed:

    def test_missing_actor(self):
        assert can_access(None, make_invoice(), make_workflow()) is False

    def test_missing_invoice(self):
        assert can_access(ACTORS["admin"], None, make_workflow()) is False

    def test_inactive_admin(self):
        actor = Actor(id="a1", role=Role.ADMIN, is_active=False)
        assert can_access(actor, make_invoice(), make_workflow()) is False

    def test_manager_without_workflow(self):
        assert can_access(ACTORS["assigned_manager"], make_invoice(), None) is False

    def test_finance_without_workflow(self):
        assert can_access(ACTORS["finance"], make_invoice(), None) is False


class TestParseProducer:

    def test_first_producer_line_wins(self):
        assert parse_producer("Producer: A\nProducer: B") == "A"

    def test_empty_value(self):
        assert parse_producer("Producer:   ") is None

    def test_no_description(self):
        assert parse_producer(None) is None


class TestAccessResolver:

    async def test_hidden_and_missing_invoices_look_the_same(self, session_factory, people, submit):
        snapshot = await submit()
        resolver = AccessResolver(session_factory)

        with pytest.raises(NotFound) as hidden:
            await resolver.get_visible_invoice(people["u-sub2"], snapshot.invoice_id)
        with pytest.raises(NotFound) as missing:
            await resolver.get_visible_invoice(people["u-sub2"], "no-such-invoice")

        assert hidden.value.to_dict() == missing.value.to_dict()

    async def test_owner_gets_invoice(self, session_factory, people, submit):
        snapshot = await submit()
        invoice = await AccessResolver(session_factory).get_visible_invoice(people["u-sub"], snapshot.invoice_id)
        assert invoice.id == snapshot.invoice_id
        assert invoice.submitter_user_id == "u-sub"

    async def test_operations_room_membership(self, session_factory, people, submit):
        snapshot = await submit()
        resolver = AccessResolver(session_factory)
        assert await resolver.can_access_invoice(people["u-sub2"], snapshot.invoice_id) is False

        async with session_factory() as session:
            session.add(OperationsRoomMember(user_id="u-sub2"))
            await session.commit()

        assert await resolver.can_access_invoice(people["u-sub2"], snapshot.invoice_id) is True

    async def test_filter_visible_keeps_order_and_drops_unknown(self, session_factory, people, submit):
        first = await submit()
        second = await submit(actor=people["u-sub2"])
        resolver = AccessResolver(session_factory)

        visible = await resolver.filter_visible(
            people["u-sub"], [second.invoice_id, "ghost", first.invoice_id, first.invoice_id]
        )
        assert visible == [first.invoice_id]

        everything = await resolver.filter_visible(people["u-adm"], [second.invoice_id, first.invoice_id])
        assert everything == [second.invoice_id, first.invoice_id]

    async def test_no_actor(self, session_factory, submit):
        snapshot = await submit()
        assert await AccessResolver(session_factory).can_access_invoice(None, snapshot.invoice_id) is False
