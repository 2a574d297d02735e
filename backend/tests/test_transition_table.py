"""
Exhaustive check of the workflow transition table: every (from, to) pair
against every kind of actor, plus delegation and the own-invoice rule.
"""

import itertools

import pytest

from shared.errors import Forbidden, InvalidTransition
from shared.models import Actor, InvoiceSnapshot, Role, WorkflowSnapshot, WorkflowStatus as S
from services.workflow_engine import TransitionContext, allowed_next_states, authorize_transition

ACTORS = {
    "admin": Actor(id="a1", role=Role.ADMIN),
    "operations": Actor(id="o1", role=Role.OPERATIONS),
    "owner": Actor(id="s1", role=Role.SUBMITTER),
    "other_submitter": Actor(id="s2", role=Role.SUBMITTER),
    "assigned_manager": Actor(id="m1", role=Role.MANAGER),
    "other_manager": Actor(id="m2", role=Role.MANAGER),
    "finance": Actor(id="f1", role=Role.FINANCE),
    "viewer": Actor(id="v1", role=Role.VIEWER),
}

PERMITTED = {
    (S.SUBMITTED, S.PENDING_MANAGER): {"admin", "operations", "owner"},
    (S.SUBMITTED, S.REJECTED): {"admin", "assigned_manager"},
    (S.PENDING_MANAGER, S.APPROVED_BY_MANAGER): {"assigned_manager"},
    (S.PENDING_MANAGER, S.REJECTED): {"admin", "assigned_manager"},
    (S.APPROVED_BY_MANAGER, S.PENDING_ADMIN): {"admin", "operations"},
    (S.APPROVED_BY_MANAGER, S.READY_FOR_PAYMENT): {"admin", "operations"},
    (S.PENDING_ADMIN, S.READY_FOR_PAYMENT): {"admin", "operations"},
    (S.PENDING_ADMIN, S.REJECTED): {"admin", "assigned_manager"},
    (S.READY_FOR_PAYMENT, S.PAID): {"admin", "finance"},
    (S.PAID, S.ARCHIVED): {"admin", "finance"},
    (S.REJECTED, S.PENDING_MANAGER): {"admin", "owner"},
}


def context(actor_key: str, status: S) -> TransitionContext:
    return TransitionContext(
        actor=ACTORS[actor_key],
        invoice=InvoiceSnapshot(id="inv-1", submitter_user_id="s1"),
        workflow=WorkflowSnapshot(invoice_id="inv-1", status=status, version=5, manager_user_id="m1"),
    )


@pytest.mark.parametrize(
    "from_state,to_state",
    list(itertools.product(S, S)),
    ids=lambda s: s.value,
)
@pytest.mark.parametrize("actor_key", list(ACTORS))
def test_every_pair_for_every_actor(actor_key, from_state, to_state):
    ctx = context(actor_key, from_state)
    permitted = PERMITTED.get((from_state, to_state))

    if permitted is None:
        with pytest.raises(InvalidTransition):
            authorize_transition(ctx, to_state, reason="because")
    elif actor_key in permitted:
        rule = authorize_transition(ctx, to_state, reason="because")
        assert rule.to_state == to_state
    else:
        with pytest.raises(Forbidden):
            authorize_transition(ctx, to_state, reason="because")


@pytest.mark.parametrize("from_state", [S.SUBMITTED, S.PENDING_MANAGER, S.PENDING_ADMIN])
def test_rejection_requires_reason(from_state):
    for reason in (None, "", "   "):
        with pytest.raises(InvalidTransition):
            authorize_transition(context("admin", from_state), S.REJECTED, reason=reason)


def test_forbidden_is_reported_before_missing_reason():
    with pytest.raises(Forbidden):
        authorize_transition(context("finance", S.PENDING_MANAGER), S.REJECTED)


def test_manager_cannot_reject_before_assignment():
    ctx = TransitionContext(
        actor=ACTORS["assigned_manager"],
        invoice=InvoiceSnapshot(id="inv-1", submitter_user_id="s1"),
        workflow=WorkflowSnapshot(invoice_id="inv-1", status=S.SUBMITTED, version=1),
    )
    with pytest.raises(Forbidden):
        authorize_transition(ctx, S.REJECTED, reason="duplicate")


def test_inactive_actor_is_forbidden():
    ctx = TransitionContext(
        actor=Actor(id="a1", role=Role.ADMIN, is_active=False),
        invoice=InvoiceSnapshot(id="inv-1"),
        workflow=WorkflowSnapshot(invoice_id="inv-1", status=S.PAID),
    )
    with pytest.raises(Forbidden):
        authorize_transition(ctx, S.ARCHIVED)
    assert allowed_next_states(ctx) == []


@pytest.mark.parametrize("from_state", list(S), ids=lambda s: s.value)
@pytest.mark.parametrize("actor_key", list(ACTORS))
def test_allowed_next_states_agrees_with_table(actor_key, from_state):
    expected = {
        to_state for (frm, to_state), keys in PERMITTED.items()
        if frm == from_state and actor_key in keys
    }
    assert set(allowed_next_states(context(actor_key, from_state))) == expected


def test_archived_is_terminal():
    for actor_key in ACTORS:
        assert allowed_next_states(context(actor_key, S.ARCHIVED)) == []


def test_delegate_acts_as_assigned_manager():
    ctx = TransitionContext(
        actor=ACTORS["other_manager"],
        invoice=InvoiceSnapshot(id="inv-1", submitter_user_id="s1"),
        workflow=WorkflowSnapshot(invoice_id="inv-1", status=S.PENDING_MANAGER, version=2, manager_user_id="m1"),
        is_delegate=True,
    )
    assert set(allowed_next_states(ctx)) == {S.APPROVED_BY_MANAGER, S.REJECTED}


def test_delegation_needs_an_assigned_manager():
    ctx = TransitionContext(
        actor=ACTORS["other_manager"],
        invoice=InvoiceSnapshot(id="inv-1", submitter_user_id="s1"),
        workflow=WorkflowSnapshot(invoice_id="inv-1", status=S.SUBMITTED, version=1),
        is_delegate=True,
    )
    with pytest.raises(Forbidden):
        authorize_transition(ctx, S.REJECTED, reason="duplicate")


@pytest.mark.parametrize("to_state", [S.APPROVED_BY_MANAGER, S.REJECTED], ids=lambda s: s.value)
def test_manager_cannot_review_own_invoice(to_state):
    ctx = TransitionContext(
        actor=ACTORS["assigned_manager"],
        invoice=InvoiceSnapshot(id="inv-1", submitter_user_id="m1"),
        workflow=WorkflowSnapshot(invoice_id="inv-1", status=S.PENDING_MANAGER, version=2, manager_user_id="m1"),
    )
    with pytest.raises(Forbidden, match="your own invoice"):
        authorize_transition(ctx, to_state, reason="mine")
    assert allowed_next_states(ctx) == []


def test_admin_may_reject_own_invoice():
    ctx = TransitionContext(
        actor=ACTORS["admin"],
        invoice=InvoiceSnapshot(id="inv-1", submitter_user_id="a1"),
        workflow=WorkflowSnapshot(invoice_id="inv-1", status=S.PENDING_MANAGER, version=2, manager_user_id="m1"),
    )
    assert authorize_transition(ctx, S.REJECTED, reason="duplicate").to_state == S.REJECTED
