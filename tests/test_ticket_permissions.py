from __future__ import annotations

import itertools
from dataclasses import fields

import pytest

from helpdesk.tickets.activities import TicketActivity
from helpdesk.tickets.permissions import (
    ACTIVITY_RULES,
    ActingUser,
    TicketFacts,
    allowed_activities,
    is_allowed,
    is_permitted,
)
from helpdesk.tickets.state import TicketStatus
from ticket_factories import make_ticket

A = TicketActivity


def _expected(f: TicketFacts, activity: TicketActivity) -> bool:
    """Independent transcription of the authorization table."""

    if not f.is_valid_role:
        return False
    workable = f.is_open or f.is_resolved
    if activity in (A.NO_CHANGE, A.GET_TICKET_INFO, A.CREATE, A.CREATE_ON_BEHALF_OF):
        return True
    if activity is A.MODIFY_ATTACHMENTS:
        return f.is_open
    if activity is A.EDIT_TICKET_INFO:
        return f.is_open and (f.is_staff or f.is_owned_by_me)
    if activity is A.ADD_COMMENT:
        return f.is_open and not f.is_more_info
    if activity is A.SUPPLY_MORE_INFO:
        return f.is_more_info
    if activity in (A.REQUEST_MORE_INFO, A.RESOLVE):
        return f.is_open and not f.is_more_info and f.is_assigned_to_me
    if activity is A.CANCEL_MORE_INFO:
        return f.is_more_info and f.is_assigned_to_me
    if activity is A.CLOSE:
        return f.is_resolved and f.is_owned_by_me
    if activity is A.REOPEN:
        return not f.is_open
    if activity in (A.TAKE_OVER, A.TAKE_OVER_WITH_PRIORITY):
        return workable and not f.is_assigned_to_me and f.is_staff
    if activity in (A.ASSIGN, A.ASSIGN_WITH_PRIORITY):
        return workable and f.is_staff and not f.is_assigned
    if activity in (A.REASSIGN, A.REASSIGN_WITH_PRIORITY):
        return workable and f.is_staff and f.is_assigned and not f.is_assigned_to_me
    if activity in (A.PASS, A.PASS_WITH_PRIORITY):
        return workable and f.is_staff and f.is_assigned_to_me
    if activity is A.GIVE_UP:
        return workable and f.is_assigned_to_me
    if activity is A.FORCE_CLOSE:
        return (
            workable
            and (f.is_assigned_to_me or f.is_owned_by_me)
            and not (f.is_resolved and f.is_owned_by_me)
        )
    raise AssertionError(f"unhandled activity {activity}")


ALL_FACTS = [
    TicketFacts(*values) for values in itertools.product((False, True), repeat=len(fields(TicketFacts)))
]


def test_rule_table_covers_every_activity():
    assert set(ACTIVITY_RULES) == set(TicketActivity)


@pytest.mark.parametrize("activity", list(TicketActivity), ids=lambda activity: activity.value)
def test_rule_table_matches_authorization_matrix(activity):
    mismatches = [facts for facts in ALL_FACTS if is_permitted(facts, activity) != _expected(facts, activity)]
    assert mismatches == []


def test_invalid_role_denies_everything():
    user = ActingUser("alice", is_valid_role=False, is_staff=True)
    ticket = make_ticket(owner="alice", assigned_to="alice")

    assert allowed_activities(ticket, user) == []
    assert not is_allowed(None, TicketActivity.CREATE, user)


@pytest.mark.parametrize("is_staff", [True, False])
@pytest.mark.parametrize("owner", ["alice", "bob"])
def test_edit_ticket_info_is_denied_on_closed_tickets(is_staff, owner):
    user = ActingUser("alice", is_valid_role=True, is_staff=is_staff)
    ticket = make_ticket(status=TicketStatus.CLOSED, owner=owner, assigned_to="alice")

    assert not is_allowed(ticket, TicketActivity.EDIT_TICKET_INFO, user)


def test_missing_ticket_is_treated_as_unassigned_active_ticket():
    staff = ActingUser("alice", is_valid_role=True, is_staff=True)

    assert is_allowed(None, TicketActivity.CREATE, staff)
    assert is_allowed(None, TicketActivity.ASSIGN, staff)
    assert is_allowed(None, TicketActivity.ADD_COMMENT, staff)
    assert not is_allowed(None, TicketActivity.PASS, staff)
    assert not is_allowed(None, TicketActivity.REOPEN, staff)


def test_owner_of_resolved_ticket_closes_instead_of_force_closing():
    user = ActingUser("bob", is_valid_role=True, is_staff=False)
    ticket = make_ticket(status=TicketStatus.RESOLVED, owner="bob", assigned_to="alice")

    allowed = allowed_activities(ticket, user)

    assert TicketActivity.CLOSE in allowed
    assert TicketActivity.FORCE_CLOSE not in allowed
    assert TicketActivity.REOPEN in allowed
