"""Declarative permission table for ticket workflow activities.

Every rule is a predicate over :class:`TicketFacts`, a snapshot of booleans derived from
the ticket and the acting user. Activities missing from ``ACTIVITY_RULES`` are denied.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Mapping

from .activities import TicketActivity
from .models import Ticket

Rule = Callable[["TicketFacts"], bool]


@dataclass(frozen=True, slots=True)
class ActingUser:
    """Role facts about the user attempting an activity."""

    user_name: str
    is_valid_role: bool
    is_staff: bool


@dataclass(frozen=True, slots=True)
class TicketFacts:
    """Boolean facts the permission rules are evaluated against."""

    is_valid_role: bool
    is_staff: bool
    is_assigned: bool
    is_open: bool
    is_assigned_to_me: bool
    is_owned_by_me: bool
    is_more_info: bool
    is_resolved: bool

    @classmethod
    def gather(cls, ticket: Ticket | None, user: ActingUser) -> TicketFacts:
        # Activities that are not tied to a ticket are checked against an empty one.
        snapshot = ticket if ticket is not None else Ticket()
        status = snapshot.current_status
        return cls(
            is_valid_role=user.is_valid_role,
            is_staff=user.is_staff,
            is_assigned=bool(snapshot.assigned_to),
            is_open=status.is_open,
            is_assigned_to_me=bool(snapshot.assigned_to) and snapshot.assigned_to == user.user_name,
            is_owned_by_me=snapshot.owner == user.user_name,
            is_more_info=status.is_more_info,
            is_resolved=status.is_resolved,
        )

    @property
    def is_workable(self) -> bool:
        return self.is_open or self.is_resolved


def _always(_: TicketFacts) -> bool:
    return True


def _take_over(f: TicketFacts) -> bool:
    return f.is_workable and not f.is_assigned_to_me and f.is_staff


def _assign(f: TicketFacts) -> bool:
    return f.is_workable and f.is_staff and not f.is_assigned


def _reassign(f: TicketFacts) -> bool:
    return f.is_workable and f.is_staff and f.is_assigned and not f.is_assigned_to_me


def _pass(f: TicketFacts) -> bool:
    return f.is_workable and f.is_staff and f.is_assigned_to_me


def _resolve_or_request_info(f: TicketFacts) -> bool:
    return f.is_open and not f.is_more_info and f.is_assigned_to_me


def _force_close(f: TicketFacts) -> bool:
    # Owners of a resolved ticket close it with the plain Close activity instead.
    return (
        f.is_workable
        and (f.is_assigned_to_me or f.is_owned_by_me)
        and not (f.is_resolved and f.is_owned_by_me)
    )


ACTIVITY_RULES: Mapping[TicketActivity, Rule] = {
    TicketActivity.NO_CHANGE: _always,
    TicketActivity.GET_TICKET_INFO: _always,
    TicketActivity.CREATE: _always,
    TicketActivity.CREATE_ON_BEHALF_OF: _always,
    TicketActivity.MODIFY_ATTACHMENTS: lambda f: f.is_open,
    TicketActivity.EDIT_TICKET_INFO: lambda f: f.is_open and (f.is_staff or f.is_owned_by_me),
    TicketActivity.ADD_COMMENT: lambda f: f.is_open and not f.is_more_info,
    TicketActivity.SUPPLY_MORE_INFO: lambda f: f.is_more_info,
    TicketActivity.REQUEST_MORE_INFO: _resolve_or_request_info,
    TicketActivity.RESOLVE: _resolve_or_request_info,
    TicketActivity.CANCEL_MORE_INFO: lambda f: f.is_more_info and f.is_assigned_to_me,
    TicketActivity.CLOSE: lambda f: f.is_resolved and f.is_owned_by_me,
    TicketActivity.REOPEN: lambda f: not f.is_open,
    TicketActivity.TAKE_OVER: _take_over,
    TicketActivity.TAKE_OVER_WITH_PRIORITY: _take_over,
    TicketActivity.ASSIGN: _assign,
    TicketActivity.ASSIGN_WITH_PRIORITY: _assign,
    TicketActivity.REASSIGN: _reassign,
    TicketActivity.REASSIGN_WITH_PRIORITY: _reassign,
    TicketActivity.PASS: _pass,
    TicketActivity.PASS_WITH_PRIORITY: _pass,
    TicketActivity.GIVE_UP: lambda f: f.is_workable and f.is_assigned_to_me,
    TicketActivity.FORCE_CLOSE: _force_close,
}


def is_permitted(facts: TicketFacts, activity: TicketActivity) -> bool:
    """Evaluate the permission table; unknown activities are denied."""

    if not facts.is_valid_role:
        return False
    rule = ACTIVITY_RULES.get(activity)
    if rule is None:
        return False
    return bool(rule(facts))


def is_allowed(ticket: Ticket | None, activity: TicketActivity, user: ActingUser) -> bool:
    return is_permitted(TicketFacts.gather(ticket, user), activity)


def allowed_activities(ticket: Ticket | None, user: ActingUser) -> list[TicketActivity]:
    facts = TicketFacts.gather(ticket, user)
    return [activity for activity in TicketActivity if is_permitted(facts, activity)]
