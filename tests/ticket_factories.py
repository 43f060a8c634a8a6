"""Builders and fakes shared by the ticket tests."""

from __future__ import annotations

from datetime import datetime, timezone

from helpdesk.tickets.models import Ticket
from helpdesk.tickets.state import TicketStatus

FIXED_NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

DISPLAY_NAMES = {
    "alice": "Alice Admin",
    "bob": "Bob Builder",
    "carol": "Carol Client",
}


class FakeSecurity:
    """In-memory identity provider used by workflow and service tests."""

    def __init__(self, user_name: str = "alice", *, staff: bool = True, valid: bool = True) -> None:
        self._user_name = user_name
        self._staff = staff
        self._valid = valid

    @property
    def current_user_name(self) -> str:
        return self._user_name

    def is_in_valid_role(self) -> bool:
        return self._valid

    def is_staff(self) -> bool:
        return self._staff

    def get_user_display_name(self, user_name: str | None) -> str:
        if not user_name:
            return ""
        return DISPLAY_NAMES.get(user_name, user_name)

def make_ticket(
    *,
    ticket_id: int | None = 7,
    status: TicketStatus = TicketStatus.ACTIVE,
    owner: str | None = "bob",
    assigned_to: str | None = None,
    tag_list: str = "",
    **overrides,
) -> Ticket:
    ticket = Ticket(
        ticket_id=ticket_id,
        title="Printer on fire",
        details="Third floor printer is smoking",
        category="Hardware",
        ticket_type="Problem",
        priority="Normal",
        owner=owner,
        assigned_to=assigned_to,
        current_status=status,
        current_status_date=FIXED_NOW,
        current_status_set_by=owner,
        created_by=owner,
        created_date=FIXED_NOW,
        last_update_by=owner,
        last_update_date=FIXED_NOW,
        tag_list=tag_list,
        version=3,
    )
    for name, value in overrides.items():
        setattr(ticket, name, value)
    return ticket

