from __future__ import annotations

from enum import Enum


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    ACTIVE = "Active"
    MORE_INFO = "More Info"
    RESOLVED = "Resolved"
    CLOSED = "Closed"

    @property
    def is_open(self) -> bool:
        return self not in (TicketStatus.RESOLVED, TicketStatus.CLOSED)

    @property
    def is_resolved(self) -> bool:
        return self is TicketStatus.RESOLVED

    @property
    def is_more_info(self) -> bool:
        return self is TicketStatus.MORE_INFO

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return cls.ACTIVE
