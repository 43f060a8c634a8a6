from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Sequence

from .state import TicketStatus


@dataclass(frozen=True, slots=True)
class TicketTag:
    """Single tag associated with a ticket."""

    tag_name: str


@dataclass(frozen=True, slots=True)
class TicketComment:
    """Append-only audit entry recorded for every workflow activity."""

    ticket_id: int | None
    commented_by: str
    commented_date: datetime
    comment_event: str
    comment: str = ""
    is_html: bool = False
    recipients: tuple[str, ...] = ()
    comment_id: int | None = None


def derelict_cutoff(hours_old: int, now: datetime) -> datetime:
    """Pending uploads dated strictly before this instant are eligible for purging."""

    return now - timedelta(hours=hours_old)


@dataclass(slots=True)
class TicketAttachment:
    """File metadata attached to a ticket, or pending until the ticket is saved."""

    file_id: int | None = None
    ticket_id: int | None = None
    file_name: str = ""
    file_description: str = ""
    file_size: int = 0
    file_type: str = ""
    is_pending: bool = True
    uploaded_by: str = ""
    uploaded_date: datetime | None = None

    def is_derelict(self, *, hours_old: int, now: datetime) -> bool:
        """Pending uploads older than ``hours_old`` may be purged by a sweep."""

        if not self.is_pending or self.uploaded_date is None:
            return False
        return self.uploaded_date < derelict_cutoff(hours_old, now)


@dataclass(slots=True)
class Ticket:
    """Aggregate root for a help-desk ticket."""

    ticket_id: int | None = None
    title: str = ""
    details: str = ""
    category: str = ""
    ticket_type: str = ""
    priority: str = ""
    owner: str | None = None
    assigned_to: str | None = None
    current_status: TicketStatus = TicketStatus.ACTIVE
    current_status_date: datetime | None = None
    current_status_set_by: str | None = None
    created_by: str | None = None
    created_date: datetime | None = None
    last_update_by: str | None = None
    last_update_date: datetime | None = None
    tag_list: str = ""
    comments: list[TicketComment] = field(default_factory=list)
    attachments: list[TicketAttachment] = field(default_factory=list)
    tags: set[TicketTag] = field(default_factory=set)
    version: int = 0

    def notification_subscribers(self) -> tuple[str, ...]:
        """Users who follow this ticket: the owner and the current assignee."""

        return unique_names((self.owner, self.assigned_to))

    def replace_tags(self, tag_names: Sequence[str]) -> None:
        self.tags = {TicketTag(tag_name=name) for name in tag_names}
        self.tag_list = ",".join(tag_names)


@dataclass(slots=True)
class TicketPage:
    """One page of tickets returned by a listing query."""

    items: Sequence[Ticket]
    page: int
    page_size: int
    total_count: int


def parse_tags(tag_list: str | None) -> list[str]:
    """Split a comma-delimited tag list, trimming blanks and case-insensitive repeats."""

    seen: set[str] = set()
    tags: list[str] = []
    for raw in (tag_list or "").split(","):
        tag = raw.strip()
        if not tag or tag.lower() in seen:
            continue
        seen.add(tag.lower())
        tags.append(tag)
    return tags


def unique_names(names: Sequence[str | None]) -> tuple[str, ...]:
    ordered: list[str] = []
    for name in names:
        if name and name not in ordered:
            ordered.append(name)
    return tuple(ordered)
