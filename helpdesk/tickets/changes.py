"""Field-level diffing and change narratives for ticket detail edits."""

from __future__ import annotations

import re
from operator import attrgetter
from typing import Any, Callable, Mapping

from .errors import RuleViolations
from .models import Ticket

FieldGetter = Callable[[Ticket], Any]

TICKET_FIELDS: Mapping[str, FieldGetter] = {
    "Title": attrgetter("title"),
    "Details": attrgetter("details"),
    "Priority": attrgetter("priority"),
    "Type": attrgetter("ticket_type"),
    "Category": attrgetter("category"),
    "Owner": attrgetter("owner"),
    "TagList": attrgetter("tag_list"),
    "AssignedTo": attrgetter("assigned_to"),
    "CurrentStatus": lambda ticket: getattr(ticket.current_status, "value", ticket.current_status),
    "CurrentStatusDate": attrgetter("current_status_date"),
    "CurrentStatusSetBy": attrgetter("current_status_set_by"),
    "CreatedBy": attrgetter("created_by"),
    "CreatedDate": attrgetter("created_date"),
    "LastUpdateBy": attrgetter("last_update_by"),
    "LastUpdateDate": attrgetter("last_update_date"),
}

EDITABLE_FIELDS: frozenset[str] = frozenset(
    {"Title", "Details", "Priority", "Type", "Category", "Owner", "TagList"}
)

# Long free-text values are summarised rather than copied into the audit text.
_SUMMARISED_FIELDS: frozenset[str] = frozenset({"Title", "Details", "TagList"})

_PASCAL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def friendly_field_name(name: str) -> str:
    return _PASCAL_BOUNDARY.sub(" ", name)


def diff_ticket_fields(previous: Ticket, proposed: Ticket) -> dict[str, Any]:
    """Return changed field name -> previous value, in registry order."""

    changes: dict[str, Any] = {}
    for name, getter in TICKET_FIELDS.items():
        old_value = getter(previous)
        if old_value != getter(proposed):
            changes[name] = old_value
    return changes


def find_disallowed_changes(changes: Mapping[str, Any]) -> RuleViolations:
    violations = RuleViolations()
    for name in changes:
        if name not in EDITABLE_FIELDS:
            violations.add("ticketInfo", f"Changes to field {name} are not allowed")
    return violations


def render_change_narrative(
    changes: Mapping[str, Any],
    proposed: Ticket,
    display_name: Callable[[str | None], str],
) -> str:
    lines: list[str] = []
    for name, old_value in changes.items():
        label = friendly_field_name(name)
        getter = TICKET_FIELDS.get(name)
        new_value = getter(proposed) if getter is not None else None
        if name in _SUMMARISED_FIELDS:
            lines.append(f"- Changed {label}\n")
        elif name == "Owner":
            lines.append(
                f'- Changed {label} from "{display_name(old_value)}" to "{display_name(new_value)}"\n'
            )
        else:
            lines.append(f'- Changed {label} from "{_as_text(old_value)}" to "{_as_text(new_value)}"\n')
    return "".join(lines)


def validate_ticket_detail_fields(ticket: Ticket) -> RuleViolations:
    """Check the fields every ticket must carry."""

    violations = RuleViolations()
    if not ticket.title:
        violations.add("title", "A title is required")
    if not ticket.category:
        violations.add("category", "A category is required")
    if not ticket.ticket_type:
        violations.add("type", "A ticket type is required")
    if not ticket.details:
        violations.add("details", "Details are required")
    if not ticket.owner:
        violations.add("owner", "Owner is required.")
    return violations


def _as_text(value: Any) -> str:
    return "" if value is None else str(value)
