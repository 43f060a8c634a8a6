"""Fixed sentences describing workflow events in a ticket's audit trail."""

from __future__ import annotations

from typing import Mapping

from .activities import TicketActivity, TicketCommentFlag

_WITHOUT_COMMENT = " without comment"

# Positional arguments: {0}, {1}, ... are supplied by the workflow in a fixed order.
_EVENT_TEMPLATES: Mapping[TicketActivity, str] = {
    TicketActivity.CREATE: "created the ticket",
    TicketActivity.CREATE_ON_BEHALF_OF: "created the ticket on behalf of {0}",
    TicketActivity.ADD_COMMENT: "added a comment",
    TicketActivity.REQUEST_MORE_INFO: "requested more information",
    TicketActivity.SUPPLY_MORE_INFO: "provided more information {0}",
    TicketActivity.CANCEL_MORE_INFO: "cancelled the request for more information",
    TicketActivity.RESOLVE: "resolved the ticket",
    TicketActivity.CLOSE: "closed the ticket",
    TicketActivity.FORCE_CLOSE: "force-closed the ticket",
    TicketActivity.GIVE_UP: "gave up on the ticket",
    TicketActivity.REOPEN: "re-opened the ticket{0}{1}",
    TicketActivity.TAKE_OVER: "took over the ticket{0}",
    TicketActivity.TAKE_OVER_WITH_PRIORITY: "took over the ticket{0} and set the priority to {1}",
    TicketActivity.ASSIGN: "assigned the ticket to {1}",
    TicketActivity.ASSIGN_WITH_PRIORITY: "assigned the ticket to {1} at {2} priority",
    TicketActivity.REASSIGN: "reassigned the ticket from {0} to {1}",
    TicketActivity.REASSIGN_WITH_PRIORITY: "reassigned the ticket from {0} to {1} at {2} priority",
    TicketActivity.PASS: "passed the ticket to {1}",
    TicketActivity.PASS_WITH_PRIORITY: "passed the ticket to {1} at {2} priority",
    TicketActivity.MODIFY_ATTACHMENTS: "modified the ticket's attachments",
    TicketActivity.EDIT_TICKET_INFO: "edited the ticket's details",
}


def get_comment_text(
    activity: TicketActivity, flag: TicketCommentFlag, *args: str | None
) -> str:
    """Render the event sentence for ``activity``.

    The same ``(activity, flag, args)`` always yields the same text; the result is stored
    verbatim as the comment's event and never regenerated.
    """

    template = _EVENT_TEMPLATES.get(activity)
    if template is None:
        raise ValueError(f"Activity {activity.value} does not produce an audit event")

    text = template.format(*("" if arg is None else str(arg) for arg in args))
    if flag is TicketCommentFlag.NOT_SUPPLIED:
        text += _WITHOUT_COMMENT
    return text
