"""RQ job targets for ticket event notifications."""

from __future__ import annotations

import logging
from typing import Any, Mapping

logger = logging.getLogger("helpdesk.worker.notifications")


def _subject(payload: Mapping[str, Any]) -> str:
    return f"Ticket #{payload.get('ticket_id')}: {payload.get('commented_by')} {payload.get('comment_event')}"


def deliver_ticket_event(payload: Mapping[str, Any]) -> list[str]:
    """Fan one ticket event out to its recipients.

    Events that leave a ticket unassigned (creation, give up) are also announced to the
    staff pool. Returns the addresses the event was delivered to.

    Delivery is recorded on the ``helpdesk.worker.notifications`` logger; an e-mail or
    chat transport attaches as a handler on that logger.
    """

    recipients = list(payload.get("recipients") or ())
    if payload.get("is_create_or_give_up"):
        recipients.append("staff-pool")
    subject = _subject(payload)
    for recipient in recipients:
        logger.info(
            "ticket_event_delivered",
            extra={"to": recipient, "subject": subject, "ticket_id": payload.get("ticket_id")},
        )
    if not recipients:
        logger.info("ticket_event_without_recipients", extra={"ticket_id": payload.get("ticket_id")})
    return recipients
