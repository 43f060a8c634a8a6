from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol, Sequence

import redis
from rq import Queue, Retry

if TYPE_CHECKING:
    from helpdesk.tickets.models import TicketComment

logger = logging.getLogger(__name__)

DELIVERY_JOB = "helpdesk.workers.notifications.deliver_ticket_event"


class NotificationQueue(Protocol):
    """Fire-and-forget sink for ticket event notifications."""

    def enqueue_ticket_event_notifications(
        self,
        comment: TicketComment,
        is_create_or_give_up: bool,
        recipients: Sequence[str],
    ) -> str | None:
        ...


def comment_payload(
    comment: TicketComment, is_create_or_give_up: bool, recipients: Sequence[str]
) -> dict[str, Any]:
    """Serialisable job payload describing one ticket event."""

    return {
        "ticket_id": comment.ticket_id,
        "comment_id": comment.comment_id,
        "commented_by": comment.commented_by,
        "commented_date": comment.commented_date.isoformat(),
        "comment_event": comment.comment_event,
        "comment": comment.comment,
        "is_html": comment.is_html,
        "is_create_or_give_up": is_create_or_give_up,
        "recipients": list(recipients),
    }


class RQNotificationQueue:
    """Push ticket events onto an RQ queue for the notification worker.

    Enqueue failures are logged and swallowed so a broken broker never fails the workflow
    operation that produced the event.
    """

    def __init__(
        self,
        queue: Queue,
        *,
        job_timeout: int = 60,
        retry: Retry | None = None,
    ) -> None:
        self._queue = queue
        self._job_timeout = job_timeout
        self._retry = retry if retry is not None else Retry(max=3, interval=[5, 15, 30])

    @classmethod
    def from_url(cls, redis_url: str, queue_name: str, *, job_timeout: int = 60) -> RQNotificationQueue:
        return cls(Queue(queue_name, connection=redis.from_url(redis_url)), job_timeout=job_timeout)

    def enqueue_ticket_event_notifications(
        self,
        comment: TicketComment,
        is_create_or_give_up: bool,
        recipients: Sequence[str],
    ) -> str | None:
        payload = comment_payload(comment, is_create_or_give_up, recipients)
        try:
            job = self._queue.enqueue(
                DELIVERY_JOB,
                payload,
                job_timeout=self._job_timeout,
                retry=self._retry,
            )
        except Exception:
            logger.exception("Failed to enqueue notification for ticket %s", comment.ticket_id)
            return None
        return getattr(job, "id", None)
