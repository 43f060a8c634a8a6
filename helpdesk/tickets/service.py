from __future__ import annotations

import logging
from dataclasses import fields, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Sequence

from opentelemetry import trace

from helpdesk.metrics import MetricsRegistry, metrics_registry, track_duration
from helpdesk.metrics.definitions import (
    NOTIFICATION_ENQUEUE_FAILURES,
    OUTCOME_PERSIST_FAILED,
    OUTCOME_REJECTED,
    OUTCOME_SUCCEEDED,
    WORKFLOW_DURATION,
    WORKFLOW_OPERATIONS,
)
from helpdesk.services.notifications import NotificationQueue

from .activities import TicketActivity
from .errors import NO_AUTH, TicketNotFoundError, TicketRuleError, TicketServiceError
from .models import Ticket, TicketAttachment, TicketPage
from .repository import TicketRepository
from .security import SecurityContext
from .state import TicketStatus
from .workflow import ClearTags, NotifyRecipients, PersistTicket, RemoveAttachment, TicketWorkflow, WorkflowOutcome

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

Plan = Callable[[TicketWorkflow], Awaitable[WorkflowOutcome]]

_TICKET_ATTRIBUTES = frozenset(
    item.name for item in fields(Ticket) if item.name not in {"ticket_id", "comments", "attachments", "tags", "version"}
)

# Unknown status strings are left as-is so the field diff rejects them.
_STATUS_VALUES = frozenset(status.value for status in TicketStatus)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TicketService:
    """Async host for the ticket workflow.

    Loads tickets from the repository, lets :class:`TicketWorkflow` decide what changes,
    then executes the returned intents: staged repository operations, the create/update
    call, and finally the notification, which is only queued once the save succeeded.
    Workflow operations return ``False`` when the repository reports a failed save.
    """

    def __init__(
        self,
        repository: TicketRepository,
        notifications: NotificationQueue,
        *,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
        page_size: int = 20,
        tag_completion_limit: int = 10,
        pending_attachment_max_age_hours: int = 48,
    ) -> None:
        self._repository = repository
        self._notifications = notifications
        self._clock = clock or _utcnow
        self._page_size = page_size
        self._tag_completion_limit = tag_completion_limit
        self._pending_attachment_max_age_hours = pending_attachment_max_age_hours
        registry = metrics or metrics_registry
        self._operations = registry.counter(WORKFLOW_OPERATIONS, label_names=("activity", "outcome"))
        self._duration = registry.distribution(WORKFLOW_DURATION, label_names=("activity",))
        self._enqueue_failures = registry.counter(NOTIFICATION_ENQUEUE_FAILURES)

    def workflow_for(self, actor: SecurityContext) -> TicketWorkflow:
        return TicketWorkflow(actor, clock=self._clock)

    async def get_ticket(self, ticket_id: int, *, actor: SecurityContext) -> Ticket:
        ticket = await self._load(ticket_id)
        self._require(actor, ticket, TicketActivity.GET_TICKET_INFO, "User is not authorized to view the ticket")
        return ticket

    async def list_tickets(
        self,
        *,
        actor: SecurityContext,
        page: int = 0,
        page_size: int | None = None,
        sort: Sequence[tuple[str, str]] | None = None,
        filters: Mapping[str, Any] | None = None,
    ) -> TicketPage:
        self._require(actor, None, TicketActivity.GET_TICKET_INFO, "User is not authorized to list tickets")
        return await self._repository.list_tickets(page, page_size or self._page_size, sort, filters)

    async def check_activity(self, ticket_id: int | None, activity: TicketActivity, *, actor: SecurityContext) -> bool:
        ticket = await self._load(ticket_id) if ticket_id is not None else None
        return self.workflow_for(actor).check(ticket, activity)

    async def allowed_activities(self, ticket_id: int, *, actor: SecurityContext) -> list[TicketActivity]:
        ticket = await self._load(ticket_id)
        return self.workflow_for(actor).allowed_activities(ticket)

    async def create_ticket(self, ticket: Ticket, *, actor: SecurityContext) -> int | None:
        """Open ``ticket`` and return its new id, or ``None`` if it could not be saved."""

        async def plan(workflow: TicketWorkflow) -> WorkflowOutcome:
            pending: dict[int, TicketAttachment] = {}
            for reference in ticket.attachments:
                if reference.file_id is None or reference.file_id in pending:
                    continue
                stored = await self._repository.get_pending_attachment(reference.file_id)
                if stored is not None:
                    pending[reference.file_id] = stored
            return workflow.create_new_ticket(ticket, pending)

        outcome = await self._run(TicketActivity.CREATE, None, actor, plan)
        return None if outcome is None else outcome.ticket.ticket_id

    async def add_comment(self, ticket_id: int, comment: str, *, actor: SecurityContext) -> bool:
        async def plan(workflow: TicketWorkflow) -> WorkflowOutcome:
            return workflow.add_comment(await self._load(ticket_id), comment)

        return await self._succeeded(TicketActivity.ADD_COMMENT, ticket_id, actor, plan)

    async def request_more_info(self, ticket_id: int, comment: str, *, actor: SecurityContext) -> bool:
        async def plan(workflow: TicketWorkflow) -> WorkflowOutcome:
            return workflow.request_more_info(await self._load(ticket_id), comment)

        return await self._succeeded(TicketActivity.REQUEST_MORE_INFO, ticket_id, actor, plan)

    async def supply_more_info(
        self, ticket_id: int, comment: str, *, actor: SecurityContext, mark_active: bool = False
    ) -> bool:
        async def plan(workflow: TicketWorkflow) -> WorkflowOutcome:
            return workflow.supply_more_info(await self._load(ticket_id), comment, mark_active=mark_active)

        return await self._succeeded(TicketActivity.SUPPLY_MORE_INFO, ticket_id, actor, plan)

    async def cancel_more_info(self, ticket_id: int, comment: str = "", *, actor: SecurityContext) -> bool:
        async def plan(workflow: TicketWorkflow) -> WorkflowOutcome:
            return workflow.cancel_more_info(await self._load(ticket_id), comment)

        return await self._succeeded(TicketActivity.CANCEL_MORE_INFO, ticket_id, actor, plan)

    async def take_over(
        self, ticket_id: int, comment: str = "", *, actor: SecurityContext, priority: str | None = None
    ) -> bool:
        async def plan(workflow: TicketWorkflow) -> WorkflowOutcome:
            return workflow.take_over(await self._load(ticket_id), comment, priority=priority)

        return await self._succeeded(TicketActivity.TAKE_OVER, ticket_id, actor, plan)

    async def assign(
        self,
        ticket_id: int,
        assign_to: str | None,
        comment: str = "",
        *,
        actor: SecurityContext,
        priority: str | None = None,
    ) -> bool:
        async def plan(workflow: TicketWorkflow) -> WorkflowOutcome:
            return workflow.assign(await self._load(ticket_id), assign_to, comment, priority=priority)

        return await self._succeeded(TicketActivity.ASSIGN, ticket_id, actor, plan)

    async def resolve(self, ticket_id: int, comment: str, *, actor: SecurityContext) -> bool:
        async def plan(workflow: TicketWorkflow) -> WorkflowOutcome:
            return workflow.resolve(await self._load(ticket_id), comment)

        return await self._succeeded(TicketActivity.RESOLVE, ticket_id, actor, plan)

    async def close(
        self, ticket_id: int, comment: str = "", *, actor: SecurityContext, force: bool = False
    ) -> bool:
        async def plan(workflow: TicketWorkflow) -> WorkflowOutcome:
            return workflow.close(await self._load(ticket_id), comment, force=force)

        activity = TicketActivity.FORCE_CLOSE if force else TicketActivity.CLOSE
        return await self._succeeded(activity, ticket_id, actor, plan)

    async def give_up(self, ticket_id: int, comment: str, *, actor: SecurityContext) -> bool:
        async def plan(workflow: TicketWorkflow) -> WorkflowOutcome:
            return workflow.give_up(await self._load(ticket_id), comment)

        return await self._succeeded(TicketActivity.GIVE_UP, ticket_id, actor, plan)

    async def reopen(
        self,
        ticket_id: int,
        comment: str,
        *,
        actor: SecurityContext,
        assign_to_me: bool = False,
        own_it: bool = False,
    ) -> bool:
        async def plan(workflow: TicketWorkflow) -> WorkflowOutcome:
            return workflow.reopen(await self._load(ticket_id), comment, assign_to_me=assign_to_me, own_it=own_it)

        return await self._succeeded(TicketActivity.REOPEN, ticket_id, actor, plan)

    async def modify_attachments(
        self,
        ticket_id: int,
        attachments: Sequence[TicketAttachment],
        comment: str = "",
        *,
        actor: SecurityContext,
    ) -> bool:
        async def plan(workflow: TicketWorkflow) -> WorkflowOutcome:
            return workflow.modify_attachments(await self._load(ticket_id), attachments, comment)

        return await self._succeeded(TicketActivity.MODIFY_ATTACHMENTS, ticket_id, actor, plan)

    async def edit_ticket_details(
        self,
        ticket_id: int,
        updates: Mapping[str, Any],
        comment: str = "",
        *,
        actor: SecurityContext,
    ) -> bool:
        """Apply ``updates`` (ticket attribute name -> new value) as one detail edit."""

        unknown = sorted(set(updates) - _TICKET_ATTRIBUTES)
        if unknown:
            raise TicketRuleError.single("ticketInfo", f"Unknown ticket fields: {', '.join(unknown)}")

        async def plan(workflow: TicketWorkflow) -> WorkflowOutcome:
            previous = await self._load(ticket_id)
            values = dict(updates)
            status = values.get("current_status")
            if isinstance(status, str) and status in _STATUS_VALUES:
                values["current_status"] = TicketStatus(status)
            proposed = replace(
                previous,
                comments=list(previous.comments),
                attachments=list(previous.attachments),
                tags=set(previous.tags),
                **values,
            )
            return workflow.edit_ticket_details(proposed, previous, comment)

        return await self._succeeded(TicketActivity.EDIT_TICKET_INFO, ticket_id, actor, plan)

    async def add_pending_attachment(
        self, ticket_id: int | None, attachment: TicketAttachment, *, actor: SecurityContext
    ) -> int:
        if ticket_id is not None:
            attachment.ticket_id = ticket_id
        attachment.is_pending = True
        attachment.uploaded_by = actor.current_user_name
        attachment.uploaded_date = self._clock()
        return await self._repository.add_pending_attachment(attachment)

    async def get_attachment(self, file_id: int, *, actor: SecurityContext) -> TicketAttachment | None:
        self._require(actor, None, TicketActivity.GET_TICKET_INFO, "User is not authorized to view attachments")
        return await self._repository.get_attachment(file_id)

    async def clean_up_derelict_attachments(self, hours_old: int | None = None) -> bool:
        return await self._repository.clean_up_derelict_attachments(
            hours_old if hours_old is not None else self._pending_attachment_max_age_hours
        )

    async def get_tag_completion_list(self, partial_tag_list: str, max_count: int | None = None) -> list[str]:
        """Suggest completions for the last element of a comma-separated tag list."""

        tags = [tag.strip() for tag in partial_tag_list.split(",")]
        text_to_check = tags[-1]
        if len(text_to_check) < 2:
            return []
        fixed_text = "".join(f"{tag}," for tag in tags[:-1])
        used = {tag.upper() for tag in tags}
        candidates = await self._repository.get_distinct_tags_starting_with(
            text_to_check, max_count or self._tag_completion_limit
        )
        return [fixed_text + tag for tag in candidates if tag.upper() not in used]

    async def _load(self, ticket_id: int | None) -> Ticket:
        ticket = await self._repository.get_ticket(ticket_id) if ticket_id is not None else None
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    def _require(
        self, actor: SecurityContext, ticket: Ticket | None, activity: TicketActivity, message: str
    ) -> None:
        if not self.workflow_for(actor).check(ticket, activity):
            raise TicketRuleError.single(NO_AUTH, message)

    async def _succeeded(
        self, activity: TicketActivity, ticket_id: int, actor: SecurityContext, plan: Plan
    ) -> bool:
        return await self._run(activity, ticket_id, actor, plan) is not None

    async def _run(
        self,
        activity: TicketActivity,
        ticket_id: int | None,
        actor: SecurityContext,
        plan: Plan,
    ) -> WorkflowOutcome | None:
        label = activity.value
        with tracer.start_as_current_span(f"ticket.{label}") as span, track_duration(
            self._duration, labels={"activity": label}
        ):
            span.set_attribute("ticket.activity", label)
            if ticket_id is not None:
                span.set_attribute("ticket.id", ticket_id)
            try:
                outcome = await plan(self.workflow_for(actor))
            except TicketServiceError:
                self._record(label, OUTCOME_REJECTED)
                raise
            label = outcome.activity.value
            span.set_attribute("ticket.activity", label)

            persisted = await self._execute(outcome)
            if outcome.ticket.ticket_id is not None:
                span.set_attribute("ticket.id", outcome.ticket.ticket_id)
            self._record(label, OUTCOME_SUCCEEDED if persisted else OUTCOME_PERSIST_FAILED)
        return outcome if persisted else None

    async def _execute(self, outcome: WorkflowOutcome) -> bool:
        for intent in outcome.intents:
            if isinstance(intent, ClearTags):
                await self._repository.clear_tags(intent.ticket, commit=False)
            elif isinstance(intent, RemoveAttachment):
                await self._repository.remove_attachment(intent.attachment, commit=False)
            elif isinstance(intent, PersistTicket):
                if intent.is_new:
                    saved = await self._repository.create_ticket(intent.ticket)
                else:
                    saved = await self._repository.update_ticket(intent.ticket)
                if not saved:
                    logger.warning(
                        "Could not save %s on ticket %s", outcome.activity.value, intent.ticket.ticket_id
                    )
                    return False
            elif isinstance(intent, NotifyRecipients):
                self._notify(outcome, intent)
        return True

    def _notify(self, outcome: WorkflowOutcome, intent: NotifyRecipients) -> None:
        # The saved copy of the event is the last comment and carries the stored ids.
        comment = outcome.ticket.comments[-1] if outcome.ticket.comments else intent.comment
        if comment.ticket_id is None:
            comment = replace(comment, ticket_id=outcome.ticket.ticket_id)
        job_id = self._notifications.enqueue_ticket_event_notifications(
            comment, intent.is_create_or_give_up, intent.recipients
        )
        if job_id is None:
            self._enqueue_failures.inc()

    def _record(self, activity: str, outcome: str) -> None:
        self._operations.inc(labels={"activity": activity, "outcome": outcome})
