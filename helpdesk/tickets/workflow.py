"""Ticket workflow: authorize, mutate and record one activity at a time.

:class:`TicketWorkflow` never talks to storage or the notification queue. Each operation
returns a :class:`WorkflowOutcome` whose ``intents`` tell the host what to persist and
whom to notify. If validation fails, a :class:`TicketRuleError` carrying every violation
is raised before the ticket is touched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Mapping, Sequence, Union

from .activities import TicketActivity, TicketCommentFlag, infer_assignment_activity
from .changes import (
    diff_ticket_fields,
    find_disallowed_changes,
    render_change_narrative,
    validate_ticket_detail_fields,
)
from .errors import NO_AUTH, RuleViolations, TicketRuleError
from .models import Ticket, TicketAttachment, TicketComment, parse_tags, unique_names
from .permissions import allowed_activities, is_allowed
from .security import SecurityContext, acting_user
from .state import TicketStatus
from .text import get_comment_text

logger = logging.getLogger(__name__)

_COMMENT_SEPARATOR = "\n******\n"
_COMMENT_REQUIRED = "A comment is required"
_NOTIFY_POOL_ACTIVITIES = frozenset(
    {TicketActivity.CREATE, TicketActivity.CREATE_ON_BEHALF_OF, TicketActivity.GIVE_UP}
)


@dataclass(frozen=True, slots=True)
class PersistTicket:
    ticket: Ticket
    is_new: bool = False


@dataclass(frozen=True, slots=True)
class ClearTags:
    ticket: Ticket


@dataclass(frozen=True, slots=True)
class RemoveAttachment:
    attachment: TicketAttachment


@dataclass(frozen=True, slots=True)
class NotifyRecipients:
    comment: TicketComment
    is_create_or_give_up: bool
    recipients: tuple[str, ...]


WorkflowIntent = Union[ClearTags, RemoveAttachment, PersistTicket, NotifyRecipients]


@dataclass(slots=True)
class WorkflowOutcome:
    """Mutated ticket, the comment appended to it and the side effects to execute."""

    activity: TicketActivity
    ticket: Ticket
    comment: TicketComment
    intents: list[WorkflowIntent] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TicketWorkflow:
    """Workflow operations executed on behalf of one acting user."""

    def __init__(
        self,
        security: SecurityContext,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._security = security
        self._clock = clock or _utcnow

    @property
    def user_name(self) -> str:
        return self._security.current_user_name

    def check(self, ticket: Ticket | None, activity: TicketActivity) -> bool:
        return is_allowed(ticket, activity, acting_user(self._security))

    def allowed_activities(self, ticket: Ticket | None) -> list[TicketActivity]:
        return allowed_activities(ticket, acting_user(self._security))

    def create_new_ticket(
        self,
        ticket: Ticket,
        pending_attachments: Mapping[int, TicketAttachment] | None = None,
    ) -> WorkflowOutcome:
        """Seed server-assigned fields and open a new ticket.

        ``ticket.attachments`` holds references (file id, name, description) to pending
        uploads; ``pending_attachments`` maps file ids to the stored pending records.
        """

        violations = RuleViolations()
        # CreateOnBehalfOf is granted whenever Create is.
        self._authorize(violations, None, TicketActivity.CREATE, "User is not authorized to create a ticket")

        now = self._clock()
        ticket.created_by = self.user_name
        ticket.created_date = now
        self._set_status(ticket, TicketStatus.initial_state(), now)
        ticket.last_update_by = self.user_name
        ticket.last_update_date = now
        ticket.replace_tags(parse_tags(ticket.tag_list))

        violations.extend(validate_ticket_detail_fields(ticket))
        committed = self._promote_pending(ticket.attachments, pending_attachments or {}, violations)

        if ticket.owner != self.user_name:
            activity = TicketActivity.CREATE_ON_BEHALF_OF
            args: tuple[str | None, ...] = (self._display(ticket.owner),)
        else:
            activity = TicketActivity.CREATE
            args = ()
        self._raise_if_any(activity, ticket, violations)

        ticket.attachments = committed
        return self._finish(
            ticket,
            activity,
            TicketCommentFlag.NOT_APPLICABLE,
            "",
            args,
            subscribers_before=(),
            now=now,
            is_new=True,
        )

    def add_comment(self, ticket: Ticket, comment: str) -> WorkflowOutcome:
        violations = RuleViolations()
        self._authorize(violations, ticket, TicketActivity.ADD_COMMENT, "User is not authorized to comment on the ticket")
        self._require_comment(violations, comment)
        self._raise_if_any(TicketActivity.ADD_COMMENT, ticket, violations)

        return self._finish(
            ticket,
            TicketActivity.ADD_COMMENT,
            TicketCommentFlag.NOT_APPLICABLE,
            comment,
            (),
            subscribers_before=ticket.notification_subscribers(),
            now=self._clock(),
        )

    def request_more_info(self, ticket: Ticket, comment: str) -> WorkflowOutcome:
        violations = RuleViolations()
        self._authorize(
            violations,
            ticket,
            TicketActivity.REQUEST_MORE_INFO,
            "User is not authorized to request more information for the ticket",
        )
        self._require_comment(violations, comment)
        self._raise_if_any(TicketActivity.REQUEST_MORE_INFO, ticket, violations)

        before = ticket.notification_subscribers()
        now = self._clock()
        self._set_status(ticket, TicketStatus.MORE_INFO, now)
        return self._finish(
            ticket,
            TicketActivity.REQUEST_MORE_INFO,
            TicketCommentFlag.NOT_APPLICABLE,
            comment,
            (),
            subscribers_before=before,
            now=now,
        )

    def supply_more_info(self, ticket: Ticket, comment: str, *, mark_active: bool = False) -> WorkflowOutcome:
        violations = RuleViolations()
        self._authorize(
            violations,
            ticket,
            TicketActivity.SUPPLY_MORE_INFO,
            "User is not authorized to supply more information for the ticket",
        )
        self._require_comment(violations, comment)
        self._raise_if_any(TicketActivity.SUPPLY_MORE_INFO, ticket, violations)

        before = ticket.notification_subscribers()
        now = self._clock()
        if mark_active:
            self._set_status(ticket, TicketStatus.ACTIVE, now)
        reactivation = "and reactivated the ticket" if mark_active else "without reactivating the ticket"
        return self._finish(
            ticket,
            TicketActivity.SUPPLY_MORE_INFO,
            TicketCommentFlag.NOT_APPLICABLE,
            comment,
            (reactivation,),
            subscribers_before=before,
            now=now,
        )

    def cancel_more_info(self, ticket: Ticket, comment: str = "") -> WorkflowOutcome:
        violations = RuleViolations()
        self._authorize(
            violations,
            ticket,
            TicketActivity.CANCEL_MORE_INFO,
            "User is not authorized to cancel the request for more information for the ticket",
        )
        self._raise_if_any(TicketActivity.CANCEL_MORE_INFO, ticket, violations)

        before = ticket.notification_subscribers()
        now = self._clock()
        self._set_status(ticket, TicketStatus.ACTIVE, now)
        return self._finish(
            ticket,
            TicketActivity.CANCEL_MORE_INFO,
            TicketCommentFlag.infer(comment),
            comment,
            (),
            subscribers_before=before,
            now=now,
        )

    def take_over(self, ticket: Ticket, comment: str = "", *, priority: str | None = None) -> WorkflowOutcome:
        activity = TicketActivity.TAKE_OVER_WITH_PRIORITY if priority else TicketActivity.TAKE_OVER
        violations = RuleViolations()
        self._authorize(violations, ticket, activity, "User is not authorized to take over a ticket")
        self._raise_if_any(activity, ticket, violations)

        before = ticket.notification_subscribers()
        from_user = f" from {self._display(ticket.assigned_to)}" if ticket.assigned_to else ""
        if priority:
            ticket.priority = priority
        ticket.assigned_to = self.user_name
        return self._finish(
            ticket,
            activity,
            TicketCommentFlag.infer(comment),
            comment,
            (from_user, priority),
            subscribers_before=before,
            now=self._clock(),
        )

    def assign(
        self,
        ticket: Ticket,
        assign_to: str | None,
        comment: str = "",
        *,
        priority: str | None = None,
    ) -> WorkflowOutcome:
        """Assign, pass or reassign depending on who currently holds the ticket."""

        activity = infer_assignment_activity(ticket.assigned_to, self.user_name, with_priority=bool(priority))
        violations = RuleViolations()
        self._authorize(violations, ticket, activity, "User is not authorized to assign a ticket")
        if not assign_to:
            violations.add("assignTo", "You must select a user to which you wish to assign the ticket")
        self._raise_if_any(activity, ticket, violations)

        before = ticket.notification_subscribers()
        args = (self._display(ticket.assigned_to), self._display(assign_to), priority)
        ticket.assigned_to = assign_to
        if priority:
            ticket.priority = priority
        return self._finish(
            ticket,
            activity,
            TicketCommentFlag.infer(comment),
            comment,
            args,
            subscribers_before=before,
            now=self._clock(),
        )

    def resolve(self, ticket: Ticket, comment: str) -> WorkflowOutcome:
        violations = RuleViolations()
        self._authorize(violations, ticket, TicketActivity.RESOLVE, "User is not authorized to resolve ticket")
        self._require_comment(violations, comment)
        self._raise_if_any(TicketActivity.RESOLVE, ticket, violations)

        before = ticket.notification_subscribers()
        now = self._clock()
        self._set_status(ticket, TicketStatus.RESOLVED, now)
        return self._finish(
            ticket,
            TicketActivity.RESOLVE,
            TicketCommentFlag.infer(comment),
            comment,
            (),
            subscribers_before=before,
            now=now,
        )

    def close(self, ticket: Ticket, comment: str = "", *, force: bool = False) -> WorkflowOutcome:
        activity = TicketActivity.FORCE_CLOSE if force else TicketActivity.CLOSE
        violations = RuleViolations()
        self._authorize(violations, ticket, activity, "User is not authorized to close ticket")
        if force:
            self._require_comment(violations, comment)
        self._raise_if_any(activity, ticket, violations)

        before = ticket.notification_subscribers()
        now = self._clock()
        self._set_status(ticket, TicketStatus.CLOSED, now)
        return self._finish(
            ticket,
            activity,
            TicketCommentFlag.infer(comment),
            comment,
            (),
            subscribers_before=before,
            now=now,
        )

    def give_up(self, ticket: Ticket, comment: str) -> WorkflowOutcome:
        violations = RuleViolations()
        self._authorize(violations, ticket, TicketActivity.GIVE_UP, "User is not authorized to give up the ticket")
        self._require_comment(violations, comment)
        self._raise_if_any(TicketActivity.GIVE_UP, ticket, violations)

        before = ticket.notification_subscribers()
        ticket.assigned_to = None
        return self._finish(
            ticket,
            TicketActivity.GIVE_UP,
            TicketCommentFlag.infer(comment),
            comment,
            (),
            subscribers_before=before,
            now=self._clock(),
        )

    def reopen(
        self,
        ticket: Ticket,
        comment: str,
        *,
        assign_to_me: bool = False,
        own_it: bool = False,
    ) -> WorkflowOutcome:
        violations = RuleViolations()
        self._authorize(violations, ticket, TicketActivity.REOPEN, "User is not authorized to re-open ticket")
        self._require_comment(violations, comment)
        self._raise_if_any(TicketActivity.REOPEN, ticket, violations)

        if ticket.owner == self.user_name:
            own_it = False
        before = ticket.notification_subscribers()
        now = self._clock()
        ticket.assigned_to = self.user_name if assign_to_me else None
        if own_it:
            ticket.owner = self.user_name
        self._set_status(ticket, TicketStatus.ACTIVE, now)
        return self._finish(
            ticket,
            TicketActivity.REOPEN,
            TicketCommentFlag.infer(comment),
            comment,
            (
                " as the owner" if own_it else "",
                " and assigned it to themself" if assign_to_me else "",
            ),
            subscribers_before=before,
            now=now,
        )

    def modify_attachments(
        self,
        ticket: Ticket,
        attachments: Sequence[TicketAttachment],
        comment: str = "",
    ) -> WorkflowOutcome:
        """Bring the ticket's attachments in line with ``attachments``.

        Committed attachments, and pending ones uploaded by the acting user, that are absent
        from ``attachments`` are removed; the rest take the supplied name and description and
        pending ones become committed.
        """

        violations = RuleViolations()
        self._authorize(
            violations,
            ticket,
            TicketActivity.MODIFY_ATTACHMENTS,
            "User is not authorized to modify the ticket's attachments",
        )

        desired = {attachment.file_id: attachment for attachment in attachments}
        updates: list[tuple[TicketAttachment, TicketAttachment]] = []
        removals: list[TicketAttachment] = []
        notes: list[str] = []
        changed = False
        for current in ticket.attachments:
            if current.is_pending and current.uploaded_by != self.user_name:
                continue
            wanted = desired.get(current.file_id)
            if wanted is None:
                removals.append(current)
                continue
            if current.file_name != wanted.file_name:
                changed = True
                if not current.is_pending:
                    notes.append(f"changed file name from {current.file_name} to {wanted.file_name}")
            if current.file_description != wanted.file_description:
                changed = True
                if not current.is_pending:
                    notes.append(f"changed file description for file: {wanted.file_name}")
            if current.is_pending:
                changed = True
                notes.append(f"added file: {wanted.file_name}")
            updates.append((current, wanted))
        for removed in removals:
            changed = True
            notes.append(f"removed file: {removed.file_name}")

        if not changed:
            violations.add("attachments", "No changes to ticket's attachments were found.")
        self._raise_if_any(TicketActivity.MODIFY_ATTACHMENTS, ticket, violations)

        for current, wanted in updates:
            current.file_name = wanted.file_name
            current.file_description = wanted.file_description
            current.is_pending = False
        removed_ids = {id(attachment) for attachment in removals}
        ticket.attachments = [a for a in ticket.attachments if id(a) not in removed_ids]

        return self._finish(
            ticket,
            TicketActivity.MODIFY_ATTACHMENTS,
            TicketCommentFlag.infer(comment),
            self._with_change_list(notes, comment),
            (),
            subscribers_before=ticket.notification_subscribers(),
            now=self._clock(),
            staged=[RemoveAttachment(attachment) for attachment in removals],
        )

    def edit_ticket_details(self, ticket: Ticket, previous: Ticket, comment: str = "") -> WorkflowOutcome:
        """Apply detail edits from ``ticket`` against its persisted ``previous`` snapshot."""

        changes = diff_ticket_fields(previous, ticket)
        violations = RuleViolations()
        # Permission is judged on the stored ticket, not on the proposed values.
        self._authorize(violations, previous, TicketActivity.EDIT_TICKET_INFO, "User is not authorized to edit ticket details")
        violations.extend(find_disallowed_changes(changes))
        violations.extend(validate_ticket_detail_fields(ticket))
        if not changes:
            violations.add("ticketInfo", "No changes to ticket's details were found.")
        self._raise_if_any(TicketActivity.EDIT_TICKET_INFO, ticket, violations)

        staged: list[WorkflowIntent] = []
        if "TagList" in changes:
            # Tag sets are small; rebuild them instead of computing a delta.
            staged.append(ClearTags(ticket))
            ticket.replace_tags(parse_tags(ticket.tag_list))

        narrative = render_change_narrative(changes, ticket, self._display)
        return self._finish(
            ticket,
            TicketActivity.EDIT_TICKET_INFO,
            TicketCommentFlag.infer(comment),
            self._join_comment(narrative, comment),
            (),
            subscribers_before=previous.notification_subscribers(),
            now=self._clock(),
            staged=staged,
        )

    def _authorize(
        self,
        violations: RuleViolations,
        ticket: Ticket | None,
        activity: TicketActivity,
        message: str,
    ) -> None:
        if not self.check(ticket, activity):
            violations.add(NO_AUTH, message)

    @staticmethod
    def _require_comment(violations: RuleViolations, comment: str | None) -> None:
        if not comment:
            violations.add("comment", _COMMENT_REQUIRED)

    def _raise_if_any(self, activity: TicketActivity, ticket: Ticket, violations: RuleViolations) -> None:
        if not violations:
            return
        logger.info(
            "Rejected %s on ticket %s for %s: %s",
            activity.value,
            ticket.ticket_id,
            self.user_name,
            ", ".join(violations),
        )
        raise TicketRuleError(violations)

    def _display(self, user_name: str | None) -> str:
        if not user_name:
            return ""
        return self._security.get_user_display_name(user_name)

    def _set_status(self, ticket: Ticket, status: TicketStatus, now: datetime) -> None:
        ticket.current_status = status
        ticket.current_status_date = now
        ticket.current_status_set_by = self.user_name

    def _promote_pending(
        self,
        references: Sequence[TicketAttachment],
        pending: Mapping[int, TicketAttachment],
        violations: RuleViolations,
    ) -> list[TicketAttachment]:
        committed: list[TicketAttachment] = []
        seen: set[int] = set()
        for reference in references:
            if reference.file_id is None or reference.file_id in seen:
                continue
            stored = pending.get(reference.file_id)
            if stored is None:
                violations.add("attachments", f"Pending attachment {reference.file_id} could not be found")
                continue
            if stored.uploaded_by != self.user_name:
                violations.add(
                    "attachments", f"Pending attachment {reference.file_id} was uploaded by another user"
                )
                continue
            seen.add(reference.file_id)
            committed.append(
                replace(
                    stored,
                    file_name=reference.file_name or stored.file_name,
                    file_description=reference.file_description,
                    is_pending=False,
                )
            )
        return committed

    @classmethod
    def _with_change_list(cls, notes: Sequence[str], comment: str) -> str:
        return cls._join_comment("".join(f"- {note}\n" for note in notes), comment)

    @staticmethod
    def _join_comment(prefix: str, comment: str) -> str:
        if comment:
            return f"{prefix}{_COMMENT_SEPARATOR}{comment}"
        return prefix

    def _finish(
        self,
        ticket: Ticket,
        activity: TicketActivity,
        flag: TicketCommentFlag,
        comment: str,
        args: Sequence[str | None],
        *,
        subscribers_before: Sequence[str],
        now: datetime,
        is_new: bool = False,
        staged: Sequence[WorkflowIntent] = (),
    ) -> WorkflowOutcome:
        recipients = unique_names((*subscribers_before, *ticket.notification_subscribers()))
        entry = TicketComment(
            ticket_id=ticket.ticket_id,
            commented_by=self.user_name,
            commented_date=now,
            comment_event=get_comment_text(activity, flag, *args),
            comment=comment or "",
            is_html=False,
            recipients=recipients,
        )
        ticket.comments.append(entry)
        ticket.last_update_by = self.user_name
        ticket.last_update_date = now

        is_create_or_give_up = activity in _NOTIFY_POOL_ACTIVITIES and not ticket.assigned_to
        intents: list[WorkflowIntent] = [
            *staged,
            PersistTicket(ticket, is_new=is_new),
            NotifyRecipients(entry, is_create_or_give_up, recipients),
        ]
        logger.debug("Recorded %s on ticket %s by %s", activity.value, ticket.ticket_id, self.user_name)
        return WorkflowOutcome(activity=activity, ticket=ticket, comment=entry, intents=intents)
