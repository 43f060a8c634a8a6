"""Catalog of workflow activities a user can attempt against a ticket."""

from __future__ import annotations

from enum import Enum


class TicketActivity(str, Enum):
    """Named workflow actions, evaluated by the permission table."""

    NO_CHANGE = "NoChange"
    GET_TICKET_INFO = "GetTicketInfo"
    CREATE = "Create"
    CREATE_ON_BEHALF_OF = "CreateOnBehalfOf"
    ADD_COMMENT = "AddComment"
    REQUEST_MORE_INFO = "RequestMoreInfo"
    SUPPLY_MORE_INFO = "SupplyMoreInfo"
    CANCEL_MORE_INFO = "CancelMoreInfo"
    RESOLVE = "Resolve"
    CLOSE = "Close"
    FORCE_CLOSE = "ForceClose"
    GIVE_UP = "GiveUp"
    REOPEN = "ReOpen"
    TAKE_OVER = "TakeOver"
    TAKE_OVER_WITH_PRIORITY = "TakeOverWithPriority"
    ASSIGN = "Assign"
    ASSIGN_WITH_PRIORITY = "AssignWithPriority"
    REASSIGN = "ReAssign"
    REASSIGN_WITH_PRIORITY = "ReAssignWithPriority"
    PASS = "Pass"
    PASS_WITH_PRIORITY = "PassWithPriority"
    MODIFY_ATTACHMENTS = "ModifyAttachments"
    EDIT_TICKET_INFO = "EditTicketInfo"


class TicketCommentFlag(str, Enum):
    """Whether free-text commentary accompanied an activity."""

    NOT_APPLICABLE = "CommentNotApplicable"
    SUPPLIED = "CommentSupplied"
    NOT_SUPPLIED = "CommentNotSupplied"

    @classmethod
    def infer(cls, comment: str | None) -> TicketCommentFlag:
        return cls.SUPPLIED if comment else cls.NOT_SUPPLIED


def infer_assignment_activity(
    assigned_to: str | None, current_user: str, *, with_priority: bool
) -> TicketActivity:
    """Pick the concrete assignment activity from the ticket's current assignee."""

    if not assigned_to:
        return TicketActivity.ASSIGN_WITH_PRIORITY if with_priority else TicketActivity.ASSIGN
    if assigned_to == current_user:
        return TicketActivity.PASS_WITH_PRIORITY if with_priority else TicketActivity.PASS
    return TicketActivity.REASSIGN_WITH_PRIORITY if with_priority else TicketActivity.REASSIGN
