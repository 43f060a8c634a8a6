"""Ticket workflow domain: permissions, audit text, orchestration and persistence."""

from .activities import TicketActivity, TicketCommentFlag
from .errors import RuleViolations, TicketNotFoundError, TicketRuleError, TicketServiceError
from .models import Ticket, TicketAttachment, TicketComment, TicketPage, TicketTag
from .permissions import ACTIVITY_RULES, ActingUser, TicketFacts, is_allowed, is_permitted
from .repository import PostgresTicketRepository, TicketRepository
from .security import SecurityContext
from .service import TicketService
from .state import TicketStatus
from .text import get_comment_text
from .workflow import TicketWorkflow, WorkflowOutcome

__all__ = [
    "ACTIVITY_RULES",
    "ActingUser",
    "PostgresTicketRepository",
    "RuleViolations",
    "SecurityContext",
    "Ticket",
    "TicketActivity",
    "TicketAttachment",
    "TicketComment",
    "TicketCommentFlag",
    "TicketFacts",
    "TicketNotFoundError",
    "TicketPage",
    "TicketRepository",
    "TicketRuleError",
    "TicketService",
    "TicketServiceError",
    "TicketStatus",
    "TicketTag",
    "TicketWorkflow",
    "WorkflowOutcome",
    "get_comment_text",
    "is_allowed",
    "is_permitted",
]
