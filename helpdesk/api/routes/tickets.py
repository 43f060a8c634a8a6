from __future__ import annotations

from datetime import datetime
from typing import Any, Awaitable

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from helpdesk.dependencies.auth import UserSecurityContext
from helpdesk.dependencies.tickets import ActorDep, TicketServiceDep, require_admin
from helpdesk.tickets.activities import TicketActivity
from helpdesk.tickets.errors import TicketNotFoundError, TicketRuleError
from helpdesk.tickets.models import Ticket, TicketAttachment, TicketComment, TicketPage
from helpdesk.tickets.service import TicketService
from helpdesk.tickets.state import TicketStatus

router = APIRouter(prefix="/tickets", tags=["tickets"])


class TicketCommentModel(BaseModel):
    comment_id: int | None = None
    commented_by: str
    commented_date: datetime
    comment_event: str
    comment: str = ""
    is_html: bool = False
    recipients: list[str] = Field(default_factory=list)

    @classmethod
    def from_entity(cls, entity: TicketComment) -> "TicketCommentModel":
        return cls(
            comment_id=entity.comment_id,
            commented_by=entity.commented_by,
            commented_date=entity.commented_date,
            comment_event=entity.comment_event,
            comment=entity.comment,
            is_html=entity.is_html,
            recipients=list(entity.recipients),
        )


class TicketAttachmentModel(BaseModel):
    file_id: int | None = None
    ticket_id: int | None = None
    file_name: str
    file_description: str = ""
    file_size: int = 0
    file_type: str = ""
    is_pending: bool
    uploaded_by: str
    uploaded_date: datetime | None = None

    @classmethod
    def from_entity(cls, entity: TicketAttachment) -> "TicketAttachmentModel":
        return cls(
            file_id=entity.file_id,
            ticket_id=entity.ticket_id,
            file_name=entity.file_name,
            file_description=entity.file_description,
            file_size=entity.file_size,
            file_type=entity.file_type,
            is_pending=entity.is_pending,
            uploaded_by=entity.uploaded_by,
            uploaded_date=entity.uploaded_date,
        )


class TicketModel(BaseModel):
    ticket_id: int | None
    title: str
    details: str
    category: str
    ticket_type: str
    priority: str
    owner: str | None
    assigned_to: str | None
    current_status: TicketStatus
    current_status_date: datetime | None
    current_status_set_by: str | None
    created_by: str | None
    created_date: datetime | None
    last_update_by: str | None
    last_update_date: datetime | None
    tag_list: str
    version: int

    @classmethod
    def fields_from(cls, ticket: Ticket) -> dict[str, Any]:
        return {
            "ticket_id": ticket.ticket_id,
            "title": ticket.title,
            "details": ticket.details,
            "category": ticket.category,
            "ticket_type": ticket.ticket_type,
            "priority": ticket.priority,
            "owner": ticket.owner,
            "assigned_to": ticket.assigned_to,
            "current_status": ticket.current_status,
            "current_status_date": ticket.current_status_date,
            "current_status_set_by": ticket.current_status_set_by,
            "created_by": ticket.created_by,
            "created_date": ticket.created_date,
            "last_update_by": ticket.last_update_by,
            "last_update_date": ticket.last_update_date,
            "tag_list": ticket.tag_list,
            "version": ticket.version,
        }


class TicketDetailModel(TicketModel):
    comments: list[TicketCommentModel]
    attachments: list[TicketAttachmentModel]
    tags: list[str]

    @classmethod
    def from_entity(cls, ticket: Ticket) -> "TicketDetailModel":
        return cls(
            **cls.fields_from(ticket),
            comments=[TicketCommentModel.from_entity(item) for item in ticket.comments],
            attachments=[TicketAttachmentModel.from_entity(item) for item in ticket.attachments],
            tags=sorted(tag.tag_name for tag in ticket.tags),
        )


class TicketPageModel(BaseModel):
    items: list[TicketModel]
    page: int
    page_size: int
    total_count: int

    @classmethod
    def from_page(cls, page: TicketPage) -> "TicketPageModel":
        return cls(
            items=[TicketModel(**TicketModel.fields_from(item)) for item in page.items],
            page=page.page,
            page_size=page.page_size,
            total_count=page.total_count,
        )


class AttachmentReference(BaseModel):
    file_id: int
    file_name: str
    file_description: str = ""

    def to_entity(self) -> TicketAttachment:
        return TicketAttachment(
            file_id=self.file_id,
            file_name=self.file_name,
            file_description=self.file_description,
        )


class TicketCreateRequest(BaseModel):
    title: str = ""
    details: str = ""
    category: str = ""
    ticket_type: str = ""
    priority: str = ""
    owner: str | None = None
    tag_list: str = ""
    attachments: list[AttachmentReference] = Field(default_factory=list)


class TicketCreatedResponse(BaseModel):
    ticket_id: int


class CommentRequest(BaseModel):
    comment: str = ""


class SupplyMoreInfoRequest(CommentRequest):
    mark_active: bool = False


class TakeOverRequest(CommentRequest):
    priority: str | None = None


class AssignRequest(CommentRequest):
    assign_to: str | None = None
    priority: str | None = None


class CloseRequest(CommentRequest):
    force: bool = False


class ReopenRequest(CommentRequest):
    assign_to_me: bool = False
    own_it: bool = False


class ModifyAttachmentsRequest(CommentRequest):
    attachments: list[AttachmentReference] = Field(default_factory=list)


class EditTicketDetailsRequest(CommentRequest):
    title: str | None = None
    details: str | None = None
    category: str | None = None
    ticket_type: str | None = None
    priority: str | None = None
    owner: str | None = None
    tag_list: str | None = None

    def updates(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude={"comment"})


class PendingAttachmentRequest(BaseModel):
    ticket_id: int | None = None
    file_name: str
    file_description: str = ""
    file_size: int = 0
    file_type: str = ""


class PendingAttachmentResponse(BaseModel):
    file_id: int


class CleanupRequest(BaseModel):
    hours_old: int | None = Field(default=None, ge=1)


class ActivityCheckResponse(BaseModel):
    activity: TicketActivity
    allowed: bool


def _rule_error(exc: TicketRuleError) -> HTTPException:
    code = status.HTTP_403_FORBIDDEN if exc.violations.is_authorization_failure else 422
    return HTTPException(status_code=code, detail=exc.violations.as_dict())


def _parse_sort(values: list[str]) -> list[tuple[str, str]]:
    return [(value[1:], "desc") if value.startswith("-") else (value, "asc") for value in values if value]


async def _apply(
    operation: Awaitable[bool],
    ticket_id: int,
    service: TicketService,
    actor: UserSecurityContext,
) -> TicketDetailModel:
    try:
        saved = await operation
        if not saved:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="The ticket could not be saved; it may have been changed by someone else",
            )
        ticket = await service.get_ticket(ticket_id, actor=actor)
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except TicketRuleError as exc:
        raise _rule_error(exc) from exc
    return TicketDetailModel.from_entity(ticket)


@router.get("", response_model=TicketPageModel, summary="List tickets")
async def list_tickets(
    service: TicketServiceDep,
    actor: ActorDep,
    page: int = Query(default=0, ge=0),
    page_size: int | None = Query(default=None, ge=1, le=200),
    sort: list[str] = Query(default=[]),
    current_status: TicketStatus | None = None,
    assigned_to: str | None = None,
    owner: str | None = None,
) -> TicketPageModel:
    filters = {
        key: value
        for key, value in (
            ("current_status", current_status),
            ("assigned_to", assigned_to),
            ("owner", owner),
        )
        if value is not None
    }
    try:
        result = await service.list_tickets(
            actor=actor, page=page, page_size=page_size, sort=_parse_sort(sort), filters=filters
        )
    except TicketRuleError as exc:
        raise _rule_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TicketPageModel.from_page(result)


@router.post("", response_model=TicketCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    payload: TicketCreateRequest,
    service: TicketServiceDep,
    actor: ActorDep,
) -> TicketCreatedResponse:
    ticket = Ticket(
        title=payload.title,
        details=payload.details,
        category=payload.category,
        ticket_type=payload.ticket_type,
        priority=payload.priority,
        owner=payload.owner or actor.current_user_name,
        tag_list=payload.tag_list,
        attachments=[reference.to_entity() for reference in payload.attachments],
    )
    try:
        ticket_id = await service.create_ticket(ticket, actor=actor)
    except TicketRuleError as exc:
        raise _rule_error(exc) from exc
    if ticket_id is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="The ticket could not be saved")
    return TicketCreatedResponse(ticket_id=ticket_id)


@router.post("/attachments", response_model=PendingAttachmentResponse, status_code=status.HTTP_201_CREATED)
async def add_pending_attachment(
    payload: PendingAttachmentRequest,
    service: TicketServiceDep,
    actor: ActorDep,
) -> PendingAttachmentResponse:
    attachment = TicketAttachment(
        file_name=payload.file_name,
        file_description=payload.file_description,
        file_size=payload.file_size,
        file_type=payload.file_type,
    )
    file_id = await service.add_pending_attachment(payload.ticket_id, attachment, actor=actor)
    return PendingAttachmentResponse(file_id=file_id)


@router.get("/attachments/{file_id}", response_model=TicketAttachmentModel)
async def get_attachment(file_id: int, service: TicketServiceDep, actor: ActorDep) -> TicketAttachmentModel:
    try:
        attachment = await service.get_attachment(file_id, actor=actor)
    except TicketRuleError as exc:
        raise _rule_error(exc) from exc
    if attachment is None:
        raise HTTPException(status_code=404, detail=f"Attachment {file_id} not found")
    return TicketAttachmentModel.from_entity(attachment)


@router.post(
    "/attachments/cleanup",
    summary="Purge stale pending uploads",
    dependencies=[Depends(require_admin)],
)
async def clean_up_derelict_attachments(payload: CleanupRequest, service: TicketServiceDep) -> dict[str, bool]:
    return {"cleaned": await service.clean_up_derelict_attachments(payload.hours_old)}


@router.get("/tags/completions", response_model=list[str])
async def get_tag_completion_list(
    service: TicketServiceDep,
    partial: str = Query(default=""),
    limit: int | None = Query(default=None, ge=1, le=50),
) -> list[str]:
    return await service.get_tag_completion_list(partial, limit)


@router.get("/activities/{activity}", response_model=ActivityCheckResponse)
async def check_new_ticket_activity(
    activity: TicketActivity,
    service: TicketServiceDep,
    actor: ActorDep,
) -> ActivityCheckResponse:
    allowed = await service.check_activity(None, activity, actor=actor)
    return ActivityCheckResponse(activity=activity, allowed=allowed)


@router.get("/{ticket_id}", response_model=TicketDetailModel)
async def get_ticket(ticket_id: int, service: TicketServiceDep, actor: ActorDep) -> TicketDetailModel:
    try:
        ticket = await service.get_ticket(ticket_id, actor=actor)
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except TicketRuleError as exc:
        raise _rule_error(exc) from exc
    return TicketDetailModel.from_entity(ticket)


@router.get("/{ticket_id}/activities", response_model=list[TicketActivity])
async def list_allowed_activities(
    ticket_id: int, service: TicketServiceDep, actor: ActorDep
) -> list[TicketActivity]:
    try:
        return await service.allowed_activities(ticket_id, actor=actor)
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.patch("/{ticket_id}", response_model=TicketDetailModel)
async def edit_ticket_details(
    ticket_id: int, payload: EditTicketDetailsRequest, service: TicketServiceDep, actor: ActorDep
) -> TicketDetailModel:
    operation = service.edit_ticket_details(ticket_id, payload.updates(), payload.comment, actor=actor)
    return await _apply(operation, ticket_id, service, actor)


@router.post("/{ticket_id}/comments", response_model=TicketDetailModel)
async def add_comment(
    ticket_id: int, payload: CommentRequest, service: TicketServiceDep, actor: ActorDep
) -> TicketDetailModel:
    return await _apply(service.add_comment(ticket_id, payload.comment, actor=actor), ticket_id, service, actor)


@router.post("/{ticket_id}/more-info/request", response_model=TicketDetailModel)
async def request_more_info(
    ticket_id: int, payload: CommentRequest, service: TicketServiceDep, actor: ActorDep
) -> TicketDetailModel:
    operation = service.request_more_info(ticket_id, payload.comment, actor=actor)
    return await _apply(operation, ticket_id, service, actor)


@router.post("/{ticket_id}/more-info/supply", response_model=TicketDetailModel)
async def supply_more_info(
    ticket_id: int, payload: SupplyMoreInfoRequest, service: TicketServiceDep, actor: ActorDep
) -> TicketDetailModel:
    operation = service.supply_more_info(ticket_id, payload.comment, actor=actor, mark_active=payload.mark_active)
    return await _apply(operation, ticket_id, service, actor)


@router.post("/{ticket_id}/more-info/cancel", response_model=TicketDetailModel)
async def cancel_more_info(
    ticket_id: int, payload: CommentRequest, service: TicketServiceDep, actor: ActorDep
) -> TicketDetailModel:
    operation = service.cancel_more_info(ticket_id, payload.comment, actor=actor)
    return await _apply(operation, ticket_id, service, actor)


@router.post("/{ticket_id}/take-over", response_model=TicketDetailModel)
async def take_over(
    ticket_id: int, payload: TakeOverRequest, service: TicketServiceDep, actor: ActorDep
) -> TicketDetailModel:
    operation = service.take_over(ticket_id, payload.comment, actor=actor, priority=payload.priority)
    return await _apply(operation, ticket_id, service, actor)


@router.post("/{ticket_id}/assign", response_model=TicketDetailModel)
async def assign(
    ticket_id: int, payload: AssignRequest, service: TicketServiceDep, actor: ActorDep
) -> TicketDetailModel:
    operation = service.assign(
        ticket_id, payload.assign_to, payload.comment, actor=actor, priority=payload.priority
    )
    return await _apply(operation, ticket_id, service, actor)


@router.post("/{ticket_id}/resolve", response_model=TicketDetailModel)
async def resolve(
    ticket_id: int, payload: CommentRequest, service: TicketServiceDep, actor: ActorDep
) -> TicketDetailModel:
    return await _apply(service.resolve(ticket_id, payload.comment, actor=actor), ticket_id, service, actor)


@router.post("/{ticket_id}/close", response_model=TicketDetailModel)
async def close(
    ticket_id: int, payload: CloseRequest, service: TicketServiceDep, actor: ActorDep
) -> TicketDetailModel:
    operation = service.close(ticket_id, payload.comment, actor=actor, force=payload.force)
    return await _apply(operation, ticket_id, service, actor)


@router.post("/{ticket_id}/give-up", response_model=TicketDetailModel)
async def give_up(
    ticket_id: int, payload: CommentRequest, service: TicketServiceDep, actor: ActorDep
) -> TicketDetailModel:
    return await _apply(service.give_up(ticket_id, payload.comment, actor=actor), ticket_id, service, actor)


@router.post("/{ticket_id}/reopen", response_model=TicketDetailModel)
async def reopen(
    ticket_id: int, payload: ReopenRequest, service: TicketServiceDep, actor: ActorDep
) -> TicketDetailModel:
    operation = service.reopen(
        ticket_id, payload.comment, actor=actor, assign_to_me=payload.assign_to_me, own_it=payload.own_it
    )
    return await _apply(operation, ticket_id, service, actor)


@router.put("/{ticket_id}/attachments", response_model=TicketDetailModel)
async def modify_attachments(
    ticket_id: int, payload: ModifyAttachmentsRequest, service: TicketServiceDep, actor: ActorDep
) -> TicketDetailModel:
    attachments = [reference.to_entity() for reference in payload.attachments]
    operation = service.modify_attachments(ticket_id, attachments, payload.comment, actor=actor)
    return await _apply(operation, ticket_id, service, actor)
