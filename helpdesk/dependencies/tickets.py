from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from helpdesk.dependencies.auth import CurrentUser, Role, User, UserSecurityContext, role_required
from helpdesk.tickets.service import TicketService

require_staff = role_required(Role.ADMIN, Role.STAFF)
require_admin = role_required(Role.ADMIN)

StaffUser = Annotated[User, Depends(require_staff)]
AdminUser = Annotated[User, Depends(require_admin)]


async def get_ticket_service(request: Request) -> TicketService:
    service = getattr(request.app.state, "ticket_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ticket service is not configured")
    return service


async def get_security_context(user: CurrentUser) -> UserSecurityContext:
    return UserSecurityContext(user)


TicketServiceDep = Annotated[TicketService, Depends(get_ticket_service)]
ActorDep = Annotated[UserSecurityContext, Depends(get_security_context)]
