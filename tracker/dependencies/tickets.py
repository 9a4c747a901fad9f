from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from tracker.dependencies.auth import Role, User, role_required
from tracker.tickets.service import TicketService

require_system = role_required(Role.SYSTEM, Role.ADMIN)

SchedulerUser = Annotated[User, Depends(require_system)]


async def get_ticket_service(request: Request) -> TicketService:
    service = getattr(request.app.state, "ticket_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ticket service is not configured")
    return service


TicketServiceDep = Annotated[TicketService, Depends(get_ticket_service)]
