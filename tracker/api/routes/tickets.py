from __future__ import annotations

from datetime import datetime
from typing import Any, NoReturn

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from tracker.dependencies.auth import CurrentUser, ensure_can_manage_watcher
from tracker.dependencies.tickets import TicketServiceDep
from tracker.tickets.errors import (
    InvalidTicketTransitionError,
    TicketConflictError,
    TicketForbiddenError,
    TicketNotFoundError,
    TicketServiceError,
    TicketValidationError,
)
from tracker.tickets.models import (
    ChangelogEntry,
    EscalationReason,
    Resolution,
    Ticket,
    TicketType,
    Watcher,
)
from tracker.tickets.state import ChangeType, TicketStatus, TransitionName

router = APIRouter(prefix="/tickets", tags=["tickets"])

_ERROR_STATUS: dict[type[TicketServiceError], int] = {
    TicketNotFoundError: status.HTTP_404_NOT_FOUND,
    TicketForbiddenError: status.HTTP_403_FORBIDDEN,
    InvalidTicketTransitionError: status.HTTP_409_CONFLICT,
    TicketConflictError: status.HTTP_409_CONFLICT,
    TicketValidationError: 422,
}

# only reachable through the /watchers endpoints, which apply the ownership check
_WATCHER_TRANSITIONS = frozenset({TransitionName.WATCHER_ADDED.value, TransitionName.WATCHER_REMOVED.value})


class TicketCreateRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1)
    product_code: str = Field(..., min_length=2, max_length=16)
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(default="")
    type: TicketType = Field(default=TicketType.SUPPORT)
    client_priority: int = Field(default=3, ge=1, le=4)
    client_severity: int = Field(default=3, ge=1, le=4)


class TransitionRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class WatcherCreateRequest(BaseModel):
    user_id: str | None = Field(default=None, min_length=1)


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    issue_key: str
    tenant_id: str
    product_code: str
    title: str
    description: str
    type: TicketType
    client_priority: int
    client_severity: int
    status: TicketStatus
    resolution: Resolution | None
    resolution_note: str | None
    escalation_reason: EscalationReason | None
    escalation_note: str | None
    internal_assigned_to: str | None
    pushed_to_systech_at: datetime | None
    pushed_to_systech_by: str | None
    labels: list[str]
    created_by: str
    created_at: datetime
    updated_at: datetime
    closed_at: datetime | None
    version: int


class ChangelogEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    change_type: ChangeType
    user_id: str
    user_name: str
    old_value: str | None
    new_value: str | None
    metadata: dict[str, Any]
    created_at: datetime


class WatcherResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    user_id: str
    added_by: str
    added_at: datetime


def _to_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse.model_validate(
        {
            **{name: getattr(ticket, name) for name in TicketResponse.model_fields if name != "labels"},
            "labels": sorted(ticket.labels),
        }
    )


def _to_changelog_response(entry: ChangelogEntry) -> ChangelogEntryResponse:
    return ChangelogEntryResponse.model_validate(entry)


def _to_watcher_response(watcher: Watcher) -> WatcherResponse:
    return WatcherResponse.model_validate(watcher)


def _raise_http(exc: TicketServiceError) -> NoReturn:
    for error_type, status_code in _ERROR_STATUS.items():
        if isinstance(exc, error_type):
            raise HTTPException(status_code=status_code, detail=str(exc)) from exc
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc


@router.post("", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(payload: TicketCreateRequest, service: TicketServiceDep, user: CurrentUser) -> TicketResponse:
    try:
        ticket = await service.create_ticket(
            tenant_id=payload.tenant_id,
            product_code=payload.product_code,
            title=payload.title,
            description=payload.description,
            ticket_type=payload.type,
            client_priority=payload.client_priority,
            client_severity=payload.client_severity,
            actor=user.as_actor(),
        )
    except TicketServiceError as exc:
        _raise_http(exc)
    return _to_response(ticket)


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(ticket_id: str, service: TicketServiceDep, _: CurrentUser) -> TicketResponse:
    try:
        ticket = await service.get_ticket(ticket_id)
    except TicketServiceError as exc:
        _raise_http(exc)
    return _to_response(ticket)


@router.post("/{ticket_id}/transitions/{name}", response_model=TicketResponse)
async def apply_transition(
    ticket_id: str,
    name: str,
    service: TicketServiceDep,
    user: CurrentUser,
    body: TransitionRequest | None = None,
) -> TicketResponse:
    if name in _WATCHER_TRANSITIONS:
        raise HTTPException(
            status_code=422,
            detail=f"Watchers are managed through /tickets/{ticket_id}/watchers",
        )
    payload = body.payload if body is not None else {}
    try:
        ticket = await service.transition_with_retry(ticket_id, name, user.as_actor(), payload)
    except TicketServiceError as exc:
        _raise_http(exc)
    return _to_response(ticket)


@router.get("/{ticket_id}/changelog", response_model=list[ChangelogEntryResponse])
async def get_changelog(ticket_id: str, service: TicketServiceDep, _: CurrentUser) -> list[ChangelogEntryResponse]:
    try:
        entries = await service.list_changelog(ticket_id)
    except TicketServiceError as exc:
        _raise_http(exc)
    return [_to_changelog_response(entry) for entry in entries]


@router.get("/{ticket_id}/watchers", response_model=list[WatcherResponse])
async def list_watchers(ticket_id: str, service: TicketServiceDep, _: CurrentUser) -> list[WatcherResponse]:
    try:
        watchers = await service.list_watchers(ticket_id)
    except TicketServiceError as exc:
        _raise_http(exc)
    return [_to_watcher_response(watcher) for watcher in watchers]


@router.post("/{ticket_id}/watchers", response_model=WatcherResponse, status_code=status.HTTP_201_CREATED)
async def add_watcher(
    ticket_id: str,
    service: TicketServiceDep,
    user: CurrentUser,
    body: WatcherCreateRequest | None = None,
) -> WatcherResponse:
    watcher_user_id = (body.user_id if body is not None else None) or user.user_id
    ensure_can_manage_watcher(user, watcher_user_id)
    try:
        watcher = await service.add_watcher(ticket_id, watcher_user_id, user.as_actor())
    except TicketServiceError as exc:
        _raise_http(exc)
    return _to_watcher_response(watcher)


@router.delete("/{ticket_id}/watchers/{watcher_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_watcher(ticket_id: str, watcher_id: str, service: TicketServiceDep, user: CurrentUser) -> None:
    try:
        watcher = await service.get_watcher(ticket_id, watcher_id)
        ensure_can_manage_watcher(user, watcher.user_id)
        await service.remove_watcher(ticket_id, watcher_id, user.as_actor())
    except TicketServiceError as exc:
        _raise_http(exc)
