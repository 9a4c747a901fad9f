from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from tracker.dependencies.tickets import SchedulerUser, TicketServiceDep
from tracker.tickets.models import SweepReport

router = APIRouter(prefix="/cron", tags=["cron"])

logger = logging.getLogger(__name__)


class SweepFailureResponse(BaseModel):
    ticket_id: str
    issue_key: str
    error: str
    message: str


class AutoCloseResponse(BaseModel):
    success: bool
    message: str
    ran_at: str
    closed_count: int
    closed_tickets: list[str] = Field(default_factory=list)
    failures: list[SweepFailureResponse] = Field(default_factory=list)


def _to_response(report: SweepReport) -> AutoCloseResponse:
    if report.closed_count:
        message = f"Auto-closed {report.closed_count} ticket(s)"
    else:
        message = "No tickets to auto-close"
    return AutoCloseResponse(
        success=not report.failures,
        message=message,
        ran_at=report.ran_at.isoformat(),
        closed_count=report.closed_count,
        closed_tickets=list(report.closed_ticket_keys),
        failures=[
            SweepFailureResponse(
                ticket_id=failure.ticket_id,
                issue_key=failure.issue_key,
                error=failure.error,
                message=failure.message,
            )
            for failure in report.failures
        ],
    )


@router.post("/auto-close-tickets", response_model=AutoCloseResponse)
async def auto_close_tickets(service: TicketServiceDep, user: SchedulerUser) -> AutoCloseResponse:
    """Trigger one auto-close sweep. Intended for an external scheduler."""

    logger.info("Auto-close sweep triggered by %s", user.user_id)
    try:
        report = await service.run_auto_close_sweep()
    except Exception as exc:
        logger.exception("Auto-close sweep failed")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Auto-close sweep failed") from exc
    return _to_response(report)


@router.get("/health")
async def cron_health() -> dict[str, str]:
    return {"status": "ok", "endpoint": "auto-close-tickets"}
