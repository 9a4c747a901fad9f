from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from tracker.tickets import issue_keys
from tracker.tickets.engine import TransitionResult
from tracker.tickets.errors import TicketConflictError
from tracker.tickets.models import TicketType
from tracker.tickets.policy import InitialStatusPolicy
from tracker.tickets.service import TicketService
from tracker.tickets.state import TicketStatus


def _service_with_engine(engine, attempts: int = 3) -> TicketService:
    return TicketService(MagicMock(), engine, MagicMock(), conflict_retry_attempts=attempts)


@pytest.mark.asyncio
async def test_transition_with_retry_recovers_from_conflict(customer):
    engine = MagicMock()
    ticket = MagicMock()
    engine.apply = AsyncMock(side_effect=[TicketConflictError("lost"), TransitionResult(ticket=ticket)])
    service = _service_with_engine(engine)

    result = await service.transition_with_retry("ticket-1", "reopen", customer)

    assert result is ticket
    assert engine.apply.await_count == 2


@pytest.mark.asyncio
async def test_transition_with_retry_gives_up_after_bounded_attempts(customer):
    engine = MagicMock()
    engine.apply = AsyncMock(side_effect=TicketConflictError("lost"))
    service = _service_with_engine(engine, attempts=2)

    with pytest.raises(TicketConflictError):
        await service.transition_with_retry("ticket-1", "reopen", customer)

    assert engine.apply.await_count == 2


@pytest.mark.asyncio
async def test_plain_transition_does_not_retry(customer):
    engine = MagicMock()
    engine.transition = AsyncMock(side_effect=TicketConflictError("lost"))
    service = _service_with_engine(engine)

    with pytest.raises(TicketConflictError):
        await service.transition("ticket-1", "reopen", customer)

    engine.transition.assert_awaited_once()


def test_retry_attempts_must_be_positive():
    with pytest.raises(ValueError):
        _service_with_engine(MagicMock(), attempts=0)


def test_initial_status_policy_rejects_non_initial_states():
    with pytest.raises(ValueError):
        InitialStatusPolicy(default=TicketStatus.IN_PROGRESS)
    with pytest.raises(ValueError):
        InitialStatusPolicy(per_tenant={"acme": TicketStatus.CLOSED})


def test_issue_key_formatting():
    assert issue_keys.format_issue_key("CSUP", TicketType.SUPPORT, 1) == "CSUP-S001"
    assert issue_keys.format_issue_key("HRMS", TicketType.FEATURE_REQUEST, 1234) == "HRMS-R1234"
    assert issue_keys.normalize_product_code(" csup ") == "CSUP"
    with pytest.raises(ValueError):
        issue_keys.normalize_product_code("9LIVES")
    with pytest.raises(ValueError):
        issue_keys.format_issue_key("CSUP", TicketType.SUPPORT, 0)
