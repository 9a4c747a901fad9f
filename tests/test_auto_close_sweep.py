from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from tracker.metrics.definitions import SWEEP_CLOSED_TOTAL, SWEEP_FAILURES_TOTAL, SWEEP_RUNS_TOTAL
from tracker.tickets.models import Actor
from tracker.tickets.service import TicketService
from tracker.tickets.state import ActorRole, ChangeType, TicketStatus
from tracker.tickets.sweep import AutoCloseSweep


@pytest.mark.asyncio
async def test_sweep_closes_resolved_ticket_idle_for_six_days(service, ticket_in, clock):
    ticket = await ticket_in(TicketStatus.RESOLVED)
    now = clock.advance(days=6)

    report = await service.run_auto_close_sweep(now)

    assert report.closed_count == 1
    assert report.closed_ticket_keys == [ticket.issue_key]
    assert report.failures == []
    closed = await service.get_ticket(ticket.id)
    assert closed.status is TicketStatus.CLOSED
    assert closed.closed_at == now
    assert "auto_closed_no_response" in closed.labels
    entry = (await service.list_changelog(ticket.id))[-1]
    assert entry.change_type is ChangeType.AUTO_CLOSE
    assert entry.user_id == "system"
    assert entry.created_at == now


@pytest.mark.asyncio
async def test_sweep_leaves_recent_ticket_untouched(service, ticket_in, clock):
    ticket = await ticket_in(TicketStatus.RESOLVED)
    now = clock.advance(days=3)

    report = await service.run_auto_close_sweep(now)

    assert report.closed_count == 0
    assert await service.get_ticket(ticket.id) == ticket


@pytest.mark.asyncio
async def test_sweep_includes_waiting_for_customer_and_skips_other_states(service, ticket_in, clock):
    waiting = await ticket_in(TicketStatus.WAITING_FOR_CUSTOMER)
    in_progress = await ticket_in(TicketStatus.IN_PROGRESS)
    closed = await ticket_in(TicketStatus.CLOSED)
    now = clock.advance(days=10)

    report = await service.run_auto_close_sweep(now)

    assert report.closed_ticket_keys == [waiting.issue_key]
    assert (await service.get_ticket(in_progress.id)).status is TicketStatus.IN_PROGRESS
    assert await service.get_ticket(closed.id) == closed


@pytest.mark.asyncio
async def test_ticket_exactly_at_cutoff_is_closed(service, ticket_in, clock):
    ticket = await ticket_in(TicketStatus.RESOLVED)
    now = clock.advance(days=5)

    report = await service.run_auto_close_sweep(now)

    assert report.closed_ticket_keys == [ticket.issue_key]


@pytest.mark.asyncio
async def test_second_run_finds_nothing(service, ticket_in, clock, metrics):
    await ticket_in(TicketStatus.RESOLVED)
    await ticket_in(TicketStatus.WAITING_FOR_CUSTOMER)
    now = clock.advance(days=7)

    first = await service.run_auto_close_sweep(now)
    second = await service.run_auto_close_sweep(now)

    assert first.closed_count == 2
    assert second.closed_count == 0
    assert second.failures == []
    assert metrics.counter(SWEEP_RUNS_TOTAL).value() == 2
    assert metrics.counter(SWEEP_CLOSED_TOTAL).value() == 2


@pytest.mark.asyncio
async def test_sweep_with_no_tickets_succeeds(service, clock):
    report = await service.run_auto_close_sweep()

    assert report.closed_count == 0
    assert report.ran_at == clock.now


@pytest.mark.asyncio
async def test_activity_resets_the_inactivity_window(service, ticket_in, customer, clock):
    ticket = await ticket_in(TicketStatus.RESOLVED)
    clock.advance(days=4)
    await service.record_comment(ticket.id, customer, preview="Any update?")

    report = await service.run_auto_close_sweep(clock.advance(days=2))

    assert report.closed_count == 0


@pytest.mark.asyncio
async def test_one_failing_ticket_does_not_abort_the_run(service, store, ticket_in, customer, clock, metrics, monkeypatch):
    gone = await ticket_in(TicketStatus.RESOLVED)
    healthy = await ticket_in(TicketStatus.RESOLVED)
    await service.transition(gone.id, "close", customer)
    now = clock.advance(days=8)

    # stale snapshot: the first candidate was closed after the query ran
    monkeypatch.setattr(store, "find_stale_tickets", AsyncMock(return_value=[gone, healthy]))
    report = await service.run_auto_close_sweep(now)

    assert report.closed_ticket_keys == [healthy.issue_key]
    assert len(report.failures) == 1
    failure = report.failures[0]
    assert failure.issue_key == gone.issue_key
    assert failure.error == "InvalidTicketTransitionError"
    assert metrics.counter(SWEEP_FAILURES_TOTAL).value() == 1


@pytest.mark.asyncio
async def test_reply_landing_after_selection_keeps_ticket_open(service, store, ticket_in, customer, clock, monkeypatch):
    ticket = await ticket_in(TicketStatus.RESOLVED)
    now = clock.advance(days=6)
    select = store.find_stale_tickets

    async def select_then_reply(statuses, updated_before):
        candidates = await select(statuses, updated_before)
        await service.record_comment(ticket.id, customer, preview="Still broken")
        return candidates

    monkeypatch.setattr(store, "find_stale_tickets", select_then_reply)
    report = await service.run_auto_close_sweep(now)

    assert report.closed_count == 0
    assert [failure.error for failure in report.failures] == ["TicketConflictError"]
    current = await service.get_ticket(ticket.id)
    assert current.status is TicketStatus.RESOLVED
    assert current.closed_at is None
    entries = await service.list_changelog(ticket.id)
    assert entries[-1].change_type is ChangeType.COMMENT_ADDED


@pytest.mark.asyncio
async def test_store_error_on_one_ticket_is_reported_and_run_continues(
    service, store, ticket_in, clock, metrics, monkeypatch
):
    broken = await ticket_in(TicketStatus.RESOLVED)
    healthy = await ticket_in(TicketStatus.WAITING_FOR_CUSTOMER)
    now = clock.advance(days=7)
    open_transaction = store.transaction

    @asynccontextmanager
    async def transaction():
        async with open_transaction() as session:
            update = session.update_ticket

            async def update_ticket(ticket, *, expected_version):
                if ticket.id == broken.id:
                    raise RuntimeError("check constraint violated")
                return await update(ticket, expected_version=expected_version)

            session.update_ticket = update_ticket
            yield session

    monkeypatch.setattr(store, "transaction", transaction)
    report = await service.run_auto_close_sweep(now)

    assert report.closed_ticket_keys == [healthy.issue_key]
    assert len(report.failures) == 1
    failure = report.failures[0]
    assert failure.issue_key == broken.issue_key
    assert failure.error == "RuntimeError"
    assert failure.message == "check constraint violated"
    assert (await service.get_ticket(broken.id)).status is TicketStatus.RESOLVED
    assert metrics.counter(SWEEP_FAILURES_TOTAL).value() == 1


@pytest.mark.asyncio
async def test_custom_inactivity_window(store, clock, metrics, ticket_in):
    service = TicketService.build(store, clock=clock, metrics=metrics, inactivity_window=timedelta(days=1))
    ticket = await ticket_in(TicketStatus.RESOLVED)

    report = await service.run_auto_close_sweep(clock.advance(days=2))

    assert report.closed_ticket_keys == [ticket.issue_key]


def test_sweep_requires_system_actor(store, service):
    with pytest.raises(ValueError):
        AutoCloseSweep(store, service.engine, system_actor=Actor("u-admin", "Admin", ActorRole.ADMIN))


@pytest.mark.asyncio
async def test_run_forever_stops_when_event_is_set(store, service, clock):
    sweep = AutoCloseSweep(store, service.engine, clock=clock)
    calls = []

    async def flaky_run(now=None):
        calls.append(now)
        if len(calls) == 1:
            raise RuntimeError("db down")

    sweep.run = flaky_run
    stop = asyncio.Event()

    task = asyncio.create_task(sweep.run_forever(0.01, stop))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(task, timeout=1)

    assert len(calls) >= 2
