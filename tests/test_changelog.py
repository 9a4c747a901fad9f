from __future__ import annotations

from datetime import timedelta

import pytest

from tracker.tickets.changelog import ChangelogWriter
from tracker.tickets.errors import TicketNotFoundError
from tracker.tickets.state import ChangeType, TicketStatus


@pytest.mark.asyncio
async def test_list_is_restartable_and_returns_fresh_copies(service, ticket_in, customer):
    ticket = await ticket_in(TicketStatus.IN_PROGRESS)
    await service.record_comment(ticket.id, customer, preview="first")

    first = await service.list_changelog(ticket.id)
    first[0].metadata["tampered"] = True
    second = await service.list_changelog(ticket.id)

    assert [entry.id for entry in first] == [entry.id for entry in second]
    assert "tampered" not in second[0].metadata


@pytest.mark.asyncio
async def test_entries_with_equal_timestamps_keep_insertion_order(service, ticket_in, customer):
    ticket = await ticket_in(TicketStatus.IN_PROGRESS)
    for index in range(3):
        await service.record_comment(ticket.id, customer, comment_id=f"c-{index}")

    entries = await service.list_changelog(ticket.id)

    comments = [entry.metadata["comment_id"] for entry in entries if entry.change_type is ChangeType.COMMENT_ADDED]
    assert comments == ["c-0", "c-1", "c-2"]
    assert len({entry.created_at for entry in entries}) == 1


@pytest.mark.asyncio
async def test_list_does_not_filter_internal_comments(service, ticket_in, agent):
    ticket = await ticket_in(TicketStatus.IN_PROGRESS)

    await service.record_comment(ticket.id, agent, preview="staff only", internal=True)

    entry = (await service.list_changelog(ticket.id))[-1]
    assert entry.metadata["internal"] is True
    assert entry.user_name == agent.user_name


@pytest.mark.asyncio
async def test_append_runs_inside_a_store_transaction(store, ticket_in, admin, clock):
    ticket = await ticket_in(TicketStatus.OPEN)
    writer = ChangelogWriter(store)

    async with store.transaction() as session:
        entry = await writer.append(
            session,
            ticket_id=ticket.id,
            change_type=ChangeType.ASSIGNED,
            actor=admin,
            new_value="u-lead",
            created_at=clock.now + timedelta(minutes=1),
        )

    entries = await writer.list(ticket.id)
    assert entries[-1].id == entry.id
    assert entries[-1].metadata == {}


@pytest.mark.asyncio
async def test_list_unknown_ticket_raises_not_found(store):
    with pytest.raises(TicketNotFoundError):
        await ChangelogWriter(store).list("missing")
