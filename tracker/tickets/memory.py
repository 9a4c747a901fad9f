"""In-process ticket store used for local runs and tests."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import AsyncIterator, Iterable

from .models import ChangelogEntry, Ticket, Watcher
from .state import TicketStatus


class InMemoryTicketSession:
    """Stages writes until the owning transaction exits cleanly."""

    def __init__(self, store: InMemoryTicketStore) -> None:
        self._store = store
        self._tickets: dict[str, Ticket] = {}
        self._entries: list[ChangelogEntry] = []
        self._added_watchers: dict[tuple[str, str], Watcher] = {}
        self._removed_watchers: set[str] = set()
        self._sequences: dict[tuple[str, str, str], int] = {}

    def _current(self, ticket_id: str) -> Ticket | None:
        return self._tickets.get(ticket_id) or self._store._tickets.get(ticket_id)

    async def insert_ticket(self, ticket: Ticket) -> None:
        if self._current(ticket.id) is not None:
            raise ValueError(f"Ticket {ticket.id} already exists")
        self._tickets[ticket.id] = replace(ticket)

    async def update_ticket(self, ticket: Ticket, *, expected_version: int) -> bool:
        current = self._current(ticket.id)
        if current is None or current.version != expected_version:
            return False
        self._tickets[ticket.id] = replace(ticket)
        return True

    async def append_changelog(self, entry: ChangelogEntry) -> None:
        if self._current(entry.ticket_id) is None:
            raise ValueError(f"Ticket {entry.ticket_id} does not exist")
        self._entries.append(replace(entry, metadata=dict(entry.metadata)))

    async def insert_watcher(self, watcher: Watcher) -> tuple[Watcher, bool]:
        key = (watcher.ticket_id, watcher.user_id)
        staged = self._added_watchers.get(key)
        if staged is not None:
            return replace(staged), False
        for existing in self._store._watchers[watcher.ticket_id].values():
            if existing.user_id == watcher.user_id and existing.id not in self._removed_watchers:
                return replace(existing), False
        self._added_watchers[key] = replace(watcher)
        return replace(watcher), True

    async def delete_watcher(self, ticket_id: str, watcher_id: str) -> Watcher | None:
        for key, staged in list(self._added_watchers.items()):
            if staged.ticket_id == ticket_id and staged.id == watcher_id:
                del self._added_watchers[key]
                return replace(staged)
        existing = self._store._watchers[ticket_id].get(watcher_id)
        if existing is None or watcher_id in self._removed_watchers:
            return None
        self._removed_watchers.add(watcher_id)
        return replace(existing)

    async def next_issue_number(self, tenant_id: str, product_code: str, type_code: str) -> int:
        key = (tenant_id, product_code, type_code)
        current = self._sequences.get(key, self._store._sequences.get(key, 1))
        self._sequences[key] = current + 1
        return current

    def apply(self) -> None:
        store = self._store
        store._tickets.update(self._tickets)
        for entry in self._entries:
            store._changelog[entry.ticket_id].append(entry)
        for watcher in self._added_watchers.values():
            store._watchers[watcher.ticket_id][watcher.id] = watcher
        for watchers in store._watchers.values():
            for watcher_id in self._removed_watchers:
                watchers.pop(watcher_id, None)
        store._sequences.update(self._sequences)


class InMemoryTicketStore:
    """Ticket store keeping everything in process memory.

    Transactions are serialized by a single asyncio lock and staged writes
    are only applied when the ``transaction()`` block exits without error.
    """

    def __init__(self) -> None:
        self._tickets: dict[str, Ticket] = {}
        self._changelog: defaultdict[str, list[ChangelogEntry]] = defaultdict(list)
        self._watchers: defaultdict[str, dict[str, Watcher]] = defaultdict(dict)
        self._sequences: dict[tuple[str, str, str], int] = {}
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryTicketSession]:
        async with self._lock:
            session = InMemoryTicketSession(self)
            yield session
            session.apply()

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        ticket = self._tickets.get(ticket_id)
        return None if ticket is None else replace(ticket)

    async def find_stale_tickets(
        self, statuses: Iterable[TicketStatus], updated_before: datetime
    ) -> list[Ticket]:
        wanted = set(statuses)
        matches = [
            replace(ticket)
            for ticket in self._tickets.values()
            if ticket.status in wanted and ticket.updated_at <= updated_before
        ]
        return sorted(matches, key=lambda ticket: ticket.updated_at)

    async def list_changelog(self, ticket_id: str) -> list[ChangelogEntry]:
        entries = [replace(entry, metadata=dict(entry.metadata)) for entry in self._changelog.get(ticket_id, [])]
        # sorted() is stable, so equal timestamps keep insertion order
        return sorted(entries, key=lambda entry: entry.created_at)

    async def list_watchers(self, ticket_id: str) -> list[Watcher]:
        watchers = self._watchers.get(ticket_id, {})
        return sorted((replace(watcher) for watcher in watchers.values()), key=lambda watcher: watcher.added_at)
