from __future__ import annotations

import uuid
from datetime import datetime

from .errors import TicketNotFoundError
from .models import Watcher
from .repository import TicketStore, TicketStoreSession


class WatcherRegistry:
    """Ticket/user watch associations.

    Pure mechanism: who may add or remove whom is decided by the caller.
    """

    def __init__(self, store: TicketStore) -> None:
        self._store = store

    async def add(
        self,
        session: TicketStoreSession,
        *,
        ticket_id: str,
        user_id: str,
        added_by: str,
        added_at: datetime,
    ) -> tuple[Watcher, bool]:
        """Add a watcher, returning ``(watcher, created)``.

        A duplicate ``(ticket_id, user_id)`` returns the existing row with
        ``created=False``.
        """

        candidate = Watcher(
            id=str(uuid.uuid4()),
            ticket_id=ticket_id,
            user_id=user_id,
            added_by=added_by,
            added_at=added_at,
        )
        return await session.insert_watcher(candidate)

    async def remove(self, session: TicketStoreSession, *, ticket_id: str, watcher_id: str) -> Watcher:
        removed = await session.delete_watcher(ticket_id, watcher_id)
        if removed is None:
            raise TicketNotFoundError(f"Watcher {watcher_id} not found on ticket {ticket_id}")
        return removed

    async def find(self, ticket_id: str, watcher_id: str) -> Watcher | None:
        for watcher in await self._store.list_watchers(ticket_id):
            if watcher.id == watcher_id:
                return watcher
        return None

    async def list(self, ticket_id: str) -> list[Watcher]:
        if await self._store.get_ticket(ticket_id) is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return await self._store.list_watchers(ticket_id)
