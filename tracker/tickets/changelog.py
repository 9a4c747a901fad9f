from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Mapping

from .errors import TicketNotFoundError
from .models import Actor, ChangelogEntry
from .repository import TicketStore, TicketStoreSession
from .state import ChangeType


class ChangelogWriter:
    """Append-only access to a ticket's audit trail.

    Entries are only ever added through an open store session so they commit
    together with the ticket mutation they describe. There is no update or
    delete path.
    """

    def __init__(self, store: TicketStore) -> None:
        self._store = store

    async def append(
        self,
        session: TicketStoreSession,
        *,
        ticket_id: str,
        change_type: ChangeType,
        actor: Actor,
        old_value: str | None = None,
        new_value: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        created_at: datetime,
    ) -> ChangelogEntry:
        entry = ChangelogEntry(
            id=str(uuid.uuid4()),
            ticket_id=ticket_id,
            change_type=change_type,
            user_id=actor.user_id,
            user_name=actor.user_name,
            old_value=old_value,
            new_value=new_value,
            metadata=dict(metadata or {}),
            created_at=created_at,
        )
        await session.append_changelog(entry)
        return entry

    async def list(self, ticket_id: str) -> list[ChangelogEntry]:
        """Return every entry for the ticket, oldest first.

        Each call reads from the start; no cursor is retained between calls.
        """

        if await self._store.get_ticket(ticket_id) is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return await self._store.list_changelog(ticket_id)
