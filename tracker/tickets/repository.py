from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncContextManager, AsyncIterator, Iterable, Mapping, Protocol

import asyncpg

from .models import ChangelogEntry, EscalationReason, Resolution, Ticket, TicketType, Watcher
from .state import ChangeType, TicketStatus


class TicketStoreSession(Protocol):
    """Write operations that commit or roll back together."""

    async def insert_ticket(self, ticket: Ticket) -> None:
        ...

    async def update_ticket(self, ticket: Ticket, *, expected_version: int) -> bool:
        ...

    async def append_changelog(self, entry: ChangelogEntry) -> None:
        ...

    async def insert_watcher(self, watcher: Watcher) -> tuple[Watcher, bool]:
        ...

    async def delete_watcher(self, ticket_id: str, watcher_id: str) -> Watcher | None:
        ...

    async def next_issue_number(self, tenant_id: str, product_code: str, type_code: str) -> int:
        ...


class TicketStore(Protocol):
    """Persistence boundary consumed by the transition engine."""

    def transaction(self) -> AsyncContextManager[TicketStoreSession]:
        ...

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        ...

    async def find_stale_tickets(
        self, statuses: Iterable[TicketStatus], updated_before: datetime
    ) -> list[Ticket]:
        ...

    async def list_changelog(self, ticket_id: str) -> list[ChangelogEntry]:
        ...

    async def list_watchers(self, ticket_id: str) -> list[Watcher]:
        ...


_TICKET_COLUMNS = """
    id, issue_key, tenant_id, product_code, title, description, type, client_priority, client_severity,
    status, resolution, resolution_note, escalation_reason, escalation_note, internal_assigned_to,
    pushed_to_systech_at, pushed_to_systech_by, labels, created_by, created_at, updated_at, closed_at, version
"""


class PostgresTicketSession:
    """Session bound to a single connection inside an open transaction."""

    _INSERT_TICKET_SQL = f"""
    INSERT INTO tickets ({_TICKET_COLUMNS})
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18, $19, $20, $21, $22, $23)
    """

    _UPDATE_TICKET_SQL = """
    UPDATE tickets
    SET client_priority = $2,
        client_severity = $3,
        status = $4,
        resolution = $5,
        resolution_note = $6,
        escalation_reason = $7,
        escalation_note = $8,
        internal_assigned_to = $9,
        pushed_to_systech_at = $10,
        pushed_to_systech_by = $11,
        labels = $12,
        updated_at = $13,
        closed_at = $14,
        version = $15
    WHERE id = $1 AND version = $16
    RETURNING id
    """

    _INSERT_CHANGELOG_SQL = """
    INSERT INTO ticket_changelog (id, ticket_id, change_type, user_id, user_name, old_value, new_value, metadata, created_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9)
    """

    _INSERT_WATCHER_SQL = """
    INSERT INTO ticket_watchers (id, ticket_id, user_id, added_by, added_at)
    VALUES ($1, $2, $3, $4, $5)
    ON CONFLICT (ticket_id, user_id) DO NOTHING
    RETURNING id, ticket_id, user_id, added_by, added_at
    """

    _SELECT_WATCHER_BY_USER_SQL = """
    SELECT id, ticket_id, user_id, added_by, added_at
    FROM ticket_watchers
    WHERE ticket_id = $1 AND user_id = $2
    """

    _DELETE_WATCHER_SQL = """
    DELETE FROM ticket_watchers
    WHERE ticket_id = $1 AND id = $2
    RETURNING id, ticket_id, user_id, added_by, added_at
    """

    _NEXT_ISSUE_NUMBER_SQL = """
    INSERT INTO issue_sequences (tenant_id, product_code, type_code, next_num)
    VALUES ($1, $2, $3, 2)
    ON CONFLICT (tenant_id, product_code, type_code)
    DO UPDATE SET next_num = issue_sequences.next_num + 1
    RETURNING next_num - 1 AS issue_number
    """

    def __init__(self, connection: Any) -> None:
        self._connection = connection

    async def insert_ticket(self, ticket: Ticket) -> None:
        await self._connection.execute(
            self._INSERT_TICKET_SQL,
            ticket.id,
            ticket.issue_key,
            ticket.tenant_id,
            ticket.product_code,
            ticket.title,
            ticket.description,
            ticket.type.value,
            ticket.client_priority,
            ticket.client_severity,
            ticket.status.value,
            _enum_value(ticket.resolution),
            ticket.resolution_note,
            _enum_value(ticket.escalation_reason),
            ticket.escalation_note,
            ticket.internal_assigned_to,
            ticket.pushed_to_systech_at,
            ticket.pushed_to_systech_by,
            sorted(ticket.labels),
            ticket.created_by,
            ticket.created_at,
            ticket.updated_at,
            ticket.closed_at,
            ticket.version,
        )

    async def update_ticket(self, ticket: Ticket, *, expected_version: int) -> bool:
        row = await self._connection.fetchrow(
            self._UPDATE_TICKET_SQL,
            ticket.id,
            ticket.client_priority,
            ticket.client_severity,
            ticket.status.value,
            _enum_value(ticket.resolution),
            ticket.resolution_note,
            _enum_value(ticket.escalation_reason),
            ticket.escalation_note,
            ticket.internal_assigned_to,
            ticket.pushed_to_systech_at,
            ticket.pushed_to_systech_by,
            sorted(ticket.labels),
            ticket.updated_at,
            ticket.closed_at,
            ticket.version,
            expected_version,
        )
        return row is not None

    async def append_changelog(self, entry: ChangelogEntry) -> None:
        await self._connection.execute(
            self._INSERT_CHANGELOG_SQL,
            entry.id,
            entry.ticket_id,
            entry.change_type.value,
            entry.user_id,
            entry.user_name,
            entry.old_value,
            entry.new_value,
            json.dumps(dict(entry.metadata), default=str),
            entry.created_at,
        )

    async def insert_watcher(self, watcher: Watcher) -> tuple[Watcher, bool]:
        row = await self._connection.fetchrow(
            self._INSERT_WATCHER_SQL,
            watcher.id,
            watcher.ticket_id,
            watcher.user_id,
            watcher.added_by,
            watcher.added_at,
        )
        if row is not None:
            return _row_to_watcher(row), True
        existing = await self._connection.fetchrow(
            self._SELECT_WATCHER_BY_USER_SQL, watcher.ticket_id, watcher.user_id
        )
        if existing is None:
            raise RuntimeError("Watcher insert skipped but no existing row was found")
        return _row_to_watcher(existing), False

    async def delete_watcher(self, ticket_id: str, watcher_id: str) -> Watcher | None:
        row = await self._connection.fetchrow(self._DELETE_WATCHER_SQL, ticket_id, watcher_id)
        if row is None:
            return None
        return _row_to_watcher(row)

    async def next_issue_number(self, tenant_id: str, product_code: str, type_code: str) -> int:
        row = await self._connection.fetchrow(self._NEXT_ISSUE_NUMBER_SQL, tenant_id, product_code, type_code)
        if row is None:
            raise RuntimeError("Failed to allocate issue number")
        return int(row["issue_number"])


class PostgresTicketStore:
    """Data access layer for tickets, their changelog and watchers."""

    _CREATE_TICKETS_SQL = """
    CREATE TABLE IF NOT EXISTS tickets (
        id TEXT PRIMARY KEY,
        issue_key TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        product_code TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        type TEXT NOT NULL,
        client_priority INTEGER NOT NULL CHECK (client_priority BETWEEN 1 AND 4),
        client_severity INTEGER NOT NULL CHECK (client_severity BETWEEN 1 AND 4),
        status TEXT NOT NULL,
        resolution TEXT NULL,
        resolution_note TEXT NULL,
        escalation_reason TEXT NULL,
        escalation_note TEXT NULL,
        internal_assigned_to TEXT NULL,
        pushed_to_systech_at TIMESTAMPTZ NULL,
        pushed_to_systech_by TEXT NULL,
        labels TEXT[] NOT NULL DEFAULT '{}',
        created_by TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        closed_at TIMESTAMPTZ NULL,
        version INTEGER NOT NULL DEFAULT 1,
        UNIQUE (tenant_id, issue_key),
        CHECK ((status = 'closed') = (closed_at IS NOT NULL))
    )
    """

    _CREATE_CHANGELOG_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_changelog (
        seq BIGSERIAL PRIMARY KEY,
        id TEXT NOT NULL UNIQUE,
        ticket_id TEXT NOT NULL REFERENCES tickets(id),
        change_type TEXT NOT NULL,
        user_id TEXT NOT NULL,
        user_name TEXT NOT NULL,
        old_value TEXT NULL,
        new_value TEXT NULL,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL
    )
    """

    _CREATE_WATCHERS_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_watchers (
        id TEXT PRIMARY KEY,
        ticket_id TEXT NOT NULL REFERENCES tickets(id),
        user_id TEXT NOT NULL,
        added_by TEXT NOT NULL,
        added_at TIMESTAMPTZ NOT NULL,
        UNIQUE (ticket_id, user_id)
    )
    """

    _CREATE_SEQUENCES_SQL = """
    CREATE TABLE IF NOT EXISTS issue_sequences (
        tenant_id TEXT NOT NULL,
        product_code TEXT NOT NULL,
        type_code TEXT NOT NULL,
        next_num INTEGER NOT NULL,
        PRIMARY KEY (tenant_id, product_code, type_code)
    )
    """

    _SELECT_TICKET_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE id = $1
    """

    _SELECT_STALE_TICKETS_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE status = ANY($1::text[]) AND updated_at <= $2
    ORDER BY updated_at ASC
    """

    _SELECT_CHANGELOG_SQL = """
    SELECT id, ticket_id, change_type, user_id, user_name, old_value, new_value, metadata, created_at
    FROM ticket_changelog
    WHERE ticket_id = $1
    ORDER BY created_at ASC, seq ASC
    """

    _SELECT_WATCHERS_SQL = """
    SELECT id, ticket_id, user_id, added_by, added_at
    FROM ticket_watchers
    WHERE ticket_id = $1
    ORDER BY added_at ASC
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_TICKETS_SQL)
            await connection.execute(self._CREATE_CHANGELOG_SQL)
            await connection.execute(self._CREATE_WATCHERS_SQL)
            await connection.execute(self._CREATE_SEQUENCES_SQL)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresTicketSession]:
        async with self._pool.acquire() as connection:
            async with connection.transaction():
                yield PostgresTicketSession(connection)

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._SELECT_TICKET_SQL, ticket_id)
        if row is None:
            return None
        return _row_to_ticket(row)

    async def find_stale_tickets(
        self, statuses: Iterable[TicketStatus], updated_before: datetime
    ) -> list[Ticket]:
        status_values = [status.value for status in statuses]
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_STALE_TICKETS_SQL, status_values, updated_before)
        return [_row_to_ticket(row) for row in rows]

    async def list_changelog(self, ticket_id: str) -> list[ChangelogEntry]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_CHANGELOG_SQL, ticket_id)
        return [_row_to_changelog(row) for row in rows]

    async def list_watchers(self, ticket_id: str) -> list[Watcher]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_WATCHERS_SQL, ticket_id)
        return [_row_to_watcher(row) for row in rows]


def _enum_value(value: Any) -> str | None:
    return None if value is None else value.value


def _optional(row: Mapping[str, Any], key: str) -> str | None:
    value = row.get(key)
    return None if value is None else str(value)


def _row_to_ticket(row: Mapping[str, Any]) -> Ticket:
    resolution = row.get("resolution")
    escalation_reason = row.get("escalation_reason")
    closed_at = row.get("closed_at")
    pushed_at = row.get("pushed_to_systech_at")
    return Ticket(
        id=str(row["id"]),
        issue_key=str(row["issue_key"]),
        tenant_id=str(row["tenant_id"]),
        product_code=str(row["product_code"]),
        title=str(row["title"]),
        description=str(row.get("description") or ""),
        type=TicketType(str(row["type"])),
        client_priority=int(row["client_priority"]),
        client_severity=int(row["client_severity"]),
        status=TicketStatus(str(row["status"])),
        resolution=Resolution(str(resolution)) if resolution else None,
        resolution_note=_optional(row, "resolution_note"),
        escalation_reason=EscalationReason(str(escalation_reason)) if escalation_reason else None,
        escalation_note=_optional(row, "escalation_note"),
        internal_assigned_to=_optional(row, "internal_assigned_to"),
        pushed_to_systech_at=_ensure_datetime(pushed_at) if pushed_at is not None else None,
        pushed_to_systech_by=_optional(row, "pushed_to_systech_by"),
        labels=frozenset(row.get("labels") or ()),
        created_by=str(row["created_by"]),
        created_at=_ensure_datetime(row["created_at"]),
        updated_at=_ensure_datetime(row["updated_at"]),
        closed_at=_ensure_datetime(closed_at) if closed_at is not None else None,
        version=int(row.get("version") or 1),
    )


def _row_to_changelog(row: Mapping[str, Any]) -> ChangelogEntry:
    metadata = row.get("metadata") or {}
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return ChangelogEntry(
        id=str(row["id"]),
        ticket_id=str(row["ticket_id"]),
        change_type=ChangeType(str(row["change_type"])),
        user_id=str(row["user_id"]),
        user_name=str(row["user_name"]),
        old_value=_optional(row, "old_value"),
        new_value=_optional(row, "new_value"),
        metadata=dict(metadata),
        created_at=_ensure_datetime(row["created_at"]),
    )


def _row_to_watcher(row: Mapping[str, Any]) -> Watcher:
    return Watcher(
        id=str(row["id"]),
        ticket_id=str(row["ticket_id"]),
        user_id=str(row["user_id"]),
        added_by=str(row["added_by"]),
        added_at=_ensure_datetime(row["added_at"]),
    )


def _ensure_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return datetime.fromisoformat(str(value))
