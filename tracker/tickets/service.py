from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Mapping

from tracker.metrics import MetricsRegistry

from .changelog import ChangelogWriter
from .engine import AUTO_CLOSE_LABEL, TransitionEngine, TransitionResult
from .errors import TicketConflictError, TicketNotFoundError
from .models import Actor, ChangelogEntry, Clock, SweepReport, Ticket, TicketType, Watcher, utcnow
from .policy import InitialStatusPolicy
from .repository import TicketStore
from .state import TransitionName
from .sweep import DEFAULT_INACTIVITY_WINDOW, SYSTEM_ACTOR, AutoCloseSweep
from .watchers import WatcherRegistry

logger = logging.getLogger(__name__)


class TicketService:
    """High level entry point used by request handlers and the scheduler."""

    def __init__(
        self,
        store: TicketStore,
        engine: TransitionEngine,
        sweep: AutoCloseSweep,
        *,
        changelog: ChangelogWriter | None = None,
        watchers: WatcherRegistry | None = None,
        initial_status_policy: InitialStatusPolicy | None = None,
        conflict_retry_attempts: int = 3,
    ) -> None:
        if conflict_retry_attempts < 1:
            raise ValueError("conflict_retry_attempts must be at least 1")
        self._store = store
        self._engine = engine
        self._sweep = sweep
        self._changelog = changelog or ChangelogWriter(store)
        self._watchers = watchers or WatcherRegistry(store)
        self._policy = initial_status_policy or InitialStatusPolicy()
        self._conflict_retry_attempts = conflict_retry_attempts

    @classmethod
    def build(
        cls,
        store: TicketStore,
        *,
        clock: Clock = utcnow,
        inactivity_window: timedelta = DEFAULT_INACTIVITY_WINDOW,
        system_actor: Actor = SYSTEM_ACTOR,
        auto_close_label: str = AUTO_CLOSE_LABEL,
        initial_status_policy: InitialStatusPolicy | None = None,
        conflict_retry_attempts: int = 3,
        metrics: MetricsRegistry | None = None,
    ) -> TicketService:
        """Wire the engine, sweep and registries around a single store."""

        changelog = ChangelogWriter(store)
        watchers = WatcherRegistry(store)
        engine = TransitionEngine(
            store,
            changelog=changelog,
            watchers=watchers,
            clock=clock,
            metrics=metrics,
            auto_close_label=auto_close_label,
        )
        sweep = AutoCloseSweep(
            store,
            engine,
            inactivity_window=inactivity_window,
            system_actor=system_actor,
            clock=clock,
            metrics=metrics,
        )
        return cls(
            store,
            engine,
            sweep,
            changelog=changelog,
            watchers=watchers,
            initial_status_policy=initial_status_policy,
            conflict_retry_attempts=conflict_retry_attempts,
        )

    @property
    def engine(self) -> TransitionEngine:
        return self._engine

    @property
    def sweep(self) -> AutoCloseSweep:
        return self._sweep

    async def create_ticket(
        self,
        *,
        tenant_id: str,
        product_code: str,
        title: str,
        actor: Actor,
        description: str = "",
        ticket_type: TicketType = TicketType.SUPPORT,
        client_priority: int = 3,
        client_severity: int = 3,
    ) -> Ticket:
        return await self._engine.create(
            tenant_id=tenant_id,
            product_code=product_code,
            title=title,
            description=description,
            ticket_type=ticket_type,
            client_priority=client_priority,
            client_severity=client_severity,
            initial_status=self._policy.initial_status_for(tenant_id),
            actor=actor,
        )

    async def get_ticket(self, ticket_id: str) -> Ticket:
        ticket = await self._store.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    async def transition(
        self,
        ticket_id: str,
        name: TransitionName | str,
        actor: Actor,
        payload: Mapping[str, Any] | None = None,
    ) -> Ticket:
        return await self._engine.transition(ticket_id, name, actor, payload)

    async def transition_with_retry(
        self,
        ticket_id: str,
        name: TransitionName | str,
        actor: Actor,
        payload: Mapping[str, Any] | None = None,
    ) -> Ticket:
        """Like :meth:`transition` but re-reads and retries lost races.

        Each attempt reloads the ticket, so a retry may legitimately end in
        :class:`InvalidTicketTransitionError` once the winner's state is seen.
        """

        result = await self._apply_with_retry(ticket_id, name, actor, payload)
        return result.ticket

    async def _apply_with_retry(
        self,
        ticket_id: str,
        name: TransitionName | str,
        actor: Actor,
        payload: Mapping[str, Any] | None,
    ) -> TransitionResult:
        attempt = 1
        while True:
            try:
                return await self._engine.apply(ticket_id, name, actor, payload)
            except TicketConflictError:
                if attempt >= self._conflict_retry_attempts:
                    raise
                logger.debug("Conflict on ticket %s (%s), attempt %d", ticket_id, name, attempt)
                attempt += 1
                await asyncio.sleep(0)

    async def record_comment(
        self,
        ticket_id: str,
        actor: Actor,
        *,
        comment_id: str | None = None,
        preview: str | None = None,
        internal: bool = False,
    ) -> Ticket:
        payload: dict[str, Any] = {"comment_id": comment_id, "preview": preview, "internal": internal}
        return await self.transition_with_retry(ticket_id, TransitionName.COMMENT_ADDED, actor, payload)

    async def record_attachment(self, ticket_id: str, actor: Actor, *, file_name: str) -> Ticket:
        return await self.transition_with_retry(
            ticket_id, TransitionName.ATTACHMENT_ADDED, actor, {"file_name": file_name}
        )

    async def list_changelog(self, ticket_id: str) -> list[ChangelogEntry]:
        return await self._changelog.list(ticket_id)

    async def add_watcher(self, ticket_id: str, user_id: str, actor: Actor) -> Watcher:
        result = await self._apply_with_retry(ticket_id, TransitionName.WATCHER_ADDED, actor, {"user_id": user_id})
        if result.watcher is None:
            raise RuntimeError("watcher_added transition returned no watcher")
        return result.watcher

    async def remove_watcher(self, ticket_id: str, watcher_id: str, actor: Actor) -> None:
        await self.transition_with_retry(
            ticket_id, TransitionName.WATCHER_REMOVED, actor, {"watcher_id": watcher_id}
        )

    async def get_watcher(self, ticket_id: str, watcher_id: str) -> Watcher:
        watcher = await self._watchers.find(ticket_id, watcher_id)
        if watcher is None:
            raise TicketNotFoundError(f"Watcher {watcher_id} not found on ticket {ticket_id}")
        return watcher

    async def list_watchers(self, ticket_id: str) -> list[Watcher]:
        return await self._watchers.list(ticket_id)

    async def run_auto_close_sweep(self, now: datetime | None = None) -> SweepReport:
        return await self._sweep.run(now)
