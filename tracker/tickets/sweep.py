from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from opentelemetry import trace

from tracker.metrics import MetricsRegistry, register_default_metrics
from tracker.metrics.definitions import SWEEP_CLOSED_TOTAL, SWEEP_FAILURES_TOTAL, SWEEP_RUNS_TOTAL

from .engine import TransitionEngine
from .errors import TicketServiceError
from .models import Actor, Clock, SweepFailure, SweepReport, Ticket, utcnow
from .repository import TicketStore
from .state import ActorRole, TicketStatus, TransitionName

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

AUTO_CLOSE_STATUSES: frozenset[TicketStatus] = frozenset(
    {TicketStatus.RESOLVED, TicketStatus.WAITING_FOR_CUSTOMER}
)
DEFAULT_INACTIVITY_WINDOW = timedelta(days=5)

SYSTEM_ACTOR = Actor(user_id="system", user_name="System", role=ActorRole.SYSTEM)


def _failure(ticket: Ticket, exc: Exception) -> SweepFailure:
    return SweepFailure(ticket_id=ticket.id, issue_key=ticket.issue_key, error=type(exc).__name__, message=str(exc))


class AutoCloseSweep:
    """Close tickets abandoned in ``resolved`` or ``waiting_for_customer``.

    The sweep holds no state between runs. It is just another caller of the
    engine's ``auto_close`` transition, so a second run right after the first
    finds nothing left to close.
    """

    def __init__(
        self,
        store: TicketStore,
        engine: TransitionEngine,
        *,
        inactivity_window: timedelta = DEFAULT_INACTIVITY_WINDOW,
        system_actor: Actor = SYSTEM_ACTOR,
        clock: Clock = utcnow,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        if system_actor.role is not ActorRole.SYSTEM:
            raise ValueError("The auto-close sweep must run as a system actor")
        self._store = store
        self._engine = engine
        self._inactivity_window = inactivity_window
        self._system_actor = system_actor
        self._clock = clock
        self._metrics = register_default_metrics(metrics)

    async def run(self, now: datetime | None = None) -> SweepReport:
        now = now or self._clock()
        cutoff = now - self._inactivity_window
        report = SweepReport(ran_at=now)

        with tracer.start_as_current_span("ticket.auto_close_sweep") as span:
            candidates = await self._store.find_stale_tickets(AUTO_CLOSE_STATUSES, cutoff)
            span.set_attribute("sweep.candidates", len(candidates))
            for ticket in candidates:
                try:
                    # pinned to the selected version so later activity wins over the sweep
                    closed = await self._engine.transition(
                        ticket.id,
                        TransitionName.AUTO_CLOSE,
                        self._system_actor,
                        at=now,
                        expected_version=ticket.version,
                    )
                except TicketServiceError as exc:
                    logger.warning("Auto-close skipped ticket %s: %s", ticket.issue_key, exc)
                    report.failures.append(_failure(ticket, exc))
                    continue
                except Exception as exc:
                    logger.exception("Auto-close failed for ticket %s", ticket.issue_key)
                    report.failures.append(_failure(ticket, exc))
                    continue
                report.closed_ticket_keys.append(closed.issue_key)
                logger.info("Auto-closed ticket %s (was: %s)", closed.issue_key, ticket.status.value)
            span.set_attribute("sweep.closed", report.closed_count)
            span.set_attribute("sweep.failures", len(report.failures))

        self._metrics.counter(SWEEP_RUNS_TOTAL).inc()
        self._metrics.counter(SWEEP_CLOSED_TOTAL).inc(report.closed_count)
        self._metrics.counter(SWEEP_FAILURES_TOTAL).inc(len(report.failures))
        if report.closed_count or report.failures:
            logger.info(
                "Auto-close complete: %d closed, %d failed", report.closed_count, len(report.failures)
            )
        else:
            logger.info("Auto-close: no tickets to close")
        return report

    async def run_forever(self, interval: float, stop: asyncio.Event) -> None:
        """Run the sweep every ``interval`` seconds until ``stop`` is set."""

        while not stop.is_set():
            try:
                await self.run()
            except Exception:
                # the store itself failed; keep the schedule alive for the next tick
                logger.exception("Auto-close sweep run failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
