from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tracker.metrics import MetricsRegistry
from tracker.tickets.memory import InMemoryTicketStore
from tracker.tickets.models import Actor
from tracker.tickets.policy import InitialStatusPolicy
from tracker.tickets.service import TicketService
from tracker.tickets.state import ActorRole, TicketStatus

OPEN_TENANT = "tenant-open"
REVIEW_TENANT = "tenant-review"


class FrozenClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store() -> InMemoryTicketStore:
    return InMemoryTicketStore()


@pytest.fixture
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def service(store, clock, metrics) -> TicketService:
    return TicketService.build(
        store,
        clock=clock,
        metrics=metrics,
        initial_status_policy=InitialStatusPolicy(per_tenant={OPEN_TENANT: TicketStatus.OPEN}),
    )


@pytest.fixture
def customer() -> Actor:
    return Actor(user_id="u-customer", user_name="Cem Customer", role=ActorRole.CUSTOMER)


@pytest.fixture
def agent() -> Actor:
    return Actor(user_id="u-agent", user_name="Ayla Agent", role=ActorRole.AGENT)


@pytest.fixture
def admin() -> Actor:
    return Actor(user_id="u-admin", user_name="Ada Admin", role=ActorRole.ADMIN)


@pytest.fixture
def system_actor() -> Actor:
    return Actor(user_id="system", user_name="System", role=ActorRole.SYSTEM)


@pytest.fixture
def ticket_in(service, customer, agent, admin):
    """Return an async factory creating a ticket already moved into ``status``."""

    async def factory(status: TicketStatus = TicketStatus.PENDING_INTERNAL_REVIEW, **overrides):
        tenant = OPEN_TENANT if status is TicketStatus.OPEN else REVIEW_TENANT
        kwargs = {"tenant_id": tenant, "product_code": "CSUP", "title": "Login page fails", "actor": customer}
        kwargs.update(overrides)
        ticket = await service.create_ticket(**kwargs)
        if status in (TicketStatus.OPEN, TicketStatus.PENDING_INTERNAL_REVIEW):
            return ticket

        ticket = await service.transition(ticket.id, "push_to_systech", admin)
        if status is TicketStatus.IN_PROGRESS:
            return ticket
        if status is TicketStatus.WAITING_FOR_CUSTOMER:
            return await service.transition(ticket.id, "request_customer_info", agent)

        ticket = await service.transition(ticket.id, "resolve", agent, {"resolution": "completed"})
        if status is TicketStatus.RESOLVED:
            return ticket
        return await service.transition(ticket.id, "close", customer)

    return factory
