from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from .state import INITIAL_STATUSES, TicketStatus


@dataclass(frozen=True, slots=True)
class InitialStatusPolicy:
    """Decide whether a new ticket starts ``open`` or in internal review.

    Tenants that triage internally before involving support start in
    ``pending_internal_review``; the rest start ``open``.
    """

    default: TicketStatus = TicketStatus.PENDING_INTERNAL_REVIEW
    per_tenant: Mapping[str, TicketStatus] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for status in (self.default, *self.per_tenant.values()):
            if status not in INITIAL_STATUSES:
                raise ValueError(f"{status.value} is not a valid initial status")

    def initial_status_for(self, tenant_id: str) -> TicketStatus:
        return self.per_tenant.get(tenant_id, self.default)
