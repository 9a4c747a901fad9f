from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping

from .state import ActorRole, ChangeType, TicketStatus

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


class TicketType(str, Enum):
    SUPPORT = "support"
    FEATURE_REQUEST = "feature_request"


class Resolution(str, Enum):
    """Reason codes recorded when a ticket enters ``resolved``."""

    COMPLETED = "completed"
    DUPLICATE = "duplicate"
    WONT_DO = "wont_do"
    MOVED = "moved"
    INVALID = "invalid"
    OBSOLETE = "obsolete"
    CANNOT_REPRODUCE = "cannot_reproduce"
    RESOLVED_INTERNALLY = "resolved_internally"


class EscalationReason(str, Enum):
    EXECUTIVE_REQUEST = "executive_request"
    PRODUCTION_DOWN = "production_down"
    COMPLIANCE = "compliance"
    CUSTOMER_IMPACT = "customer_impact"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class Actor:
    """Identity and role of whoever requests a transition."""

    user_id: str
    user_name: str
    role: ActorRole


@dataclass(slots=True)
class Ticket:
    """Aggregate representing a support ticket entry."""

    id: str
    issue_key: str
    tenant_id: str
    product_code: str
    title: str
    description: str
    type: TicketType
    client_priority: int
    client_severity: int
    status: TicketStatus
    created_by: str
    created_at: datetime
    updated_at: datetime
    resolution: Resolution | None = None
    resolution_note: str | None = None
    escalation_reason: EscalationReason | None = None
    escalation_note: str | None = None
    internal_assigned_to: str | None = None
    pushed_to_systech_at: datetime | None = None
    pushed_to_systech_by: str | None = None
    labels: frozenset[str] = frozenset()
    closed_at: datetime | None = None
    version: int = 1


@dataclass(slots=True)
class ChangelogEntry:
    """Immutable history entry describing one mutation of a ticket."""

    id: str
    ticket_id: str
    change_type: ChangeType
    user_id: str
    user_name: str
    old_value: str | None
    new_value: str | None
    created_at: datetime
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Watcher:
    """A user subscribed to visibility on a ticket."""

    id: str
    ticket_id: str
    user_id: str
    added_by: str
    added_at: datetime


@dataclass(slots=True)
class SweepFailure:
    ticket_id: str
    issue_key: str
    error: str
    message: str


@dataclass(slots=True)
class SweepReport:
    """Summary of a single auto-close sweep run."""

    ran_at: datetime
    closed_ticket_keys: list[str] = field(default_factory=list)
    failures: list[SweepFailure] = field(default_factory=list)

    @property
    def closed_count(self) -> int:
        return len(self.closed_ticket_keys)
