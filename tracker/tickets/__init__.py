"""Ticket lifecycle engine, changelog, watchers and auto-close sweep."""

from .engine import TransitionEngine
from .errors import (
    InvalidTicketTransitionError,
    TicketConflictError,
    TicketForbiddenError,
    TicketNotFoundError,
    TicketServiceError,
    TicketValidationError,
)
from .memory import InMemoryTicketStore
from .models import Actor, ChangelogEntry, SweepReport, Ticket, Watcher
from .repository import PostgresTicketStore
from .service import TicketService
from .state import ActorRole, ChangeType, TicketStateMachine, TicketStatus, TransitionName
from .sweep import AutoCloseSweep

__all__ = [
    "Actor",
    "ActorRole",
    "AutoCloseSweep",
    "ChangeType",
    "ChangelogEntry",
    "InMemoryTicketStore",
    "InvalidTicketTransitionError",
    "PostgresTicketStore",
    "SweepReport",
    "Ticket",
    "TicketConflictError",
    "TicketForbiddenError",
    "TicketNotFoundError",
    "TicketService",
    "TicketServiceError",
    "TicketStateMachine",
    "TicketStatus",
    "TicketValidationError",
    "TransitionEngine",
    "TransitionName",
    "Watcher",
]
