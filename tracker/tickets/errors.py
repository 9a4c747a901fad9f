from __future__ import annotations


class TicketServiceError(RuntimeError):
    """Base error for ticket service issues."""


class TicketNotFoundError(TicketServiceError):
    """Raised when a ticket or watcher could not be located."""


class InvalidTicketTransitionError(TicketServiceError):
    """Raised when a transition is not legal from the ticket's current state."""


class TicketForbiddenError(TicketServiceError):
    """Raised when the actor's role may not request a transition."""


class TicketConflictError(TicketServiceError):
    """Raised when a concurrent write won the race for the same ticket."""


class TicketValidationError(TicketServiceError):
    """Raised when a transition payload is malformed."""
