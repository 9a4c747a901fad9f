from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    OPEN = "open"
    PENDING_INTERNAL_REVIEW = "pending_internal_review"
    IN_PROGRESS = "in_progress"
    WAITING_FOR_CUSTOMER = "waiting_for_customer"
    RESOLVED = "resolved"
    CLOSED = "closed"


TERMINAL_STATUSES: frozenset[TicketStatus] = frozenset({TicketStatus.CLOSED})
INITIAL_STATUSES: frozenset[TicketStatus] = frozenset({TicketStatus.OPEN, TicketStatus.PENDING_INTERNAL_REVIEW})


class ActorRole(str, Enum):
    """Roles an actor may hold when requesting a transition."""

    CUSTOMER = "customer"
    AGENT = "agent"
    ADMIN = "admin"
    SYSTEM = "system"


class ChangeType(str, Enum):
    """Kinds of changelog entries."""

    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    PRIORITY_CHANGED = "priority_changed"
    SEVERITY_CHANGED = "severity_changed"
    COMMENT_ADDED = "comment_added"
    ATTACHMENT_ADDED = "attachment_added"
    WATCHER_ADDED = "watcher_added"
    WATCHER_REMOVED = "watcher_removed"
    ESCALATED = "escalated"
    ASSIGNED = "assigned"
    PUSHED_TO_SYSTECH = "pushed_to_systech"
    RESOLVED = "resolved"
    REOPENED = "reopened"
    AUTO_CLOSE = "auto_close"


class TransitionName(str, Enum):
    """Named operations accepted by the transition engine."""

    CREATE = "create"
    PUSH_TO_SYSTECH = "push_to_systech"
    ESCALATE = "escalate"
    ASSIGN_INTERNAL = "assign_internal"
    RESOLVE_INTERNALLY = "resolve_internally"
    RESOLVE = "resolve"
    REOPEN = "reopen"
    AUTO_CLOSE = "auto_close"
    CLOSE = "close"
    START_PROGRESS = "start_progress"
    REQUEST_CUSTOMER_INFO = "request_customer_info"
    CUSTOMER_RESPONDED = "customer_responded"
    CHANGE_PRIORITY = "change_priority"
    CHANGE_SEVERITY = "change_severity"
    COMMENT_ADDED = "comment_added"
    ATTACHMENT_ADDED = "attachment_added"
    WATCHER_ADDED = "watcher_added"
    WATCHER_REMOVED = "watcher_removed"


# Source sets used by the rule table.
_ANY = frozenset(TicketStatus)
_NON_TERMINAL = _ANY - TERMINAL_STATUSES


@dataclass(frozen=True, slots=True)
class TransitionRule:
    """Static description of a single transition."""

    name: TransitionName
    sources: frozenset[TicketStatus]
    target: TicketStatus | None
    roles: frozenset[ActorRole]
    change_type: ChangeType

    def resolve_target(self, current: TicketStatus) -> TicketStatus:
        return current if self.target is None else self.target

    @property
    def changes_status(self) -> bool:
        return self.target is not None


def _rule(
    name: TransitionName,
    sources: frozenset[TicketStatus],
    target: TicketStatus | None,
    roles: tuple[ActorRole, ...],
    change_type: ChangeType,
) -> TransitionRule:
    return TransitionRule(name=name, sources=sources, target=target, roles=frozenset(roles), change_type=change_type)


_HUMANS = (ActorRole.CUSTOMER, ActorRole.AGENT, ActorRole.ADMIN)
_STAFF = (ActorRole.AGENT, ActorRole.ADMIN)

DEFAULT_RULES: Mapping[TransitionName, TransitionRule] = {
    rule.name: rule
    for rule in (
        _rule(
            TransitionName.PUSH_TO_SYSTECH,
            frozenset({TicketStatus.PENDING_INTERNAL_REVIEW}),
            TicketStatus.IN_PROGRESS,
            (ActorRole.ADMIN,),
            ChangeType.PUSHED_TO_SYSTECH,
        ),
        _rule(TransitionName.ESCALATE, _NON_TERMINAL, None, (ActorRole.ADMIN,), ChangeType.ESCALATED),
        _rule(TransitionName.ASSIGN_INTERNAL, _NON_TERMINAL, None, (ActorRole.ADMIN,), ChangeType.ASSIGNED),
        _rule(
            TransitionName.RESOLVE_INTERNALLY,
            frozenset({TicketStatus.PENDING_INTERNAL_REVIEW}),
            TicketStatus.RESOLVED,
            (ActorRole.ADMIN,),
            ChangeType.RESOLVED,
        ),
        _rule(
            TransitionName.RESOLVE,
            frozenset({TicketStatus.IN_PROGRESS, TicketStatus.WAITING_FOR_CUSTOMER}),
            TicketStatus.RESOLVED,
            _STAFF,
            ChangeType.RESOLVED,
        ),
        _rule(
            TransitionName.REOPEN,
            frozenset({TicketStatus.RESOLVED, TicketStatus.CLOSED}),
            TicketStatus.OPEN,
            (ActorRole.CUSTOMER, ActorRole.AGENT),
            ChangeType.REOPENED,
        ),
        _rule(
            TransitionName.AUTO_CLOSE,
            frozenset({TicketStatus.RESOLVED, TicketStatus.WAITING_FOR_CUSTOMER}),
            TicketStatus.CLOSED,
            (ActorRole.SYSTEM,),
            ChangeType.AUTO_CLOSE,
        ),
        _rule(
            TransitionName.CLOSE,
            frozenset({TicketStatus.RESOLVED}),
            TicketStatus.CLOSED,
            (ActorRole.CUSTOMER, ActorRole.ADMIN),
            ChangeType.STATUS_CHANGED,
        ),
        _rule(
            TransitionName.START_PROGRESS,
            frozenset({TicketStatus.OPEN}),
            TicketStatus.IN_PROGRESS,
            _STAFF,
            ChangeType.STATUS_CHANGED,
        ),
        _rule(
            TransitionName.REQUEST_CUSTOMER_INFO,
            frozenset({TicketStatus.IN_PROGRESS}),
            TicketStatus.WAITING_FOR_CUSTOMER,
            _STAFF,
            ChangeType.STATUS_CHANGED,
        ),
        _rule(
            TransitionName.CUSTOMER_RESPONDED,
            frozenset({TicketStatus.WAITING_FOR_CUSTOMER}),
            TicketStatus.IN_PROGRESS,
            (ActorRole.CUSTOMER, ActorRole.AGENT),
            ChangeType.STATUS_CHANGED,
        ),
        _rule(TransitionName.CHANGE_PRIORITY, _NON_TERMINAL, None, _STAFF, ChangeType.PRIORITY_CHANGED),
        _rule(TransitionName.CHANGE_SEVERITY, _NON_TERMINAL, None, _STAFF, ChangeType.SEVERITY_CHANGED),
        _rule(TransitionName.COMMENT_ADDED, _ANY, None, _HUMANS, ChangeType.COMMENT_ADDED),
        _rule(TransitionName.ATTACHMENT_ADDED, _ANY, None, _HUMANS, ChangeType.ATTACHMENT_ADDED),
        _rule(TransitionName.WATCHER_ADDED, _ANY, None, _HUMANS, ChangeType.WATCHER_ADDED),
        _rule(TransitionName.WATCHER_REMOVED, _ANY, None, _HUMANS, ChangeType.WATCHER_REMOVED),
    )
}

CREATE_RULE = _rule(TransitionName.CREATE, frozenset(), None, _HUMANS, ChangeType.CREATED)


class TicketStateMachine:
    """Validate ticket lifecycle transitions against the rule table."""

    def __init__(self, rules: Mapping[TransitionName, TransitionRule] | None = None) -> None:
        self._rules = rules or DEFAULT_RULES

    def rule_for(self, name: TransitionName) -> TransitionRule:
        try:
            return self._rules[name]
        except KeyError:
            raise ValueError(f"Unknown transition: {name!s}") from None

    def can_apply(self, name: TransitionName, current: TicketStatus) -> bool:
        rule = self._rules.get(name)
        return rule is not None and current in rule.sources

    def is_authorized(self, name: TransitionName, role: ActorRole) -> bool:
        rule = self._rules.get(name)
        return rule is not None and role in rule.roles

    def available_transitions(self, current: TicketStatus, role: ActorRole) -> list[TransitionName]:
        """Transitions the given role could request from ``current``."""

        return [name for name, rule in self._rules.items() if current in rule.sources and role in rule.roles]

    @staticmethod
    def is_terminal(status: TicketStatus) -> bool:
        return status in TERMINAL_STATUSES
