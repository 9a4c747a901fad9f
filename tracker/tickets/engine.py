from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Mapping

from opentelemetry import trace

from tracker.metrics import MetricsRegistry, register_default_metrics
from tracker.metrics.definitions import (
    TRANSITION_DURATION_SECONDS,
    TRANSITION_FAILURES_TOTAL,
    TRANSITIONS_TOTAL,
)

from . import issue_keys
from .changelog import ChangelogWriter
from .errors import (
    InvalidTicketTransitionError,
    TicketConflictError,
    TicketForbiddenError,
    TicketNotFoundError,
    TicketServiceError,
    TicketValidationError,
)
from .models import (
    Actor,
    Clock,
    EscalationReason,
    Resolution,
    Ticket,
    TicketType,
    Watcher,
    utcnow,
)
from .repository import TicketStore
from .state import CREATE_RULE, INITIAL_STATUSES, TicketStateMachine, TicketStatus, TransitionName, TransitionRule
from .watchers import WatcherRegistry

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

AUTO_CLOSE_LABEL = "auto_closed_no_response"
ESCALATED_LABEL = "escalated"
COMMENT_PREVIEW_LENGTH = 100

Payload = Mapping[str, Any]


@dataclass(slots=True)
class TicketChange:
    """Result of applying a transition to a ticket, before persistence."""

    fields: dict[str, Any] = field(default_factory=dict)
    old_value: str | None = None
    new_value: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TransitionResult:
    ticket: Ticket
    watcher: Watcher | None = None


ChangeBuilder = Callable[[Ticket, TransitionRule, Actor, Payload, datetime], TicketChange]


def _optional_text(payload: Payload, key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise TicketValidationError(f"'{key}' must be a string")
    value = value.strip()
    return value or None


def _required_text(payload: Payload, key: str) -> str:
    value = _optional_text(payload, key)
    if value is None:
        raise TicketValidationError(f"'{key}' is required")
    return value


def _level(payload: Payload, key: str = "value") -> int:
    value = payload.get(key)
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 4:
        raise TicketValidationError(f"'{key}' must be an integer between 1 and 4")
    return value


def _enum_choice(enum_type: type, payload: Payload, key: str) -> Any:
    raw = _required_text(payload, key)
    try:
        return enum_type(raw)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_type)
        raise TicketValidationError(f"'{key}' must be one of: {allowed}") from None


def _status_change(ticket: Ticket, rule: TransitionRule) -> TicketChange:
    target = rule.resolve_target(ticket.status)
    return TicketChange(fields={"status": target}, old_value=ticket.status.value, new_value=target.value)


def _with_note(change: TicketChange, payload: Payload, key: str = "note") -> TicketChange:
    note = _optional_text(payload, key)
    if note is not None:
        change.metadata[key] = note
    return change


class TransitionEngine:
    """Validate and apply named transitions to tickets.

    Every successful call writes the new ticket row and exactly one changelog
    entry inside a single store transaction. The ticket update is conditioned
    on the version that was read, so a concurrent writer that lost the race
    receives :class:`TicketConflictError` and nothing is persisted.
    """

    def __init__(
        self,
        store: TicketStore,
        *,
        state_machine: TicketStateMachine | None = None,
        changelog: ChangelogWriter | None = None,
        watchers: WatcherRegistry | None = None,
        clock: Clock = utcnow,
        metrics: MetricsRegistry | None = None,
        auto_close_label: str = AUTO_CLOSE_LABEL,
    ) -> None:
        self._store = store
        self._state_machine = state_machine or TicketStateMachine()
        self._changelog = changelog or ChangelogWriter(store)
        self._watchers = watchers or WatcherRegistry(store)
        self._clock = clock
        self._metrics = register_default_metrics(metrics)
        self._auto_close_label = auto_close_label
        self._builders: dict[TransitionName, ChangeBuilder] = {
            TransitionName.PUSH_TO_SYSTECH: self._push_to_systech,
            TransitionName.ESCALATE: self._escalate,
            TransitionName.ASSIGN_INTERNAL: self._assign_internal,
            TransitionName.RESOLVE_INTERNALLY: self._resolve_internally,
            TransitionName.RESOLVE: self._resolve,
            TransitionName.REOPEN: self._reopen,
            TransitionName.AUTO_CLOSE: self._auto_close,
            TransitionName.CLOSE: self._close,
            TransitionName.START_PROGRESS: self._plain_status,
            TransitionName.REQUEST_CUSTOMER_INFO: self._plain_status,
            TransitionName.CUSTOMER_RESPONDED: self._plain_status,
            TransitionName.CHANGE_PRIORITY: self._change_priority,
            TransitionName.CHANGE_SEVERITY: self._change_severity,
            TransitionName.COMMENT_ADDED: self._comment_added,
            TransitionName.ATTACHMENT_ADDED: self._attachment_added,
            TransitionName.WATCHER_ADDED: self._watcher_added,
            TransitionName.WATCHER_REMOVED: self._watcher_removed,
        }

    @property
    def state_machine(self) -> TicketStateMachine:
        return self._state_machine

    async def create(
        self,
        *,
        tenant_id: str,
        product_code: str,
        title: str,
        actor: Actor,
        initial_status: TicketStatus,
        description: str = "",
        ticket_type: TicketType = TicketType.SUPPORT,
        client_priority: int = 3,
        client_severity: int = 3,
        labels: frozenset[str] = frozenset(),
    ) -> Ticket:
        """Insert a new ticket together with its ``created`` changelog entry."""

        if actor.role not in CREATE_RULE.roles:
            raise TicketForbiddenError(f"Role {actor.role.value} may not create tickets")
        if initial_status not in INITIAL_STATUSES:
            raise TicketValidationError(f"Tickets cannot start in status {initial_status.value}")
        if not title or not title.strip():
            raise TicketValidationError("'title' is required")
        priority = _level({"client_priority": client_priority}, "client_priority")
        severity = _level({"client_severity": client_severity}, "client_severity")
        try:
            code = issue_keys.normalize_product_code(product_code)
        except ValueError as exc:
            raise TicketValidationError(str(exc)) from exc

        now = self._clock()
        async with self._store.transaction() as session:
            number = await session.next_issue_number(tenant_id, code, issue_keys.type_code(ticket_type))
            ticket = Ticket(
                id=str(uuid.uuid4()),
                issue_key=issue_keys.format_issue_key(code, ticket_type, number),
                tenant_id=tenant_id,
                product_code=code,
                title=title.strip(),
                description=description,
                type=ticket_type,
                client_priority=priority,
                client_severity=severity,
                status=initial_status,
                created_by=actor.user_id,
                created_at=now,
                updated_at=now,
                labels=frozenset(labels),
            )
            await session.insert_ticket(ticket)
            await self._changelog.append(
                session,
                ticket_id=ticket.id,
                change_type=CREATE_RULE.change_type,
                actor=actor,
                new_value=initial_status.value,
                metadata={"issue_key": ticket.issue_key, "type": ticket_type.value},
                created_at=now,
            )
        self._metrics.counter(TRANSITIONS_TOTAL).inc(labels={"transition": TransitionName.CREATE.value})
        logger.info("Created ticket %s (%s) in status %s", ticket.issue_key, ticket.id, initial_status.value)
        return ticket

    async def transition(
        self,
        ticket_id: str,
        name: TransitionName | str,
        actor: Actor,
        payload: Payload | None = None,
        *,
        at: datetime | None = None,
        expected_version: int | None = None,
    ) -> Ticket:
        result = await self.apply(ticket_id, name, actor, payload, at=at, expected_version=expected_version)
        return result.ticket

    async def apply(
        self,
        ticket_id: str,
        name: TransitionName | str,
        actor: Actor,
        payload: Payload | None = None,
        *,
        at: datetime | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        """Run one transition and return the ticket plus any watcher it touched.

        When ``expected_version`` is given, the transition only proceeds if the
        ticket still carries that version; otherwise it fails with
        :class:`TicketConflictError`.
        """

        transition_name = self._coerce_name(name)
        labels = {"transition": transition_name.value}
        with tracer.start_as_current_span("ticket.transition") as span:
            span.set_attribute("ticket.id", ticket_id)
            span.set_attribute("ticket.transition", transition_name.value)
            span.set_attribute("actor.role", actor.role.value)
            try:
                with self._metrics.timer(TRANSITION_DURATION_SECONDS, labels=labels):
                    result = await self._apply(
                        ticket_id, transition_name, actor, dict(payload or {}), at, expected_version
                    )
            except TicketServiceError as exc:
                self._metrics.counter(TRANSITION_FAILURES_TOTAL).inc(
                    labels={**labels, "error": type(exc).__name__}
                )
                span.set_attribute("ticket.error", type(exc).__name__)
                raise
        self._metrics.counter(TRANSITIONS_TOTAL).inc(labels=labels)
        return result

    def _coerce_name(self, name: TransitionName | str) -> TransitionName:
        try:
            transition_name = TransitionName(name)
        except ValueError:
            raise TicketValidationError(f"Unknown transition: {name}") from None
        if transition_name is TransitionName.CREATE:
            raise TicketValidationError("Tickets are created through create(), not transition()")
        return transition_name

    async def _apply(
        self,
        ticket_id: str,
        name: TransitionName,
        actor: Actor,
        payload: dict[str, Any],
        at: datetime | None,
        expected_version: int | None,
    ) -> TransitionResult:
        ticket = await self._store.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")

        rule = self._state_machine.rule_for(name)
        if ticket.status not in rule.sources:
            raise InvalidTicketTransitionError(
                f"Cannot {name.value} ticket {ticket.issue_key} in status {ticket.status.value}"
            )
        if expected_version is not None and ticket.version != expected_version:
            raise TicketConflictError(
                f"Ticket {ticket.issue_key} changed since version {expected_version} (now {ticket.version})"
            )
        # entries for one ticket must never go backwards in time
        now = max(at or self._clock(), ticket.updated_at)
        change = self._builders[name](ticket, rule, actor, payload, now)
        if actor.role not in rule.roles:
            raise TicketForbiddenError(f"Role {actor.role.value} may not {name.value}")

        updated = replace(ticket, **change.fields, updated_at=now, version=ticket.version + 1)
        watcher: Watcher | None = None
        async with self._store.transaction() as session:
            if name is TransitionName.WATCHER_ADDED:
                watcher, created = await self._watchers.add(
                    session,
                    ticket_id=ticket.id,
                    user_id=change.new_value or "",
                    added_by=actor.user_id,
                    added_at=now,
                )
                if not created:
                    return TransitionResult(ticket=ticket, watcher=watcher)
                change.metadata["watcher_id"] = watcher.id
            elif name is TransitionName.WATCHER_REMOVED:
                watcher = await self._watchers.remove(
                    session, ticket_id=ticket.id, watcher_id=str(change.metadata["watcher_id"])
                )
                change.old_value = watcher.user_id

            if not await session.update_ticket(updated, expected_version=ticket.version):
                raise TicketConflictError(
                    f"Ticket {ticket.issue_key} was modified concurrently; reload and retry"
                )
            await self._changelog.append(
                session,
                ticket_id=ticket.id,
                change_type=rule.change_type,
                actor=actor,
                old_value=change.old_value,
                new_value=change.new_value,
                metadata=change.metadata,
                created_at=now,
            )

        logger.info(
            "Ticket %s: %s by %s (%s -> %s)",
            ticket.issue_key,
            name.value,
            actor.user_id,
            ticket.status.value,
            updated.status.value,
        )
        return TransitionResult(ticket=updated, watcher=watcher)

    # Change builders. Each is a pure function of (ticket, rule, actor, payload, now).

    def _plain_status(
        self, ticket: Ticket, rule: TransitionRule, actor: Actor, payload: Payload, now: datetime
    ) -> TicketChange:
        return _with_note(_status_change(ticket, rule), payload)

    def _push_to_systech(
        self, ticket: Ticket, rule: TransitionRule, actor: Actor, payload: Payload, now: datetime
    ) -> TicketChange:
        if ticket.pushed_to_systech_at is not None:
            raise InvalidTicketTransitionError(f"Ticket {ticket.issue_key} was already pushed to Systech")
        change = _status_change(ticket, rule)
        change.fields.update(pushed_to_systech_at=now, pushed_to_systech_by=actor.user_id)
        change.metadata["pushed_at"] = now.isoformat()
        return change

    def _escalate(
        self, ticket: Ticket, rule: TransitionRule, actor: Actor, payload: Payload, now: datetime
    ) -> TicketChange:
        reason: EscalationReason = _enum_choice(EscalationReason, payload, "reason")
        note = _optional_text(payload, "note")
        metadata: dict[str, Any] = {"escalation_reason": reason.value}
        if note is not None:
            metadata["escalation_note"] = note
        return TicketChange(
            fields={
                "escalation_reason": reason,
                "escalation_note": note,
                "labels": ticket.labels | {ESCALATED_LABEL},
            },
            old_value=ticket.escalation_reason.value if ticket.escalation_reason else None,
            new_value=reason.value,
            metadata=metadata,
        )

    def _assign_internal(
        self, ticket: Ticket, rule: TransitionRule, actor: Actor, payload: Payload, now: datetime
    ) -> TicketChange:
        assignee = _required_text(payload, "user_id")
        return TicketChange(
            fields={"internal_assigned_to": assignee},
            old_value=ticket.internal_assigned_to,
            new_value=assignee,
        )

    def _resolve_internally(
        self, ticket: Ticket, rule: TransitionRule, actor: Actor, payload: Payload, now: datetime
    ) -> TicketChange:
        change = _status_change(ticket, rule)
        change.fields.update(resolution=Resolution.RESOLVED_INTERNALLY, resolution_note=_optional_text(payload, "note"))
        change.metadata["resolution"] = Resolution.RESOLVED_INTERNALLY.value
        return _with_note(change, payload)

    def _resolve(
        self, ticket: Ticket, rule: TransitionRule, actor: Actor, payload: Payload, now: datetime
    ) -> TicketChange:
        resolution: Resolution = _enum_choice(Resolution, payload, "resolution")
        if resolution is Resolution.RESOLVED_INTERNALLY:
            raise TicketValidationError("'resolved_internally' is reserved for resolve_internally")
        change = _status_change(ticket, rule)
        change.fields.update(resolution=resolution, resolution_note=_optional_text(payload, "note"))
        change.metadata["resolution"] = resolution.value
        return _with_note(change, payload)

    def _reopen(
        self, ticket: Ticket, rule: TransitionRule, actor: Actor, payload: Payload, now: datetime
    ) -> TicketChange:
        change = _status_change(ticket, rule)
        change.fields.update(closed_at=None, resolution=None, resolution_note=None)
        if ticket.resolution is not None:
            change.metadata["previous_resolution"] = ticket.resolution.value
        return _with_note(change, payload, "reason")

    def _auto_close(
        self, ticket: Ticket, rule: TransitionRule, actor: Actor, payload: Payload, now: datetime
    ) -> TicketChange:
        change = _status_change(ticket, rule)
        change.fields.update(closed_at=now, labels=ticket.labels | {self._auto_close_label})
        change.metadata.update(inactive_since=ticket.updated_at.isoformat(), label=self._auto_close_label)
        return change

    def _close(
        self, ticket: Ticket, rule: TransitionRule, actor: Actor, payload: Payload, now: datetime
    ) -> TicketChange:
        change = _status_change(ticket, rule)
        change.fields["closed_at"] = now
        return _with_note(change, payload)

    def _change_priority(
        self, ticket: Ticket, rule: TransitionRule, actor: Actor, payload: Payload, now: datetime
    ) -> TicketChange:
        value = _level(payload)
        return TicketChange(
            fields={"client_priority": value}, old_value=str(ticket.client_priority), new_value=str(value)
        )

    def _change_severity(
        self, ticket: Ticket, rule: TransitionRule, actor: Actor, payload: Payload, now: datetime
    ) -> TicketChange:
        value = _level(payload)
        return TicketChange(
            fields={"client_severity": value}, old_value=str(ticket.client_severity), new_value=str(value)
        )

    def _comment_added(
        self, ticket: Ticket, rule: TransitionRule, actor: Actor, payload: Payload, now: datetime
    ) -> TicketChange:
        metadata: dict[str, Any] = {}
        comment_id = payload.get("comment_id")
        if comment_id is not None:
            metadata["comment_id"] = str(comment_id)
        preview = _optional_text(payload, "preview")
        if preview is not None:
            metadata["preview"] = preview[:COMMENT_PREVIEW_LENGTH]
        if payload.get("internal"):
            metadata["internal"] = True
        return TicketChange(metadata=metadata)

    def _attachment_added(
        self, ticket: Ticket, rule: TransitionRule, actor: Actor, payload: Payload, now: datetime
    ) -> TicketChange:
        file_name = _required_text(payload, "file_name")
        return TicketChange(new_value=file_name, metadata={"file_name": file_name})

    def _watcher_added(
        self, ticket: Ticket, rule: TransitionRule, actor: Actor, payload: Payload, now: datetime
    ) -> TicketChange:
        return TicketChange(new_value=_required_text(payload, "user_id"))

    def _watcher_removed(
        self, ticket: Ticket, rule: TransitionRule, actor: Actor, payload: Payload, now: datetime
    ) -> TicketChange:
        return TicketChange(metadata={"watcher_id": _required_text(payload, "watcher_id")})
