import pytest

from tracker.tickets.state import (
    DEFAULT_RULES,
    ActorRole,
    ChangeType,
    TicketStateMachine,
    TicketStatus,
    TransitionName,
)


def test_state_machine_allows_expected_transitions():
    machine = TicketStateMachine()
    assert machine.can_apply(TransitionName.PUSH_TO_SYSTECH, TicketStatus.PENDING_INTERNAL_REVIEW)
    assert machine.can_apply(TransitionName.RESOLVE, TicketStatus.IN_PROGRESS)
    assert machine.can_apply(TransitionName.RESOLVE, TicketStatus.WAITING_FOR_CUSTOMER)
    assert machine.can_apply(TransitionName.REOPEN, TicketStatus.CLOSED)
    assert machine.can_apply(TransitionName.AUTO_CLOSE, TicketStatus.WAITING_FOR_CUSTOMER)


def test_state_machine_blocks_invalid_transitions():
    machine = TicketStateMachine()
    assert not machine.can_apply(TransitionName.PUSH_TO_SYSTECH, TicketStatus.OPEN)
    assert not machine.can_apply(TransitionName.RESOLVE, TicketStatus.OPEN)
    assert not machine.can_apply(TransitionName.ESCALATE, TicketStatus.CLOSED)
    assert not machine.can_apply(TransitionName.AUTO_CLOSE, TicketStatus.IN_PROGRESS)
    with pytest.raises(ValueError):
        machine.rule_for(TransitionName.CREATE)


def test_status_neutral_events_apply_from_every_status():
    machine = TicketStateMachine()
    for name in (
        TransitionName.COMMENT_ADDED,
        TransitionName.ATTACHMENT_ADDED,
        TransitionName.WATCHER_ADDED,
        TransitionName.WATCHER_REMOVED,
    ):
        rule = machine.rule_for(name)
        assert not rule.changes_status
        assert all(machine.can_apply(name, status) for status in TicketStatus)


def test_role_gates_follow_rule_table():
    machine = TicketStateMachine()
    assert machine.is_authorized(TransitionName.PUSH_TO_SYSTECH, ActorRole.ADMIN)
    assert not machine.is_authorized(TransitionName.PUSH_TO_SYSTECH, ActorRole.AGENT)
    assert machine.is_authorized(TransitionName.REOPEN, ActorRole.CUSTOMER)
    assert not machine.is_authorized(TransitionName.REOPEN, ActorRole.ADMIN)
    assert machine.is_authorized(TransitionName.AUTO_CLOSE, ActorRole.SYSTEM)
    assert not machine.is_authorized(TransitionName.AUTO_CLOSE, ActorRole.ADMIN)


def test_only_closed_is_terminal():
    assert TicketStateMachine.is_terminal(TicketStatus.CLOSED)
    assert not TicketStateMachine.is_terminal(TicketStatus.RESOLVED)


def test_available_transitions_for_customer_on_resolved_ticket():
    machine = TicketStateMachine()
    available = machine.available_transitions(TicketStatus.RESOLVED, ActorRole.CUSTOMER)

    assert TransitionName.REOPEN in available
    assert TransitionName.CLOSE in available
    assert TransitionName.RESOLVE not in available
    assert TransitionName.AUTO_CLOSE not in available


def test_auto_close_rule_records_its_own_change_type():
    rule = DEFAULT_RULES[TransitionName.AUTO_CLOSE]
    assert rule.change_type is ChangeType.AUTO_CLOSE
    assert rule.resolve_target(TicketStatus.RESOLVED) is TicketStatus.CLOSED
