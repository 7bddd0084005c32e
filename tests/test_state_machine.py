"""Tests for the session state machine."""

import itertools

import pytest

from preview_runtime.errors import IllegalTransition, SessionTerminal
from preview_runtime.schemas import SessionStatus
from preview_runtime.sandbox.state_machine import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    SessionStateMachine,
)

S = SessionStatus

LEGAL = {
    (S.READY, S.STARTING),
    (S.READY, S.FAILED),
    (S.STARTING, S.BUILDING),
    (S.STARTING, S.FAILED),
    (S.BUILDING, S.RUNNING),
    (S.BUILDING, S.FAILED),
    (S.RUNNING, S.TERMINATED),
    (S.RUNNING, S.FAILED),
}


@pytest.mark.parametrize("from_status,to_status", list(itertools.product(S, S)))
def test_every_pair(from_status, to_status):
    machine = SessionStateMachine("s-1")

    if (from_status, to_status) in LEGAL:
        record = machine.transition(from_status, to_status)
        assert record.from_status == from_status
        assert record.to_status == to_status
        assert machine.history == [record]
    else:
        with pytest.raises(IllegalTransition) as exc_info:
            machine.transition(from_status, to_status)
        assert exc_info.value.from_status == from_status
        assert exc_info.value.to_status == to_status
        assert machine.history == []


def test_table_matches_legal_pairs():
    table = {(f, t) for f, targets in ALLOWED_TRANSITIONS.items() for t in targets}
    assert table == LEGAL


class TestTerminal:

    @pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_statuses_reject_mutation(self, status):
        machine = SessionStateMachine("s-1")
        assert machine.is_terminal(status)
        assert machine.allowed_transitions(status) == frozenset()
        with pytest.raises(SessionTerminal):
            machine.assert_not_terminal(status)

    @pytest.mark.parametrize("status", [S.READY, S.STARTING, S.BUILDING, S.RUNNING])
    def test_live_statuses_pass(self, status):
        machine = SessionStateMachine("s-1")
        assert not machine.is_terminal(status)
        machine.assert_not_terminal(status)

    def test_error_lists_allowed_targets(self):
        machine = SessionStateMachine("s-9")
        with pytest.raises(IllegalTransition) as exc_info:
            machine.transition(S.READY, S.RUNNING)
        message = str(exc_info.value)
        assert "READY -> RUNNING" in message
        assert "FAILED, STARTING" in message
        assert "s-9" in message


def test_history_accumulates_in_order():
    machine = SessionStateMachine("s-1")
    machine.transition(S.READY, S.STARTING)
    machine.transition(S.STARTING, S.BUILDING)
    machine.transition(S.BUILDING, S.RUNNING)
    machine.transition(S.RUNNING, S.TERMINATED)
    assert [r.to_status for r in machine.history] == [S.STARTING, S.BUILDING, S.RUNNING, S.TERMINATED]
