"""
Session State Machine - the only authority on legal status changes.

    READY -> STARTING -> BUILDING -> RUNNING -> TERMINATED
      |         |           |          |
      +---------+-----------+----------+---> FAILED

No backward transitions. FAILED and TERMINATED are terminal.
"""

import time
from dataclasses import dataclass
from typing import Dict, FrozenSet, List

import structlog

from preview_runtime.errors import IllegalTransition, SessionTerminal
from preview_runtime.schemas import SessionStatus

logger = structlog.get_logger()


ALLOWED_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    SessionStatus.READY: frozenset({SessionStatus.STARTING, SessionStatus.FAILED}),
    SessionStatus.STARTING: frozenset({SessionStatus.BUILDING, SessionStatus.FAILED}),
    SessionStatus.BUILDING: frozenset({SessionStatus.RUNNING, SessionStatus.FAILED}),
    SessionStatus.RUNNING: frozenset({SessionStatus.TERMINATED, SessionStatus.FAILED}),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.TERMINATED: frozenset(),
}

TERMINAL_STATUSES = frozenset({SessionStatus.FAILED, SessionStatus.TERMINATED})


@dataclass(frozen=True)
class TransitionRecord:
    """One accepted transition, kept for audit."""
    session_id: str
    from_status: SessionStatus
    to_status: SessionStatus
    timestamp: int  # epoch milliseconds


class SessionStateMachine:
    """Validates and records status transitions for one session."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.history: List[TransitionRecord] = []

    def transition(self, from_status: SessionStatus, to_status: SessionStatus) -> TransitionRecord:
        """
        Validate a transition and record it.

        Raises:
            IllegalTransition: For any pair outside the table, including
                self-loops and leaving a terminal status
        """
        allowed = ALLOWED_TRANSITIONS[from_status]
        if to_status not in allowed:
            raise IllegalTransition(
                from_status, to_status, sorted(allowed, key=lambda s: s.value), self.session_id
            )

        record = TransitionRecord(
            session_id=self.session_id,
            from_status=from_status,
            to_status=to_status,
            timestamp=int(time.time() * 1000),
        )
        self.history.append(record)

        logger.info(
            "preview.state_transition",
            session_id=self.session_id,
            from_status=from_status.value,
            to_status=to_status.value,
            timestamp=record.timestamp,
        )
        return record

    def assert_not_terminal(self, status: SessionStatus) -> None:
        """Raise SessionTerminal if status is FAILED or TERMINATED."""
        if status in TERMINAL_STATUSES:
            raise SessionTerminal(status, self.session_id)

    @staticmethod
    def is_terminal(status: SessionStatus) -> bool:
        return status in TERMINAL_STATUSES

    @staticmethod
    def allowed_transitions(from_status: SessionStatus) -> FrozenSet[SessionStatus]:
        return ALLOWED_TRANSITIONS[from_status]
