import enum
from typing import Dict, FrozenSet


class SessionState(enum.Enum):
    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    ACTIVE = "ACTIVE"
    ERROR = "ERROR"


# Every permitted transition; anything else is a programming error.
TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.CONNECTING}),
    # IDLE here only serves stop() while a start is still connecting
    SessionState.CONNECTING: frozenset({SessionState.ACTIVE, SessionState.ERROR, SessionState.IDLE}),
    SessionState.ACTIVE: frozenset({SessionState.ERROR, SessionState.IDLE}),
    SessionState.ERROR: frozenset({SessionState.CONNECTING}),
}


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in TRANSITIONS[current]
