"""Process-wide conversation turn state."""
from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Dict, FrozenSet, List

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    LISTENING = "LISTENING"
    GENERATING = "GENERATING"
    SPEAKING = "SPEAKING"


TurnListener = Callable[[TurnState, TurnState], None]

_EDGES: Dict[TurnState, FrozenSet[TurnState]] = {
    TurnState.LISTENING: frozenset({TurnState.GENERATING}),
    TurnState.GENERATING: frozenset({TurnState.SPEAKING, TurnState.LISTENING}),
    TurnState.SPEAKING: frozenset({TurnState.LISTENING}),
}


class TurnStateMachine:
    """Holds the current :class:`TurnState` and enforces the valid edges.

    Transitions that do not follow an edge are rejected and leave the state
    untouched.
    """

    def __init__(self, initial: TurnState = TurnState.LISTENING) -> None:
        self._state = initial
        self._listeners: List[TurnListener] = []

    @property
    def state(self) -> TurnState:
        return self._state

    def can_transition(self, target: TurnState) -> bool:
        return target in _EDGES[self._state]

    def transition(self, target: TurnState) -> bool:
        """Move to *target*; return ``False`` if the edge is not allowed."""

        previous = self._state
        if not self.can_transition(target):
            logger.debug("Rejected turn transition %s -> %s", previous.value, target.value)
            return False
        self._state = target
        logger.debug("Turn %s -> %s", previous.value, target.value)
        for listener in list(self._listeners):
            listener(previous, target)
        return True

    def subscribe(self, listener: TurnListener) -> Callable[[], None]:
        """Register *listener*; the returned callable unsubscribes it."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe
