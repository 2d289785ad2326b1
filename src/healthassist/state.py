"""Lifecycle state machine and lock-protected transitions."""

from __future__ import annotations

import asyncio
from enum import Enum
import logging

LOGGER = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    """Finite state machine for a signed-in session."""

    BOOTSTRAPPING = "BOOTSTRAPPING"
    AWAITING_INTAKE = "AWAITING_INTAKE"
    ACTIVE = "ACTIVE"
    ERROR = "ERROR"
    SIGNED_OUT = "SIGNED_OUT"


class StateManager:
    """Manage lifecycle transitions with async lock semantics."""

    def __init__(self, initial: LifecycleState = LifecycleState.BOOTSTRAPPING) -> None:
        self._lock = asyncio.Lock()
        self._state = initial

    @property
    def current(self) -> LifecycleState:
        """Return the last committed state without waiting for the lock."""
        return self._state

    async def get_state(self) -> LifecycleState:
        async with self._lock:
            return self._state

    async def transition_to(self, new_state: LifecycleState) -> LifecycleState:
        """Transition to a new state and return it."""
        async with self._lock:
            self._log_transition(self._state, new_state)
            self._state = new_state
            return self._state

    async def transition_if(
        self,
        expected_state: LifecycleState,
        new_state: LifecycleState,
    ) -> bool:
        """Transition only when current state matches expected state."""
        async with self._lock:
            if self._state != expected_state:
                return False
            self._log_transition(self._state, new_state)
            self._state = new_state
            return True

    async def is_active(self) -> bool:
        """Return True when conversation operations are allowed."""
        async with self._lock:
            return self._state == LifecycleState.ACTIVE

    @staticmethod
    def _log_transition(old: LifecycleState, new: LifecycleState) -> None:
        LOGGER.info(
            "lifecycle.state.transition",
            extra={
                "event": "lifecycle.state.transition",
                "from_state": old.value,
                "to_state": new.value,
            },
        )
