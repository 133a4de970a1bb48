"""
Conversion State Machine
========================

Pure validator for the conversion settlement lifecycle:

    pending -> {rate_locked, phase1_prepared}
    rate_locked -> phase1_prepared
    phase1_prepared -> phase2_committed -> phase3_confirmed
        -> in_progress -> confirmed -> completed

Every non-terminal state may also move to failed. completed and failed are
terminal. The machine performs no I/O; ConversionService persists the state
after each successful transition.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Union

from models import ConversionStatus
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import InvalidTransition

logger = logging.getLogger(__name__)

StateLike = Union[ConversionStatus, str]


VALID_TRANSITIONS: Dict[ConversionStatus, Set[ConversionStatus]] = {
    ConversionStatus.PENDING: {
        ConversionStatus.RATE_LOCKED,
        ConversionStatus.PHASE1_PREPARED,
        ConversionStatus.FAILED,
    },
    ConversionStatus.RATE_LOCKED: {
        ConversionStatus.PHASE1_PREPARED,
        ConversionStatus.FAILED,
    },
    ConversionStatus.PHASE1_PREPARED: {
        ConversionStatus.PHASE2_COMMITTED,
        ConversionStatus.FAILED,
    },
    ConversionStatus.PHASE2_COMMITTED: {
        ConversionStatus.PHASE3_CONFIRMED,
        ConversionStatus.FAILED,
    },
    ConversionStatus.PHASE3_CONFIRMED: {
        ConversionStatus.IN_PROGRESS,
        ConversionStatus.FAILED,
    },
    ConversionStatus.IN_PROGRESS: {
        ConversionStatus.CONFIRMED,
        ConversionStatus.FAILED,
    },
    ConversionStatus.CONFIRMED: {
        ConversionStatus.COMPLETED,
        ConversionStatus.FAILED,
    },
    ConversionStatus.COMPLETED: set(),
    ConversionStatus.FAILED: set(),
}

TERMINAL_STATES: Set[ConversionStatus] = {ConversionStatus.COMPLETED, ConversionStatus.FAILED}

# Canonical ordering used for progress reporting
HAPPY_PATH: List[ConversionStatus] = [
    ConversionStatus.PENDING,
    ConversionStatus.RATE_LOCKED,
    ConversionStatus.PHASE1_PREPARED,
    ConversionStatus.PHASE2_COMMITTED,
    ConversionStatus.PHASE3_CONFIRMED,
    ConversionStatus.IN_PROGRESS,
    ConversionStatus.CONFIRMED,
    ConversionStatus.COMPLETED,
]

PHASE_NAMES: Dict[ConversionStatus, str] = {
    ConversionStatus.PENDING: "Initializing",
    ConversionStatus.RATE_LOCKED: "Rate Locked",
    ConversionStatus.PHASE1_PREPARED: "Phase 1: Preparing",
    ConversionStatus.PHASE2_COMMITTED: "Phase 2: Committing",
    ConversionStatus.PHASE3_CONFIRMED: "Phase 3: Confirming",
    ConversionStatus.IN_PROGRESS: "Processing",
    ConversionStatus.CONFIRMED: "Confirmed",
    ConversionStatus.COMPLETED: "Completed",
    ConversionStatus.FAILED: "Failed",
}

# Average seconds spent in each state
PHASE_DURATIONS: Dict[ConversionStatus, int] = {
    ConversionStatus.PENDING: 10,
    ConversionStatus.RATE_LOCKED: 5,
    ConversionStatus.PHASE1_PREPARED: 60,
    ConversionStatus.PHASE2_COMMITTED: 120,
    ConversionStatus.PHASE3_CONFIRMED: 180,
    ConversionStatus.IN_PROGRESS: 60,
    ConversionStatus.CONFIRMED: 30,
    ConversionStatus.COMPLETED: 0,
    ConversionStatus.FAILED: 0,
}


def as_status(state: StateLike) -> ConversionStatus:
    return state if isinstance(state, ConversionStatus) else ConversionStatus(state)


@dataclass(frozen=True)
class StateTransition:
    from_state: ConversionStatus
    to_state: ConversionStatus
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


class ConversionStateMachine:
    """Tracks one conversion's state and rejects illegal moves"""

    def __init__(self, initial_state: StateLike = ConversionStatus.PENDING, conversion_id: Optional[int] = None):
        self._state = as_status(initial_state)
        self.conversion_id = conversion_id
        self._history: List[StateTransition] = []

    def get_state(self) -> ConversionStatus:
        return self._state

    def can_transition(self, new_state: StateLike) -> bool:
        return as_status(new_state) in VALID_TRANSITIONS[self._state]

    def transition(self, new_state: StateLike, metadata: Optional[Dict[str, Any]] = None) -> StateTransition:
        """
        Move to new_state.

        Raises:
            InvalidTransition: the move is not in the adjacency table; the
            current state is left untouched.
        """
        target = as_status(new_state)
        if not self.can_transition(target):
            logger.critical(
                f"🚨 INVALID_TRANSITION: Conversion {self.conversion_id} "
                f"{self._state.value} -> {target.value} "
                f"Valid options: {sorted(s.value for s in VALID_TRANSITIONS[self._state])}"
            )
            raise InvalidTransition(self._state.value, target.value, self.conversion_id)

        record = StateTransition(
            from_state=self._state,
            to_state=target,
            timestamp=get_naive_utc_now(),
            metadata=dict(metadata or {}),
        )
        self._history.append(record)
        self._state = target
        logger.debug(f"Conversion {self.conversion_id}: {record.from_state.value} -> {target.value}")
        return record

    def path_to(self, target: StateLike) -> List[ConversionStatus]:
        """
        Happy-path states to walk through, in order, to reach target.

        Returns an empty list when target is the current state.
        Raises InvalidTransition when target is not ahead on the happy path.
        """
        goal = as_status(target)
        if goal == self._state:
            return []
        if self._state not in HAPPY_PATH or goal not in HAPPY_PATH:
            raise InvalidTransition(self._state.value, goal.value, self.conversion_id)
        start = HAPPY_PATH.index(self._state)
        end = HAPPY_PATH.index(goal)
        if end <= start:
            raise InvalidTransition(self._state.value, goal.value, self.conversion_id)

        path = []
        current = self._state
        for step in HAPPY_PATH[start + 1:end + 1]:
            # rate_locked is a side branch, only entered when it is the goal
            if step == ConversionStatus.RATE_LOCKED and goal != ConversionStatus.RATE_LOCKED:
                continue
            if step not in VALID_TRANSITIONS[current]:
                break
            path.append(step)
            current = step
        if current != goal:
            raise InvalidTransition(self._state.value, goal.value, self.conversion_id)
        return path

    def get_history(self) -> List[StateTransition]:
        return list(self._history)

    def get_last_transition(self) -> Optional[StateTransition]:
        return self._history[-1] if self._history else None

    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def has_failed(self) -> bool:
        return self._state == ConversionStatus.FAILED

    def is_completed(self) -> bool:
        return self._state == ConversionStatus.COMPLETED

    def get_progress_percentage(self) -> int:
        if self._state not in HAPPY_PATH:
            return 0
        return round(HAPPY_PATH.index(self._state) / (len(HAPPY_PATH) - 1) * 100)

    def get_phase_name(self) -> str:
        return PHASE_NAMES.get(self._state, "Unknown")

    def get_estimated_completion(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """Current time plus the average duration of this and every later phase"""
        if self.is_terminal():
            return None
        now = now or get_naive_utc_now()
        index = HAPPY_PATH.index(self._state)
        remaining = sum(PHASE_DURATIONS[state] for state in HAPPY_PATH[index:])
        return now + timedelta(seconds=remaining)
