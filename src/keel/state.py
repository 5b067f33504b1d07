"""Pipeline run state machine.

State Machine:
    PENDING → BUILDING → VERIFYING → PUBLISHING → DEPLOYING → VALIDATING → SUCCEEDED
                 ↓           ↓            ↓            ↓            ↓
               FAILED      FAILED       FAILED       FAILED     ROLLING_BACK → ROLLED_BACK
                                                                      ↓
                                                                ROLLBACK_FAILED

Any transition not in ``ALLOWED_TRANSITIONS`` raises InvalidTransitionError.
"""

from __future__ import annotations

import structlog

from keel.errors import InvalidTransitionError
from keel.schemas.pipeline import PipelineState, StageName

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.PENDING: frozenset({PipelineState.BUILDING}),
    PipelineState.BUILDING: frozenset({PipelineState.VERIFYING, PipelineState.FAILED}),
    PipelineState.VERIFYING: frozenset({PipelineState.PUBLISHING, PipelineState.FAILED}),
    PipelineState.PUBLISHING: frozenset({PipelineState.DEPLOYING, PipelineState.FAILED}),
    PipelineState.DEPLOYING: frozenset({PipelineState.VALIDATING, PipelineState.FAILED}),
    PipelineState.VALIDATING: frozenset({PipelineState.SUCCEEDED, PipelineState.ROLLING_BACK}),
    PipelineState.ROLLING_BACK: frozenset(
        {PipelineState.ROLLED_BACK, PipelineState.ROLLBACK_FAILED}
    ),
    PipelineState.SUCCEEDED: frozenset(),
    PipelineState.FAILED: frozenset(),
    PipelineState.ROLLED_BACK: frozenset(),
    PipelineState.ROLLBACK_FAILED: frozenset(),
}

# State entered when a stage starts
STAGE_STATES: dict[StageName, PipelineState] = {
    StageName.BUILD: PipelineState.BUILDING,
    StageName.VERIFY: PipelineState.VERIFYING,
    StageName.PUBLISH: PipelineState.PUBLISHING,
    StageName.DEPLOY: PipelineState.DEPLOYING,
    StageName.VALIDATE: PipelineState.VALIDATING,
    StageName.ROLLBACK: PipelineState.ROLLING_BACK,
}


def is_valid_transition(from_state: PipelineState, to_state: PipelineState) -> bool:
    return to_state in ALLOWED_TRANSITIONS[from_state]


class PipelineStateMachine:
    """Current state and transition history of one pipeline run.

    Examples:
        >>> machine = PipelineStateMachine()
        >>> machine.transition(PipelineState.BUILDING)
        >>> machine.transition(PipelineState.FAILED)
        >>> machine.is_terminal
        True
    """

    def __init__(self, initial: PipelineState = PipelineState.PENDING) -> None:
        self._state = initial
        self._history: list[PipelineState] = [initial]

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def history(self) -> list[PipelineState]:
        """Every state entered so far, in order."""
        return list(self._history)

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    def can_transition(self, to_state: PipelineState) -> bool:
        return is_valid_transition(self._state, to_state)

    def transition(self, to_state: PipelineState) -> None:
        """Move to ``to_state``.

        Raises:
            InvalidTransitionError: If the move is not allowed from the current state.
        """
        from_state = self._state
        if not is_valid_transition(from_state, to_state):
            if from_state.is_terminal:
                reason = f"{from_state.value} is a terminal state"
            else:
                allowed = sorted(s.value for s in ALLOWED_TRANSITIONS[from_state])
                reason = f"allowed: {', '.join(allowed)}"
            raise InvalidTransitionError(from_state.value, to_state.value, reason)

        self._state = to_state
        self._history.append(to_state)
        logger.debug("pipeline_state_changed", from_state=from_state.value, to_state=to_state.value)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "PipelineStateMachine",
    "STAGE_STATES",
    "is_valid_transition",
]
