"""
State machine for generation sessions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from runstore.core.constants import GenerationPhase, RunFamily
from runstore.core.exceptions import StateTransitionError
from runstore.core.logging import get_logger
from runstore.domain.run import utc_now

logger = get_logger(__name__)


@dataclass
class StateData:
    """Data associated with a state."""

    state: GenerationPhase
    entered_at: datetime = field(default_factory=utc_now)
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class GenerationState:
    """Complete state of one generation session."""

    family: RunFamily
    current_state: GenerationPhase = GenerationPhase.IDLE
    run_id: Optional[str] = None

    history: list[StateData] = field(default_factory=list)

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def add_to_history(self, state: GenerationPhase, data: Optional[dict] = None) -> None:
        """Add state to history."""
        self.history.append(StateData(state=state, data=data or {}))
        self.updated_at = utc_now()

    def set_error(self, error: str) -> None:
        """Record an error against the current state."""
        if self.history:
            self.history[-1].error = error
        self.updated_at = utc_now()


class StateMachine:
    """
    Generic state machine.
    """

    def __init__(
        self,
        states: list[GenerationPhase],
        initial_state: GenerationPhase,
        final_states: list[GenerationPhase],
        transitions: dict[GenerationPhase, list[GenerationPhase]],
    ) -> None:
        """
        Initialize the state machine.

        Args:
            states: List of valid states
            initial_state: Starting state
            final_states: Terminal states
            transitions: Valid transitions {from_state: [to_states]}
        """
        self.states = set(states)
        self.initial_state = initial_state
        self.final_states = set(final_states)
        self.transitions = transitions

        # Validate
        if initial_state not in self.states:
            raise ValueError(f"Initial state '{initial_state}' not in states")
        for final in final_states:
            if final not in self.states:
                raise ValueError(f"Final state '{final}' not in states")

    def can_transition(self, from_state: GenerationPhase, to_state: GenerationPhase) -> bool:
        """Check if transition is valid."""
        if from_state not in self.transitions:
            return False
        return to_state in self.transitions[from_state]

    def is_final(self, state: GenerationPhase) -> bool:
        """Check if state is a final state."""
        return state in self.final_states


GENERATION_STATES = list(GenerationPhase)

# Items may keep arriving in the same state; iterations alternate between
# awaiting a response and submitting its results.
GENERATION_TRANSITIONS = {
    GenerationPhase.IDLE: [
        GenerationPhase.SUBMITTING,
        GenerationPhase.AWAITING_ITERATION,
        GenerationPhase.FINALIZING,
        GenerationPhase.FAILED,
        GenerationPhase.CANCELLED,
    ],
    GenerationPhase.SUBMITTING: [
        GenerationPhase.SUBMITTING,
        GenerationPhase.AWAITING_ITERATION,
        GenerationPhase.FINALIZING,
        GenerationPhase.FAILED,
        GenerationPhase.CANCELLED,
    ],
    GenerationPhase.AWAITING_ITERATION: [
        GenerationPhase.SUBMITTING,
        GenerationPhase.FINALIZING,
        GenerationPhase.FAILED,
        GenerationPhase.CANCELLED,
    ],
    GenerationPhase.FINALIZING: [GenerationPhase.COMPLETE, GenerationPhase.FAILED],
    GenerationPhase.COMPLETE: [],
    GenerationPhase.FAILED: [],
    GenerationPhase.CANCELLED: [],
}

TERMINAL_STATES = [GenerationPhase.COMPLETE, GenerationPhase.FAILED, GenerationPhase.CANCELLED]


def create_generation_state_machine() -> StateMachine:
    """Create the state machine shared by every generation family."""
    return StateMachine(
        states=GENERATION_STATES,
        initial_state=GenerationPhase.IDLE,
        final_states=TERMINAL_STATES,
        transitions=GENERATION_TRANSITIONS,
    )


class GenerationStateMachine:
    """
    Tracks the state of one generation session and its history.
    """

    def __init__(self, family: RunFamily, machine: Optional[StateMachine] = None) -> None:
        self.machine = machine or create_generation_state_machine()
        self.state = GenerationState(family=family, current_state=self.machine.initial_state)
        self.state.add_to_history(self.machine.initial_state)

    @property
    def current(self) -> GenerationPhase:
        return self.state.current_state

    @property
    def is_terminal(self) -> bool:
        return self.machine.is_final(self.current)

    @property
    def history(self) -> list[StateData]:
        return self.state.history

    def transition(self, to_state: GenerationPhase, **data: Any) -> None:
        """
        Move to ``to_state``.

        Raises:
            StateTransitionError: If the transition is not allowed
        """
        from_state = self.current
        if not self.machine.can_transition(from_state, to_state):
            raise StateTransitionError(self.state.family.value, from_state.value, to_state.value)

        if from_state == to_state:
            self.state.updated_at = utc_now()
            return

        self.state.current_state = to_state
        self.state.add_to_history(to_state, data)
        logger.debug(
            "Generation state changed",
            family=self.state.family.value,
            from_state=from_state.value,
            to_state=to_state.value,
        )

    def fail(self, error: str) -> None:
        """Move to ``failed`` and record the error."""
        self.transition(GenerationPhase.FAILED)
        self.state.set_error(error)
