"""
Orchestration module for generation sessions.
"""

from runstore.orchestration.generation import (
    CancellationToken,
    GenerationCoordinator,
    GenerationSession,
)
from runstore.orchestration.state_machine import (
    GenerationState,
    GenerationStateMachine,
    StateData,
    StateMachine,
    create_generation_state_machine,
)

__all__ = [
    "CancellationToken",
    "GenerationCoordinator",
    "GenerationSession",
    "GenerationState",
    "GenerationStateMachine",
    "StateData",
    "StateMachine",
    "create_generation_state_machine",
]
