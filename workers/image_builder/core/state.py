"""
Pipeline state machine.

    START → BUILDING → (BUILD_FAILED | BUILT) → PACKAGING → (PACKAGE_FAILED | PACKAGED)

No retries, no loops.  Any other transition is a bug and raises.
"""
from __future__ import annotations

import logging
from typing import Dict, FrozenSet, List

from image_builder.io.schema import PipelineState

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[PipelineState, FrozenSet[PipelineState]] = {
    PipelineState.START: frozenset({PipelineState.BUILDING}),
    PipelineState.BUILDING: frozenset({PipelineState.BUILD_FAILED, PipelineState.BUILT}),
    PipelineState.BUILT: frozenset({PipelineState.PACKAGING}),
    PipelineState.PACKAGING: frozenset({PipelineState.PACKAGE_FAILED, PipelineState.PACKAGED}),
}

TERMINAL = frozenset({
    PipelineState.BUILD_FAILED,
    PipelineState.PACKAGE_FAILED,
    PipelineState.PACKAGED,
})

# Failure state for whichever stage is currently active
_FAILURE_OF = {
    PipelineState.BUILDING: PipelineState.BUILD_FAILED,
    PipelineState.PACKAGING: PipelineState.PACKAGE_FAILED,
}


class StateTracker:
    """Holds the current state and the ordered history of states."""

    def __init__(self):
        self.state = PipelineState.START
        self.history: List[PipelineState] = [PipelineState.START]

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL

    def advance(self, new: PipelineState) -> PipelineState:
        if new not in TRANSITIONS.get(self.state, frozenset()):
            raise RuntimeError(f"Illegal pipeline transition {self.state.value} -> {new.value}")
        logger.info("Pipeline %s -> %s", self.state.value, new.value)
        self.state = new
        self.history.append(new)
        return new

    def fail(self) -> PipelineState:
        """Move the active stage to its terminal failure state."""
        failure = _FAILURE_OF.get(self.state)
        if failure is None:
            raise RuntimeError(f"No failure transition from {self.state.value}")
        return self.advance(failure)
