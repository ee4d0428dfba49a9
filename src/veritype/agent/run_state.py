"""Per-run mutable state and the phase transition table."""

from __future__ import annotations

import logging
import uuid
from dataclasses import (
    dataclass,
    field,
)
from enum import Enum
from typing import (
    Any,
    Dict,
    FrozenSet,
    List,
    Optional,
    Tuple,
)

from veritype.core.schema import (
    Message,
    ModelResponse,
    PromptMessage,
    Turn,
)
from veritype.core.validator import Violation
from veritype.exceptions import AgentError

logger = logging.getLogger(__name__)


class RunPhase(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    DISPATCHING = "dispatching"
    VALIDATING = "validating"
    CORRECTING = "correcting"
    DONE = "done"
    EXHAUSTED = "exhausted"
    FAILED = "failed"
    CANCELLED = "cancelled"


TRANSITIONS: Dict[RunPhase, FrozenSet[RunPhase]] = {
    RunPhase.AWAITING_MODEL: frozenset(
        {RunPhase.DISPATCHING, RunPhase.VALIDATING, RunPhase.FAILED, RunPhase.CANCELLED}
    ),
    RunPhase.DISPATCHING: frozenset(
        {RunPhase.AWAITING_MODEL, RunPhase.EXHAUSTED, RunPhase.FAILED, RunPhase.CANCELLED}
    ),
    RunPhase.VALIDATING: frozenset({RunPhase.DONE, RunPhase.CORRECTING, RunPhase.EXHAUSTED}),
    RunPhase.CORRECTING: frozenset({RunPhase.AWAITING_MODEL}),
    RunPhase.DONE: frozenset(),
    RunPhase.EXHAUSTED: frozenset(),
    RunPhase.FAILED: frozenset(),
    RunPhase.CANCELLED: frozenset(),
}


class IllegalTransition(RuntimeError):
    """A phase change outside :data:`TRANSITIONS` was attempted."""


@dataclass
class RunState:
    """
    Everything one run owns: its prompt, the turns so far, retry counters and the terminal slot.

    The state is never shared between runs.  After a run ends (successfully or not) it stays
    attached to the result or error and reflects the last completed turn.
    """

    prompt: List[PromptMessage]
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    turns: List[Turn] = field(default_factory=list)
    phase: RunPhase = RunPhase.AWAITING_MODEL
    output_retries: int = 0
    tool_retries: int = 0
    tool_error_retries: int = 0
    result: Any = None
    error: Optional[AgentError] = None
    last_violations: Tuple[Violation, ...] = ()

    def move_to(self, phase: RunPhase) -> None:
        if phase not in TRANSITIONS[self.phase]:
            raise IllegalTransition(f"{self.phase.value} -> {phase.value} is not allowed")
        logger.debug("Run %s: %s -> %s", self.run_id, self.phase.value, phase.value)
        self.phase = phase

    def record(self, response: ModelResponse) -> Turn:
        """Append a new turn for *response* and return it."""
        turn = Turn(index=len(self.turns), response=response)
        self.turns.append(turn)
        return turn

    @property
    def history(self) -> List[Message]:
        """The flat, ordered message list sent to the model."""
        messages: List[Message] = list(self.prompt)
        for turn in self.turns:
            messages.extend(turn.messages())
        return messages

    @property
    def terminal(self) -> bool:
        return not TRANSITIONS[self.phase]
