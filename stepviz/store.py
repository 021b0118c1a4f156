"""Execution state store.

The store is a plain immutable value plus functions that return a new value,
in the style of a reducer. Whoever owns the session keeps a reference to the
latest state and swaps it wholesale; nothing here holds hidden global state.
"""

import asyncio

from pydantic import ConfigDict

from .errors import RunInProgressError, RuntimeNotReadyError
from .models import CamelModel, Snapshot


class ExecutionState(CamelModel):
    model_config = ConfigDict(frozen=True)

    steps: tuple[Snapshot, ...] = ()
    current_index: int = 0
    error: str | None = None
    is_running: bool = False
    is_initialized: bool = False

    @property
    def total(self) -> int:
        return len(self.steps)


def initial_state() -> ExecutionState:
    return ExecutionState()


def mark_initialized(state: ExecutionState) -> ExecutionState:
    return state.model_copy(update={"is_initialized": True, "error": None})


def mark_failed(state: ExecutionState, message: str) -> ExecutionState:
    """Runtime initialization failed; runs stay blocked until it succeeds."""
    return state.model_copy(update={"is_initialized": False, "error": message})


def begin_run(state: ExecutionState) -> ExecutionState:
    if not state.is_initialized:
        raise RuntimeNotReadyError(state.error)
    if state.is_running:
        raise RunInProgressError()
    return state.model_copy(update={"steps": (), "current_index": 0, "error": None, "is_running": True})


def set_steps(state: ExecutionState, steps) -> ExecutionState:
    return state.model_copy(update={"steps": tuple(steps), "current_index": 0, "is_running": False})


def fail_run(state: ExecutionState, message: str) -> ExecutionState:
    return state.model_copy(update={"steps": (), "current_index": 0, "error": message, "is_running": False})


def reset(state: ExecutionState) -> ExecutionState:
    return ExecutionState(is_initialized=state.is_initialized, error=None if state.is_initialized else state.error)


def goto_index(state: ExecutionState, index: int) -> ExecutionState:
    if 0 <= index < len(state.steps):
        return state.model_copy(update={"current_index": index})
    return state


def step_forward(state: ExecutionState) -> ExecutionState:
    return goto_index(state, state.current_index + 1)


def step_back(state: ExecutionState) -> ExecutionState:
    return goto_index(state, state.current_index - 1)


def first_step(state: ExecutionState) -> ExecutionState:
    return goto_index(state, 0)


def last_step(state: ExecutionState) -> ExecutionState:
    return goto_index(state, len(state.steps) - 1)


def final_output(state: ExecutionState) -> str:
    return state.steps[-1].output if state.steps else ""


def current_snapshot(state: ExecutionState) -> Snapshot | None:
    """The selected step, always showing the output of the complete run."""
    if not state.steps:
        return None
    step = state.steps[state.current_index]
    return step.model_copy(update={"output": final_output(state)})


async def autoplay(state: ExecutionState, speed: float = 1.0, sleep=asyncio.sleep):
    """Advance one step every ``1 / speed`` seconds, yielding each new state, until the last step."""
    if speed <= 0:
        raise ValueError("speed must be positive")
    while state.current_index < len(state.steps) - 1:
        await sleep(1.0 / speed)
        state = step_forward(state)
        yield state
