"""Ordered step execution with reverse-order cleanup."""

from __future__ import annotations

import enum
from typing import List, Sequence

from vmbuilder.exceptions import StateError
from vmbuilder.state import BuildState
from vmbuilder.utils import log


class StepAction(enum.Enum):
    CONTINUE = "continue"
    HALT = "halt"


class Step:
    """One unit of build work.

    ``run`` returns ``StepAction.HALT`` (or raises) to stop the build.
    ``cleanup`` runs for every step whose ``run`` was entered, in reverse
    order, after the pipeline ends for any reason.
    """

    name = "step"

    def run(self, state: BuildState) -> StepAction:
        raise NotImplementedError

    def cleanup(self, state: BuildState) -> None:
        pass


class Runner:
    def __init__(self, steps: Sequence[Step]) -> None:
        self.steps = list(steps)

    def run(self, state: BuildState, cancel) -> None:
        ran: List[Step] = []
        try:
            for step in self.steps:
                if cancel.is_set():
                    log("WARN", f"Build cancelled before {step.name}")
                    state.cancelled = True
                    break
                ran.append(step)
                log("DEBUG", f"Running step {step.name}")
                try:
                    action = step.run(state)
                except StateError:
                    raise
                except Exception as exc:
                    log("ERROR", f"{step.name} failed: {exc}")
                    state.error = exc
                    state.halted = True
                    break
                if action is StepAction.HALT:
                    state.halted = True
                    break
        finally:
            for step in reversed(ran):
                try:
                    step.cleanup(state)
                except Exception as exc:
                    log("ERROR", f"Cleanup of {step.name} failed: {exc}")
