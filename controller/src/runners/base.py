"""
Runner interface.

A runner executes one step at a time for the job that checked it out of
the pool. Cancelling the coroutine returned by `run_step` must forcibly
stop the step before the cancellation propagates.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional

OutputCallback = Callable[[str], Awaitable[None]]

@dataclass
class StepInvocation:
    run_id: str
    job_name: str
    step_name: str
    step_order: int
    command: str
    env: Dict[str, str] = field(default_factory=dict)
    image: Optional[str] = None

class Runner(ABC):
    name: str = "runner"

    async def prepare(self, run_id: str, job_name: str):
        """Called once when a job checks the runner out."""
        pass

    async def cleanup(self):
        """Called once when the job hands the runner back."""
        pass

    @abstractmethod
    async def run_step(self, invocation: StepInvocation, on_output: OutputCallback) -> int:
        """
        Run a step to completion and return its exit code.
        Raises InfrastructureError if the step could not be started or supervised.
        """

    async def close(self):
        pass

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
