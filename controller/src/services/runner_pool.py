"""
Bounded runner pool with exclusive checkout per job.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional, Sequence

from controller.src.errors import RunnerUnavailable
from controller.src.runners.base import Runner
from controller.src.services.cancellation import CancellationToken

logger = logging.getLogger(__name__)

class RunnerPool:
    """
    Runners are handed out oldest-waiter-first. A runner is never shared
    between two jobs; it returns to the pool when the job finishes, fails
    or is cancelled.
    """

    def __init__(self, runners: Sequence[Runner]):
        if not runners:
            raise ValueError("Runner pool needs at least one runner")
        self._runners: List[Runner] = list(runners)
        self._idle: "asyncio.Queue[Runner]" = asyncio.Queue()
        for runner in self._runners:
            self._idle.put_nowait(runner)
        self._busy = set()

    @property
    def size(self) -> int:
        return len(self._runners)

    @property
    def available(self) -> int:
        return self._idle.qsize()

    @property
    def busy(self) -> List[str]:
        return sorted(runner.name for runner in self._busy)

    async def acquire(
        self,
        token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> Runner:
        """
        Block until a runner is free.
        Raises RunnerUnavailable on timeout, OperationCancelled if the token fires.
        """
        token = token or CancellationToken()
        try:
            runner = await token.race(self._idle.get(), timeout=timeout)
        except asyncio.TimeoutError:
            raise RunnerUnavailable(f"No runner became available within {timeout}s")

        if runner in self._busy:
            raise RuntimeError(f"Runner {runner.name} handed out twice")
        self._busy.add(runner)
        logger.debug(f"Runner {runner.name} checked out ({self.available} idle)")
        return runner

    def release(self, runner: Runner):
        if runner not in self._busy:
            raise RuntimeError(f"Runner {runner.name} is not checked out")
        self._busy.discard(runner)
        self._idle.put_nowait(runner)
        logger.debug(f"Runner {runner.name} released")

    @asynccontextmanager
    async def checkout(
        self,
        run_id: str,
        job_name: str,
        token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[Runner]:
        """Acquire a runner, prepare it for the job, and always give it back."""
        runner = await self.acquire(token, timeout)
        try:
            await runner.prepare(run_id, job_name)
            yield runner
        finally:
            try:
                await runner.cleanup()
            finally:
                self.release(runner)

    async def close(self):
        for runner in self._runners:
            await runner.close()

