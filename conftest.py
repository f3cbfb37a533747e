"""Shared test fixtures: a scripted in-process runner and scheduler factory."""

import asyncio
from typing import Dict, List, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from api.src.main import create_app
from controller.src.errors import InfrastructureError
from controller.src.runners.base import OutputCallback, Runner, StepInvocation
from controller.src.services.definition_store import DefinitionStore
from controller.src.services.executor import StepExecutor
from controller.src.services.runner_pool import RunnerPool
from controller.src.services.scheduler import Scheduler
from controller.src.services.status_reporter import MemorySink, StatusReporter

class FakeRunner(Runner):
    """
    Interprets a tiny command language instead of spawning processes.

    Commands are joined with ` && ` and run left to right:
        echo TEXT   emit TEXT as an output line
        exit N      stop with exit code N
        sleep S     wait S seconds
        infra       raise InfrastructureError
        flaky N     raise InfrastructureError on the first N attempts of the step
    """

    def __init__(self, name: str = "fake-0"):
        self.name = name
        self.invocations: List[StepInvocation] = []
        self.prepared: List[Tuple[str, str]] = []
        self.cleanups = 0
        self.cancelled: List[str] = []
        self.closed = False
        self._attempts: Dict[str, int] = {}

    async def prepare(self, run_id: str, job_name: str):
        self.prepared.append((run_id, job_name))

    async def cleanup(self):
        self.cleanups += 1

    async def close(self):
        self.closed = True

    async def run_step(self, invocation: StepInvocation, on_output: OutputCallback) -> int:
        self.invocations.append(invocation)
        key = f"{invocation.run_id}/{invocation.job_name}/{invocation.step_name}"
        self._attempts[key] = self._attempts.get(key, 0) + 1
        try:
            for part in invocation.command.split(" && "):
                word, _, arg = part.strip().partition(" ")
                if word == "echo":
                    await on_output(arg)
                elif word == "exit":
                    if int(arg) != 0:
                        return int(arg)
                elif word == "sleep":
                    await asyncio.sleep(float(arg))
                elif word == "infra":
                    raise InfrastructureError(f"{self.name} is unreachable")
                elif word == "flaky":
                    if self._attempts[key] <= int(arg):
                        raise InfrastructureError(f"{self.name} dropped the step")
                else:
                    raise AssertionError(f"FakeRunner cannot run {part!r}")
            return 0
        except asyncio.CancelledError:
            self.cancelled.append(invocation.step_name)
            raise

@pytest.fixture
def fake_runner():
    return FakeRunner()

@pytest.fixture
def memory_sink():
    return MemorySink()

@pytest.fixture
def make_scheduler(memory_sink):
    """Factory for a scheduler over fake runners with test-friendly limits."""

    def factory(
        runners: int = 2,
        max_concurrent_runs: int = 4,
        branch_concurrency: int = 1,
        max_runs_per_branch: int = 5,
        cancel_superseded: bool = True,
        runner_acquire_timeout: float = 5.0,
        job_timeout: int = 30,
        max_retained_runs: int = 500,
        sinks=(),
    ) -> Scheduler:
        reporter = StatusReporter([memory_sink, *sinks])
        pool = RunnerPool([FakeRunner(f"fake-{i}") for i in range(runners)])
        executor = StepExecutor(
            reporter,
            infrastructure_retries=2,
            infrastructure_backoff=0.01,
            output_tail_lines=100,
        )
        return Scheduler(
            pool=pool,
            reporter=reporter,
            store=DefinitionStore(job_timeout),
            executor=executor,
            max_concurrent_runs=max_concurrent_runs,
            branch_concurrency=branch_concurrency,
            max_runs_per_branch=max_runs_per_branch,
            cancel_superseded=cancel_superseded,
            runner_acquire_timeout=runner_acquire_timeout,
            max_retained_runs=max_retained_runs,
        )

    return factory

@pytest.fixture
def scheduler(make_scheduler):
    return make_scheduler()

@pytest_asyncio.fixture
async def api_client(scheduler):
    """HTTP client for an API app wired to the `scheduler` fixture."""
    transport = ASGITransport(app=create_app(scheduler))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await scheduler.shutdown(timeout=2)
