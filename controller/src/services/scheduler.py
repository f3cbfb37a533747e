"""
Scheduler - admits triggered runs, assigns runners and enforces concurrency limits.

Runs wait in a single FIFO queue. The oldest queued run whose branch has
a free slot is admitted whenever capacity frees up. A newer push to a
branch supersedes (cancels) the older live runs of that branch.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Tuple

from controller.src.config import get_settings
from controller.src.errors import (
    ConcurrencyExceeded,
    InfrastructureError,
    OperationCancelled,
    RunNotFound,
    TriggerNotMatched,
)
from controller.src.models.pipeline import EventType, JobDefinition, PipelineDefinition, TriggerEvent
from controller.src.models.run import (
    FailureReason,
    JobExecution,
    JobStatus,
    Run,
    RunStatus,
    utcnow,
)
from controller.src.services.cancellation import CancellationToken
from controller.src.services.definition_store import DefinitionStore, RawDefinition
from controller.src.services.executor import ExecutionContext, StepExecutor, cancel_reason
from controller.src.services.runner_pool import RunnerPool
from controller.src.services.status_reporter import StatusReporter

logger = logging.getLogger(__name__)
settings = get_settings()

def _setting(value, default):
    return default if value is None else value

@dataclass
class _RunState:
    run: Run
    definition: PipelineDefinition
    jobs: List[JobDefinition]
    token: CancellationToken = field(default_factory=CancellationToken)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None

    @property
    def key(self) -> Tuple[str, str]:
        return self.run.event.branch_key

    @property
    def live(self) -> bool:
        """Queued or running and not already being cancelled."""
        return not self.run.status.terminal and not self.token.cancelled

class Scheduler:

    def __init__(
        self,
        pool: RunnerPool,
        reporter: Optional[StatusReporter] = None,
        store: Optional[DefinitionStore] = None,
        executor: Optional[StepExecutor] = None,
        max_concurrent_runs: Optional[int] = None,
        branch_concurrency: Optional[int] = None,
        max_runs_per_branch: Optional[int] = None,
        cancel_superseded: Optional[bool] = None,
        runner_acquire_timeout: Optional[float] = None,
        max_retained_runs: Optional[int] = None,
    ):
        self.pool = pool
        self.reporter = reporter or StatusReporter()
        self.store = store or DefinitionStore()
        self.executor = executor or StepExecutor(self.reporter)
        self.max_concurrent_runs = _setting(max_concurrent_runs, settings.max_concurrent_runs)
        self.branch_concurrency = _setting(branch_concurrency, settings.branch_concurrency)
        self.max_runs_per_branch = _setting(max_runs_per_branch, settings.max_runs_per_branch)
        self.cancel_superseded = _setting(cancel_superseded, settings.cancel_superseded)
        self.runner_acquire_timeout = _setting(runner_acquire_timeout, settings.runner_acquire_timeout)
        self.max_retained_runs = _setting(max_retained_runs, settings.max_retained_runs)

        self._runs: Dict[str, _RunState] = {}
        self._queue: Deque[str] = deque()
        self._running: Dict[str, _RunState] = {}
        self._closed = False

    # Submission

    async def submit(self, event: TriggerEvent, definition: RawDefinition) -> str:
        """
        Admit a run for `event`. Returns the run id.

        Raises DefinitionInvalid, TriggerNotMatched or ConcurrencyExceeded.
        """
        if self._closed:
            raise RuntimeError("Scheduler is shut down")

        loaded = self.store.load(definition)
        jobs = loaded.jobs_for(event)
        if not jobs:
            raise TriggerNotMatched(
                f"Pipeline '{loaded.name}' has no job for {event.event_type.value} on '{event.branch}'"
            )

        # No await between superseding and registering the new run
        superseded: List[_RunState] = []
        if self.cancel_superseded and event.event_type == EventType.PUSH:
            for stale in self._live_for(event.branch_key):
                if self._request_cancel(stale, FailureReason.SUPERSEDED):
                    superseded.append(stale)

        try:
            live = self._live_for(event.branch_key)
            if len(live) >= self.max_runs_per_branch:
                raise ConcurrencyExceeded(event.repository, event.branch, self.max_runs_per_branch)

            run = Run(
                pipeline=loaded.name,
                event=event,
                jobs={job.id: JobExecution(name=job.id) for job in jobs},
            )
            self._runs[run.id] = _RunState(run=run, definition=loaded, jobs=jobs)
            self._queue.append(run.id)
            logger.info(
                f"Run {run.id[:8]} queued for {event.repository}@{event.branch} "
                f"({event.event_type.value}, {len(jobs)} jobs)"
            )
            await self.reporter.run_changed(run)
        finally:
            for stale in superseded:
                await self._settle_cancelled(stale)

        self._dispatch()
        return run.id

    def _live_for(self, key: Tuple[str, str]) -> List[_RunState]:
        return [s for s in self._runs.values() if s.key == key and s.live]

    # Admission

    def _dispatch(self):
        """Start queued runs, oldest first, while capacity allows."""
        if self._closed:
            return
        for run_id in list(self._queue):
            if len(self._running) >= self.max_concurrent_runs:
                return
            state = self._runs[run_id]
            if self._running_on_branch(state.key) >= self.branch_concurrency:
                continue
            self._queue.remove(run_id)
            self._running[run_id] = state
            state.task = asyncio.get_running_loop().create_task(self._execute_run(state))
            state.task.add_done_callback(lambda _, run_id=run_id: self._on_run_done(run_id))

    def _running_on_branch(self, key: Tuple[str, str]) -> int:
        return sum(1 for s in self._running.values() if s.key == key)

    def _on_run_done(self, run_id: str):
        self._running.pop(run_id, None)
        self._dispatch()

    # Execution

    async def _execute_run(self, state: _RunState):
        run = state.run
        run.status = RunStatus.RUNNING
        run.started_at = utcnow()
        await self.reporter.run_changed(run)

        context = ExecutionContext(run=run, definition=state.definition)
        finished: Dict[str, asyncio.Event] = {job.id: asyncio.Event() for job in state.jobs}
        try:
            results = await asyncio.gather(
                *(self._run_job(state, job, context, finished) for job in state.jobs),
                return_exceptions=True,
            )
            for job, result in zip(state.jobs, results):
                if not isinstance(result, Exception):
                    continue
                logger.error(f"Run {run.id[:8]}: job '{job.id}' crashed: {result!r}")
                execution = run.jobs[job.id]
                if not execution.status.terminal:
                    execution.finish(JobStatus.FAILED, FailureReason.INFRASTRUCTURE)
        finally:
            await self._finish_run(state)

    async def _run_job(
        self,
        state: _RunState,
        job: JobDefinition,
        context: ExecutionContext,
        finished: Dict[str, asyncio.Event],
    ):
        run = state.run
        execution = run.jobs[job.id]
        token = state.token.child()
        try:
            if job.needs:
                try:
                    await token.race(asyncio.gather(*(finished[n].wait() for n in job.needs)))
                except OperationCancelled:
                    execution.finish(JobStatus.CANCELLED, cancel_reason(token))
                    await self.reporter.job_changed(run, execution)
                    return

                if token.cancelled:
                    execution.finish(JobStatus.CANCELLED, cancel_reason(token))
                    await self.reporter.job_changed(run, execution)
                    return

                blocked = [n for n in job.needs if run.jobs[n].status != JobStatus.SUCCEEDED]
                if blocked:
                    logger.info(f"Run {run.id[:8]}: skipping job '{job.id}', needs {blocked} did not succeed")
                    execution.finish(JobStatus.SKIPPED, FailureReason.DEPENDENCY_FAILED)
                    await self.reporter.job_changed(run, execution)
                    return

            try:
                async with self.pool.checkout(run.id, job.id, token, self.runner_acquire_timeout) as runner:
                    await self.executor.execute(job, execution, runner, token, context)
            except OperationCancelled:
                execution.finish(JobStatus.CANCELLED, cancel_reason(token))
                await self.reporter.job_changed(run, execution)
            except InfrastructureError as e:
                logger.error(f"Run {run.id[:8]}: job '{job.id}' could not get a runner: {e}")
                execution.finish(JobStatus.FAILED, FailureReason.INFRASTRUCTURE)
                await self.reporter.job_changed(run, execution)
        finally:
            finished[job.id].set()

    async def _finish_run(self, state: _RunState):
        run = state.run
        run.status = run.derive_status(cancelled=state.token.cancelled)
        if run.status == RunStatus.CANCELLED:
            run.reason = cancel_reason(state.token)
        elif run.status == RunStatus.FAILED:
            run.reason = next(
                (j.reason for j in run.jobs.values() if j.status == JobStatus.FAILED),
                FailureReason.STEP_FAILED,
            )
        run.finished_at = utcnow()
        logger.info(f"Run {run.id[:8]} finished with status: {run.status.value}")
        await self.reporter.run_changed(run)
        await self.reporter.archive(run)
        state.done.set()
        self._evict_finished()

    def _evict_finished(self):
        """Forget the oldest terminal runs beyond `max_retained_runs`."""
        excess = len(self._runs) - self.max_retained_runs
        if excess <= 0:
            return
        for run_id in [rid for rid, s in self._runs.items() if s.run.status.terminal][:excess]:
            self.forget(run_id)

    # Cancellation

    async def cancel(self, run_id: str, reason: FailureReason = FailureReason.CANCELLED) -> Run:
        state = self._get_state(run_id)
        await self._cancel_state(state, reason)
        return state.run

    async def _cancel_state(self, state: _RunState, reason: FailureReason):
        if self._request_cancel(state, reason):
            await self._settle_cancelled(state)

    def _request_cancel(self, state: _RunState, reason: FailureReason) -> bool:
        """
        Trip the run's token. A queued run is taken off the queue and marked
        cancelled on the spot; True means it still has to be reported.
        """
        if state.run.status.terminal or not state.token.cancel(reason.value):
            return False

        run = state.run
        logger.info(f"Run {run.id[:8]} cancelled ({reason.value})")
        if run.id not in self._queue:
            return False

        self._queue.remove(run.id)
        for execution in run.jobs.values():
            execution.finish(JobStatus.CANCELLED, reason)
        run.status = RunStatus.CANCELLED
        run.reason = reason
        run.finished_at = utcnow()
        return True

    async def _settle_cancelled(self, state: _RunState):
        await self.reporter.run_changed(state.run)
        await self.reporter.archive(state.run)
        state.done.set()
        self._evict_finished()
        self._dispatch()

    # Inspection

    def _get_state(self, run_id: str) -> _RunState:
        state = self._runs.get(run_id)
        if state is None:
            raise RunNotFound(f"Pipeline run {run_id} not found")
        return state

    def get_run(self, run_id: str) -> Run:
        return self._get_state(run_id).run

    def list_runs(
        self,
        branch: Optional[str] = None,
        status: Optional[RunStatus] = None,
        repository: Optional[str] = None,
    ) -> List[Run]:
        """Runs newest first."""
        runs = [state.run for state in reversed(self._runs.values())]
        if branch is not None:
            runs = [r for r in runs if r.event.branch == branch]
        if repository is not None:
            runs = [r for r in runs if r.event.repository == repository]
        if status is not None:
            runs = [r for r in runs if r.status == status]
        return runs

    async def wait(self, run_id: str, timeout: Optional[float] = None) -> Run:
        """Block until the run is terminal. Raises asyncio.TimeoutError."""
        state = self._get_state(run_id)
        await asyncio.wait_for(state.done.wait(), timeout)
        return state.run

    def stats(self) -> dict:
        counts: Dict[str, int] = {}
        for state in self._runs.values():
            counts[state.run.status.value] = counts.get(state.run.status.value, 0) + 1
        return {
            "runs": counts,
            "total_runs": len(self._runs),
            "queued": len(self._queue),
            "running": len(self._running),
            "runners": {"size": self.pool.size, "available": self.pool.available},
        }

    def forget(self, run_id: str) -> bool:
        """Drop a terminal run from memory."""
        state = self._runs.get(run_id)
        if state is None or not state.run.status.terminal:
            return False
        del self._runs[run_id]
        return True

    async def shutdown(self, timeout: Optional[float] = None):
        """Cancel every live run and wait for them to settle."""
        self._closed = True
        for state in list(self._runs.values()):
            await self._cancel_state(state, FailureReason.CANCELLED)
        tasks = [s.task for s in self._running.values() if s.task is not None]
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)
        await self.pool.close()
        await self.reporter.close()
