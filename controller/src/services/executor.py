"""
Step executor - runs the steps of one job on an acquired runner.
"""

import asyncio
import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional

from controller.src.config import get_settings
from controller.src.errors import InfrastructureError, OperationCancelled
from controller.src.models.pipeline import JobDefinition, PipelineDefinition, StepDefinition
from controller.src.models.run import (
    FailureReason,
    JobExecution,
    JobStatus,
    Run,
    StepResult,
    StepStatus,
    utcnow,
)
from controller.src.runners.base import Runner, StepInvocation
from controller.src.services.cancellation import CancellationToken
from controller.src.services.status_reporter import StatusReporter

logger = logging.getLogger(__name__)
settings = get_settings()

def cancel_reason(token: CancellationToken) -> FailureReason:
    try:
        return FailureReason(token.reason)
    except ValueError:
        return FailureReason.CANCELLED

@dataclass
class ExecutionContext:
    run: Run
    definition: PipelineDefinition

    def base_env(self) -> Dict[str, str]:
        event = self.run.event
        return {
            "CI": "true",
            "KILN_RUN_ID": self.run.id,
            "KILN_PIPELINE": self.definition.name,
            "KILN_REPOSITORY": event.repository,
            "KILN_BRANCH": event.branch,
            "KILN_COMMIT_SHA": event.commit_sha,
            "KILN_EVENT": event.event_type.value,
        }

class StepExecutor:
    """
    Runs steps strictly in declared order and stops at the first failure.

    The job's wall-clock deadline starts when execution begins; a step may
    carry its own shorter timeout. Infrastructure errors are retried with
    exponential backoff, step failures never are.
    """

    def __init__(
        self,
        reporter: StatusReporter,
        infrastructure_retries: Optional[int] = None,
        infrastructure_backoff: Optional[float] = None,
        output_tail_lines: Optional[int] = None,
    ):
        self.reporter = reporter
        self.infrastructure_retries = (
            settings.infrastructure_retries if infrastructure_retries is None else infrastructure_retries
        )
        self.infrastructure_backoff = (
            settings.infrastructure_backoff if infrastructure_backoff is None else infrastructure_backoff
        )
        self.output_tail_lines = output_tail_lines or settings.output_tail_lines

    async def execute(
        self,
        job: JobDefinition,
        execution: JobExecution,
        runner: Runner,
        token: CancellationToken,
        context: ExecutionContext,
    ) -> JobExecution:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + job.timeout
        run = context.run

        execution.status = JobStatus.RUNNING
        execution.runner = runner.name
        execution.started_at = utcnow()
        await self.reporter.job_changed(run, execution)
        logger.info(f"Run {run.id[:8]}: job '{job.id}' started on {runner.name} ({len(job.steps)} steps)")

        for order, step in enumerate(job.steps):
            if token.cancelled:
                execution.finish(JobStatus.CANCELLED, cancel_reason(token))
                break

            remaining = deadline - loop.time()
            if remaining <= 0:
                execution.finish(JobStatus.FAILED, FailureReason.TIMEOUT)
                break

            result = StepResult(name=step.name)
            execution.steps.append(result)
            await self.reporter.step_changed(run, execution, result)

            invocation = StepInvocation(
                run_id=run.id,
                job_name=job.id,
                step_name=step.name,
                step_order=order,
                command=step.command,
                env=self._step_env(context, job, step),
                image=step.image or job.image,
            )
            step_timeout = min(step.timeout or math.inf, remaining)
            status, reason = await self._run_step(runner, invocation, result, execution, token, step_timeout, run)

            result.status = status
            result.reason = reason
            result.finished_at = utcnow()
            await self.reporter.step_changed(run, execution, result)

            if status != StepStatus.SUCCEEDED:
                logger.info(
                    f"Run {run.id[:8]}: step '{step.name}' of job '{job.id}' "
                    f"{status.value} ({reason.value if reason else 'no reason'})"
                )
                execution.finish(execution.derive_status(), reason)
                break
        else:
            execution.finish(execution.derive_status())

        await self.reporter.job_changed(run, execution)
        logger.info(f"Run {run.id[:8]}: job '{job.id}' finished with status {execution.status.value}")
        return execution

    async def _run_step(
        self,
        runner: Runner,
        invocation: StepInvocation,
        result: StepResult,
        execution: JobExecution,
        token: CancellationToken,
        timeout: float,
        run: Run,
    ):
        """Run one step; returns its (status, reason)."""
        tail: Deque[str] = deque(maxlen=self.output_tail_lines)

        async def on_output(line: str):
            tail.append(line)
            await self.reporter.output(run.id, execution.name, invocation.step_name, line)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        attempt = 0
        try:
            while True:
                try:
                    exit_code = await token.race(
                        runner.run_step(invocation, on_output),
                        timeout=self._remaining(deadline, loop),
                    )
                    break
                except InfrastructureError as e:
                    if attempt >= self.infrastructure_retries:
                        logger.error(f"Step '{invocation.step_name}' gave up after {attempt + 1} attempts: {e}")
                        tail.append(str(e))
                        return StepStatus.FAILED, FailureReason.INFRASTRUCTURE
                    delay = self.infrastructure_backoff * (2 ** attempt)
                    attempt += 1
                    logger.warning(
                        f"Step '{invocation.step_name}' hit an infrastructure error, "
                        f"retry {attempt}/{self.infrastructure_retries} in {delay:.1f}s: {e}"
                    )
                    await token.race(asyncio.sleep(delay), timeout=self._remaining(deadline, loop))
        except asyncio.TimeoutError:
            return StepStatus.FAILED, FailureReason.TIMEOUT
        except OperationCancelled:
            return StepStatus.CANCELLED, cancel_reason(token)
        finally:
            result.output = "\n".join(tail)

        result.exit_code = exit_code
        if exit_code == 0:
            return StepStatus.SUCCEEDED, None
        return StepStatus.FAILED, FailureReason.STEP_FAILED

    @staticmethod
    def _remaining(deadline: float, loop: asyncio.AbstractEventLoop) -> Optional[float]:
        if math.isinf(deadline):
            return None
        return max(deadline - loop.time(), 0)

    @staticmethod
    def _step_env(context: ExecutionContext, job: JobDefinition, step: StepDefinition) -> Dict[str, str]:
        env = context.base_env()
        env["KILN_JOB"] = job.id
        env["KILN_STEP"] = step.name
        env.update(context.definition.step_env(job, step))
        return env
