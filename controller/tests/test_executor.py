"""Tests for step execution: fail-fast, timeouts, retries and cancellation."""

import asyncio

import pytest

from conftest import FakeRunner
from controller.src.models.pipeline import (
    EventType,
    JobDefinition,
    PipelineDefinition,
    StepDefinition,
    TriggerEvent,
)
from controller.src.models.run import FailureReason, JobExecution, JobStatus, Run, StepStatus
from controller.src.services.cancellation import CancellationToken
from controller.src.services.executor import ExecutionContext, StepExecutor
from controller.src.services.status_reporter import MemorySink, StatusReporter

def make_job(*commands, timeout=30.0, step_timeout=None, name="build"):
    steps = tuple(
        StepDefinition(name=f"s{i}", command=cmd, timeout=step_timeout)
        for i, cmd in enumerate(commands)
    )
    return JobDefinition(id=name, name=name, steps=steps, timeout=timeout, env={"LEVEL": "job"})

def make_context(job):
    definition = PipelineDefinition(name="demo", jobs=(job,), env={"LEVEL": "pipeline", "TOOL": "make"})
    event = TriggerEvent(repository="acme/app", branch="main", commit_sha="abc123", event_type=EventType.PUSH)
    run = Run(pipeline="demo", event=event, jobs={job.id: JobExecution(name=job.id)})
    return ExecutionContext(run=run, definition=definition)

@pytest.fixture
def sink():
    return MemorySink()

@pytest.fixture
def executor(sink):
    return StepExecutor(
        StatusReporter([sink]),
        infrastructure_retries=2,
        infrastructure_backoff=0.01,
        output_tail_lines=3,
    )

async def execute(executor, job, runner=None, token=None):
    context = make_context(job)
    execution = context.run.jobs[job.id]
    await executor.execute(job, execution, runner or FakeRunner(), token or CancellationToken(), context)
    return execution, context

@pytest.mark.asyncio
async def test_all_steps_succeed(executor, sink):
    execution, context = await execute(executor, make_job("echo one", "echo two"))
    assert execution.status == JobStatus.SUCCEEDED
    assert execution.reason is None
    assert [s.status for s in execution.steps] == [StepStatus.SUCCEEDED, StepStatus.SUCCEEDED]
    assert [s.output for s in execution.steps] == ["one", "two"]
    assert execution.runner == "fake-0"
    assert sink.lines(context.run.id, "build", "s1") == ["two"]

@pytest.mark.asyncio
async def test_fail_fast_scenario(executor):
    """ok, bad (exit 1), never: two results recorded, third step never runs."""
    runner = FakeRunner()
    job = make_job("echo ok", "echo bad && exit 1", "echo never")
    execution, _ = await execute(executor, job, runner)

    assert execution.status == JobStatus.FAILED
    assert execution.reason == FailureReason.STEP_FAILED
    assert len(execution.steps) == 2
    assert execution.steps[1].exit_code == 1
    assert execution.steps[1].output == "bad"
    assert [i.step_name for i in runner.invocations] == ["s0", "s1"]

@pytest.mark.asyncio
async def test_step_timeout(executor):
    runner = FakeRunner()
    execution, _ = await execute(executor, make_job("sleep 5", "echo never", step_timeout=0.05), runner)

    assert execution.status == JobStatus.FAILED
    assert execution.reason == FailureReason.TIMEOUT
    assert execution.steps[0].reason == FailureReason.TIMEOUT
    assert len(execution.steps) == 1
    assert runner.cancelled == ["s0"]

@pytest.mark.asyncio
async def test_job_deadline_bounds_steps(executor):
    execution, _ = await execute(executor, make_job("echo fast", "sleep 5", timeout=0.1))
    assert execution.status == JobStatus.FAILED
    assert execution.reason == FailureReason.TIMEOUT
    assert execution.steps[0].status == StepStatus.SUCCEEDED

@pytest.mark.asyncio
async def test_infrastructure_errors_are_retried(executor):
    runner = FakeRunner()
    execution, _ = await execute(executor, make_job("flaky 2 && echo made it"), runner)
    assert execution.status == JobStatus.SUCCEEDED
    assert len(runner.invocations) == 3
    assert execution.steps[0].output == "made it"

@pytest.mark.asyncio
async def test_infrastructure_errors_give_up(executor):
    runner = FakeRunner()
    execution, _ = await execute(executor, make_job("infra", "echo never"), runner)
    assert execution.status == JobStatus.FAILED
    assert execution.reason == FailureReason.INFRASTRUCTURE
    assert len(runner.invocations) == 3
    assert "unreachable" in execution.steps[0].output

@pytest.mark.asyncio
async def test_step_failures_are_not_retried(executor):
    runner = FakeRunner()
    await execute(executor, make_job("exit 2"), runner)
    assert len(runner.invocations) == 1

@pytest.mark.asyncio
async def test_cancel_stops_running_step(executor):
    runner = FakeRunner()
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.05, token.cancel, "superseded")

    execution, _ = await execute(executor, make_job("sleep 5", "echo never"), runner, token)

    assert execution.status == JobStatus.CANCELLED
    assert execution.reason == FailureReason.SUPERSEDED
    assert execution.steps[0].status == StepStatus.CANCELLED
    assert len(execution.steps) == 1
    assert runner.cancelled == ["s0"]

@pytest.mark.asyncio
async def test_cancelled_before_start(executor):
    token = CancellationToken()
    token.cancel()
    execution, _ = await execute(executor, make_job("echo never"), token=token)
    assert execution.status == JobStatus.CANCELLED
    assert execution.steps == []

@pytest.mark.asyncio
async def test_output_tail_is_bounded(executor):
    job = make_job(" && ".join(f"echo line{i}" for i in range(6)))
    execution, _ = await execute(executor, job)
    assert execution.steps[0].output == "line3\nline4\nline5"

@pytest.mark.asyncio
async def test_step_environment(executor):
    runner = FakeRunner()
    _, context = await execute(executor, make_job("echo hi"), runner)
    env = runner.invocations[0].env
    assert env["LEVEL"] == "job"
    assert env["TOOL"] == "make"
    assert env["KILN_RUN_ID"] == context.run.id
    assert env["KILN_BRANCH"] == "main"
    assert env["KILN_JOB"] == "build"
    assert env["KILN_STEP"] == "s0"

@pytest.mark.asyncio
async def test_status_updates_published(executor, sink):
    _, context = await execute(executor, make_job("echo ok", "exit 1"))
    history = [(u.job_name, u.step_name, u.status) for u in sink.history(context.run.id)]
    assert history == [
        ("build", None, "running"),
        ("build", "s0", "running"),
        ("build", "s0", "succeeded"),
        ("build", "s1", "running"),
        ("build", "s1", "failed"),
        ("build", None, "failed"),
    ]
