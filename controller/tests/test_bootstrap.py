"""Tests for assembling a scheduler from settings."""

import pytest

from controller.src.bootstrap import build_runners, build_scheduler
from controller.src.config import Settings
from controller.src.runners.local import LocalRunner
from controller.src.services.status_reporter import LogSink, MemorySink

def test_local_runners(tmp_path):
    settings = Settings(runner_pool_size=3, workspace_root=str(tmp_path), step_shell="/bin/bash")
    runners = build_runners(settings)
    assert [r.name for r in runners] == ["runner-0", "runner-1", "runner-2"]
    assert all(isinstance(r, LocalRunner) and r.shell == "/bin/bash" for r in runners)

def test_unknown_backend():
    with pytest.raises(ValueError, match="Unknown runner backend"):
        build_runners(Settings(runner_backend="mainframe"))

def test_build_scheduler():
    settings = Settings(
        status_sinks="memory,log",
        runner_pool_size=2,
        max_concurrent_runs=7,
        branch_concurrency=2,
        max_runs_per_branch=3,
        cancel_superseded=False,
        job_timeout=42,
    )
    scheduler = build_scheduler(settings)

    assert scheduler.pool.size == 2
    assert [type(s) for s in scheduler.reporter.sinks] == [MemorySink, LogSink]
    assert scheduler.max_concurrent_runs == 7
    assert scheduler.branch_concurrency == 2
    assert scheduler.max_runs_per_branch == 3
    assert scheduler.cancel_superseded is False
    assert scheduler.store.default_timeout == 42
    assert scheduler.executor.reporter is scheduler.reporter
