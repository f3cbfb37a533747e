"""Tests for the Kubernetes runner against in-process API fakes."""

import asyncio
from types import SimpleNamespace

import pytest
from kubernetes.client.rest import ApiException

from controller.src.errors import InfrastructureError
from controller.src.runners.base import StepInvocation
from controller.src.runners.kubernetes import KubernetesRunner

class FakeBatchApi:
    """Reports the scripted statuses in order, then repeats the last one."""

    def __init__(self, statuses, conflict=False, fail_create=False):
        self.statuses = list(statuses)
        self.created = []
        self.deleted = []
        self.conflict = conflict
        self.fail_create = fail_create

    def create_namespaced_job(self, namespace, body):
        if self.fail_create:
            raise ApiException(status=403, reason="Forbidden")
        if self.conflict:
            self.conflict = False
            raise ApiException(status=409, reason="AlreadyExists")
        self.created.append((namespace, body))

    def read_namespaced_job(self, name, namespace):
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        counts = {"succeeded": None, "failed": None, "active": None}
        if status != "pending":
            counts["active" if status == "running" else status] = 1
        return SimpleNamespace(status=SimpleNamespace(**counts))

    def delete_namespaced_job(self, name, namespace, body):
        self.deleted.append(name)

class FakeCoreApi:
    """Pod log grows by one line per read."""

    def __init__(self, lines, exit_code=None):
        self.lines = lines
        self.reads = 0
        self.exit_code = exit_code

    def list_namespaced_pod(self, namespace, label_selector):
        terminated = SimpleNamespace(exit_code=self.exit_code) if self.exit_code is not None else None
        pod = SimpleNamespace(
            metadata=SimpleNamespace(name="pod-1"),
            status=SimpleNamespace(container_statuses=[SimpleNamespace(state=SimpleNamespace(terminated=terminated))]),
        )
        return SimpleNamespace(items=[pod])

    def read_namespaced_pod_log(self, name, namespace):
        self.reads += 1
        return "\n".join(self.lines[:self.reads])

def invocation():
    return StepInvocation(
        run_id="0123456789abcdef",
        job_name="build",
        step_name="compile",
        step_order=0,
        command="make",
        image="gcc:13",
    )

async def collect(runner):
    lines = []

    async def on_output(line):
        lines.append(line)

    code = await runner.run_step(invocation(), on_output)
    return code, lines

def make_runner(batch, core):
    return KubernetesRunner("k8s-0", batch_api=batch, core_api=core, namespace="ci", poll_interval=0.01, step_deadline=60)

@pytest.mark.asyncio
async def test_streams_new_lines_and_returns_exit_code():
    batch = FakeBatchApi(["pending", "running", "running", "failed"])
    core = FakeCoreApi(["one", "two", "three", "four"], exit_code=2)

    code, lines = await collect(make_runner(batch, core))

    assert code == 2
    assert lines == ["one", "two", "three", "four"]
    namespace, job = batch.created[0]
    assert namespace == "ci"
    assert job.spec.template.spec.containers[0].image == "gcc:13"

@pytest.mark.asyncio
async def test_exit_code_falls_back_to_job_status():
    code, _ = await collect(make_runner(FakeBatchApi(["succeeded"]), FakeCoreApi([])))
    assert code == 0
    code, _ = await collect(make_runner(FakeBatchApi(["failed"]), FakeCoreApi([])))
    assert code == 1

@pytest.mark.asyncio
async def test_existing_job_is_replaced():
    batch = FakeBatchApi(["succeeded"], conflict=True)
    code, _ = await collect(make_runner(batch, FakeCoreApi([])))
    assert code == 0
    assert len(batch.deleted) == 1
    assert len(batch.created) == 1

@pytest.mark.asyncio
async def test_create_failure_is_an_infrastructure_error():
    with pytest.raises(InfrastructureError, match="Forbidden"):
        await collect(make_runner(FakeBatchApi(["pending"], fail_create=True), FakeCoreApi([])))

@pytest.mark.asyncio
async def test_cancel_deletes_job():
    batch = FakeBatchApi(["running"])
    runner = make_runner(batch, FakeCoreApi(["working"]))
    task = asyncio.create_task(collect(runner))
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert len(batch.deleted) == 1
