"""
Kubernetes runner - runs each step as a Kubernetes Job and polls it to completion.

Output is streamed at poll granularity: each poll reads the pod log and
forwards the lines that have not been sent yet.
"""

import asyncio
import logging
from typing import List, Optional

from kubernetes.client.rest import ApiException

from controller.src.config import get_settings
from controller.src.errors import InfrastructureError
from controller.src.k8s.client import (
    delete_job,
    get_batch_api,
    get_container_exit_code,
    get_core_api,
    get_job_pod,
)
from controller.src.k8s.job_builder import build_job, get_job_status
from controller.src.runners.base import OutputCallback, Runner, StepInvocation

logger = logging.getLogger(__name__)
settings = get_settings()

class KubernetesRunner(Runner):

    def __init__(
        self,
        name: str,
        batch_api=None,
        core_api=None,
        namespace: Optional[str] = None,
        poll_interval: Optional[float] = None,
        step_deadline: Optional[int] = None,
    ):
        self.name = name
        self._batch_api = batch_api
        self._core_api = core_api
        self.namespace = namespace or settings.k8s_namespace
        self.poll_interval = settings.k8s_poll_interval if poll_interval is None else poll_interval
        # Backstop for the pod itself; the executor enforces the real timeout
        self.step_deadline = step_deadline or settings.job_timeout

    @property
    def batch_api(self):
        if self._batch_api is None:
            self._batch_api = get_batch_api()
        return self._batch_api

    @property
    def core_api(self):
        if self._core_api is None:
            self._core_api = get_core_api()
        return self._core_api

    async def run_step(self, invocation: StepInvocation, on_output: OutputCallback) -> int:
        job = build_job(invocation, timeout=self.step_deadline, namespace=self.namespace)
        job_name = job.metadata.name
        logger.info(f"Creating job {job_name} for step '{invocation.step_name}'")

        try:
            await self._create(job)
        except ApiException as e:
            raise InfrastructureError(f"Failed to create job {job_name}: {e.reason}") from e

        try:
            return await self._follow(job_name, on_output)
        except asyncio.CancelledError:
            await asyncio.to_thread(delete_job, self.batch_api, job_name, self.namespace)
            raise

    async def _create(self, job):
        try:
            await asyncio.to_thread(
                self.batch_api.create_namespaced_job,
                namespace=self.namespace,
                body=job,
            )
        except ApiException as e:
            if e.status != 409:
                raise
            # Job already exists from an earlier attempt, delete and recreate
            logger.warning(f"Job {job.metadata.name} already exists, deleting...")
            await asyncio.to_thread(delete_job, self.batch_api, job.metadata.name, self.namespace)
            await asyncio.sleep(self.poll_interval)
            await asyncio.to_thread(
                self.batch_api.create_namespaced_job,
                namespace=self.namespace,
                body=job,
            )

    async def _follow(self, job_name: str, on_output: OutputCallback) -> int:
        sent = 0
        while True:
            try:
                job = await asyncio.to_thread(
                    self.batch_api.read_namespaced_job,
                    name=job_name,
                    namespace=self.namespace,
                )
                status = get_job_status(job)
                pod = await asyncio.to_thread(get_job_pod, self.core_api, job_name, self.namespace)
            except ApiException as e:
                raise InfrastructureError(f"Lost track of job {job_name}: {e.reason}") from e

            lines = await self._read_lines(pod)
            for line in lines[sent:]:
                await on_output(line)
            sent = max(sent, len(lines))

            if status in ("succeeded", "failed"):
                exit_code = get_container_exit_code(pod)
                if exit_code is None:
                    exit_code = 0 if status == "succeeded" else 1
                return exit_code

            await asyncio.sleep(self.poll_interval)

    async def _read_lines(self, pod) -> List[str]:
        if pod is None:
            return []
        try:
            logs = await asyncio.to_thread(
                self.core_api.read_namespaced_pod_log,
                name=pod.metadata.name,
                namespace=self.namespace,
            )
        except ApiException as e:
            if e.status == 400:
                # Pod might not have started yet
                return []
            raise InfrastructureError(f"Failed to read logs for {pod.metadata.name}: {e.reason}") from e
        return logs.splitlines() if logs else []
