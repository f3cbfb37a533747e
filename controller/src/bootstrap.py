"""
Assemble a scheduler from settings.
"""

import logging
from typing import List, Optional, Sequence

from controller.src.config import Settings, get_settings
from controller.src.runners.base import Runner
from controller.src.runners.local import LocalRunner
from controller.src.services.definition_store import DefinitionStore
from controller.src.services.executor import StepExecutor
from controller.src.services.runner_pool import RunnerPool
from controller.src.services.scheduler import Scheduler
from controller.src.services.status_reporter import StatusReporter, StatusSink, build_sinks

logger = logging.getLogger(__name__)

def build_runners(settings: Optional[Settings] = None) -> List[Runner]:
    settings = settings or get_settings()
    names = [f"runner-{i}" for i in range(settings.runner_pool_size)]

    if settings.runner_backend == "local":
        return [
            LocalRunner(
                name,
                shell=settings.step_shell,
                workspace_root=settings.workspace_root or None,
                kill_grace_period=settings.kill_grace_period,
            )
            for name in names
        ]

    if settings.runner_backend == "kubernetes":
        from controller.src.k8s.client import ensure_namespace, init_k8s_client
        from controller.src.runners.kubernetes import KubernetesRunner

        if not init_k8s_client(settings.k8s_in_cluster):
            raise RuntimeError("Failed to initialize Kubernetes client")
        ensure_namespace(namespace=settings.k8s_namespace)
        return [
            KubernetesRunner(
                name,
                namespace=settings.k8s_namespace,
                poll_interval=settings.k8s_poll_interval,
                step_deadline=settings.job_timeout,
            )
            for name in names
        ]

    raise ValueError(f"Unknown runner backend '{settings.runner_backend}'")

def build_scheduler(
    settings: Optional[Settings] = None,
    sinks: Optional[Sequence[StatusSink]] = None,
    runners: Optional[Sequence[Runner]] = None,
) -> Scheduler:
    settings = settings or get_settings()
    reporter = StatusReporter(build_sinks(settings) if sinks is None else sinks)
    pool = RunnerPool(runners if runners is not None else build_runners(settings))
    executor = StepExecutor(
        reporter,
        infrastructure_retries=settings.infrastructure_retries,
        infrastructure_backoff=settings.infrastructure_backoff,
        output_tail_lines=settings.output_tail_lines,
    )
    logger.info(
        f"Scheduler ready: {pool.size} {settings.runner_backend} runner(s), "
        f"sinks={[sink.name for sink in reporter.sinks]}"
    )
    return Scheduler(
        pool=pool,
        reporter=reporter,
        store=DefinitionStore(settings.job_timeout),
        executor=executor,
        max_concurrent_runs=settings.max_concurrent_runs,
        branch_concurrency=settings.branch_concurrency,
        max_runs_per_branch=settings.max_runs_per_branch,
        cancel_superseded=settings.cancel_superseded,
        runner_acquire_timeout=settings.runner_acquire_timeout,
        max_retained_runs=settings.max_retained_runs,
    )
