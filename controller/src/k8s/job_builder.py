"""
Kubernetes Job builder for pipeline steps.
"""

from kubernetes import client
from typing import Optional
import hashlib

from controller.src.config import get_settings
from controller.src.runners.base import StepInvocation

settings = get_settings()

def _safe(value: str, length: int) -> str:
    safe = value.lower().replace(" ", "-").replace("_", "-")
    safe = "".join(c for c in safe if c.isalnum() or c == "-")
    return safe[:length].strip("-") or "x"

def build_job_name(run_id: str, job_name: str, step_order: int, step_name: str) -> str:
    """Generate a unique job name."""
    # K8s names must be lowercase, alphanumeric, max 63 chars
    run_hash = hashlib.md5(f"{run_id}/{job_name}".encode()).hexdigest()[:10]
    return f"kiln-{run_hash}-{step_order}-{_safe(step_name, 20)}"

def build_labels(invocation: StepInvocation) -> dict:
    return {
        "app": "kiln",
        "run-id": _safe(invocation.run_id, 63),
        "job": _safe(invocation.job_name, 63),
        "step-order": str(invocation.step_order),
    }

def build_job(
    invocation: StepInvocation,
    image: Optional[str] = None,
    timeout: Optional[int] = None,
    namespace: Optional[str] = None,
) -> client.V1Job:
    """
    Build a Kubernetes Job for a pipeline step.
    """
    job_name = build_job_name(
        invocation.run_id,
        invocation.job_name,
        invocation.step_order,
        invocation.step_name,
    )
    labels = build_labels(invocation)

    env = [client.V1EnvVar(name=key, value=value) for key, value in invocation.env.items()]

    container = client.V1Container(
        name="step",
        image=image or invocation.image or settings.default_image,
        command=["/bin/sh", "-c"],
        args=[invocation.command],
        env=env,
        resources=client.V1ResourceRequirements(
            requests={"cpu": "100m", "memory": "128Mi"},
            limits={"cpu": "500m", "memory": "512Mi"},
        ),
    )

    pod_spec = client.V1PodSpec(
        containers=[container],
        restart_policy="Never",
    )

    template = client.V1PodTemplateSpec(
        metadata=client.V1ObjectMeta(labels=labels),
        spec=pod_spec,
    )

    job_spec = client.V1JobSpec(
        template=template,
        backoff_limit=0,  # Steps are never retried
        active_deadline_seconds=timeout,
        ttl_seconds_after_finished=settings.job_ttl_after_finished,
    )

    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=job_name,
            namespace=namespace or settings.k8s_namespace,
            labels=labels,
        ),
        spec=job_spec,
    )

def get_job_status(job: client.V1Job) -> str:
    """
    Determine job status from Kubernetes Job object.
    Returns: 'pending', 'running', 'succeeded', 'failed'
    """
    if job.status is None:
        return "pending"

    if job.status.succeeded and job.status.succeeded > 0:
        return "succeeded"

    if job.status.failed and job.status.failed > 0:
        return "failed"

    if job.status.active and job.status.active > 0:
        return "running"

    return "pending"
