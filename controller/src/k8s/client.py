"""
Kubernetes client initialization and utilities.
"""

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from typing import Optional
import logging

from controller.src.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

_api_client = None
_batch_v1 = None
_core_v1 = None

def init_k8s_client(in_cluster: Optional[bool] = None) -> bool:
    """Load cluster credentials and build the API clients runners share."""
    global _api_client, _batch_v1, _core_v1

    if in_cluster is None:
        in_cluster = settings.k8s_in_cluster

    try:
        if in_cluster:
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes config")
        else:
            # Running locally (Docker Desktop, minikube, etc.)
            config.load_kube_config()
            logger.info("Loaded local Kubernetes config")

        _api_client = client.ApiClient()
        _batch_v1 = client.BatchV1Api(_api_client)
        _core_v1 = client.CoreV1Api(_api_client)

        # Test connection
        _core_v1.list_namespace(limit=1)
        logger.info("Kubernetes client ready for step jobs")

        return True
    except Exception as e:
        logger.error(f"Failed to initialize Kubernetes client: {e}")
        return False

def get_batch_api() -> client.BatchV1Api:
    """Get BatchV1 API client for Job operations."""
    if _batch_v1 is None:
        init_k8s_client()
    return _batch_v1

def get_core_api() -> client.CoreV1Api:
    """Get CoreV1 API client for Pod operations."""
    if _core_v1 is None:
        init_k8s_client()
    return _core_v1

def ensure_namespace(core_v1: Optional[client.CoreV1Api] = None, namespace: Optional[str] = None):
    """Ensure the runner namespace exists."""
    core_v1 = core_v1 or get_core_api()
    namespace = namespace or settings.k8s_namespace

    try:
        core_v1.read_namespace(name=namespace)
        logger.info(f"Namespace '{namespace}' exists")
    except ApiException as e:
        if e.status == 404:
            body = client.V1Namespace(metadata=client.V1ObjectMeta(name=namespace))
            core_v1.create_namespace(body=body)
            logger.info(f"Created namespace '{namespace}'")
        else:
            raise

def get_job_pod(core_v1: client.CoreV1Api, job_name: str, namespace: str) -> Optional[client.V1Pod]:
    """Get the pod for a job."""
    pods = core_v1.list_namespaced_pod(
        namespace=namespace,
        label_selector=f"job-name={job_name}",
    )
    if pods.items:
        return pods.items[0]
    return None

def get_container_exit_code(pod: Optional[client.V1Pod]) -> Optional[int]:
    """Exit code of the step container, once it has terminated."""
    if pod is None or pod.status is None or not pod.status.container_statuses:
        return None
    for status in pod.status.container_statuses:
        terminated = status.state.terminated if status.state else None
        if terminated is not None:
            return terminated.exit_code
    return None

def delete_job(batch_v1: client.BatchV1Api, job_name: str, namespace: str):
    """Delete a job and its pods."""
    try:
        batch_v1.delete_namespaced_job(
            name=job_name,
            namespace=namespace,
            body=client.V1DeleteOptions(propagation_policy="Foreground"),
        )
        logger.info(f"Deleted job {job_name}")
    except ApiException as e:
        if e.status != 404:
            logger.error(f"Failed to delete job {job_name}: {e}")
