from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List

class Settings(BaseSettings):
    database_url: str = "sqlite:///./kiln.db"
    redis_url: str = "redis://localhost:6379/0"
    status_webhook_url: str = ""

    # Comma-separated: memory, log, database, redis, webhook
    status_sinks: str = "memory,log"

    # Runner settings
    runner_backend: str = "local"  # local | kubernetes
    runner_pool_size: int = 4
    runner_acquire_timeout: float = 300.0
    workspace_root: str = ""  # Empty means the system temp dir
    step_shell: str = "/bin/sh"

    # Scheduling
    max_concurrent_runs: int = 4
    branch_concurrency: int = 1
    max_runs_per_branch: int = 5
    cancel_superseded: bool = True
    max_retained_runs: int = 500  # Finished runs kept in memory

    # Job settings
    job_timeout: int = 600  # 10 minutes default
    infrastructure_retries: int = 2
    infrastructure_backoff: float = 1.0
    kill_grace_period: float = 5.0
    output_tail_lines: int = 1000

    # Kubernetes settings
    k8s_namespace: str = "kiln"
    k8s_in_cluster: bool = False  # Set True when running inside K8s
    job_ttl_after_finished: int = 300  # Clean up jobs after 5 min
    default_image: str = "alpine:3.19"
    k8s_poll_interval: float = 2.0

    log_level: str = "INFO"

    class Config:
        env_file = ".env"

    def sink_names(self) -> List[str]:
        return [name.strip() for name in self.status_sinks.split(",") if name.strip()]

@lru_cache()
def get_settings() -> Settings:
    return Settings()
