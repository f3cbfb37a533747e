from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime

class StepResponse(BaseModel):
    name: str
    status: str
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    duration: Optional[float] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

class JobResponse(BaseModel):
    name: str
    status: str
    reason: Optional[str] = None
    runner: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    steps: List[StepResponse] = []

class PipelineRunResponse(BaseModel):
    id: str
    pipeline: str
    repository: str
    branch: str
    commit_sha: str
    event_type: str
    triggered_by: Optional[str] = None
    status: str
    reason: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    jobs: List[JobResponse] = []

class EventResponse(BaseModel):
    status: str
    run_id: Optional[str] = None
    jobs: List[str] = []
    reason: Optional[str] = None

class DefinitionResponse(BaseModel):
    repository: str
    pipeline: str
    jobs: List[str]

def _value(enum_member) -> Optional[str]:
    return enum_member.value if enum_member is not None else None

def step_response(step) -> StepResponse:
    return StepResponse(
        name=step.name,
        status=step.status.value,
        exit_code=step.exit_code,
        reason=_value(step.reason),
        duration=step.duration,
        started_at=step.started_at,
        finished_at=step.finished_at,
    )

def job_response(job) -> JobResponse:
    return JobResponse(
        name=job.name,
        status=job.status.value,
        reason=_value(job.reason),
        runner=job.runner,
        started_at=job.started_at,
        finished_at=job.finished_at,
        steps=[step_response(step) for step in job.steps],
    )

def run_response(run) -> PipelineRunResponse:
    """Flatten a scheduler Run into its API representation."""
    return PipelineRunResponse(
        id=run.id,
        pipeline=run.pipeline,
        repository=run.event.repository,
        branch=run.event.branch,
        commit_sha=run.event.commit_sha,
        event_type=run.event.event_type.value,
        triggered_by=run.event.actor,
        status=run.status.value,
        reason=_value(run.reason),
        created_at=run.created_at,
        started_at=run.started_at,
        finished_at=run.finished_at,
        jobs=[job_response(job) for job in run.jobs.values()],
    )
