"""
Run, job execution and step result models.
"""

from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from datetime import datetime
from enum import Enum
import uuid

from controller.src.errors import StepFailure, StepTimeout
from controller.src.models.pipeline import TriggerEvent

class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)

class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self not in (JobStatus.QUEUED, JobStatus.RUNNING)

class StepStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

class FailureReason(str, Enum):
    STEP_FAILED = "step_failed"
    TIMEOUT = "timeout"
    INFRASTRUCTURE = "infrastructure"
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"
    DEPENDENCY_FAILED = "dependency_failed"

def utcnow() -> datetime:
    return datetime.utcnow()

class StepResult(BaseModel):
    name: str
    status: StepStatus = StepStatus.RUNNING
    exit_code: Optional[int] = None
    output: str = ""
    reason: Optional[FailureReason] = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def duration(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

class JobExecution(BaseModel):
    name: str
    status: JobStatus = JobStatus.QUEUED
    reason: Optional[FailureReason] = None
    runner: Optional[str] = None
    steps: List[StepResult] = []
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def derive_status(self) -> JobStatus:
        """First failing step's status, else succeeded."""
        for step in self.steps:
            if step.status == StepStatus.FAILED:
                return JobStatus.FAILED
            if step.status == StepStatus.CANCELLED:
                return JobStatus.CANCELLED
        return JobStatus.SUCCEEDED

    def finish(self, status: JobStatus, reason: Optional[FailureReason] = None):
        self.status = status
        self.reason = reason
        self.finished_at = utcnow()

class Run(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    pipeline: str
    event: TriggerEvent
    status: RunStatus = RunStatus.QUEUED
    reason: Optional[FailureReason] = None
    jobs: Dict[str, JobExecution] = {}
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def derive_status(self, cancelled: bool = False) -> RunStatus:
        """A cancelled run is always Cancelled, whatever its jobs concluded."""
        statuses = [job.status for job in self.jobs.values()]
        if cancelled:
            return RunStatus.CANCELLED
        if JobStatus.FAILED in statuses:
            return RunStatus.FAILED
        if JobStatus.CANCELLED in statuses:
            return RunStatus.CANCELLED
        return RunStatus.SUCCEEDED

    def raise_for_status(self):
        """Raise StepFailure (or StepTimeout) for the first failed job."""
        for job in self.jobs.values():
            if job.status != JobStatus.FAILED:
                continue
            failed = job.steps[-1] if job.steps else None
            step_name = failed.name if failed else "<none>"
            exc_type = StepTimeout if job.reason == FailureReason.TIMEOUT else StepFailure
            raise exc_type(
                job.name,
                step_name,
                exit_code=failed.exit_code if failed else None,
                output=failed.output if failed else None,
            )

class StatusUpdate(BaseModel):
    run_id: str = Field(alias="runID")
    status: str
    timestamp: datetime = Field(default_factory=utcnow)
    job_name: Optional[str] = Field(default=None, alias="jobName")
    step_name: Optional[str] = Field(default=None, alias="stepName")
    reason: Optional[str] = None
    exit_code: Optional[int] = None

    class Config:
        populate_by_name = True

class OutputLine(BaseModel):
    run_id: str = Field(alias="runID")
    job_name: str = Field(alias="jobName")
    step_name: str = Field(alias="stepName")
    line: str
    timestamp: datetime = Field(default_factory=utcnow)

    class Config:
        populate_by_name = True
