"""
Pipeline definition and trigger models.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field

from controller.src.branch_matcher import ANY_BRANCH, BranchFilter

class EventType(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"

class TriggerEvent(BaseModel):
    repository: str
    branch: str
    commit_sha: str = Field(alias="commitSHA")
    event_type: EventType = Field(default=EventType.PUSH, alias="eventType")
    actor: Optional[str] = None

    class Config:
        frozen = True
        populate_by_name = True

    @property
    def branch_key(self) -> Tuple[str, str]:
        return (self.repository, self.branch)

@dataclass(frozen=True)
class StepDefinition:
    name: str
    command: str
    timeout: Optional[float] = None
    env: Mapping[str, str] = field(default_factory=dict)
    image: Optional[str] = None

@dataclass(frozen=True)
class JobDefinition:
    id: str
    name: str
    steps: Tuple[StepDefinition, ...]
    timeout: float
    env: Mapping[str, str] = field(default_factory=dict)
    needs: Tuple[str, ...] = ()
    branches: BranchFilter = ANY_BRANCH
    image: Optional[str] = None

@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    jobs: Tuple[JobDefinition, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    # None means every event type on every branch
    triggers: Optional[Mapping[EventType, BranchFilter]] = None

    def job(self, job_id: str) -> JobDefinition:
        for job in self.jobs:
            if job.id == job_id:
                return job
        raise KeyError(job_id)

    def accepts(self, event: TriggerEvent) -> bool:
        """Check the pipeline-level `on:` filter."""
        if self.triggers is None:
            return True
        branch_filter = self.triggers.get(event.event_type)
        if branch_filter is None:
            return False
        return branch_filter.matches(event.branch)

    def jobs_for(self, event: TriggerEvent) -> List[JobDefinition]:
        """
        Jobs admitted for an event, in declared order.
        A job is dropped when its branch filter rejects the event or when
        any job it needs was dropped.
        """
        if not self.accepts(event):
            return []

        admitted = [job for job in self.jobs if job.branches.matches(event.branch)]
        while True:
            ids = {job.id for job in admitted}
            kept = [job for job in admitted if set(job.needs) <= ids]
            if len(kept) == len(admitted):
                return kept
            admitted = kept

    def step_env(self, job: JobDefinition, step: StepDefinition) -> Dict[str, str]:
        env: Dict[str, str] = {}
        env.update(self.env)
        env.update(job.env)
        env.update(step.env)
        return env
