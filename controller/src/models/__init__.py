from controller.src.models.pipeline import (
    EventType,
    TriggerEvent,
    StepDefinition,
    JobDefinition,
    PipelineDefinition,
)
from controller.src.models.run import (
    RunStatus,
    JobStatus,
    StepStatus,
    FailureReason,
    StepResult,
    JobExecution,
    Run,
    StatusUpdate,
    OutputLine,
)

__all__ = [
    "EventType",
    "TriggerEvent",
    "StepDefinition",
    "JobDefinition",
    "PipelineDefinition",
    "RunStatus",
    "JobStatus",
    "StepStatus",
    "FailureReason",
    "StepResult",
    "JobExecution",
    "Run",
    "StatusUpdate",
    "OutputLine",
]
