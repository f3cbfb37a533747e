from api.src.models.run import (
    StepResponse,
    JobResponse,
    PipelineRunResponse,
    EventResponse,
    DefinitionResponse,
    run_response,
)

__all__ = [
    "StepResponse",
    "JobResponse",
    "PipelineRunResponse",
    "EventResponse",
    "DefinitionResponse",
    "run_response",
]
