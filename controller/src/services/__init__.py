from controller.src.services.cancellation import CancellationToken
from controller.src.services.definition_store import (
    DefinitionStore,
    parse_pipeline_config,
    parse_pipeline_dict,
    find_definition,
)
from controller.src.services.executor import StepExecutor, ExecutionContext
from controller.src.services.runner_pool import RunnerPool
from controller.src.services.scheduler import Scheduler
from controller.src.services.status_reporter import (
    StatusReporter,
    StatusSink,
    MemorySink,
    LogSink,
    DatabaseSink,
    RedisSink,
    WebhookSink,
    build_sinks,
)

__all__ = [
    "CancellationToken",
    "DefinitionStore",
    "parse_pipeline_config",
    "parse_pipeline_dict",
    "find_definition",
    "StepExecutor",
    "ExecutionContext",
    "RunnerPool",
    "Scheduler",
    "StatusReporter",
    "StatusSink",
    "MemorySink",
    "LogSink",
    "DatabaseSink",
    "RedisSink",
    "WebhookSink",
    "build_sinks",
]
