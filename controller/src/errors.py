"""
Error taxonomy for the orchestrator.
"""

from typing import Optional

class KilnError(Exception):
    """Base class for all orchestrator errors."""
    retryable = False

class DefinitionInvalid(KilnError):
    """Raised when a pipeline definition cannot be loaded."""
    pass

class ParseError(DefinitionInvalid):
    """Raised when a definition is malformed (bad YAML or wrong shape)."""
    pass

class ValidationError(DefinitionInvalid):
    """Raised when a well-formed definition breaks a static rule."""
    pass

class ConcurrencyExceeded(KilnError):
    """Raised when a branch already has too many live runs."""
    retryable = True

    def __init__(self, repository: str, branch: str, limit: int):
        super().__init__(
            f"Branch '{branch}' of {repository} already has {limit} live run(s)"
        )
        self.repository = repository
        self.branch = branch
        self.limit = limit

class TriggerNotMatched(KilnError):
    """Raised when no job of a definition admits the triggering event."""
    pass

class RunNotFound(KilnError):
    pass

class StepFailure(KilnError):
    """A step exited non-zero."""

    def __init__(
        self,
        job_name: str,
        step_name: str,
        exit_code: Optional[int] = None,
        output: Optional[str] = None,
    ):
        super().__init__(self.describe(job_name, step_name, exit_code))
        self.job_name = job_name
        self.step_name = step_name
        self.exit_code = exit_code
        self.output = output

    @staticmethod
    def describe(job_name: str, step_name: str, exit_code: Optional[int]) -> str:
        return f"Step '{step_name}' of job '{job_name}' failed with exit code {exit_code}"

class StepTimeout(StepFailure):
    """A step was terminated because the job ran out of time."""

    @staticmethod
    def describe(job_name: str, step_name: str, exit_code: Optional[int]) -> str:
        return f"Step '{step_name}' of job '{job_name}' timed out"

class InfrastructureError(KilnError):
    """Raised by runners when a step cannot be started or supervised."""
    retryable = True

class RunnerUnavailable(InfrastructureError):
    """Raised when no runner could be acquired before the timeout."""
    pass

class OperationCancelled(KilnError):
    """Raised by a cancellation token when the awaited work was cancelled."""

    def __init__(self, reason: str = "cancelled"):
        super().__init__(f"Operation cancelled ({reason})")
        self.reason = reason
