from controller.src.runners.base import Runner, StepInvocation, OutputCallback
from controller.src.runners.local import LocalRunner

__all__ = [
    "Runner",
    "StepInvocation",
    "OutputCallback",
    "LocalRunner",
]
