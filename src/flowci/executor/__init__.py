from .actions import ActionContext, ActionRegistry
from .base import StepEnvironment, StepExecutor, mask
from .shell import ShellStepExecutor

__all__ = [
    "ActionContext",
    "ActionRegistry",
    "ShellStepExecutor",
    "StepEnvironment",
    "StepExecutor",
    "mask",
]
