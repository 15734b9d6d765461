from .errors import (
    ExecutorBusyError,
    InputValidationError,
    LaunchFailure,
    SandboxError,
    WorkspacePreparationError,
)
from .policy import SandboxPolicy, SandboxResult
from .runner import run_files
from .execution.docker_engine import DockerEngine

__all__ = [
    "DockerEngine",
    "ExecutorBusyError",
    "InputValidationError",
    "LaunchFailure",
    "SandboxError",
    "SandboxPolicy",
    "SandboxResult",
    "WorkspacePreparationError",
    "run_files",
]
