from __future__ import annotations

from .result import ExecutionResult


class SandboxError(Exception):
    """Base class for errors raised by the sandbox executor."""


class InputValidationError(SandboxError, ValueError):
    """The request itself is unusable: no files, bad names, or unknown entry point."""


class WorkspacePreparationError(SandboxError, RuntimeError):
    """Staging files onto disk failed."""


class LaunchFailure(SandboxError, RuntimeError):
    """The container never started: engine unreachable or image missing."""

    def to_result(self) -> ExecutionResult:
        """Return the structured result form of a launch failure.

        Example:
            ```python
            result = LaunchFailure("Docker CLI was not found.").to_result()
            ```
        """
        return ExecutionResult.launch_failed(str(self))


class ExecutorBusyError(SandboxError, TimeoutError):
    """No execution slot became free before the admission deadline."""


class VerdictEvaluationError(SandboxError, ValueError):
    """A scoring predicate could not be parsed or evaluated."""
