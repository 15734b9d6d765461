from __future__ import annotations

from typing import Protocol

from .types import LaunchRequest, ProcessOutcome


class ExecutionEngine(Protocol):
    def execute(self, request: LaunchRequest) -> ProcessOutcome:
        """Run the entry point of a staged workspace and return the raw outcome.

        Raises `LaunchFailure` when the isolated process cannot be started.

        Example:
            ```python
            outcome = engine.execute(LaunchRequest(workspace=path, entry_point="index.js", policy=SandboxPolicy()))
            ```
        """
        ...
