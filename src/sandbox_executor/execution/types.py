from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping

from ..policy import SandboxPolicy


class ContainerState(str, Enum):
    """Lifecycle states of one supervised container run.

    Example:
        ```python
        state = ContainerState.RUNNING
        ```
    """

    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    KILLED = "killed"
    LAUNCH_FAILED = "launch_failed"

    @property
    def is_terminal(self) -> bool:
        """Return whether the run can no longer change state.

        Example:
            ```python
            assert ContainerState.KILLED.is_terminal
            ```
        """
        return self in {ContainerState.EXITED, ContainerState.KILLED, ContainerState.LAUNCH_FAILED}


@dataclass(slots=True)
class ExecutionRequest:
    """Files to stage plus the entry point the runtime is pointed at.

    Example:
        ```python
        req = ExecutionRequest(files={"index.js": "console.log('hi')"}, entry_point="index.js")
        ```
    """

    files: Mapping[str, str]
    entry_point: str


@dataclass(slots=True)
class LaunchRequest:
    """Normalized request sent to an execution engine.

    Example:
        ```python
        req = LaunchRequest(workspace=Path("/tmp/sandbox-run-x"), entry_point="index.js", policy=SandboxPolicy())
        ```
    """

    workspace: Path
    entry_point: str
    policy: SandboxPolicy
    run_id: str = ""


@dataclass(slots=True)
class ProcessOutcome:
    """Raw outcome of a supervised process before normalization.

    Example:
        ```python
        out = ProcessOutcome(state=ContainerState.EXITED, stdout=b"hi\\n", stderr=b"", exit_code=0)
        ```
    """

    state: ContainerState
    stdout: bytes = b""
    stderr: bytes = b""
    exit_code: int | None = None
    stdout_total: int = 0
    stderr_total: int = 0
    error: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def timed_out(self) -> bool:
        """Return whether the deadline killed the process.

        Example:
            ```python
            assert ProcessOutcome(state=ContainerState.KILLED).timed_out
            ```
        """
        return self.state is ContainerState.KILLED
