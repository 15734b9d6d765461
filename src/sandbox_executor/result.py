from __future__ import annotations

import codecs
from dataclasses import dataclass

from .execution.types import ProcessOutcome
from .policy import SandboxPolicy

# Reported when a run ends without an exit status of its own.
FALLBACK_EXIT_CODE = 1


def truncate_output(data: bytes, limit: int, *, truncated: bool = False) -> str:
    """Keep the first `limit` bytes of output and decode them as UTF-8.

    When the output was cut, a multibyte character split by the cut is
    dropped instead of being rendered as a replacement character.

    Example:
        ```python
        text = truncate_output(b"hello world", 5)  # "hello"
        ```
    """
    kept = data[:limit]
    if truncated or len(data) > limit:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        return decoder.decode(kept, final=False)
    return kept.decode("utf-8", errors="replace")


@dataclass(slots=True)
class ExecutionResult:
    """Normalized output of one container run.

    When `timed_out` is true the exit code comes from the forced kill and is
    not the program's own status.

    Example:
        ```python
        result = ExecutionResult(stdout="hi\\n", stderr="", exit_code=0, timed_out=False)
        ```
    """

    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool

    @classmethod
    def launch_failed(cls, diagnostic: str) -> "ExecutionResult":
        """Build the result reported when the container never started.

        Example:
            ```python
            result = ExecutionResult.launch_failed("Docker CLI was not found.")
            ```
        """
        return cls(stdout="", stderr=diagnostic, exit_code=FALLBACK_EXIT_CODE, timed_out=False)


def assemble_result(outcome: ProcessOutcome, policy: SandboxPolicy) -> ExecutionResult:
    """Apply output caps and normalize a raw process outcome.

    Example:
        ```python
        result = assemble_result(outcome, SandboxPolicy())
        ```
    """
    exit_code = outcome.exit_code if outcome.exit_code is not None else FALLBACK_EXIT_CODE
    return ExecutionResult(
        stdout=truncate_output(
            outcome.stdout,
            policy.stdout_limit_bytes,
            truncated=outcome.stdout_total > len(outcome.stdout),
        ),
        stderr=truncate_output(
            outcome.stderr,
            policy.stderr_limit_bytes,
            truncated=outcome.stderr_total > len(outcome.stderr),
        ),
        exit_code=exit_code,
        timed_out=outcome.timed_out,
    )
