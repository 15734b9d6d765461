from __future__ import annotations

import subprocess
import time
from typing import Callable, Mapping, Sequence

from ..logging_config import get_logger
from .streams import StreamCollector
from .types import ContainerState, ProcessOutcome

# How long to wait for pipes to hit EOF once the process is gone.
_DRAIN_GRACE_SECONDS = 5.0


def run_supervised(
    argv: Sequence[str],
    *,
    timeout_seconds: float,
    stdout_limit: int,
    stderr_limit: int,
    on_timeout: Callable[[], None] | None = None,
    env: Mapping[str, str] | None = None,
    run_id: str = "",
) -> ProcessOutcome:
    """Run a command under a wall-clock deadline, streaming capped output.

    The process either exits on its own (EXITED), is killed when the deadline
    passes (KILLED), or never starts (LAUNCH_FAILED). `on_timeout` runs before
    the local process is SIGKILLed so the caller can tear down anything the
    process started out of reach, such as a container.

    Example:
        ```python
        outcome = run_supervised(["node", "index.js"], timeout_seconds=10, stdout_limit=8192, stderr_limit=4096)
        ```
    """
    log = get_logger(run_id=run_id or None)
    state = ContainerState.STARTING
    try:
        proc = subprocess.Popen(
            list(argv),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=dict(env) if env is not None else None,
        )
    except OSError as exc:
        log.warning("process_launch_failed", argv0=argv[0] if argv else "", error=str(exc))
        return ProcessOutcome(state=ContainerState.LAUNCH_FAILED, error=str(exc))

    assert proc.stdout is not None and proc.stderr is not None
    stdout = StreamCollector(proc.stdout, limit=stdout_limit, name="stdout")
    stderr = StreamCollector(proc.stderr, limit=stderr_limit, name="stderr")
    stdout.start()
    stderr.start()
    state = ContainerState.RUNNING
    started = time.monotonic()
    log.debug("process_running", pid=proc.pid, timeout_seconds=timeout_seconds)

    exit_code: int | None = None
    try:
        try:
            exit_code = proc.wait(timeout=timeout_seconds)
            state = ContainerState.EXITED
        except subprocess.TimeoutExpired:
            state = ContainerState.KILLED
            log.info("process_deadline_elapsed", timeout_seconds=timeout_seconds)
            if on_timeout is not None:
                try:
                    on_timeout()
                except (OSError, RuntimeError, subprocess.SubprocessError) as exc:
                    log.error("timeout_hook_failed", error=str(exc))
            proc.kill()
            exit_code = proc.wait()
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()
        stdout.join(_DRAIN_GRACE_SECONDS)
        stderr.join(_DRAIN_GRACE_SECONDS)

    elapsed_ms = (time.monotonic() - started) * 1000
    log.info("process_finished", state=state.value, exit_code=exit_code, elapsed_ms=round(elapsed_ms, 1))
    return ProcessOutcome(
        state=state,
        stdout=stdout.buffer.getvalue(),
        stderr=stderr.buffer.getvalue(),
        exit_code=exit_code,
        stdout_total=stdout.buffer.total,
        stderr_total=stderr.buffer.total,
    )
