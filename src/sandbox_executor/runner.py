from __future__ import annotations

import uuid
from typing import Mapping

from .errors import InputValidationError
from .execution.engine import ExecutionEngine
from .execution.types import ExecutionRequest, LaunchRequest
from .logging_config import get_logger
from .policy import SandboxPolicy, SandboxResult
from .result import assemble_result
from .verdict import evaluate_verdict
from .workspace import Workspace, validate_files


def _resolve_policy(policy: SandboxPolicy | None, policy_file: str | None) -> SandboxPolicy:
    """Resolve the effective policy object for a run.

    Example:
        ```python
        policy = _resolve_policy(None, "/etc/sandbox/policy.toml")
        ```
    """
    if policy is not None and policy_file is not None:
        raise ValueError("Provide either 'policy' or 'policy_file', not both")
    if policy is None and policy_file is not None:
        return SandboxPolicy.from_file(policy_file)
    if policy is None:
        return SandboxPolicy()
    if policy.config_path is not None:
        return SandboxPolicy.from_file(policy.config_path)
    return policy


def _validate_request(request: ExecutionRequest, policy: SandboxPolicy) -> None:
    """Reject unusable requests before any workspace exists.

    Example:
        ```python
        _validate_request(ExecutionRequest(files={"index.js": ""}, entry_point="index.js"), SandboxPolicy())
        ```
    """
    validate_files(request.files)
    if not isinstance(request.entry_point, str) or not request.entry_point.strip():
        raise InputValidationError("entryPoint must be a non-empty string")
    if request.entry_point not in request.files:
        raise InputValidationError(
            f"Entry point {request.entry_point!r} is not one of the submitted files"
        )
    size = sum(
        len(name.encode("utf-8")) + len(content.encode("utf-8"))
        for name, content in request.files.items()
    )
    if size > policy.max_payload_bytes:
        raise InputValidationError(
            f"Submitted files total {size} bytes; the limit is {policy.max_payload_bytes}"
        )


def run_files(
    files: Mapping[str, str],
    engine: ExecutionEngine,
    entry_point: str | None = None,
    test_check: str | None = None,
    policy: SandboxPolicy | None = None,
    policy_file: str | None = None,
) -> SandboxResult:
    """Stage files, run the entry point in the sandbox and report what happened.

    Timeouts, non-zero exits and stderr output come back as ordinary results.
    `InputValidationError`, `WorkspacePreparationError`, `LaunchFailure` and
    `ExecutorBusyError` propagate. The workspace is always removed once the
    container has reached a terminal state.

    Example:
        ```python
        from sandbox_executor import DockerEngine, run_files
        result = run_files({"index.js": "console.log('hi')"}, engine=DockerEngine())
        ```
    """
    resolved_policy = _resolve_policy(policy, policy_file)
    request = ExecutionRequest(
        files=files,
        entry_point=entry_point or resolved_policy.default_entry_point,
    )
    _validate_request(request, resolved_policy)

    run_id = uuid.uuid4().hex[:12]
    log = get_logger(run_id=run_id)
    workspace = Workspace.create(request.files)
    try:
        outcome = engine.execute(
            LaunchRequest(
                workspace=workspace.path,
                entry_point=request.entry_point,
                policy=resolved_policy,
                run_id=run_id,
            )
        )
        result = assemble_result(outcome, resolved_policy)
    finally:
        workspace.remove()

    passed = evaluate_verdict(request.files[request.entry_point], test_check)
    log.info(
        "execution_finished",
        entry_point=request.entry_point,
        exit_code=result.exit_code,
        timed_out=result.timed_out,
        passed=passed,
    )
    return SandboxResult(
        stdout=result.stdout,
        stderr=result.stderr,
        exit_code=result.exit_code,
        timed_out=result.timed_out,
        passed=passed,
    )
