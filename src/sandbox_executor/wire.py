from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

import structlog

from .errors import (
    ExecutorBusyError,
    InputValidationError,
    LaunchFailure,
    WorkspacePreparationError,
)
from .execution.engine import ExecutionEngine
from .policy import SandboxPolicy
from .runner import run_files

logger = structlog.get_logger(__name__)

SERVICE_NAME = "sandbox-api"
LEGACY_ENTRY_POINT = "index.js"


def parse_execute_payload(body: Any, default_entry_point: str = LEGACY_ENTRY_POINT) -> tuple[dict[str, str], str, str | None]:
    """Turn an `/execute` request body into files, entry point and test check.

    Accepts `{"files": {name: {"content": str}}, "entryPoint", "testCheck"}`
    and the single-file legacy form `{"code": str}`.

    Example:
        ```python
        files, entry, check = parse_execute_payload({"code": "console.log('hi')"})
        ```
    """
    if not isinstance(body, dict):
        raise InputValidationError("Request body must be a JSON object")
    raw_files = body.get("files")
    entry_point = body.get("entryPoint") or default_entry_point
    code = body.get("code")
    if raw_files is None and isinstance(code, str):
        raw_files = {LEGACY_ENTRY_POINT: {"content": code}}
        entry_point = LEGACY_ENTRY_POINT
    if not isinstance(raw_files, dict) or not raw_files:
        raise InputValidationError("No code or files provided.")
    if not isinstance(entry_point, str):
        raise InputValidationError("entryPoint must be a string")

    files: dict[str, str] = {}
    for name, file_obj in raw_files.items():
        if isinstance(file_obj, dict):
            content = file_obj.get("content") or ""
        else:
            raise InputValidationError(f"File {name!r} must be an object with a 'content' string")
        if not isinstance(content, str):
            raise InputValidationError(f"Content of {name!r} must be a string")
        files[str(name)] = content

    test_check = body.get("testCheck")
    if test_check is not None and not isinstance(test_check, str):
        test_check = None
    return files, entry_point, test_check


def handle_execute(
    body: Any,
    engine: ExecutionEngine,
    policy: SandboxPolicy | None = None,
) -> tuple[int, dict[str, Any]]:
    """Serve one `/execute` call and return an HTTP status plus JSON payload.

    Example:
        ```python
        status, payload = handle_execute({"code": "console.log('hi')"}, engine=DockerEngine())
        ```
    """
    resolved = policy or SandboxPolicy()
    try:
        files, entry_point, test_check = parse_execute_payload(body, resolved.default_entry_point)
        result = run_files(
            files,
            engine=engine,
            entry_point=entry_point,
            test_check=test_check,
            policy=resolved,
        )
    except InputValidationError as exc:
        return 400, {"error": str(exc)}
    except LaunchFailure as exc:
        logger.error("launch_failed", error=str(exc))
        failed = exc.to_result()
        return 503, {"error": "Sandbox unavailable.", **_camel(asdict(failed)), "passed": False}
    except ExecutorBusyError as exc:
        logger.warning("executor_busy", error=str(exc))
        return 503, {"error": "Sandbox is busy, retry shortly.", "details": str(exc)}
    except WorkspacePreparationError as exc:
        logger.error("workspace_preparation_failed", error=str(exc))
        return 500, {"error": "Internal server error during execution.", "details": str(exc)}
    return 200, result.to_wire()


def health_payload() -> dict[str, str]:
    """Return the readiness payload served at `/health`.

    Example:
        ```python
        payload = health_payload()
        ```
    """
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def _camel(fields: dict[str, Any]) -> dict[str, Any]:
    """Rename result fields to their wire names.

    Example:
        ```python
        payload = _camel({"exit_code": 1, "timed_out": False})
        ```
    """
    names = {"exit_code": "exitCode", "timed_out": "timedOut"}
    return {names.get(key, key): value for key, value in fields.items()}
