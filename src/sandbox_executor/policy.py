from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


def _default_policy_path() -> Path:
    """Return bundled default policy TOML path.

    Example:
        ```python
        path = _default_policy_path()
        ```
    """
    return Path(__file__).with_name("default_policy.toml")


def _read_policy_toml(path: Path) -> dict[str, Any]:
    """Read policy TOML and return normalized policy dictionary.

    Example:
        ```python
        raw = _read_policy_toml(Path("/etc/sandbox/policy.toml"))
        ```
    """
    if not path.exists():
        return {
            "image": "sandbox-runner",
            "runtime_command": ["node"],
            "default_entry_point": "index.js",
            "timeout_seconds": 10,
            "memory_limit_mb": 64,
            "cpus": 0.5,
            "scratch_mb": 8,
            "pids_limit": 64,
            "run_as_user": "1000:1000",
            "stdout_limit_bytes": 8192,
            "stderr_limit_bytes": 4096,
            "max_concurrent_runs": 4,
            "admission_timeout_seconds": 15,
            "max_payload_bytes": 262144,
        }
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    policy_obj = raw.get("policy", raw)
    if not isinstance(policy_obj, dict):
        raise ValueError("Policy config must be a TOML table")
    return policy_obj


def _list_of_str(value: Any, field_name: str) -> list[str]:
    """Validate and normalize a list-of-strings policy field.

    Example:
        ```python
        command = _list_of_str(["node", "--no-warnings"], "runtime_command")
        ```
    """
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"'{field_name}' must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(f"'{field_name}' must contain only strings")
        out.append(item)
    return out


_DEFAULT_POLICY_RAW = _read_policy_toml(_default_policy_path())
DEFAULT_IMAGE = str(_DEFAULT_POLICY_RAW.get("image", "sandbox-runner"))
DEFAULT_RUNTIME_COMMAND = _list_of_str(
    _DEFAULT_POLICY_RAW.get("runtime_command", ["node"]), "runtime_command"
)
DEFAULT_ENTRY_POINT = str(_DEFAULT_POLICY_RAW.get("default_entry_point", "index.js"))
DEFAULT_TIMEOUT_SECONDS = float(_DEFAULT_POLICY_RAW.get("timeout_seconds", 10))
DEFAULT_MEMORY_LIMIT_MB = int(_DEFAULT_POLICY_RAW.get("memory_limit_mb", 64))
DEFAULT_CPUS = float(_DEFAULT_POLICY_RAW.get("cpus", 0.5))
DEFAULT_SCRATCH_MB = int(_DEFAULT_POLICY_RAW.get("scratch_mb", 8))
DEFAULT_PIDS_LIMIT = int(_DEFAULT_POLICY_RAW.get("pids_limit", 64))
DEFAULT_RUN_AS_USER = str(_DEFAULT_POLICY_RAW.get("run_as_user", "1000:1000"))
DEFAULT_STDOUT_LIMIT_BYTES = int(_DEFAULT_POLICY_RAW.get("stdout_limit_bytes", 8192))
DEFAULT_STDERR_LIMIT_BYTES = int(_DEFAULT_POLICY_RAW.get("stderr_limit_bytes", 4096))
DEFAULT_MAX_CONCURRENT_RUNS = int(_DEFAULT_POLICY_RAW.get("max_concurrent_runs", 4))
DEFAULT_ADMISSION_TIMEOUT_SECONDS = float(
    _DEFAULT_POLICY_RAW.get("admission_timeout_seconds", 15)
)
DEFAULT_MAX_PAYLOAD_BYTES = int(_DEFAULT_POLICY_RAW.get("max_payload_bytes", 262144))


@dataclass(slots=True)
class SandboxPolicy:
    """Resource ceilings and runtime settings applied to every execution.

    Limits are per deployment, never per request.

    Example:
        ```python
        policy = SandboxPolicy(timeout_seconds=5, memory_limit_mb=128)
        ```
    """

    image: str = DEFAULT_IMAGE
    runtime_command: list[str] = field(default_factory=lambda: DEFAULT_RUNTIME_COMMAND.copy())
    default_entry_point: str = DEFAULT_ENTRY_POINT
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    memory_limit_mb: int = DEFAULT_MEMORY_LIMIT_MB
    cpus: float = DEFAULT_CPUS
    scratch_mb: int = DEFAULT_SCRATCH_MB
    pids_limit: int = DEFAULT_PIDS_LIMIT
    run_as_user: str = DEFAULT_RUN_AS_USER
    stdout_limit_bytes: int = DEFAULT_STDOUT_LIMIT_BYTES
    stderr_limit_bytes: int = DEFAULT_STDERR_LIMIT_BYTES
    max_concurrent_runs: int = DEFAULT_MAX_CONCURRENT_RUNS
    admission_timeout_seconds: float = DEFAULT_ADMISSION_TIMEOUT_SECONDS
    max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES
    config_path: str | None = None

    def __post_init__(self) -> None:
        """Validate limits after dataclass initialization.

        Example:
            ```python
            SandboxPolicy(cpus=0.5)
            ```
        """
        if not self.image.strip():
            raise ValueError("image must be a non-empty image reference")
        if not self.runtime_command:
            raise ValueError("runtime_command must contain at least the runtime binary")
        for name in ("timeout_seconds", "cpus", "admission_timeout_seconds"):
            if float(getattr(self, name)) <= 0:
                raise ValueError(f"{name} must be positive")
        for name in (
            "memory_limit_mb",
            "scratch_mb",
            "pids_limit",
            "stdout_limit_bytes",
            "stderr_limit_bytes",
            "max_concurrent_runs",
            "max_payload_bytes",
        ):
            if int(getattr(self, name)) <= 0:
                raise ValueError(f"{name} must be a positive integer")
        if self.run_as_user.split(":")[0] in {"0", "root"}:
            raise ValueError("run_as_user must not be the root user")

    @classmethod
    def from_file(cls, config_path: str) -> "SandboxPolicy":
        """Create a policy instance from a TOML file.

        Missing keys fall back to the bundled defaults.

        Example:
            ```python
            policy = SandboxPolicy.from_file("/etc/sandbox/policy.toml")
            ```
        """
        raw = _read_policy_toml(Path(config_path))
        return cls(
            image=str(raw.get("image", DEFAULT_IMAGE)),
            runtime_command=_list_of_str(
                raw.get("runtime_command", DEFAULT_RUNTIME_COMMAND), "runtime_command"
            ),
            default_entry_point=str(raw.get("default_entry_point", DEFAULT_ENTRY_POINT)),
            timeout_seconds=float(raw.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)),
            memory_limit_mb=int(raw.get("memory_limit_mb", DEFAULT_MEMORY_LIMIT_MB)),
            cpus=float(raw.get("cpus", DEFAULT_CPUS)),
            scratch_mb=int(raw.get("scratch_mb", DEFAULT_SCRATCH_MB)),
            pids_limit=int(raw.get("pids_limit", DEFAULT_PIDS_LIMIT)),
            run_as_user=str(raw.get("run_as_user", DEFAULT_RUN_AS_USER)),
            stdout_limit_bytes=int(raw.get("stdout_limit_bytes", DEFAULT_STDOUT_LIMIT_BYTES)),
            stderr_limit_bytes=int(raw.get("stderr_limit_bytes", DEFAULT_STDERR_LIMIT_BYTES)),
            max_concurrent_runs=int(raw.get("max_concurrent_runs", DEFAULT_MAX_CONCURRENT_RUNS)),
            admission_timeout_seconds=float(
                raw.get("admission_timeout_seconds", DEFAULT_ADMISSION_TIMEOUT_SECONDS)
            ),
            max_payload_bytes=int(raw.get("max_payload_bytes", DEFAULT_MAX_PAYLOAD_BYTES)),
            config_path=config_path,
        )


@dataclass(slots=True)
class SandboxResult:
    """Normalized execution report returned by `run_files`.

    Example:
        ```python
        result = SandboxResult(stdout="hi\\n", stderr="", exit_code=0, timed_out=False, passed=False)
        ```
    """

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    timed_out: bool = False
    passed: bool = False

    def to_wire(self) -> dict[str, Any]:
        """Return the camelCase payload sent back to HTTP callers.

        Example:
            ```python
            payload = SandboxResult(stdout="hi").to_wire()
            ```
        """
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exitCode": self.exit_code,
            "timedOut": self.timed_out,
            "passed": self.passed,
        }
