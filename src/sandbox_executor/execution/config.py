from __future__ import annotations

import posixpath
import uuid
from dataclasses import dataclass
from pathlib import Path

from ..policy import SandboxPolicy

CONTAINER_WORKSPACE = "/sandbox"
CONTAINER_SCRATCH = "/tmp"
CONTAINER_NAME_PREFIX = "sandbox-run"
MANAGED_LABEL_VALUE = "true"
MANAGED_LABELS_BASE = {
    "sandbox_executor.managed": MANAGED_LABEL_VALUE,
    "sandbox_executor.engine": "docker",
    "sandbox_executor.project": "sandbox-executor",
}


@dataclass(frozen=True, slots=True)
class ContainerProfile:
    """Hardened isolation profile applied to every container run.

    Example:
        ```python
        profile = ContainerProfile.from_policy(SandboxPolicy())
        ```
    """

    image: str
    runtime_command: tuple[str, ...]
    memory_limit_mb: int
    cpus: float
    scratch_mb: int
    pids_limit: int
    run_as_user: str

    @classmethod
    def from_policy(cls, policy: SandboxPolicy) -> "ContainerProfile":
        """Derive the container profile from a sandbox policy.

        Example:
            ```python
            profile = ContainerProfile.from_policy(SandboxPolicy(memory_limit_mb=128))
            ```
        """
        return cls(
            image=policy.image,
            runtime_command=tuple(policy.runtime_command),
            memory_limit_mb=int(policy.memory_limit_mb),
            cpus=float(policy.cpus),
            scratch_mb=int(policy.scratch_mb),
            pids_limit=int(policy.pids_limit),
            run_as_user=policy.run_as_user,
        )


@dataclass(frozen=True, slots=True)
class ContainerInfo:
    """Snapshot of a managed container returned by DockerEngine.

    Example:
        ```python
        info = ContainerInfo("abc", "sandbox-run-1a2b", "sandbox-runner", "running", "Up 2s")
        ```
    """

    id: str
    name: str
    image: str
    state: str
    status: str


@dataclass(frozen=True, slots=True)
class CleanupSummary:
    """Result summary from Docker cleanup operations.

    Example:
        ```python
        summary = CleanupSummary(removed_containers=2)
        ```
    """

    removed_containers: int


def new_container_name() -> str:
    """Return a collision-free container name for one run.

    Example:
        ```python
        name = new_container_name()
        ```
    """
    return f"{CONTAINER_NAME_PREFIX}-{uuid.uuid4().hex[:12]}"


def container_entry_path(entry_point: str) -> str:
    """Return the entry point's path as seen from inside the container.

    Example:
        ```python
        assert container_entry_path("lib/main.js") == "/sandbox/lib/main.js"
        ```
    """
    return posixpath.join(CONTAINER_WORKSPACE, Path(entry_point).as_posix())


def build_run_args(
    profile: ContainerProfile,
    *,
    workspace: Path,
    entry_point: str,
    container_name: str,
    labels: dict[str, str] | None = None,
) -> list[str]:
    """Build `docker run` arguments for one isolated execution.

    Swap is pinned to the memory ceiling, the root filesystem and the
    workspace mount are read-only, and only a small tmpfs is writable.

    Example:
        ```python
        args = build_run_args(profile, workspace=Path("/tmp/sandbox-run-x"), entry_point="index.js", container_name="sandbox-run-1")
        ```
    """
    memory = f"{profile.memory_limit_mb}m"
    args = [
        "run",
        "--rm",
        "--name",
        container_name,
        "--network",
        "none",
        "--memory",
        memory,
        "--memory-swap",
        memory,
        "--cpus",
        f"{profile.cpus:g}",
        "--pids-limit",
        str(profile.pids_limit),
        "--read-only",
        "--tmpfs",
        f"{CONTAINER_SCRATCH}:rw,noexec,nosuid,size={profile.scratch_mb}m",
        "--cap-drop",
        "ALL",
        "--security-opt",
        "no-new-privileges",
        "--user",
        profile.run_as_user,
        "--workdir",
        CONTAINER_WORKSPACE,
        "-v",
        f"{workspace.resolve()}:{CONTAINER_WORKSPACE}:ro",
    ]
    for key, value in {**MANAGED_LABELS_BASE, **(labels or {})}.items():
        args.extend(["--label", f"{key}={value}"])
    args.append(profile.image)
    args.extend(profile.runtime_command)
    args.append(container_entry_path(entry_point))
    return args
