from __future__ import annotations

import os
import shutil
import subprocess
from typing import Mapping

import structlog

from ..errors import LaunchFailure
from ..logging_config import get_logger
from ..policy import SandboxPolicy
from .admission import AdmissionGate
from .config import (
    MANAGED_LABEL_VALUE,
    CleanupSummary,
    ContainerInfo,
    ContainerProfile,
    build_run_args,
    new_container_name,
)
from .supervisor import run_supervised
from .types import ContainerState, LaunchRequest, ProcessOutcome

logger = structlog.get_logger(__name__)

# `docker run` reserves 125 for errors in the Docker client or daemon itself.
DOCKER_RUN_ERROR_EXIT = 125
# Bound for Docker CLI calls made outside the supervised run.
DOCKER_CLI_TIMEOUT_SECONDS = 30.0
# Kill and remove run on the deadline path.
DOCKER_TEARDOWN_TIMEOUT_SECONDS = 5.0


def remediation_hint(image: str) -> str:
    """Return the operator-facing fix for a launch failure.

    Example:
        ```python
        hint = remediation_hint("sandbox-runner")
        ```
    """
    return f'Make sure Docker is running and the "{image}" image is built.'


def docker_is_available(
    *,
    docker_env: Mapping[str, str],
    docker_context: str | None,
    timeout: float = DOCKER_CLI_TIMEOUT_SECONDS,
) -> tuple[bool, str | None]:
    """Check Docker CLI and daemon accessibility for the selected target.

    Example:
        ```python
        ok, reason = docker_is_available(docker_env=os.environ, docker_context=None)
        ```
    """
    if shutil.which("docker", path=docker_env.get("PATH")) is None:
        return False, "Docker CLI was not found. Install Docker and ensure it is on PATH."
    cmd = ["docker"]
    if docker_context:
        cmd.extend(["--context", docker_context])
    cmd.append("info")
    try:
        probe = subprocess.run(
            cmd, capture_output=True, text=True, check=False, env=dict(docker_env), timeout=timeout
        )
    except subprocess.TimeoutExpired:
        return False, f"Docker daemon did not answer within {timeout:g}s."
    except OSError as exc:
        return False, f"Docker CLI could not be executed: {exc}"
    if probe.returncode != 0:
        return False, "Docker is installed but the daemon is not running or not accessible."
    return True, None


class DockerEngine:
    """Run staged workspaces in throwaway, hardened Docker containers.

    Every run gets a fresh `docker run --rm` container with no network, a
    memory and swap ceiling, a CPU quota, a read-only root and workspace, a
    small tmpfs scratch area and a non-root user. Admission is bounded by an
    `AdmissionGate` shared by all runs of this engine.

    Example:
        ```python
        engine = DockerEngine(policy=SandboxPolicy(image="sandbox-runner"))
        ```
    """

    def __init__(
        self,
        *,
        policy: SandboxPolicy | None = None,
        docker_host: str | None = None,
        docker_context: str | None = None,
        gate: AdmissionGate | None = None,
    ) -> None:
        """Initialize Docker connection settings and the admission gate.

        Example:
            ```python
            engine = DockerEngine(docker_context="build-box")
            ```
        """
        self._policy = policy or SandboxPolicy()
        self._docker_host = docker_host
        self._docker_context = docker_context
        self._gate = gate or AdmissionGate(
            max_concurrent=self._policy.max_concurrent_runs,
            acquire_timeout=self._policy.admission_timeout_seconds,
        )
        self._verified_images: set[str] = set()
        self._daemon_verified = False
        self._validate_connection_options()

    @property
    def policy(self) -> SandboxPolicy:
        """Return the deployment policy this engine was built with.

        Example:
            ```python
            image = engine.policy.image
            ```
        """
        return self._policy

    @property
    def gate(self) -> AdmissionGate:
        """Return the admission gate guarding container launches.

        Example:
            ```python
            busy = engine.gate.in_use
            ```
        """
        return self._gate

    def preflight(self, image: str | None = None) -> None:
        """Fail fast when Docker or the runtime image is unusable.

        Example:
            ```python
            engine.preflight()
            ```
        """
        target = image or self._policy.image
        if not self._daemon_verified:
            available, reason = docker_is_available(
                docker_env=self._docker_env(),
                docker_context=self._docker_context,
            )
            if not available:
                raise LaunchFailure(f"{reason}\n{remediation_hint(target)}")
            self._daemon_verified = True
        self._ensure_image_present(target)

    def execute(self, request: LaunchRequest) -> ProcessOutcome:
        """Run the request's entry point in a new isolated container.

        Example:
            ```python
            outcome = engine.execute(LaunchRequest(workspace=ws.path, entry_point="index.js", policy=SandboxPolicy()))
            ```
        """
        policy = request.policy
        self.preflight(policy.image)
        profile = ContainerProfile.from_policy(policy)
        container_name = new_container_name()
        labels = {"sandbox_executor.run_id": request.run_id} if request.run_id else {}
        argv = self._docker_cmd(
            build_run_args(
                profile,
                workspace=request.workspace,
                entry_point=request.entry_point,
                container_name=container_name,
                labels=labels,
            )
        )
        log = get_logger(run_id=request.run_id, container=container_name)

        with self._gate.slot():
            log.info("container_launching", image=profile.image, entry_point=request.entry_point)
            outcome = run_supervised(
                argv,
                timeout_seconds=float(policy.timeout_seconds),
                stdout_limit=policy.stdout_limit_bytes,
                stderr_limit=policy.stderr_limit_bytes,
                on_timeout=lambda: self._kill_quietly(container_name),
                env=self._docker_env(),
                run_id=request.run_id,
            )
            if outcome.state is ContainerState.KILLED:
                # --rm only fires once the daemon sees the exit; make sure it is gone.
                self._force_remove(container_name)

        outcome.metadata["container"] = container_name
        if outcome.state is ContainerState.LAUNCH_FAILED:
            raise LaunchFailure(
                f"Failed to spawn Docker: {outcome.error}\n{remediation_hint(profile.image)}"
            )
        if self._is_docker_run_error(outcome):
            # The daemon or image may have gone away since the last check.
            self._daemon_verified = False
            self._verified_images.discard(profile.image)
            detail = outcome.stderr.decode("utf-8", errors="replace").strip()
            raise LaunchFailure(f"{detail}\n{remediation_hint(profile.image)}")
        return outcome

    def list_containers(self, all_states: bool = False) -> list[ContainerInfo]:
        """List managed containers visible to this engine target.

        Example:
            ```python
            containers = engine.list_containers(all_states=True)
            ```
        """
        fmt = "{{.ID}}|{{.Names}}|{{.Image}}|{{.State}}|{{.Status}}"
        cmd = ["ps", "--filter", f"label=sandbox_executor.managed={MANAGED_LABEL_VALUE}", "--format", fmt]
        if all_states:
            cmd.insert(1, "-a")
        out = self._run_docker(cmd)
        if out.returncode != 0:
            raise RuntimeError(f"Failed to list containers: {out.stderr.strip()}")
        items: list[ContainerInfo] = []
        for line in out.stdout.splitlines():
            if not line.strip():
                continue
            c_id, name, image, state, status = line.split("|", 4)
            items.append(ContainerInfo(c_id, name, image, state, status))
        return items

    def kill_container(self, container_id: str) -> None:
        """Force-kill a managed container.

        Example:
            ```python
            engine.kill_container("abc123")
            ```
        """
        self._ensure_managed_container(container_id)
        killed = self._run_docker(["kill", container_id])
        if killed.returncode != 0:
            raise RuntimeError(f"Failed to kill container: {killed.stderr.strip()}")

    def cleanup_stale(self, include_running: bool = False) -> CleanupSummary:
        """Delete leftover managed containers.

        Only stopped containers are removed unless `include_running` is set.

        Example:
            ```python
            summary = engine.cleanup_stale()
            ```
        """
        removed_containers = 0
        for container in self.list_containers(all_states=True):
            if container.state == "running" and not include_running:
                continue
            removed = self._run_docker(["rm", "-f", container.id])
            if removed.returncode == 0:
                removed_containers += 1
        return CleanupSummary(removed_containers=removed_containers)

    def _is_docker_run_error(self, outcome: ProcessOutcome) -> bool:
        """Tell a Docker-side launch error apart from the program's own exit code.

        Example:
            ```python
            failed = engine._is_docker_run_error(outcome)
            ```
        """
        return (
            outcome.state is ContainerState.EXITED
            and outcome.exit_code == DOCKER_RUN_ERROR_EXIT
            and outcome.stderr.lstrip().startswith(b"docker:")
        )

    def _ensure_image_present(self, image: str) -> None:
        """Ensure the runtime image exists locally without pulling it.

        Example:
            ```python
            engine._ensure_image_present("sandbox-runner")
            ```
        """
        if image in self._verified_images:
            return
        try:
            inspected = self._run_docker(["image", "inspect", image])
        except RuntimeError as exc:
            raise LaunchFailure(f"{exc}\n{remediation_hint(image)}") from exc
        if inspected.returncode != 0:
            raise LaunchFailure(f'Runtime image "{image}" was not found.\n{remediation_hint(image)}')
        self._verified_images.add(image)

    def _kill_quietly(self, container_name: str) -> None:
        """Send SIGKILL to a run's container, ignoring containers already gone.

        Example:
            ```python
            engine._kill_quietly("sandbox-run-1a2b3c")
            ```
        """
        try:
            killed = self._run_docker(
                ["kill", "--signal", "KILL", container_name], timeout=DOCKER_TEARDOWN_TIMEOUT_SECONDS
            )
        except RuntimeError as exc:
            logger.warning("container_kill_failed", container=container_name, error=str(exc))
            return
        if killed.returncode != 0:
            logger.debug("container_kill_skipped", container=container_name, stderr=killed.stderr.strip())

    def _force_remove(self, container_name: str) -> None:
        """Remove a run's container and its writable layer.

        Example:
            ```python
            engine._force_remove("sandbox-run-1a2b3c")
            ```
        """
        try:
            removed = self._run_docker(["rm", "-f", container_name], timeout=DOCKER_TEARDOWN_TIMEOUT_SECONDS)
        except RuntimeError as exc:
            logger.warning("container_remove_failed", container=container_name, error=str(exc))
            return
        if removed.returncode != 0 and "No such container" not in removed.stderr:
            logger.warning("container_remove_failed", container=container_name, stderr=removed.stderr.strip())

    def _ensure_managed_container(self, container_id: str) -> None:
        """Ensure a container is labeled as sandbox-executor managed.

        Example:
            ```python
            engine._ensure_managed_container("abc123")
            ```
        """
        check = self._run_docker(
            [
                "inspect",
                "-f",
                "{{ index .Config.Labels \"sandbox_executor.managed\" }}",
                container_id,
            ]
        )
        if check.returncode != 0 or check.stdout.strip() != MANAGED_LABEL_VALUE:
            raise ValueError(
                f"Container '{container_id}' is not managed by sandbox-executor and cannot be modified"
            )

    def _docker_cmd(self, args: list[str]) -> list[str]:
        """Build a Docker CLI command with optional context.

        Example:
            ```python
            cmd = engine._docker_cmd(["ps"])
            ```
        """
        cmd = ["docker"]
        if self._docker_context:
            cmd.extend(["--context", self._docker_context])
        cmd.extend(args)
        return cmd

    def _run_docker(
        self, args: list[str], timeout: float = DOCKER_CLI_TIMEOUT_SECONDS
    ) -> subprocess.CompletedProcess[str]:
        """Run a Docker CLI command against the configured target.

        Raises `RuntimeError` when the command does not finish within `timeout`.

        Example:
            ```python
            completed = engine._run_docker(["ps"])
            ```
        """
        try:
            return subprocess.run(
                self._docker_cmd(args),
                capture_output=True,
                text=True,
                check=False,
                env=self._docker_env(),
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise RuntimeError(f"docker {args[0]} did not finish within {timeout:g}s") from exc

    def _docker_env(self) -> dict[str, str]:
        """Build environment variables for Docker CLI targeting.

        Example:
            ```python
            env = engine._docker_env()
            ```
        """
        env = dict(os.environ)
        if self._docker_host:
            env["DOCKER_HOST"] = self._docker_host
        return env

    def _validate_connection_options(self) -> None:
        """Validate mutually exclusive Docker connection settings.

        Example:
            ```python
            engine._validate_connection_options()
            ```
        """
        if self._docker_context and self._docker_host:
            raise ValueError("Use either docker_context or docker_host, not both")
