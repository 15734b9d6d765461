import subprocess
import sys
import time
from pathlib import Path

import pytest

from sandbox_executor import DockerEngine, LaunchFailure, SandboxPolicy
from sandbox_executor.execution import docker_engine as docker_engine_mod
from sandbox_executor.execution.admission import AdmissionGate
from sandbox_executor.execution.config import ContainerProfile, build_run_args
from sandbox_executor.execution.supervisor import run_supervised
from sandbox_executor.execution.types import ContainerState, LaunchRequest, ProcessOutcome


def _completed(args: list[str], returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(args=args, returncode=returncode, stdout=stdout, stderr=stderr)


class _DockerStub:
    def __init__(self, image_present: bool = True) -> None:
        self.image_present = image_present
        self.calls: list[list[str]] = []

    def __call__(self, engine: DockerEngine, args: list[str], timeout: float | None = None) -> subprocess.CompletedProcess[str]:
        self.calls.append(args)
        if args[:2] == ["image", "inspect"]:
            return _completed(args, 0 if self.image_present else 1, stderr="No such image")
        return _completed(args)


@pytest.fixture
def docker_stub(monkeypatch: pytest.MonkeyPatch) -> _DockerStub:
    stub = _DockerStub()
    monkeypatch.setattr(docker_engine_mod, "docker_is_available", lambda **kwargs: (True, None))
    monkeypatch.setattr(
        DockerEngine, "_run_docker", lambda self, args, timeout=None: stub(self, args, timeout)
    )
    return stub


def _request(tmp_path: Path, policy: SandboxPolicy | None = None) -> LaunchRequest:
    (tmp_path / "index.js").write_text("console.log('hi')", encoding="utf-8")
    return LaunchRequest(workspace=tmp_path, entry_point="index.js", policy=policy or SandboxPolicy(), run_id="abc123")


def test_run_args_apply_isolation_profile(tmp_path: Path) -> None:
    profile = ContainerProfile.from_policy(SandboxPolicy())
    args = build_run_args(profile, workspace=tmp_path, entry_point="lib/main.js", container_name="sandbox-run-x")
    joined = " ".join(args)
    assert args[:2] == ["run", "--rm"]
    assert "--network none" in joined
    assert "--memory 64m" in joined
    assert "--memory-swap 64m" in joined
    assert "--cpus 0.5" in joined
    assert "--read-only" in args
    assert "--tmpfs /tmp:rw,noexec,nosuid,size=8m" in joined
    assert "--cap-drop ALL" in joined
    assert "--user 1000:1000" in joined
    assert f"{tmp_path.resolve()}:/sandbox:ro" in args
    assert "sandbox_executor.managed=true" in args
    assert args[-3:] == ["sandbox-runner", "node", "/sandbox/lib/main.js"]


def test_execute_runs_container_and_returns_outcome(
    monkeypatch: pytest.MonkeyPatch, docker_stub: _DockerStub, tmp_path: Path
) -> None:
    captured: dict = {}

    def _fake_supervised(argv, **kwargs):
        captured["argv"] = argv
        captured.update(kwargs)
        return ProcessOutcome(state=ContainerState.EXITED, stdout=b"hi\n", stdout_total=3, exit_code=0)

    monkeypatch.setattr(docker_engine_mod, "run_supervised", _fake_supervised)
    outcome = DockerEngine().execute(_request(tmp_path))

    assert outcome.exit_code == 0
    assert outcome.metadata["container"].startswith("sandbox-run-")
    assert captured["argv"][:3] == ["docker", "run", "--rm"]
    assert "sandbox_executor.run_id=abc123" in captured["argv"]
    assert captured["timeout_seconds"] == 10
    assert captured["stdout_limit"] == 8192
    assert captured["stderr_limit"] == 4096
    assert ["image", "inspect", "sandbox-runner"] in docker_stub.calls


def test_missing_docker_is_a_launch_failure(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(
        docker_engine_mod,
        "docker_is_available",
        lambda **kwargs: (False, "Docker CLI was not found. Install Docker and ensure it is on PATH."),
    )
    with pytest.raises(LaunchFailure, match='"sandbox-runner" image is built'):
        DockerEngine().execute(_request(tmp_path))


def test_missing_image_is_never_pulled(monkeypatch: pytest.MonkeyPatch, docker_stub: _DockerStub, tmp_path: Path) -> None:
    docker_stub.image_present = False
    monkeypatch.setattr(
        docker_engine_mod,
        "run_supervised",
        lambda *args, **kwargs: pytest.fail("container must not start"),
    )
    with pytest.raises(LaunchFailure, match="was not found"):
        DockerEngine().execute(_request(tmp_path))
    assert not any(call[:1] == ["pull"] for call in docker_stub.calls)


def test_image_check_is_cached(monkeypatch: pytest.MonkeyPatch, docker_stub: _DockerStub, tmp_path: Path) -> None:
    monkeypatch.setattr(
        docker_engine_mod,
        "run_supervised",
        lambda *args, **kwargs: ProcessOutcome(state=ContainerState.EXITED, exit_code=0),
    )
    engine = DockerEngine()
    engine.execute(_request(tmp_path))
    engine.execute(_request(tmp_path))
    assert sum(1 for call in docker_stub.calls if call[:2] == ["image", "inspect"]) == 1


def test_timeout_kills_and_removes_container(monkeypatch: pytest.MonkeyPatch, docker_stub: _DockerStub, tmp_path: Path) -> None:
    def _fake_supervised(argv, *, on_timeout, **kwargs):
        on_timeout()
        return ProcessOutcome(state=ContainerState.KILLED, stdout=b"partial", stdout_total=7, exit_code=-9)

    monkeypatch.setattr(docker_engine_mod, "run_supervised", _fake_supervised)
    outcome = DockerEngine().execute(_request(tmp_path))

    name = outcome.metadata["container"]
    assert outcome.timed_out is True
    assert ["kill", "--signal", "KILL", name] in docker_stub.calls
    assert ["rm", "-f", name] in docker_stub.calls


def test_docker_run_error_exit_is_a_launch_failure(
    monkeypatch: pytest.MonkeyPatch, docker_stub: _DockerStub, tmp_path: Path
) -> None:
    monkeypatch.setattr(
        docker_engine_mod,
        "run_supervised",
        lambda *args, **kwargs: ProcessOutcome(
            state=ContainerState.EXITED,
            stderr=b"docker: Error response from daemon: cgroup failure.\n",
            exit_code=125,
        ),
    )
    with pytest.raises(LaunchFailure, match="Error response from daemon"):
        DockerEngine().execute(_request(tmp_path))


def test_program_exit_125_is_not_a_launch_failure(
    monkeypatch: pytest.MonkeyPatch, docker_stub: _DockerStub, tmp_path: Path
) -> None:
    monkeypatch.setattr(
        docker_engine_mod,
        "run_supervised",
        lambda *args, **kwargs: ProcessOutcome(state=ContainerState.EXITED, stderr=b"bye", exit_code=125),
    )
    assert DockerEngine().execute(_request(tmp_path)).exit_code == 125


def test_spawn_failure_is_a_launch_failure(monkeypatch: pytest.MonkeyPatch, docker_stub: _DockerStub, tmp_path: Path) -> None:
    monkeypatch.setattr(
        docker_engine_mod,
        "run_supervised",
        lambda *args, **kwargs: ProcessOutcome(state=ContainerState.LAUNCH_FAILED, error="No such file"),
    )
    with pytest.raises(LaunchFailure, match="Failed to spawn Docker"):
        DockerEngine().execute(_request(tmp_path))


def test_engine_gate_is_sized_from_policy() -> None:
    engine = DockerEngine(policy=SandboxPolicy(max_concurrent_runs=3))
    assert engine.gate.capacity == 3
    gate = AdmissionGate(max_concurrent=1, acquire_timeout=1)
    assert DockerEngine(gate=gate).gate is gate


def test_context_and_host_are_exclusive() -> None:
    with pytest.raises(ValueError, match="not both"):
        DockerEngine(docker_context="remote", docker_host="tcp://10.0.0.5:2376")


def test_docker_context_is_prefixed() -> None:
    engine = DockerEngine(docker_context="build-box")
    assert engine._docker_cmd(["ps"]) == ["docker", "--context", "build-box", "ps"]


def test_docker_host_is_exported() -> None:
    engine = DockerEngine(docker_host="ssh://deploy@10.0.0.5")
    assert engine._docker_env()["DOCKER_HOST"] == "ssh://deploy@10.0.0.5"


def test_cleanup_skips_running_unless_asked(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[list[str]] = []

    def _fake_run(engine: DockerEngine, args: list[str]) -> subprocess.CompletedProcess[str]:
        calls.append(args)
        if args[0] == "ps":
            return _completed(
                args,
                stdout=(
                    "a1|sandbox-run-a|sandbox-runner|running|Up 3s\n"
                    "b2|sandbox-run-b|sandbox-runner|exited|Exited (0)\n"
                ),
            )
        return _completed(args)

    monkeypatch.setattr(DockerEngine, "_run_docker", _fake_run)
    engine = DockerEngine()
    assert engine.cleanup_stale().removed_containers == 1
    assert ["rm", "-f", "a1"] not in calls
    assert engine.cleanup_stale(include_running=True).removed_containers == 2
    assert ["rm", "-f", "a1"] in calls


def test_kill_refuses_unmanaged_containers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(DockerEngine, "_run_docker", lambda engine, args: _completed(args, stdout="\n"))
    with pytest.raises(ValueError, match="not managed"):
        DockerEngine().kill_container("foreign")


def test_daemon_check_is_cached(monkeypatch: pytest.MonkeyPatch, docker_stub: _DockerStub, tmp_path: Path) -> None:
    probes: list[dict] = []

    def _available(**kwargs):
        probes.append(kwargs)
        return True, None

    monkeypatch.setattr(docker_engine_mod, "docker_is_available", _available)
    monkeypatch.setattr(
        docker_engine_mod,
        "run_supervised",
        lambda *args, **kwargs: ProcessOutcome(state=ContainerState.EXITED, exit_code=0),
    )
    engine = DockerEngine()
    engine.execute(_request(tmp_path))
    engine.execute(_request(tmp_path))
    assert len(probes) == 1


def test_docker_run_error_forces_a_fresh_check(
    monkeypatch: pytest.MonkeyPatch, docker_stub: _DockerStub, tmp_path: Path
) -> None:
    probes: list[dict] = []

    def _available(**kwargs):
        probes.append(kwargs)
        return True, None

    monkeypatch.setattr(docker_engine_mod, "docker_is_available", _available)
    monkeypatch.setattr(
        docker_engine_mod,
        "run_supervised",
        lambda *args, **kwargs: ProcessOutcome(
            state=ContainerState.EXITED,
            stderr=b"docker: Cannot connect to the Docker daemon.\n",
            exit_code=125,
        ),
    )
    engine = DockerEngine()
    for _ in range(2):
        with pytest.raises(LaunchFailure):
            engine.execute(_request(tmp_path))
    assert len(probes) == 2


def test_unresponsive_daemon_is_reported_as_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict = {}

    def _hanging_run(cmd, **kwargs):
        seen.update(kwargs)
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

    monkeypatch.setattr(docker_engine_mod.shutil, "which", lambda name, path=None: "/usr/bin/docker")
    monkeypatch.setattr(docker_engine_mod.subprocess, "run", _hanging_run)
    ok, reason = docker_engine_mod.docker_is_available(docker_env={"PATH": "/usr/bin"}, docker_context=None, timeout=2)
    assert ok is False
    assert "did not answer within 2s" in (reason or "")
    assert seen["timeout"] == 2
    with pytest.raises(LaunchFailure, match="did not answer"):
        DockerEngine().preflight()


def test_image_inspect_timeout_is_a_launch_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    def _hanging_run(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

    monkeypatch.setattr(docker_engine_mod, "docker_is_available", lambda **kwargs: (True, None))
    monkeypatch.setattr(docker_engine_mod.subprocess, "run", _hanging_run)
    with pytest.raises(LaunchFailure, match="did not finish"):
        DockerEngine().preflight()


def test_hung_docker_kill_does_not_stall_the_deadline(monkeypatch: pytest.MonkeyPatch) -> None:
    timeouts: list[float] = []

    def _hanging_run(cmd, **kwargs):
        timeouts.append(kwargs["timeout"])
        time.sleep(0.2)
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

    monkeypatch.setattr(docker_engine_mod.subprocess, "run", _hanging_run)
    engine = DockerEngine()
    started = time.monotonic()
    outcome = run_supervised(
        [sys.executable, "-c", "while True:\n    pass"],
        timeout_seconds=0.5,
        stdout_limit=8192,
        stderr_limit=4096,
        on_timeout=lambda: engine._kill_quietly("sandbox-run-hung"),
    )
    assert outcome.state is ContainerState.KILLED
    assert time.monotonic() - started < 10
    assert timeouts == [docker_engine_mod.DOCKER_TEARDOWN_TIMEOUT_SECONDS]
