import os
import shutil
import subprocess
import time

import pytest

from sandbox_executor import DockerEngine, SandboxPolicy, run_files


def _docker_ready() -> bool:
    if shutil.which("docker") is None:
        return False
    return os.getenv("RUN_DOCKER_TESTS") == "1"


pytestmark = pytest.mark.skipif(not _docker_ready(), reason="Docker integration tests disabled")


@pytest.fixture(scope="module")
def docker_test_image() -> str:
    tag = os.getenv("SANDBOX_TEST_IMAGE", "sandbox-runner")
    inspect = subprocess.run(
        ["docker", "image", "inspect", tag],
        capture_output=True,
        text=True,
        check=False,
    )
    if inspect.returncode != 0:
        pytest.skip(f"Runtime image {tag!r} is not present locally")
    return tag


@pytest.fixture
def engine(docker_test_image: str) -> DockerEngine:
    return DockerEngine(policy=SandboxPolicy(image=docker_test_image))


def _policy(engine: DockerEngine, **overrides) -> SandboxPolicy:
    return SandboxPolicy(image=engine.policy.image, **overrides)


def test_docker_hello_world(engine: DockerEngine) -> None:
    result = run_files({"index.js": "console.log('hi')"}, engine=engine, policy=_policy(engine))
    assert result.stdout == "hi\n"
    assert result.exit_code == 0
    assert result.timed_out is False
    assert result.passed is False


def test_docker_multi_file_require(engine: DockerEngine) -> None:
    result = run_files(
        {
            "main.js": "console.log(require('./lib/util').answer)",
            "lib/util.js": "module.exports = { answer: 42 }",
        },
        engine=engine,
        entry_point="main.js",
        policy=_policy(engine),
    )
    assert result.stdout.strip() == "42"


def test_docker_infinite_loop_times_out(engine: DockerEngine) -> None:
    started = time.monotonic()
    result = run_files(
        {"index.js": "while (true) {}"},
        engine=engine,
        policy=_policy(engine, timeout_seconds=2),
    )
    assert result.timed_out is True
    assert time.monotonic() - started < 15
    assert not any(c.state == "running" for c in engine.list_containers(all_states=True))


def test_docker_network_is_unreachable(engine: DockerEngine) -> None:
    code = (
        "require('http').get('http://1.1.1.1', () => console.log('reached'))"
        ".on('error', () => console.log('blocked'))"
    )
    result = run_files({"index.js": code}, engine=engine, policy=_policy(engine))
    assert result.stdout.strip() == "blocked"


def test_docker_stdout_is_capped(engine: DockerEngine) -> None:
    result = run_files(
        {"index.js": "process.stdout.write('x'.repeat(100000))"},
        engine=engine,
        policy=_policy(engine),
    )
    assert len(result.stdout) == 8192


def test_docker_workspace_is_read_only(engine: DockerEngine) -> None:
    code = (
        "try { require('fs').writeFileSync('/sandbox/evil.js', '1'); console.log('wrote') }"
        " catch (e) { console.log(e.code) }"
    )
    result = run_files({"index.js": code}, engine=engine, policy=_policy(engine))
    assert result.stdout.strip() in {"EROFS", "EACCES"}


def test_docker_runs_as_non_root(engine: DockerEngine) -> None:
    result = run_files({"index.js": "console.log(process.getuid())"}, engine=engine, policy=_policy(engine))
    assert result.stdout.strip() == "1000"
