from __future__ import annotations

import argparse
import json
from functools import partial
from dataclasses import fields, is_dataclass
from pathlib import Path
from typing import Any, Never, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table
from rich.text import Text
from rich_argparse import RawTextRichHelpFormatter
from sandbox_executor import (
    DockerEngine,
    ExecutorBusyError,
    InputValidationError,
    LaunchFailure,
    SandboxPolicy,
    WorkspacePreparationError,
    run_files,
)
from sandbox_executor.logging_config import configure_logging

_CONSOLE = Console(no_color=False)


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="python -m sbx")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_help()
        raise SystemExit(2)


def _to_jsonable(value: object) -> Any:
    """Convert CLI return values into printable payloads.

    Example:
        ```python
        payload = _to_jsonable(summary)
        ```
    """
    if not isinstance(value, type) and is_dataclass(value):
        return {field.name: getattr(value, field.name) for field in fields(value)}
    if hasattr(value, "__dict__"):
        return vars(value)
    return value


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for sandbox execution and container operations.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="python -m sbx",
        description=(
            "sandbox-executor CLI\n"
            "Run code in the hardened sandbox container and manage leftover runs.\n"
            "Container commands only touch sandbox-executor-managed containers."
        ),
        epilog=(
            "Quick Examples:\n"
            "  python -m sbx run index.js\n"
            "  python -m sbx run main.js lib/util.js --entry-point main.js --json\n"
            "  python -m sbx run index.js --test-check \"return code.includes('taxRate')\"\n"
            "  python -m sbx check\n"
            "  python -m sbx list containers\n"
            "  python -m sbx kill container <id>\n"
            "  python -m sbx cleanup\n\n"
            "Remote Examples:\n"
            "  python -m sbx --docker-context my-remote-context list containers\n"
            "  python -m sbx --docker-host ssh://ubuntu@server check"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--docker-context",
        help=(
            "Use an existing Docker context name.\n"
            "Mutually exclusive with --docker-host."
        ),
    )
    parser.add_argument(
        "--docker-host",
        help=(
            "Connect directly with DOCKER_HOST.\n"
            "Examples: ssh://user@server, tcp://host:2376"
        ),
    )
    parser.add_argument(
        "--policy-file",
        help="TOML file with sandbox limits (timeout, memory, cpus, output caps).",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Log level for structured logs on stderr (default: WARNING).",
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    run_cmd = sub.add_parser(
        "run",
        help="Run local files in the sandbox.",
        description=(
            "Stage local files into a fresh workspace and run the entry point\n"
            "inside the sandbox container. Files are staged by name, or by path\n"
            "relative to --root when given."
        ),
        epilog=(
            "Examples:\n"
            "  python -m sbx run index.js\n"
            "  python -m sbx run src/main.js src/lib.js --root src --entry-point main.js"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    run_cmd.add_argument("files", nargs="+", help="Files to stage into the workspace.")
    run_cmd.add_argument(
        "--entry-point",
        help="Staged filename to run (default: the only file, else index.js).",
    )
    run_cmd.add_argument(
        "--root",
        help="Stage files by their path relative to this directory.",
    )
    run_cmd.add_argument(
        "--test-check",
        help="Pass/fail predicate evaluated against the entry point's source.",
    )
    run_cmd.add_argument(
        "--json",
        action="store_true",
        help="Print the wire-format JSON result instead of panels.",
    )

    sub.add_parser(
        "check",
        help="Verify Docker and the runtime image are usable.",
        description="Probe the Docker daemon and look up the runtime image without pulling it.",
        formatter_class=_HELP_FORMATTER,
    )

    list_cmd = sub.add_parser(
        "list",
        help="List managed containers.",
        description="List containers created and labeled by sandbox-executor.",
        formatter_class=_HELP_FORMATTER,
    )
    list_cmd_sub = list_cmd.add_subparsers(
        dest="resource",
        required=True,
        parser_class=_RichArgumentParser,
    )
    list_cmd_sub.add_parser(
        "containers",
        help="List managed containers.",
        description=(
            "Show managed containers in running and exited states.\n"
            "Includes id, name, image, state, and status."
        ),
        formatter_class=_HELP_FORMATTER,
    )

    container_cmd = sub.add_parser(
        "container",
        help="Show one managed container by id prefix or exact name.",
        description=(
            "Show details for one managed container.\n"
            "Accepts exact name or id prefix."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    container_cmd.add_argument("container_id")

    kill_cmd = sub.add_parser(
        "kill",
        help="Force kill managed container resources.",
        description=(
            "Kill commands operate only on managed containers.\n"
            "Use `sbx kill container <id>` for immediate termination."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    kill_cmd_sub = kill_cmd.add_subparsers(
        dest="resource",
        required=True,
        parser_class=_RichArgumentParser,
    )
    kill_container = kill_cmd_sub.add_parser(
        "container",
        help="Force kill one managed container by id.",
        description="Force kill a managed container immediately.",
        formatter_class=_HELP_FORMATTER,
    )
    kill_container.add_argument("container_id")

    cleanup_cmd = sub.add_parser(
        "cleanup",
        help="Remove leftover managed containers.",
        description=(
            "Remove stopped managed containers.\n"
            "With --all, running ones are force-removed too."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    cleanup_cmd.add_argument(
        "--all",
        action="store_true",
        dest="include_running",
        help="Also force-remove running managed containers.",
    )

    return parser


def build_policy(args: argparse.Namespace) -> SandboxPolicy:
    """Load the sandbox policy selected on the command line.

    Example:
        ```python
        policy = build_policy(args)
        ```
    """
    if args.policy_file:
        return SandboxPolicy.from_file(args.policy_file)
    return SandboxPolicy()


def build_engine(args: argparse.Namespace, policy: SandboxPolicy) -> DockerEngine:
    """Create a DockerEngine from global CLI connection flags.

    Example:
        ```python
        engine = build_engine(args, SandboxPolicy())
        ```
    """
    return DockerEngine(
        policy=policy,
        docker_context=args.docker_context,
        docker_host=args.docker_host,
    )


def _read_files(paths: Sequence[str], root: str | None) -> dict[str, str]:
    """Read local files into a staged-name -> content mapping.

    Example:
        ```python
        files = _read_files(["index.js"], root=None)
        ```
    """
    files: dict[str, str] = {}
    base = Path(root).resolve() if root else None
    for raw in paths:
        path = Path(raw)
        if base is not None:
            name = path.resolve().relative_to(base).as_posix()
        else:
            name = path.name
        files[name] = path.read_text(encoding="utf-8")
    return files


def _print_result(payload: dict[str, Any]) -> None:
    """Render a run result as rich panels.

    Example:
        ```python
        _print_result({"stdout": "hi", "stderr": "", "exitCode": 0, "timedOut": False, "passed": False})
        ```
    """
    if payload["stdout"]:
        _CONSOLE.print(Panel(Text(payload["stdout"]), title="stdout", border_style="cyan"))
    if payload["stderr"]:
        _CONSOLE.print(Panel(Text(payload["stderr"]), title="stderr", border_style="red"))
    table = Table(title="Execution Result")
    table.add_column("Exit Code", style="cyan")
    table.add_column("Timed Out")
    table.add_column("Passed")
    table.add_row(str(payload["exitCode"]), str(payload["timedOut"]), str(payload["passed"]))
    _CONSOLE.print(table)


def _print_containers(rows: list[dict[str, Any]]) -> None:
    """Render managed containers in a rich table.

    Example:
        ```python
        _print_containers([{"id": "abc", "name": "sandbox-run-1"}])
        ```
    """
    table = Table(title="Managed Containers")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Image")
    table.add_column("State")
    table.add_column("Status")
    for row in rows:
        table.add_row(row["id"], row["name"], row["image"], row["state"], row["status"])
    _CONSOLE.print(table)


def _run(args: argparse.Namespace, engine: DockerEngine, policy: SandboxPolicy) -> int:
    """Handle `sbx run`.

    Example:
        ```python
        code = _run(args, engine, policy)
        ```
    """
    try:
        files = _read_files(args.files, args.root)
    except (OSError, ValueError) as exc:
        _CONSOLE.print(Panel.fit(f"Could not read input files: {exc}", style="bold red"))
        return 2
    entry_point = args.entry_point
    if entry_point is None and len(files) == 1:
        entry_point = next(iter(files))
    try:
        result = run_files(
            files,
            engine=engine,
            entry_point=entry_point,
            test_check=args.test_check,
            policy=policy,
        )
    except InputValidationError as exc:
        _CONSOLE.print(Panel.fit(f"Invalid request: {exc}", style="bold red"))
        return 2
    except (LaunchFailure, ExecutorBusyError, WorkspacePreparationError) as exc:
        _CONSOLE.print(Panel.fit(str(exc), title="Sandbox unavailable", border_style="red"))
        return 3

    payload = result.to_wire()
    if args.json:
        _CONSOLE.print_json(json.dumps(payload))
    else:
        _print_result(payload)
    return 0 if result.exit_code == 0 and not result.timed_out else 1


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `sbx` CLI command handler.

    Example:
        ```python
        code = main(["list", "containers"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging(args.log_level, json_output=False)
    policy = build_policy(args)
    engine = build_engine(args, policy)

    if args.command == "run":
        return _run(args, engine, policy)
    if args.command == "check":
        try:
            engine.preflight()
        except LaunchFailure as exc:
            _CONSOLE.print(Panel.fit(str(exc), title="Sandbox unavailable", border_style="red"))
            return 3
        _CONSOLE.print(Panel.fit(f"Docker is reachable and image {policy.image} is present.", style="bold green"))
        return 0
    if args.command == "list" and args.resource == "containers":
        rows = [_to_jsonable(c) for c in engine.list_containers(all_states=True)]
        _print_containers(rows)
        return 0
    if args.command == "container":
        needle = args.container_id
        rows = [_to_jsonable(c) for c in engine.list_containers(all_states=True)]
        matches = [
            row
            for row in rows
            if isinstance(row, dict)
            and isinstance(row.get("id"), str)
            and isinstance(row.get("name"), str)
            and (row["id"].startswith(needle) or row["name"] == needle)
        ]
        if not matches:
            _CONSOLE.print(Panel.fit(f"No managed container matched '{needle}'", style="bold red"))
            return 1
        _CONSOLE.print(Panel.fit(Pretty(matches[0]), title="Container", border_style="cyan"))
        return 0
    if args.command == "kill" and args.resource == "container":
        engine.kill_container(args.container_id)
        _CONSOLE.print(Panel.fit(f"Killed container {args.container_id}", style="bold yellow"))
        return 0
    if args.command == "cleanup":
        summary = _to_jsonable(engine.cleanup_stale(include_running=args.include_running))
        _CONSOLE.print(Panel.fit(Pretty(summary), title="Cleanup Summary", border_style="green"))
        return 0

    parser.error("Unhandled command")
    return 2
