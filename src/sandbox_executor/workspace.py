from __future__ import annotations

import os
import shutil
import tempfile
import threading
from pathlib import Path, PurePosixPath
from typing import Any, Mapping

import structlog

from .errors import InputValidationError, WorkspacePreparationError

logger = structlog.get_logger(__name__)

WORKSPACE_PREFIX = "sandbox-run-"


def validate_filename(name: Any) -> PurePosixPath:
    """Check that a submitted filename stays inside the workspace.

    Absolute paths, `..` segments, backslashes and NUL bytes are rejected.

    Example:
        ```python
        rel = validate_filename("lib/util.js")
        ```
    """
    if not isinstance(name, str) or not name.strip():
        raise InputValidationError("Filenames must be non-empty strings")
    if "\x00" in name or "\\" in name:
        raise InputValidationError(f"Invalid filename: {name!r}")
    rel = PurePosixPath(name)
    if rel.is_absolute() or (len(name) > 1 and name[1] == ":"):
        raise InputValidationError(f"Filename must be relative: {name!r}")
    if any(part == ".." for part in rel.parts):
        raise InputValidationError(f"Filename escapes the workspace: {name!r}")
    if not rel.parts or rel.parts == (".",):
        raise InputValidationError(f"Invalid filename: {name!r}")
    return rel


def validate_files(files: Mapping[str, Any]) -> dict[PurePosixPath, str]:
    """Validate a filename -> content mapping before anything touches disk.

    Example:
        ```python
        staged = validate_files({"index.js": "console.log(1)"})
        ```
    """
    if not isinstance(files, Mapping) or not files:
        raise InputValidationError("No code or files provided.")
    staged: dict[PurePosixPath, str] = {}
    for name, content in files.items():
        rel = validate_filename(name)
        if not isinstance(content, str):
            raise InputValidationError(f"Content of {name!r} must be a string")
        try:
            name.encode("utf-8")
            content.encode("utf-8")
        except UnicodeEncodeError as exc:
            raise InputValidationError(f"{name!r} is not valid UTF-8 text: {exc.reason}") from exc
        if rel in staged:
            raise InputValidationError(f"Duplicate filename after normalization: {name!r}")
        staged[rel] = content
    return staged


class Workspace:
    """A per-run temporary directory holding the staged source files.

    The directory is removed exactly once, either by `remove()` or when the
    context manager exits.

    Example:
        ```python
        with Workspace.create({"index.js": "console.log('hi')"}) as ws:
            print(ws.path)
        ```
    """

    def __init__(self, path: Path) -> None:
        """Wrap an existing directory as a workspace.

        Example:
            ```python
            ws = Workspace(Path(tempfile.mkdtemp()))
            ```
        """
        self.path = path
        self._removed = False
        self._lock = threading.Lock()

    @classmethod
    def create(
        cls,
        files: Mapping[str, Any],
        *,
        root: str | os.PathLike[str] | None = None,
    ) -> "Workspace":
        """Create a uniquely named directory and write every file into it.

        Example:
            ```python
            ws = Workspace.create({"src/app.js": "module.exports = 1"})
            ```
        """
        staged = validate_files(files)
        try:
            path = Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=root))
            # The container user differs from the host user.
            os.chmod(path, 0o755)
        except OSError as exc:
            raise WorkspacePreparationError(f"System error preparing sandbox files: {exc}") from exc

        workspace = cls(path)
        try:
            workspace._write_files(staged)
        except (OSError, UnicodeError) as exc:
            workspace.remove()
            raise WorkspacePreparationError(f"System error preparing sandbox files: {exc}") from exc
        except InputValidationError:
            workspace.remove()
            raise
        logger.debug("workspace_created", path=str(path), files=len(staged))
        return workspace

    @property
    def removed(self) -> bool:
        """Return whether the directory has been torn down.

        Example:
            ```python
            assert ws.removed
            ```
        """
        return self._removed

    def remove(self) -> bool:
        """Delete the directory; later calls are no-ops.

        Returns True only for the call that actually removed it.

        Example:
            ```python
            ws.remove()
            ```
        """
        with self._lock:
            if self._removed:
                return False
            self._removed = True
        shutil.rmtree(self.path, ignore_errors=True)
        if self.path.exists():
            logger.warning("workspace_remove_incomplete", path=str(self.path))
        else:
            logger.debug("workspace_removed", path=str(self.path))
        return True

    def __enter__(self) -> "Workspace":
        """Return the workspace itself.

        Example:
            ```python
            with Workspace.create(files) as ws:
                ...
            ```
        """
        return self

    def __exit__(self, *exc_info: object) -> None:
        """Remove the workspace on every exit path.

        Example:
            ```python
            ws.__exit__(None, None, None)
            ```
        """
        self.remove()

    def _write_files(self, staged: Mapping[PurePosixPath, str]) -> None:
        """Write validated files, refusing any target that resolves outside the root.

        Example:
            ```python
            ws._write_files({PurePosixPath("index.js"): "console.log(1)"})
            ```
        """
        root = self.path.resolve()
        for rel, content in staged.items():
            target = (root / rel).resolve()
            if not target.is_relative_to(root) or target == root:
                raise InputValidationError(f"Filename escapes the workspace: {rel.as_posix()!r}")
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
