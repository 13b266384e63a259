"""
Sandboxed workspaces for autonomous coding tasks.

A coding task gets its own uniquely named directory under a scratch
root, and that directory is the only place its tool calls may touch:

- Path arguments are resolved against the workspace (relative) or
  canonicalized (absolute, symlinks followed) and must land inside it.
  Containment is checked on path components, not string prefixes, so
  "/tmp/task-ab12-evil" is not inside "/tmp/task-ab12".
- A deny-list of protected locations (home, system directories, the
  process working directory) is checked as well.
- Shell commands that cd home, into a parent directory or to an absolute
  path outside the workspace are refused before they run; commands with no
  working directory run in the workspace.

Violations are returned to the model as tool-result errors so it can
correct itself; they never abort the task.

Workspaces are not removed automatically. destroy() removes one;
sweep_workspaces() applies the retention policy (age and count) to a
whole scratch root.
"""

import json
import logging
import os
import re
import shutil
import time
import uuid
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from parley.tools import ToolDispatcher, recover_arguments

logger = logging.getLogger(__name__)

DEFAULT_PROTECTED_PATHS = (
    "/app",
    "/home",
    "/etc",
    "/var",
    "/usr",
    "/bin",
    "/sbin",
    "/root",
)

PATH_ARGUMENT_KEYS = ("path", "workdir")
COMMAND_TOOLS = frozenset({"bash", "bash_execute", "run_command"})
WORKSPACE_PREFIX = "task-"

_CD_TARGET = re.compile(
    r"(?:^|[;&|(\s])cd(?=$|[\s;&|)])(?:[ \t]+(\"[^\"]*\"|'[^']*'|[^\s;&|)]+))?"
)
HOME_PREFIXES = ("~", "$HOME", "${HOME}")


class SandboxViolation(Exception):
    """A tool call tried to reach outside its workspace."""
    pass


def default_protected_paths() -> list[Path]:
    paths = [Path(p) for p in DEFAULT_PROTECTED_PATHS]
    paths.append(Path.home())
    paths.append(Path.cwd())
    return [p.resolve() for p in paths]


def _is_within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


class SandboxedWorkspace:
    """One task's isolated, writable directory."""

    def __init__(
        self,
        scratch_root: Path | str,
        protected_paths: Iterable[Path | str] | None = None,
        prefix: str = WORKSPACE_PREFIX,
    ) -> None:
        self.scratch_root = Path(scratch_root).expanduser().resolve()
        self.workspace_id = uuid.uuid4().hex[:8]
        self.root = self.scratch_root / f"{prefix}{self.workspace_id}"
        self.root.mkdir(parents=True, exist_ok=False)
        self.root = self.root.resolve()

        protected = default_protected_paths() if protected_paths is None else protected_paths
        # a protected location that encloses the workspace cannot be denied wholesale
        self.protected_paths = [
            Path(p).resolve() for p in protected
            if not _is_within(self.root, Path(p).resolve())
        ]
        self._destroyed = False
        logger.info(f"Created sandbox workspace: {self.root}")

    def resolve_path(self, path: str) -> Path:
        """
        Canonical absolute form of a tool-requested path.

        Raises:
            SandboxViolation: if the path leaves the workspace or hits a
                protected location
        """
        candidate = Path(os.path.expanduser(path))
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()

        if not _is_within(resolved, self.root):
            raise SandboxViolation(
                f"access denied: {path} is outside your workspace. "
                f"you can only access files within {self.root}"
            )
        for protected in self.protected_paths:
            if _is_within(resolved, protected):
                raise SandboxViolation(
                    f"access denied: {path} is a protected location"
                )
        return resolved

    def check_command(self, command: str) -> None:
        """
        Refuse commands that change directory out of the workspace.

        Raises:
            SandboxViolation: on cd to a parent segment or to an absolute
                path outside the workspace, or on a bare cd or cd to home
        """
        for match in _CD_TARGET.finditer(command):
            # a bare cd goes home
            target = (match.group(1) or "~").strip("\"'")
            if ".." in Path(target).parts:
                raise SandboxViolation(
                    f"cannot cd to a parent directory. stay within {self.root}"
                )
            if target.startswith(HOME_PREFIXES):
                raise SandboxViolation(f"cannot cd outside workspace. stay within {self.root}")
            if target.startswith("/") and not _is_within(Path(target).resolve(), self.root):
                raise SandboxViolation(f"cannot cd outside workspace. stay within {self.root}")

    def contain_arguments(self, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """
        Return a copy of the arguments with paths pinned inside the workspace.

        Raises:
            SandboxViolation: if any path or command escapes
        """
        contained = dict(arguments)
        for key in PATH_ARGUMENT_KEYS:
            value = contained.get(key)
            if isinstance(value, str) and value:
                contained[key] = str(self.resolve_path(value))

        if tool_name in COMMAND_TOOLS:
            command = contained.get("command")
            if isinstance(command, str):
                self.check_command(command)
            if not contained.get("workdir"):
                contained["workdir"] = str(self.root)
        return contained

    def destroy(self) -> None:
        """Remove the workspace and everything in it."""
        if self._destroyed:
            return
        if self.root.exists():
            shutil.rmtree(self.root)
            logger.info(f"Destroyed sandbox workspace: {self.root}")
        self._destroyed = True

    @property
    def exists(self) -> bool:
        return self.root.exists()

    def __enter__(self) -> "SandboxedWorkspace":
        return self

    def __exit__(self, *args: Any) -> None:
        # left in place for inspection; retention is the sweep's job
        logger.debug(f"Sandbox workspace preserved at: {self.root}")


class SandboxedDispatcher:
    """
    ToolDispatcher that confines every call to one workspace before
    delegating to the real dispatcher.
    """

    def __init__(self, inner: ToolDispatcher, workspace: SandboxedWorkspace) -> None:
        self.inner = inner
        self.workspace = workspace

    def execute(
        self,
        name: str,
        arguments: str,
        user_id: str,
        assistant_text: str | None = None,
    ) -> str:
        try:
            parsed = json.loads(arguments) if arguments and arguments.strip() else {}
        except json.JSONDecodeError:
            # salvaged pairs are contained like any other arguments
            parsed = recover_arguments(arguments)
            if parsed is None:
                return f"error: invalid json arguments for {name}"

        if isinstance(parsed, dict):
            try:
                parsed = self.workspace.contain_arguments(name, parsed)
            except SandboxViolation as e:
                logger.warning(f"Sandbox violation by {name}: {e}")
                return f"error: {e}"
            arguments = json.dumps(parsed)

        return self.inner.execute(name, arguments, user_id, assistant_text)

    def get_schemas(self) -> list[dict[str, Any]]:
        return self.inner.get_schemas()


def sweep_workspaces(
    scratch_root: Path | str,
    ttl_seconds: float,
    max_count: int,
    prefix: str = WORKSPACE_PREFIX,
    now: float | None = None,
) -> list[Path]:
    """
    Apply the retention policy to a scratch root.

    Removes workspaces whose last modification is older than ttl_seconds,
    then the oldest of the rest until at most max_count remain.

    Returns:
        The directories removed
    """
    root = Path(scratch_root)
    if not root.is_dir():
        return []
    now = time.time() if now is None else now

    workspaces = sorted(
        (p for p in root.iterdir() if p.is_dir() and p.name.startswith(prefix)),
        key=lambda p: p.stat().st_mtime,
    )

    removed: list[Path] = []
    survivors: list[Path] = []
    for path in workspaces:
        if now - path.stat().st_mtime > ttl_seconds:
            removed.append(path)
        else:
            survivors.append(path)

    overflow = len(survivors) - max_count
    if overflow > 0:
        removed.extend(survivors[:overflow])

    for path in removed:
        shutil.rmtree(path, ignore_errors=True)
    if removed:
        logger.info(f"Swept {len(removed)} sandbox workspace(s) from {root}")
    return removed
