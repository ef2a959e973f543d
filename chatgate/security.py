"""Static safety checks: destructive shell patterns and path allow-listing.

Pure predicates over configuration; no per-session state.
"""

from __future__ import annotations

import os
import re
import shlex
from pathlib import Path
from typing import Any, Iterable

from chatgate.errors import PathAccessDenied, UnsafeCommandBlocked
from chatgate.settings import DEFAULT_BLOCKED_PATTERNS, DEFAULT_TEMP_PATHS, GateSettings

PATH_TOOLS = ("Read", "Write", "Edit", "NotebookEdit", "Glob", "Grep")

_RM_RE = re.compile(r"(?:^|[\s;&|(])rm\s+(.+)", re.IGNORECASE)


def _expand(raw: str, cwd: Path | None = None) -> Path:
    p = Path(os.path.expanduser(raw))
    if cwd is not None and not p.is_absolute():
        p = cwd / p
    try:
        return p.resolve()
    except (OSError, RuntimeError):
        return Path(os.path.abspath(p))


class SafetyChecker:
    def __init__(
        self,
        allowed_paths: Iterable[Path | str],
        *,
        blocked_patterns: Iterable[str] | None = None,
        temp_paths: Iterable[str] | None = None,
    ):
        self.allowed_paths = [_expand(str(p)) for p in allowed_paths]
        self.blocked_patterns = list(blocked_patterns if blocked_patterns is not None else DEFAULT_BLOCKED_PATTERNS)
        self.temp_paths = list(temp_paths if temp_paths is not None else DEFAULT_TEMP_PATHS)

    @classmethod
    def from_settings(cls, settings: GateSettings) -> SafetyChecker:
        return cls(
            settings.resolved_allowed_paths(),
            blocked_patterns=settings.blocked_patterns,
            temp_paths=settings.temp_paths,
        )

    def is_temp_path(self, path: str, cwd: Path | None = None) -> bool:
        resolved = _expand(path, cwd).as_posix() + "/"
        return any(resolved.startswith(t) for t in self.temp_paths)

    def is_path_allowed(self, path: str, cwd: Path | None = None) -> bool:
        """Relative paths are taken from ``cwd`` (the session working dir) when given."""
        if not path:
            return False
        if self.is_temp_path(path, cwd):
            return True
        resolved = _expand(path, cwd)
        for root in self.allowed_paths:
            if resolved == root or root in resolved.parents:
                return True
        return False

    def is_command_safe(self, command: str, cwd: Path | None = None) -> tuple[bool, str]:
        lower = command.lower()
        for pattern in self.blocked_patterns:
            if pattern.lower() in lower:
                return False, f"Blocked pattern: {pattern}"

        m = _RM_RE.search(command)
        if m:
            try:
                args = shlex.split(m.group(1))
            except ValueError:
                return False, "Could not parse rm command for safety check"
            for arg in args:
                if arg in (";", "&&", "||", "|"):
                    break
                if arg.startswith("-") or len(arg) <= 1:
                    continue
                if not self.is_path_allowed(arg, cwd):
                    return False, f"rm target outside allowed paths: {arg}"
        return True, ""

    def check_tool(self, tool_name: str, args: dict[str, Any], cwd: Path | None = None) -> None:
        """Raise ``UnsafeCommandBlocked`` / ``PathAccessDenied`` when the call is vetoed."""
        if tool_name == "Bash":
            command = str(args.get("command") or "")
            ok, reason = self.is_command_safe(command, cwd)
            if not ok:
                raise UnsafeCommandBlocked(tool_name, reason)
            return

        if tool_name not in PATH_TOOLS:
            return
        path = args.get("file_path") or args.get("notebook_path") or args.get("path")
        if not path:
            return
        path = str(path)
        if tool_name in ("Read", "Glob", "Grep") and "/.claude/" in _expand(path, cwd).as_posix() + "/":
            return
        if not self.is_path_allowed(path, cwd):
            raise PathAccessDenied(tool_name, f"{path} is outside the allowed directories")
