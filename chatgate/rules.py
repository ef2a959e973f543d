"""Persisted "always allow" rules.

Grammar, compatible with ``.claude/settings.local.json``:
- ``ToolName``                 any invocation of the tool
- ``Bash(prefix:*)``           commands starting with ``prefix`` (word boundary)
- ``ToolName(dir/**)``         any path under ``dir`` (relative to the project or absolute)
- ``ToolName(path)``           exactly that path

Rules live under ``permissions.allow`` in ``<project>/.claude/settings.local.json``.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any

from loguru import logger

SETTINGS_DIRNAME = ".claude"
SETTINGS_FILENAME = "settings.local.json"

COMMAND_TOOLS = ("Bash",)
PATH_TOOLS = ("Read", "Write", "Edit", "NotebookEdit", "Glob", "Grep")

_RULE_RE = re.compile(r"^([A-Za-z0-9_\-]+)(?:\((.*)\))?$", re.DOTALL)
# A prefix rule must never cover a chained or substituted command.
_SHELL_CONTROL_RE = re.compile(r";|&&|\|\||\||`|\$\(|\n|>|<")


def parse_rule(rule: str) -> tuple[str, str | None]:
    m = _RULE_RE.match(rule.strip())
    if not m:
        raise ValueError(f"invalid allow rule: {rule!r}")
    return m.group(1), m.group(2)


def _target_path(args: dict[str, Any]) -> str | None:
    raw = args.get("file_path") or args.get("notebook_path") or args.get("path")
    return str(raw) if raw else None


def _resolve(raw: str, project_dir: Path) -> Path:
    p = Path(os.path.expanduser(raw))
    if not p.is_absolute():
        p = project_dir / p
    return Path(os.path.normpath(p))


def generate_rule(tool_name: str, args: dict[str, Any], project_dir: Path | str) -> str:
    """Derive the reusable rule an "always allow" action persists."""
    project = Path(os.path.normpath(Path(project_dir).expanduser().absolute()))

    if tool_name in COMMAND_TOOLS:
        command = str(args.get("command") or "").strip()
        if not command:
            raise ValueError("cannot derive a rule from an empty command")
        first = command.split()[0]
        return f"{tool_name}({first}:*)"

    if tool_name in PATH_TOOLS:
        raw = _target_path(args)
        if not raw:
            return tool_name
        target = _resolve(raw, project)
        # Glob/Grep take a directory; file tools take a file.
        directory = target if tool_name in ("Glob", "Grep") and "file_path" not in args else target.parent
        if directory == project:
            if tool_name in ("Glob", "Grep") and directory == target:
                return f"{tool_name}(./**)"
            return f"{tool_name}({target.relative_to(project).as_posix()})"
        if project in directory.parents:
            return f"{tool_name}({directory.relative_to(project).as_posix()}/**)"
        return f"{tool_name}({directory.as_posix()}/**)"

    return tool_name


def describe_rule(rule: str) -> str:
    """Human-readable summary for the chat confirmation."""
    tool, arg = parse_rule(rule)
    if arg is None:
        return f"Always allow any `{tool}` call"
    if arg.endswith(":*"):
        return f"Always allow `{arg[:-2]}` commands"
    if arg.endswith("/**"):
        base = arg[:-3]
        return f"Always allow `{tool}` anywhere in `{base or '/'}`"
    return f"Always allow `{tool}` on `{arg}`"


def rule_matches(rule: str, tool_name: str, args: dict[str, Any], project_dir: Path | str) -> bool:
    try:
        tool, arg = parse_rule(rule)
    except ValueError:
        return False
    if tool != tool_name:
        return False
    if arg is None:
        return True

    project = Path(os.path.normpath(Path(project_dir).expanduser().absolute()))

    if arg.endswith(":*"):
        prefix = arg[:-2].strip()
        command = str(args.get("command") or "").strip()
        if not prefix or not command.startswith(prefix):
            return False
        rest = command[len(prefix):]
        if rest and not rest[0].isspace():
            return False
        return _SHELL_CONTROL_RE.search(command) is None

    raw = _target_path(args)
    if not raw:
        return False
    target = _resolve(raw, project)
    if arg.endswith("/**"):
        base = _resolve(arg[:-3] or "/", project)
        return target == base or base in target.parents
    return target == _resolve(arg, project)


class AllowRuleStore:
    """Project-scoped rule persistence with atomic read-modify-write."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @staticmethod
    def settings_path(project_dir: Path | str) -> Path:
        return Path(project_dir).expanduser() / SETTINGS_DIRNAME / SETTINGS_FILENAME

    def _read(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("unreadable allow-rule file {}: {}", path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def load_allow_rules(self, project_dir: Path | str) -> list[str]:
        data = self._read(self.settings_path(project_dir))
        allow = (data.get("permissions") or {}).get("allow") or []
        return [str(r) for r in allow if isinstance(r, str)]

    def save_allow_rule(self, project_dir: Path | str, rule: str) -> bool:
        """Append ``rule`` unless already present. Returns True when written."""
        parse_rule(rule)
        path = self.settings_path(project_dir)
        with self._lock:
            data = self._read(path)
            perms = data.setdefault("permissions", {})
            if not isinstance(perms, dict):
                perms = data["permissions"] = {}
            allow = perms.setdefault("allow", [])
            if rule in allow:
                return False
            allow.append(rule)

            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".settings.", suffix=".tmp", dir=str(path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2, ensure_ascii=False)
                    f.write("\n")
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        logger.info("saved allow rule {} for {}", rule, project_dir)
        return True

    def matches(self, project_dir: Path | str, tool_name: str, args: dict[str, Any]) -> str | None:
        """Return the first rule that covers the call, if any."""
        for rule in self.load_allow_rules(project_dir):
            if rule_matches(rule, tool_name, args, project_dir):
                return rule
        return None
