"""File system tools: Read, Write, Edit, Glob, Grep.

Path allow-listing happens before a call reaches these tools; here paths are
only resolved against the working directory.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from chatgate.agent.tools.base import Tool

MAX_MATCHES = 200


def _resolve_path(raw_path: str, *, cwd: Path) -> tuple[Path | None, str | None]:
    if not raw_path:
        return None, "Error: file_path is required"
    try:
        p = Path(raw_path).expanduser()
        if not p.is_absolute():
            p = cwd / p
        return p.resolve(), None
    except (OSError, RuntimeError) as e:
        return None, f"Error: invalid path: {e}"


def _display_path(p: Path, *, cwd: Path) -> str:
    try:
        return p.relative_to(cwd.resolve()).as_posix()
    except ValueError:
        return str(p)


class _FsTool(Tool):
    def __init__(self, *, working_dir: str | Path):
        self._cwd = Path(working_dir).expanduser().resolve()


class ReadTool(_FsTool):
    @property
    def name(self) -> str:
        return "Read"

    @property
    def description(self) -> str:
        return "Read a text file. Optionally pass offset (1-based line) and limit (line count)."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Path of the file to read"},
                "offset": {"type": "integer", "description": "First line to return (1-based)"},
                "limit": {"type": "integer", "description": "Maximum number of lines"},
            },
            "required": ["file_path"],
        }

    async def execute(self, file_path: str, offset: int | None = None, limit: int | None = None, **kwargs: Any) -> str:
        resolved, err = _resolve_path(file_path, cwd=self._cwd)
        if err:
            return err
        assert resolved is not None
        shown = _display_path(resolved, cwd=self._cwd)
        try:
            if not resolved.exists():
                return f"Error: File not found: {shown}"
            if not resolved.is_file():
                return f"Error: Not a file: {shown}"
            text = resolved.read_text(encoding="utf-8", errors="replace")
        except PermissionError:
            return f"Error: Permission denied: {shown}"
        if offset or limit:
            lines = text.splitlines(keepends=True)
            start = max(int(offset or 1) - 1, 0)
            end = start + int(limit) if limit else None
            text = "".join(lines[start:end])
        return text


class WriteTool(_FsTool):
    @property
    def name(self) -> str:
        return "Write"

    @property
    def description(self) -> str:
        return "Write content to a file, creating parent directories if needed."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Path of the file to write"},
                "content": {"type": "string", "description": "Full file content"},
            },
            "required": ["file_path", "content"],
        }

    async def execute(self, file_path: str, content: str, **kwargs: Any) -> str:
        resolved, err = _resolve_path(file_path, cwd=self._cwd)
        if err:
            return err
        assert resolved is not None
        shown = _display_path(resolved, cwd=self._cwd)
        try:
            resolved.parent.mkdir(parents=True, exist_ok=True)
            resolved.write_text(content, encoding="utf-8")
        except PermissionError:
            return f"Error: Permission denied: {shown}"
        return f"Successfully wrote {len(content)} bytes to {shown}"


class EditTool(_FsTool):
    @property
    def name(self) -> str:
        return "Edit"

    @property
    def description(self) -> str:
        return (
            "Replace old_string with new_string in a file. old_string must match exactly "
            "and be unique unless replace_all is true."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Path of the file to edit"},
                "old_string": {"type": "string", "description": "Exact text to replace"},
                "new_string": {"type": "string", "description": "Replacement text"},
                "replace_all": {"type": "boolean", "description": "Replace every occurrence"},
            },
            "required": ["file_path", "old_string", "new_string"],
        }

    async def execute(
        self,
        file_path: str,
        old_string: str,
        new_string: str,
        replace_all: bool = False,
        **kwargs: Any,
    ) -> str:
        resolved, err = _resolve_path(file_path, cwd=self._cwd)
        if err:
            return err
        assert resolved is not None
        shown = _display_path(resolved, cwd=self._cwd)
        if old_string == new_string:
            return "Error: old_string and new_string are identical"
        try:
            if not resolved.is_file():
                return f"Error: File not found: {shown}"
            content = resolved.read_text(encoding="utf-8", errors="replace")
            count = content.count(old_string)
            if count == 0:
                return "Error: old_string not found in file. Make sure it matches exactly."
            if count > 1 and not replace_all:
                return f"Error: old_string appears {count} times. Add context or set replace_all."
            content = content.replace(old_string, new_string) if replace_all else content.replace(old_string, new_string, 1)
            resolved.write_text(content, encoding="utf-8")
        except PermissionError:
            return f"Error: Permission denied: {shown}"
        return f"Successfully edited {shown}"


class GlobTool(_FsTool):
    @property
    def name(self) -> str:
        return "Glob"

    @property
    def description(self) -> str:
        return "Find files matching a glob pattern such as '**/*.py'."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Glob pattern"},
                "path": {"type": "string", "description": "Directory to search (default: working dir)"},
            },
            "required": ["pattern"],
        }

    async def execute(self, pattern: str, path: str | None = None, **kwargs: Any) -> str:
        base, err = _resolve_path(path or ".", cwd=self._cwd)
        if err:
            return err
        assert base is not None
        if not base.is_dir():
            return f"Error: Not a directory: {_display_path(base, cwd=self._cwd)}"
        hits = sorted(p for p in base.glob(pattern) if p.is_file())
        if not hits:
            return "No files found"
        lines = [_display_path(p, cwd=self._cwd) for p in hits[:MAX_MATCHES]]
        if len(hits) > MAX_MATCHES:
            lines.append(f"... ({len(hits) - MAX_MATCHES} more)")
        return "\n".join(lines)


class GrepTool(_FsTool):
    @property
    def name(self) -> str:
        return "Grep"

    @property
    def description(self) -> str:
        return "Search file contents with a regular expression. Returns path:line:text matches."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Regular expression"},
                "path": {"type": "string", "description": "File or directory to search"},
                "glob": {"type": "string", "description": "Only search files matching this glob"},
            },
            "required": ["pattern"],
        }

    async def execute(self, pattern: str, path: str | None = None, glob: str | None = None, **kwargs: Any) -> str:
        try:
            rx = re.compile(pattern)
        except re.error as e:
            return f"Error: invalid regex: {e}"
        base, err = _resolve_path(path or ".", cwd=self._cwd)
        if err:
            return err
        assert base is not None

        files = [base] if base.is_file() else sorted(p for p in base.rglob(glob or "*") if p.is_file())
        out: list[str] = []
        for f in files:
            if any(part.startswith(".") for part in f.relative_to(base).parts if f != base):
                continue
            try:
                text = f.read_text(encoding="utf-8", errors="replace")
            except OSError:
                continue
            for n, line in enumerate(text.splitlines(), 1):
                if rx.search(line):
                    out.append(f"{_display_path(f, cwd=self._cwd)}:{n}:{line}")
                    if len(out) >= MAX_MATCHES:
                        return "\n".join(out) + "\n... (truncated)"
        return "\n".join(out) if out else "No matches"
