"""Shell execution tool."""

from __future__ import annotations

import asyncio
import os
import re
from typing import Any

from chatgate.agent.tools.base import Tool

MAX_OUTPUT = 10000


class BashTool(Tool):
    """Run a shell command in the working directory."""

    def __init__(
        self,
        *,
        working_dir: str | None = None,
        timeout: int = 120,
        deny_patterns: list[str] | None = None,
    ):
        self.working_dir = working_dir
        self.timeout = timeout
        # rm targets are checked against the allowed roots before the call gets here
        self.deny_patterns = deny_patterns or [
            r"\bdel\s+/[fq]\b",              # del /f, del /q
            r"\brmdir\s+/s\b",               # rmdir /s
            r"\b(format|mkfs|diskpart)\b",   # disk operations
            r"\bdd\s+if=",                   # dd
            r">\s*/dev/sd",                  # write to disk
            r"\b(shutdown|reboot|poweroff)\b",  # system power
            r":\(\)\s*\{.*\};\s*:",          # fork bomb
        ]

    @property
    def name(self) -> str:
        return "Bash"

    @property
    def description(self) -> str:
        return "Execute a shell command and return its output."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The shell command to execute",
                },
                "description": {
                    "type": "string",
                    "description": "Short description of what the command does",
                },
            },
            "required": ["command"],
        }

    async def execute(self, command: str, **kwargs: Any) -> str:
        guard_error = self._guard_command(command)
        if guard_error:
            return guard_error

        cwd = self.working_dir or os.getcwd()
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
            )
        except OSError as e:
            return f"Error executing command: {e}"

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return f"Error: Command timed out after {self.timeout} seconds"
        except asyncio.CancelledError:
            process.kill()
            raise

        output_parts: list[str] = []
        out = stdout.decode("utf-8", errors="replace") if stdout else ""
        err = stderr.decode("utf-8", errors="replace") if stderr else ""
        if out:
            output_parts.append(out)
        if err.strip():
            output_parts.append("STDERR:\n" + err)
        if process.returncode != 0:
            output_parts.append(f"\nExit code: {process.returncode}")

        result = "\n".join(output_parts) if output_parts else "(no output)"
        if len(result) > MAX_OUTPUT:
            result = result[:MAX_OUTPUT] + f"\n... (truncated, {len(result) - MAX_OUTPUT} more chars)"
        return result

    def _guard_command(self, command: str) -> str | None:
        lower = command.strip().lower()
        for pattern in self.deny_patterns:
            if re.search(pattern, lower):
                return "Error: Command blocked by safety guard (dangerous pattern detected)"
        return None
