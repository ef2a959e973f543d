"""Runtime settings for chatgate.

Values come from environment variables (``CHATGATE_*``) or a local ``.env``:
- server: host/port, optional bearer token for write endpoints
- storage: data dir, SQLite path, plan artifact dir
- policy: permission mode, allowed roots, blocked shell patterns
- engine: litellm model and credentials
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def repo_root() -> Path:
    # chatgate/settings.py -> chatgate -> repo root
    return Path(__file__).resolve().parents[1]


PermissionMode = Literal["interactive", "bypass"]

DEFAULT_BLOCKED_PATTERNS = [
    "rm -rf /",
    "rm -rf ~",
    "rm -rf $HOME",
    "sudo rm",
    ":(){ :|:& };:",
    "> /dev/sd",
    "mkfs.",
    "dd if=",
]

DEFAULT_TEMP_PATHS = ["/tmp/", "/private/tmp/", "/var/folders/"]


class GateSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CHATGATE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server
    host: str = "127.0.0.1"
    port: int = 4097
    auth_token: str = ""

    # Data / DB
    data_dir: str = "data"
    db_path: str | None = None
    plans_dir: str = "~/.claude/plans"

    # Workspace and static safety
    working_dir: str = "."
    allowed_paths: list[str] = Field(
        default_factory=lambda: ["~/Documents", "~/Downloads", "~/Desktop"]
    )
    temp_paths: list[str] = Field(default_factory=lambda: list(DEFAULT_TEMP_PATHS))
    blocked_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_BLOCKED_PATTERNS))

    # Permissions
    permission_mode: PermissionMode = "interactive"
    ask_timeout_s: float = 300.0

    # Streaming
    streaming_throttle_s: float = 0.5
    segment_min_chars: int = 20

    # Engine
    model: str = "anthropic/claude-sonnet-4-20250514"
    api_key: str = ""
    api_base: str | None = None
    max_iterations: int = 40
    max_tokens: int = 8192
    temperature: float = 0.2
    exec_timeout_s: int = 120

    # SSE
    sse_wait_timeout_s: float = 15.0

    def resolved_data_dir(self) -> Path:
        p = Path(self.data_dir).expanduser()
        return p if p.is_absolute() else repo_root() / p

    def resolved_db_path(self) -> Path:
        if self.db_path:
            p = Path(self.db_path).expanduser()
            return p if p.is_absolute() else repo_root() / p
        return self.resolved_data_dir() / "chatgate.db"

    def resolved_working_dir(self) -> Path:
        return Path(self.working_dir).expanduser().resolve()

    def resolved_plans_dir(self) -> Path:
        return Path(self.plans_dir).expanduser().resolve()

    def resolved_allowed_paths(self) -> list[Path]:
        """Working dir first, then configured roots, then the plan dir."""
        roots = [self.resolved_working_dir()]
        roots.extend(Path(p).expanduser().resolve() for p in self.allowed_paths)
        roots.append(self.resolved_plans_dir())
        out: list[Path] = []
        for r in roots:
            if r not in out:
                out.append(r)
        return out
