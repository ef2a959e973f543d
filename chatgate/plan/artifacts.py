"""Plan artifact files: markdown with a small YAML front matter block."""

from __future__ import annotations

import random
import re
import time
from datetime import datetime, timezone
from pathlib import Path

from loguru import logger

ADJECTIVES = [
    "amber", "bold", "calm", "clever", "eager", "gentle", "golden", "happy",
    "lively", "lucky", "mellow", "nimble", "quiet", "rapid", "silver", "steady",
    "sunny", "swift", "vivid", "witty",
]
VERBS = [
    "dancing", "flowing", "soaring", "glowing", "spinning", "climbing",
    "drifting", "racing", "singing", "wandering", "blazing", "shining",
    "rippling", "echoing", "blooming", "rushing", "swaying", "gleaming",
    "sparkling", "tumbling",
]
NOUNS = [
    "kettle", "falcon", "river", "mountain", "forest", "ocean", "meadow",
    "canyon", "glacier", "summit", "valley", "stream", "breeze", "thunder",
    "sunrise", "moonlight", "shadow", "crystal", "compass", "anchor",
]

_FRONT_MATTER_RE = re.compile(r"^---\n([\s\S]*?)\n---\n\n?")


def random_plan_name() -> str:
    return f"{random.choice(ADJECTIVES)}-{random.choice(VERBS)}-{random.choice(NOUNS)}.md"


def front_matter(session_id: str | None) -> str:
    created = datetime.now(timezone.utc).isoformat()
    return f"---\nsession_id: {session_id or 'pending'}\ncreated_at: {created}\nstatus: draft\n---\n\n"


def split_front_matter(text: str) -> tuple[str, str]:
    m = _FRONT_MATTER_RE.match(text)
    if not m:
        return "", text
    return m.group(0), text[m.end():]


class PlanArtifactStore:
    """Stores plan artifacts as files under ``plans_dir``; a ref is the bare filename."""

    def __init__(self, plans_dir: Path):
        self.plans_dir = Path(plans_dir)

    def path(self, ref: str) -> Path:
        name = Path(ref).name
        if not name or name != ref:
            raise ValueError(f"invalid plan reference: {ref}")
        return self.plans_dir / name

    def exists(self, ref: str) -> bool:
        try:
            return self.path(ref).is_file()
        except ValueError:
            return False

    def create(self, content: str, *, session_id: str | None = None) -> str:
        self.plans_dir.mkdir(parents=True, exist_ok=True)
        ref = ""
        for _ in range(10):
            candidate = random_plan_name()
            if not (self.plans_dir / candidate).exists():
                ref = candidate
                break
        if not ref:
            ref = f"plan-{int(time.time() * 1000)}.md"
        self.path(ref).write_text(front_matter(session_id) + content, encoding="utf-8")
        logger.info("plan artifact created: {}", ref)
        return ref

    def write(self, ref: str, content: str, *, session_id: str | None = None) -> None:
        """Replace the body, keeping existing front matter when present."""
        p = self.path(ref)
        head = ""
        if p.exists():
            head, _ = split_front_matter(p.read_text(encoding="utf-8"))
        if not head:
            head = front_matter(session_id)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(head + content, encoding="utf-8")

    def read(self, ref: str) -> str:
        p = self.path(ref)
        if not p.is_file():
            raise FileNotFoundError(f"Plan file not found: {ref}")
        return p.read_text(encoding="utf-8")

    def body(self, ref: str) -> str:
        return split_front_matter(self.read(ref))[1]

    def update(self, ref: str, old_string: str, new_string: str, *, replace_all: bool = False) -> str:
        """Replace text in the plan body and return the new body."""
        if old_string == new_string:
            raise ValueError("old_string and new_string are identical")
        head, body = split_front_matter(self.read(ref))
        if old_string not in body:
            preview = old_string[:50] + ("..." if len(old_string) > 50 else "")
            raise ValueError(f'old_string not found in plan content: "{preview}"')
        if replace_all:
            body = body.replace(old_string, new_string)
        else:
            body = body.replace(old_string, new_string, 1)
        self.path(ref).write_text((head or front_matter(None)) + body, encoding="utf-8")
        return body
