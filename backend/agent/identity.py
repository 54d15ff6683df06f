from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

SOUL_FILENAME = "SOUL.md"
IDENTITY_FILENAME = "IDENTITY.md"

_IDENTITY_LINE = re.compile(r"^[\s\-*]*\**(?P<key>[A-Za-z ]+?)\**\s*:\s*\**\s*(?P<value>.+?)\s*$")


@dataclass
class AgentIdentity:
    """Who the agent is, read from the workspace's SOUL.md and IDENTITY.md."""

    name: Optional[str] = None
    creature: Optional[str] = None
    vibe: Optional[str] = None
    emoji: Optional[str] = None
    soul: Optional[str] = None

    @classmethod
    def load(cls, workspace: Path) -> "AgentIdentity":
        workspace = Path(workspace)
        soul_path = workspace / SOUL_FILENAME
        identity_path = workspace / IDENTITY_FILENAME

        soul = soul_path.read_text(encoding="utf-8").strip() if soul_path.is_file() else None
        fields: Dict[str, str] = {}
        if identity_path.is_file():
            fields = parse_identity(identity_path.read_text(encoding="utf-8"))

        return cls(
            name=fields.get("name"),
            creature=fields.get("creature"),
            vibe=fields.get("vibe"),
            emoji=fields.get("emoji"),
            soul=soul or None,
        )


def parse_identity(raw: str) -> Dict[str, str]:
    """Parse `key: value` lines (markdown bullets and bold markers allowed)."""
    fields: Dict[str, str] = {}
    for line in raw.splitlines():
        match = _IDENTITY_LINE.match(line)
        if not match:
            continue
        key = match.group("key").strip().lower()
        value = match.group("value").strip().strip("*").strip()
        if key and value and key not in fields:
            fields[key] = value
    return fields
