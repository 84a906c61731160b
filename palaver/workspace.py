"""Per-agent workspace: persona and tool manifest.

Each agent identity owns ``<workspaces_dir>/<agent_id>/`` holding SOUL.md
(persona) and TOOLS.md (tool manifest). The same directory is the root that
fs.readText is confined to.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

PERSONA_FILE = "SOUL.md"
MANIFEST_FILE = "TOOLS.md"

_AGENT_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
# `fs.readText` style mentions and {"tool": "fs.readText"} examples
_MANIFEST_TOOL_REFS = (
    re.compile(r"`([A-Za-z][A-Za-z0-9_-]*\.[A-Za-z][A-Za-z0-9._-]*)`"),
    re.compile(r'"tool"\s*:\s*"([^"]+)"'),
)


class WorkspaceError(RuntimeError):
    """An agent workspace is missing or unreadable."""


@dataclass(frozen=True)
class Workspace:
    agent_id: str
    root: Path
    persona: str
    manifest: str


def manifest_tool_names(manifest: str) -> set[str]:
    """Tool names a manifest advertises to the model."""
    names: set[str] = set()
    for pattern in _MANIFEST_TOOL_REFS:
        names.update(pattern.findall(manifest))
    return names


class WorkspaceLoader:
    """Loads persona and manifest text fresh on every call."""

    def __init__(self, workspaces_dir: str | Path) -> None:
        self._base = Path(workspaces_dir)

    def root_for(self, agent_id: str) -> Path:
        if not _AGENT_ID.match(agent_id or ""):
            raise WorkspaceError(f"invalid agent id: {agent_id!r}")
        return self._base / agent_id

    def load(self, agent_id: str) -> Workspace:
        root = self.root_for(agent_id)
        try:
            persona = (root / PERSONA_FILE).read_text(encoding="utf-8")
            manifest = (root / MANIFEST_FILE).read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise WorkspaceError(f"workspace for agent '{agent_id}' is missing {Path(e.filename).name}") from e
        except OSError as e:
            raise WorkspaceError(f"cannot read workspace for agent '{agent_id}': {e}") from e
        return Workspace(agent_id=agent_id, root=root, persona=persona, manifest=manifest)

    def check(self, agent_id: str, allowed_tools: Iterable[str]) -> Workspace:
        """Startup check: files must exist; manifest must not outrun the executor.

        A tool the executor allows but the manifest omits is harmless. A tool
        the manifest advertises but the executor lacks is logged, since every
        call the model makes to it will be rejected.
        """
        workspace = self.load(agent_id)
        allowed = set(allowed_tools)
        for name in sorted(manifest_tool_names(workspace.manifest) - allowed):
            logger.warning(
                "Manifest for agent '%s' advertises tool '%s' which is not allowed by the executor",
                agent_id,
                name,
            )
        return workspace
