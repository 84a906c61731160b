"""Shared fixtures: temp state/workspace dirs, settings, event log, executor."""

from pathlib import Path

import pytest

from palaver.api.builtin_tools import register_builtin_tools
from palaver.api.tools import ToolExecutor
from palaver.config import Settings
from palaver.storage.event_log import EventLog
from palaver.workspace import WorkspaceLoader

PERSONA = "You are Palaver, a careful assistant."
MANIFEST = (
    "# Tools\n\n"
    "Call `fs.readText` with {\"path\": \"<relative path>\"} to read a workspace file.\n"
)


@pytest.fixture
def workspaces_dir(tmp_path) -> Path:
    """Workspaces root holding one complete 'default' agent."""
    root = tmp_path / "workspaces"
    agent = root / "default"
    agent.mkdir(parents=True)
    (agent / "SOUL.md").write_text(PERSONA, encoding="utf-8")
    (agent / "TOOLS.md").write_text(MANIFEST, encoding="utf-8")
    (agent / "notes.txt").write_text("remember the milk", encoding="utf-8")
    return root


@pytest.fixture
def settings(tmp_path, workspaces_dir) -> Settings:
    """Settings pointed at temp dirs, search disabled, default 5 rounds."""
    return Settings(
        agent_id="default",
        state_dir=str(tmp_path / "state"),
        workspaces_dir=str(workspaces_dir),
        model="test-model",
        web_search_enabled=False,
        max_rounds=5,
    )


@pytest.fixture
def event_log(settings) -> EventLog:
    return EventLog(Path(settings.sessions_dir))


@pytest.fixture
def workspaces(workspaces_dir) -> WorkspaceLoader:
    return WorkspaceLoader(workspaces_dir)


@pytest.fixture
def executor(workspaces) -> ToolExecutor:
    """Executor with fs.readText rooted at the default agent workspace."""
    ex = ToolExecutor()
    register_builtin_tools(ex, workspaces.root_for("default"))
    return ex
