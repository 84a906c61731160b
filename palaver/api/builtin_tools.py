"""Built-in filesystem capability: fs.readText.

Reads UTF-8 text from inside the agent's workspace directory. Paths are
checked lexically before anything touches the filesystem, then resolved
again to catch symlinks that point outside the workspace.
"""

from __future__ import annotations

import asyncio
import logging
import ntpath
import os
from pathlib import Path, PurePosixPath
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from palaver.api.tools import ToolError, ToolExecutor

logger = logging.getLogger(__name__)

_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB

READ_TEXT = "fs.readText"


class SandboxViolation(ToolError):
    """A path that would leave the workspace root."""


class ReadTextArgs(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore")

    path: str = Field(description="File path relative to the workspace root")


def _is_absolute(path_str: str) -> bool:
    return (
        PurePosixPath(path_str).is_absolute()
        or ntpath.isabs(path_str)
        or bool(ntpath.splitdrive(path_str)[0])
    )


def resolve_workspace_path(workspace_dir: str | Path, path_str: str) -> Path:
    """Map a relative path onto the workspace, or raise SandboxViolation.

    The result is always a strict descendant of the workspace root; the
    root itself is not readable as a file.
    """
    if not path_str:
        raise SandboxViolation("sandbox escape: path must be a non-empty relative path")
    if _is_absolute(path_str):
        raise SandboxViolation(f"sandbox escape: absolute paths are not allowed ({path_str})")

    # Lexical check: no filesystem access yet
    root = os.path.abspath(workspace_dir)
    candidate = os.path.normpath(os.path.join(root, path_str))
    if os.path.commonpath([root, candidate]) != root or candidate == root:
        raise SandboxViolation(f"sandbox escape: path '{path_str}' is outside the workspace")

    # Symlink check
    real_root = Path(root).resolve()
    target = Path(candidate).resolve()
    if target == real_root or not target.is_relative_to(real_root):
        raise SandboxViolation(f"sandbox escape: path '{path_str}' resolves outside the workspace")
    return target


async def read_text_tool(path: str, *, _workspace_dir: str) -> dict[str, Any]:
    """Read a text file from the workspace.

    Returns ``{"path": <path as requested>, "text": <content>}``. Raises
    ToolError for sandbox violations and unreadable files.
    """
    target = resolve_workspace_path(_workspace_dir, path)

    if not target.exists():
        raise ToolError(f"file not found: {path}")
    if not target.is_file():
        raise ToolError(f"not a file: {path}")

    file_size = target.stat().st_size
    if file_size > _MAX_FILE_SIZE:
        raise ToolError(f"file too large: {file_size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes)")

    try:
        text = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
    except OSError as e:
        raise ToolError(f"could not read {path}: {e.strerror or e}") from e

    return {"path": path, "text": text}


def register_builtin_tools(executor: ToolExecutor, workspace_dir: str | Path) -> None:
    """Register fs.readText scoped to ``workspace_dir``."""
    workspace = str(workspace_dir)

    async def _read_text(args: ReadTextArgs) -> dict[str, Any]:
        return await read_text_tool(args.path, _workspace_dir=workspace)

    executor.register(
        READ_TEXT,
        _read_text,
        ReadTextArgs,
        "Read a UTF-8 text file from the agent workspace. Paths are relative to the workspace root.",
    )
