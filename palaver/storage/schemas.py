"""Pydantic models for persisted conversation events.

The on-disk shape uses short camelCase keys (``ts``, ``type``,
``toolResult``, ``stopReason``) so logs stay readable with ``jq`` and
compatible with older session files.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class EventKind(StrEnum):
    MESSAGE = "message"
    TOOL_CALL = "toolCall"
    TOOL_RESULT = "toolResult"


ROUND_LIMIT = "round_limit"


def _new_id() -> str:
    return uuid4().hex


def _now() -> datetime:
    return datetime.now(UTC)


class ToolInvocation(BaseModel):
    """Tool name and arguments recorded on a toolCall event."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str | None = None
    name: str
    args: Any = None


class ToolOutcome(BaseModel):
    """Outcome recorded on a toolResult event."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str | None = None
    tool: str | None = None
    ok: bool
    result: Any = None
    error: str | None = None


class Event(BaseModel):
    """One immutable entry in a conversation log."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: str = Field(default_factory=_new_id)
    timestamp: datetime = Field(default_factory=_now, alias="ts")
    role: Role
    kind: EventKind = Field(EventKind.MESSAGE, alias="type")
    content: str = ""
    tool: ToolInvocation | None = None
    tool_result: ToolOutcome | None = Field(None, alias="toolResult")
    stop_reason: str | None = Field(None, alias="stopReason")

    def to_json(self) -> str:
        """Serialize as one JSON line (without the trailing newline)."""
        return self.model_dump_json(by_alias=True, exclude_none=True)
