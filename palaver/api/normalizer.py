"""Tool-call normalization for model responses.

Models ask for tools in one of two ways:

- structured: the chat API returns ``message.tool_calls``, a list of
  ``{"id": ..., "function": {"name": ..., "arguments": ...}}`` descriptors;
- inline: the assistant text itself is a JSON object
  ``{"tool": "<name>", "args": ...}``.

``normalize()`` is the only place that knows about either shape. Structured
descriptors win; inline text is only considered when no usable descriptor
is present. Everything downstream works with ``ToolCall``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Literal
from uuid import uuid4

logger = logging.getLogger(__name__)

UNKNOWN_TOOL = "unknown"

Encoding = Literal["none", "structured", "inline"]

# Chat-template control tokens that some models leak into function names,
# e.g. "assistant<|channel|>commentary to=fs.readText".
_CONTROL_TOKEN = re.compile(r"<\|[^|<>]*\|>")
_ROLE_PREFIX = re.compile(r"^\s*(assistant|analysis|commentary|final)\s*(?=<\|)")
_NAME_DISALLOWED = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True)
class ToolCall:
    """A tool request in canonical form, independent of wire encoding."""

    correlation_id: str
    tool_name: str
    arguments: Any = None


@dataclass
class NormalizedResponse:
    """Non-tool text plus zero or more canonical calls from one model response."""

    text: str
    calls: list[ToolCall] = field(default_factory=list)
    encoding: Encoding = "none"

    @property
    def has_calls(self) -> bool:
        return bool(self.calls)


def new_call_id() -> str:
    return f"call_{uuid4().hex[:12]}"


def sanitize_tool_name(name: Any) -> str:
    """Strip control tokens and restrict to ``[A-Za-z0-9._-]``.

    Never returns an empty string: a name that sanitizes to nothing becomes
    ``UNKNOWN_TOOL`` so the executor can reject it in the open.
    """
    if not isinstance(name, str):
        return UNKNOWN_TOOL
    stripped = _ROLE_PREFIX.sub("", name)
    stripped = _CONTROL_TOKEN.sub("", stripped).strip()
    # "commentary to=fs.readText" style routing hints
    if " to=" in stripped:
        stripped = stripped.rsplit(" to=", 1)[1]
    cleaned = _NAME_DISALLOWED.sub("", stripped)
    return cleaned or UNKNOWN_TOOL


def _decode_arguments(raw: Any) -> Any:
    """Decode JSON-string arguments into an object when they hold one."""
    if isinstance(raw, str):
        txt = raw.strip()
        if txt.startswith("{") and txt.endswith("}"):
            try:
                decoded = json.loads(txt)
            except json.JSONDecodeError:
                return raw
            if isinstance(decoded, dict):
                return decoded
    return raw


def _from_descriptor(descriptor: Any) -> ToolCall | None:
    if not isinstance(descriptor, dict):
        logger.warning("Ignoring malformed tool call descriptor: %r", descriptor)
        return None
    function = descriptor.get("function")
    if not isinstance(function, dict):
        logger.warning("Ignoring tool call descriptor without function: %r", descriptor)
        return None

    raw_id = descriptor.get("id")
    call_id = raw_id if isinstance(raw_id, str) and raw_id else new_call_id()
    arguments = _decode_arguments(function.get("arguments"))

    # Indirection: a generic "call a tool" function wrapping the real one
    if isinstance(arguments, dict) and isinstance(arguments.get("tool"), str) and "args" in arguments:
        return ToolCall(
            correlation_id=call_id,
            tool_name=sanitize_tool_name(arguments["tool"]),
            arguments=arguments["args"],
        )

    return ToolCall(
        correlation_id=call_id,
        tool_name=sanitize_tool_name(function.get("name")),
        arguments=arguments,
    )


def parse_inline_call(text: str) -> ToolCall | None:
    """Parse a whole-message ``{"tool": ..., "args": ...}`` request.

    Returns None for anything else: prose, non-object JSON, a missing or
    empty ``tool``, or a missing ``args`` key (a null ``args`` is allowed).
    """
    txt = text.strip()
    if not txt.startswith("{") or not txt.endswith("}"):
        return None
    try:
        obj = json.loads(txt)
    except json.JSONDecodeError:
        return None
    if not isinstance(obj, dict):
        return None
    tool = obj.get("tool")
    if not isinstance(tool, str) or not tool:
        return None
    if "args" not in obj:
        return None
    return ToolCall(
        correlation_id=new_call_id(),
        tool_name=sanitize_tool_name(tool),
        arguments=obj["args"],
    )


def normalize(content: str | None, tool_calls: list[Any] | None = None) -> NormalizedResponse:
    """Reduce one model response to text plus canonical tool calls."""
    text = content if isinstance(content, str) else ""

    if tool_calls:
        calls = [c for c in (_from_descriptor(d) for d in tool_calls) if c is not None]
        if calls:
            return NormalizedResponse(text=text, calls=calls, encoding="structured")

    inline = parse_inline_call(text)
    if inline is not None:
        return NormalizedResponse(text="", calls=[inline], encoding="inline")

    return NormalizedResponse(text=text)
