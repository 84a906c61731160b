"""Sandboxed tool executor.

Provides:
- ToolResult: uniform ``ok``/``payload``/``error`` outcome of one call
- ToolError: raised by capability handlers for expected, reportable failures
- ToolExecutor: allow-list of capabilities, argument validation, dispatch

The executor never lets an exception cross its boundary. Unknown tools,
invalid arguments, sandbox violations and handler crashes all come back as
``ToolResult(ok=False, error=...)`` so the model can see them and recover.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from palaver.api.normalizer import ToolCall

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Any], Awaitable[Any]]


class ToolError(Exception):
    """An expected capability failure; the message is shown to the model."""


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one tool call. ``payload`` is meaningful only when ``ok``."""

    ok: bool
    payload: Any = None
    error: str | None = None

    @classmethod
    def success(cls, payload: Any) -> ToolResult:
        return cls(ok=True, payload=payload)

    @classmethod
    def failure(cls, error: str) -> ToolResult:
        return cls(ok=False, error=error)

    def to_wire(self) -> dict[str, Any]:
        """Shape used in logs and in the tool message fed back to the model."""
        if self.ok:
            return {"ok": True, "result": self.payload}
        return {"ok": False, "error": self.error}


@dataclass(frozen=True)
class Capability:
    name: str
    handler: ToolHandler
    args_model: type[BaseModel]
    description: str


def format_validation_error(e: ValidationError) -> str:
    """Render pydantic errors as ``invalid argument '<field>': <reason>``."""
    parts = []
    for err in e.errors():
        field = ".".join(str(p) for p in err.get("loc", ())) or "arguments"
        parts.append(f"invalid argument '{field}': {err.get('msg', 'invalid value')}")
    return "; ".join(parts) or "invalid arguments"


class ToolExecutor:
    """Registers capabilities and executes canonical tool calls against them.

    Each handler is an async callable taking the validated pydantic args
    model and returning a JSON-serializable payload. Handlers raise
    ToolError for failures the model should read verbatim.
    """

    def __init__(self) -> None:
        self._capabilities: dict[str, Capability] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        args_model: type[BaseModel],
        description: str = "",
    ) -> None:
        """Add a capability to the allow-list."""
        self._capabilities[name] = Capability(name, handler, args_model, description)

    @property
    def allowed(self) -> frozenset[str]:
        return frozenset(self._capabilities)

    def is_allowed(self, name: str) -> bool:
        return name in self._capabilities

    async def execute(self, call: ToolCall) -> ToolResult:
        """Validate and run one call. Never raises."""
        if not self.is_allowed(call.tool_name):
            logger.warning("Rejected disallowed tool %r", call.tool_name)
            return ToolResult.failure(f"tool not allowed: {call.tool_name}")
        capability = self._capabilities[call.tool_name]

        if not isinstance(call.arguments, dict):
            return ToolResult.failure("arguments must be an object")

        try:
            args = capability.args_model.model_validate(call.arguments)
        except ValidationError as e:
            return ToolResult.failure(format_validation_error(e))

        try:
            payload = await capability.handler(args)
        except ToolError as e:
            return ToolResult.failure(str(e))
        except Exception as e:
            logger.exception("Tool %s failed", call.tool_name)
            return ToolResult.failure(f"tool error: {e}")

        return ToolResult.success(payload)

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return the allow-list as chat API ``tools`` metadata."""
        definitions = []
        for cap in self._capabilities.values():
            schema = cap.args_model.model_json_schema()
            schema.pop("title", None)
            definitions.append({
                "type": "function",
                "function": {
                    "name": cap.name,
                    "description": cap.description,
                    "parameters": schema,
                },
            })
        return definitions
