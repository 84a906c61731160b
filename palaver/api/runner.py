"""Agent runner -- executes conversational turns against an Ollama chat API.

One turn takes one user message in and produces one assistant message out,
possibly over several model round-trips:

    load history -> append user event -> ask model -> normalize
      -> no tool calls: append assistant message, done
      -> tool calls: append toolCall events, execute each in order,
         append toolResult events, feed results back, ask model again

Every step is appended to the EventLog as it happens, so a crashed turn
leaves an accurate (if truncated) record. The loop is bounded by
settings.max_rounds; hitting the bound appends a synthesized assistant
message tagged with stopReason=round_limit instead of raising.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from palaver.api.normalizer import NormalizedResponse, ToolCall, normalize
from palaver.api.tools import ToolExecutor, ToolResult
from palaver.config import Settings
from palaver.storage.event_log import EventLog
from palaver.storage.schemas import (
    ROUND_LIMIT,
    Event,
    EventKind,
    Role,
    ToolInvocation,
    ToolOutcome,
)
from palaver.workspace import Workspace, WorkspaceLoader

logger = logging.getLogger(__name__)

_RETRY_STATUSES = (429, 500, 502, 503)
_MAX_RETRY_AFTER = 30.0


class ModelBackendError(RuntimeError):
    """The model backend was unreachable or answered with an error."""


@dataclass
class ModelResponse:
    """Parsed response from the chat API."""

    content: str
    tool_calls: list[Any] = field(default_factory=list)


@dataclass
class TurnOutcome:
    """What a front end needs to know about a finished turn."""

    assistant_text: str
    rounds: int
    tool_calls: int = 0
    limit_reached: bool = False


def limit_message(max_rounds: int) -> str:
    return f"Tool step limit reached ({max_rounds})."


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


class AgentRunner:
    """Runs conversational turns with an internal tool dispatch loop.

    Uses direct httpx calls to the model backend. Tool executors are built
    per agent identity by a factory (the fs.readText root differs per
    agent) and cached for the runner's lifetime.
    """

    def __init__(
        self,
        event_log: EventLog,
        workspaces: WorkspaceLoader,
        settings: Settings,
    ) -> None:
        self._log = event_log
        self._workspaces = workspaces
        self._settings = settings
        self._http: httpx.AsyncClient | None = None
        self._executor_factory: Callable[[str], ToolExecutor] | None = None
        self._executors: dict[str, ToolExecutor] = {}

    def set_executor_factory(self, factory: Callable[[str], ToolExecutor]) -> None:
        """Set the per-agent ToolExecutor factory used by the tool loop."""
        self._executor_factory = factory
        self._executors.clear()

    def executor_for(self, agent_id: str) -> ToolExecutor:
        if self._executor_factory is None:
            raise RuntimeError("No executor factory set -- call set_executor_factory() first")
        executor = self._executors.get(agent_id)
        if executor is None:
            executor = self._executor_factory(agent_id)
            self._executors[agent_id] = executor
        return executor

    async def start(self) -> None:
        """Initialize the httpx client for the model backend."""
        settings = self._settings
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        self._http = httpx.AsyncClient(
            base_url=settings.model_base_url.rstrip("/"),
            headers={"content-type": "application/json"},
            timeout=timeout,
            limits=limits,
        )
        logger.info("Model client initialized (%s, model=%s)", settings.model_base_url, settings.model)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def run_turn(
        self,
        conversation_id: str,
        user_text: str,
        *,
        agent_id: str | None = None,
        model: str | None = None,
    ) -> TurnOutcome:
        """Execute a single conversational turn.

        Raises WorkspaceError before anything is logged if the agent's
        workspace is incomplete. Raises ModelBackendError if the model cannot
        be reached (no assistant event is appended in that case) and lets
        EventLog I/O errors propagate. Tool failures never abort the turn.
        """
        _agent_id = agent_id or self._settings.agent_id
        _model = model or self._settings.model

        workspace = await asyncio.to_thread(self._workspaces.load, _agent_id)
        executor = self.executor_for(_agent_id)
        tools = executor.tool_definitions()

        history = await self._log.read_all(conversation_id)
        user_event = await self._log.append(
            conversation_id,
            Event(role=Role.USER, kind=EventKind.MESSAGE, content=user_text),
        )

        messages = self.build_context(workspace, [*history, user_event])

        max_rounds = self._settings.max_rounds
        calls_made = 0
        logger.info("Turn started: conversation=%s agent=%s model=%s", conversation_id, _agent_id, _model)

        for round_no in range(1, max_rounds + 1):
            response = await self._call_model(messages, tools or None, _model)
            normalized = normalize(response.content, response.tool_calls)

            if not normalized.has_calls:
                await self._log.append(
                    conversation_id,
                    Event(role=Role.ASSISTANT, kind=EventKind.MESSAGE, content=normalized.text),
                )
                logger.info(
                    "Turn finished: conversation=%s rounds=%d tool_calls=%d",
                    conversation_id,
                    round_no,
                    calls_made,
                )
                return TurnOutcome(normalized.text, rounds=round_no, tool_calls=calls_made)

            if normalized.text.strip():
                await self._log.append(
                    conversation_id,
                    Event(role=Role.ASSISTANT, kind=EventKind.TOOL_CALL, content=normalized.text),
                )
            messages.append(self._assistant_entry(response, normalized))

            # One at a time, in request order
            for call in normalized.calls:
                result = await self._run_tool(conversation_id, executor, call)
                messages.append(self._tool_entry(call, result))
                calls_made += 1

        logger.warning(
            "Tool loop reached max_rounds=%d (conversation=%s)", max_rounds, conversation_id
        )
        text = limit_message(max_rounds)
        await self._log.append(
            conversation_id,
            Event(
                role=Role.ASSISTANT,
                kind=EventKind.MESSAGE,
                content=text,
                stop_reason=ROUND_LIMIT,
            ),
        )
        return TurnOutcome(text, rounds=max_rounds, tool_calls=calls_made, limit_reached=True)

    async def _run_tool(
        self,
        conversation_id: str,
        executor: ToolExecutor,
        call: ToolCall,
    ) -> ToolResult:
        """Log the call, execute it, log the result."""
        await self._log.append(
            conversation_id,
            Event(
                role=Role.ASSISTANT,
                kind=EventKind.TOOL_CALL,
                content=_dumps({"tool": call.tool_name, "args": call.arguments}),
                tool=ToolInvocation(id=call.correlation_id, name=call.tool_name, args=call.arguments),
            ),
        )

        result = await executor.execute(call)
        wire = result.to_wire()

        await self._log.append(
            conversation_id,
            Event(
                role=Role.SYSTEM,
                kind=EventKind.TOOL_RESULT,
                content=_dumps({"toolResult": {"tool": call.tool_name, **wire}}),
                tool_result=ToolOutcome(id=call.correlation_id, tool=call.tool_name, **wire),
            ),
        )
        if not result.ok:
            logger.info("Tool %s failed: %s", call.tool_name, result.error)
        return result

    # ------------------------------------------------------------------
    # Context assembly
    # ------------------------------------------------------------------

    @staticmethod
    def build_context(workspace: Workspace, events: list[Event]) -> list[dict[str, Any]]:
        """Model input for the first round of a turn.

        Persona, then manifest, then every message-kind event in order.
        Tool events are kept in the log for audit but never replayed to the
        model; tool output only reaches the model within the turn that
        produced it (see _tool_entry).
        """
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": workspace.persona},
            {"role": "system", "content": workspace.manifest},
        ]
        messages.extend(
            {"role": e.role.value, "content": e.content}
            for e in events
            if e.kind == EventKind.MESSAGE
        )
        return messages

    @staticmethod
    def _assistant_entry(response: ModelResponse, normalized: NormalizedResponse) -> dict[str, Any]:
        entry: dict[str, Any] = {"role": "assistant", "content": response.content}
        if normalized.encoding == "structured":
            entry["tool_calls"] = response.tool_calls
        return entry

    @staticmethod
    def _tool_entry(call: ToolCall, result: ToolResult) -> dict[str, Any]:
        return {
            "role": "tool",
            "name": call.tool_name,
            "tool_call_id": call.correlation_id,
            "content": _dumps(result.to_wire()),
        }

    # ------------------------------------------------------------------
    # API call
    # ------------------------------------------------------------------

    def _build_payload(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        model: str,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": False,
        }
        if tools:
            payload["tools"] = tools
        return payload

    async def _call_model(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        model: str,
    ) -> ModelResponse:
        """Call the chat API with one retry for 429/5xx and timeouts.

        Raises ModelBackendError on persistent errors.
        """
        if not self._http:
            raise ModelBackendError("httpx client not initialized -- call start() first")

        payload = self._build_payload(messages, tools, model)

        last_error: ModelBackendError | None = None
        for attempt in range(2):  # initial + 1 retry
            try:
                response = await self._http.post("/api/chat", json=payload)

                if response.status_code == 200:
                    return self._parse_response(response)

                detail = response.text[:500]
                if response.status_code in _RETRY_STATUSES and attempt == 0:
                    try:
                        retry_after = float(response.headers.get("retry-after", "1"))
                    except ValueError:
                        retry_after = 1.0
                    retry_after = min(retry_after, _MAX_RETRY_AFTER)
                    logger.warning(
                        "Model API error %d, retrying in %.1fs: %s",
                        response.status_code,
                        retry_after,
                        detail,
                    )
                    await asyncio.sleep(retry_after)
                    continue

                last_error = ModelBackendError(f"Model API error ({response.status_code}): {detail}")

            except httpx.TimeoutException as e:
                last_error = ModelBackendError(f"Model request timed out: {e}")
                if attempt == 0:
                    logger.warning("Model API timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                    continue
            except httpx.HTTPError as e:
                last_error = ModelBackendError(f"HTTP error: {e}")
            break

        raise last_error or ModelBackendError("Model call failed with unknown error")

    @staticmethod
    def _parse_response(response: httpx.Response) -> ModelResponse:
        try:
            data = response.json()
        except ValueError as e:
            raise ModelBackendError(f"Model API returned invalid JSON: {response.text[:200]}") from e
        if not isinstance(data, dict):
            raise ModelBackendError("Model API returned a non-object body")
        if data.get("error"):
            raise ModelBackendError(f"Model API returned error: {data['error']}")

        message = data.get("message")
        if not isinstance(message, dict):
            message = {}
        content = message.get("content")
        tool_calls = message.get("tool_calls")
        return ModelResponse(
            content=content if isinstance(content, str) else "",
            tool_calls=tool_calls if isinstance(tool_calls, list) else [],
        )
