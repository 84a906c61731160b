"""Unit tests for AgentRunner plumbing: model client, parsing, executors.

The chat API is served by httpx.MockTransport; the tool loop itself is
covered in test_tool_loop.py.
"""

import json

import httpx
import pytest

from palaver.api.runner import AgentRunner, ModelBackendError, limit_message
from palaver.api.tools import ToolExecutor
from palaver.storage.schemas import Event, EventKind, Role, ToolInvocation
from palaver.workspace import Workspace


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _chat_body(content: str = "", tool_calls: list | None = None) -> dict:
    message: dict = {"role": "assistant", "content": content}
    if tool_calls is not None:
        message["tool_calls"] = tool_calls
    return {"model": "test-model", "message": message, "done": True}


def _runner_with_transport(event_log, workspaces, settings, handler) -> AgentRunner:
    runner = AgentRunner(event_log, workspaces, settings)
    runner._http = httpx.AsyncClient(
        base_url="http://ollama.test",
        transport=httpx.MockTransport(handler),
    )
    return runner


MESSAGES = [{"role": "user", "content": "hi"}]


# ---------------------------------------------------------------------------
# _call_model
# ---------------------------------------------------------------------------


class TestCallModel:
    """HTTP behaviour of the chat API call."""

    @pytest.mark.asyncio
    async def test_request_payload(self, event_log, workspaces, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_chat_body("hello"))

        runner = _runner_with_transport(event_log, workspaces, settings, handler)
        tools = [{"type": "function", "function": {"name": "fs.readText"}}]
        response = await runner._call_model(MESSAGES, tools, "test-model")
        await runner.close()

        assert response.content == "hello"
        assert response.tool_calls == []
        assert seen["path"] == "/api/chat"
        assert seen["body"] == {
            "model": "test-model",
            "messages": MESSAGES,
            "stream": False,
            "tools": tools,
        }

    @pytest.mark.asyncio
    async def test_no_tools_key_when_empty(self, event_log, workspaces, settings):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_chat_body("x"))

        runner = _runner_with_transport(event_log, workspaces, settings, handler)
        await runner._call_model(MESSAGES, None, "m")
        await runner.close()

        assert "tools" not in seen["body"]

    @pytest.mark.asyncio
    async def test_tool_calls_returned_raw(self, event_log, workspaces, settings):
        raw = [{"function": {"name": "fs.readText", "arguments": {"path": "a"}}}]
        runner = _runner_with_transport(
            event_log, workspaces, settings,
            lambda r: httpx.Response(200, json=_chat_body("", raw)),
        )
        response = await runner._call_model(MESSAGES, None, "m")
        await runner.close()

        assert response.tool_calls == raw

    @pytest.mark.asyncio
    async def test_retries_once_on_503(self, event_log, workspaces, settings):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                return httpx.Response(503, headers={"retry-after": "0"}, text="loading model")
            return httpx.Response(200, json=_chat_body("recovered"))

        runner = _runner_with_transport(event_log, workspaces, settings, handler)
        response = await runner._call_model(MESSAGES, None, "m")
        await runner.close()

        assert len(attempts) == 2
        assert response.content == "recovered"

    @pytest.mark.asyncio
    async def test_gives_up_after_second_failure(self, event_log, workspaces, settings):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(500, headers={"retry-after": "0"}, text="internal")

        runner = _runner_with_transport(event_log, workspaces, settings, handler)
        with pytest.raises(ModelBackendError, match="500"):
            await runner._call_model(MESSAGES, None, "m")
        await runner.close()

        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, event_log, workspaces, settings):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(404, text='{"error":"model not found"}')

        runner = _runner_with_transport(event_log, workspaces, settings, handler)
        with pytest.raises(ModelBackendError, match="404"):
            await runner._call_model(MESSAGES, None, "m")
        await runner.close()

        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_connection_error(self, event_log, workspaces, settings):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        runner = _runner_with_transport(event_log, workspaces, settings, handler)
        with pytest.raises(ModelBackendError, match="HTTP error"):
            await runner._call_model(MESSAGES, None, "m")
        await runner.close()

    @pytest.mark.asyncio
    async def test_timeout_retried_then_raised(self, event_log, workspaces, settings):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ReadTimeout("slow", request=request)

        runner = _runner_with_transport(event_log, workspaces, settings, handler)
        with pytest.raises(ModelBackendError, match="timed out"):
            await runner._call_model(MESSAGES, None, "m")
        await runner.close()

        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_not_started(self, event_log, workspaces, settings):
        runner = AgentRunner(event_log, workspaces, settings)
        with pytest.raises(ModelBackendError, match="not initialized"):
            await runner._call_model(MESSAGES, None, "m")

    @pytest.mark.asyncio
    async def test_start_and_close(self, event_log, workspaces, settings):
        runner = AgentRunner(event_log, workspaces, settings)
        await runner.start()
        assert runner._http is not None
        await runner.close()
        assert runner._http is None


# ---------------------------------------------------------------------------
# _parse_response
# ---------------------------------------------------------------------------


class TestParseResponse:
    """Chat API bodies that cannot be used."""

    def test_invalid_json(self):
        with pytest.raises(ModelBackendError, match="invalid JSON"):
            AgentRunner._parse_response(httpx.Response(200, text="<html>proxy error</html>"))

    def test_non_object_body(self):
        with pytest.raises(ModelBackendError, match="non-object"):
            AgentRunner._parse_response(httpx.Response(200, json=["a"]))

    def test_error_field(self):
        with pytest.raises(ModelBackendError, match="out of memory"):
            AgentRunner._parse_response(httpx.Response(200, json={"error": "out of memory"}))

    def test_missing_message_is_empty_answer(self):
        response = AgentRunner._parse_response(httpx.Response(200, json={"done": True}))
        assert response.content == ""
        assert response.tool_calls == []

    def test_non_list_tool_calls_ignored(self):
        body = {"message": {"content": "hi", "tool_calls": {"name": "x"}}}
        response = AgentRunner._parse_response(httpx.Response(200, json=body))
        assert response.content == "hi"
        assert response.tool_calls == []


# ---------------------------------------------------------------------------
# Executors and context
# ---------------------------------------------------------------------------


class TestExecutorFactory:
    """Per-agent executor caching."""

    def test_requires_factory(self, event_log, workspaces, settings):
        runner = AgentRunner(event_log, workspaces, settings)
        with pytest.raises(RuntimeError, match="No executor factory"):
            runner.executor_for("default")

    def test_cached_per_agent(self, event_log, workspaces, settings):
        built = []

        def factory(agent_id):
            built.append(agent_id)
            return ToolExecutor()

        runner = AgentRunner(event_log, workspaces, settings)
        runner.set_executor_factory(factory)

        first = runner.executor_for("default")
        assert runner.executor_for("default") is first
        assert runner.executor_for("other") is not first
        assert built == ["default", "other"]


class TestBuildContext:
    """First-round model input."""

    def test_only_message_events(self, tmp_path):
        ws = Workspace(agent_id="a", root=tmp_path, persona="P", manifest="M")
        events = [
            Event(role=Role.USER, content="q"),
            Event(role=Role.ASSISTANT, kind=EventKind.TOOL_CALL, content="checking",
                  tool=ToolInvocation(name="fs.readText", args={"path": "x"})),
            Event(role=Role.SYSTEM, kind=EventKind.TOOL_RESULT, content="{}"),
            Event(role=Role.ASSISTANT, content="a"),
            Event(role=Role.ASSISTANT, content=limit_message(5), stop_reason="round_limit"),
        ]
        assert AgentRunner.build_context(ws, events) == [
            {"role": "system", "content": "P"},
            {"role": "system", "content": "M"},
            {"role": "user", "content": "q"},
            {"role": "assistant", "content": "a"},
            {"role": "assistant", "content": "Tool step limit reached (5)."},
        ]
