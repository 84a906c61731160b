"""Unit tests for palaver/api/tools.py -- ToolExecutor and ToolResult.

Registration, allow-list rejection, argument validation, error conversion
and the chat API ``tools`` metadata. No filesystem, no network.
"""

import pytest
from pydantic import BaseModel, ConfigDict

from palaver.api.normalizer import ToolCall
from palaver.api.tools import ToolError, ToolExecutor, ToolResult


class EchoArgs(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore")

    text: str
    times: int = 1


def _call(name: str, arguments) -> ToolCall:
    return ToolCall(correlation_id="call_test", tool_name=name, arguments=arguments)


@pytest.fixture
def echo_executor() -> ToolExecutor:
    ex = ToolExecutor()

    async def echo(args: EchoArgs):
        return {"echo": args.text * args.times}

    ex.register("test.echo", echo, EchoArgs, "Echo text back")
    return ex


# ---------------------------------------------------------------------------
# ToolResult
# ---------------------------------------------------------------------------


class TestToolResult:
    """ToolResult wire shape."""

    def test_success_wire(self):
        assert ToolResult.success({"a": 1}).to_wire() == {"ok": True, "result": {"a": 1}}

    def test_failure_wire(self):
        r = ToolResult.failure("nope")
        assert r.ok is False
        assert r.to_wire() == {"ok": False, "error": "nope"}


# ---------------------------------------------------------------------------
# ToolExecutor
# ---------------------------------------------------------------------------


class TestToolExecutor:
    """Dispatch, validation and error conversion."""

    def test_allowed(self, echo_executor):
        assert echo_executor.allowed == frozenset({"test.echo"})
        assert echo_executor.is_allowed("test.echo")
        assert not echo_executor.is_allowed("fs.writeText")

    @pytest.mark.asyncio
    async def test_success(self, echo_executor):
        result = await echo_executor.execute(_call("test.echo", {"text": "ab", "times": 2}))
        assert result.ok
        assert result.payload == {"echo": "abab"}

    @pytest.mark.asyncio
    async def test_unknown_tool_rejected(self, echo_executor):
        result = await echo_executor.execute(_call("fs.writeText", {"path": "x"}))
        assert not result.ok
        assert result.error == "tool not allowed: fs.writeText"

    @pytest.mark.asyncio
    async def test_unknown_sentinel_rejected(self, echo_executor):
        result = await echo_executor.execute(_call("unknown", {}))
        assert result.error == "tool not allowed: unknown"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("arguments", [None, "text", ["a"], 3])
    async def test_non_object_arguments(self, echo_executor, arguments):
        result = await echo_executor.execute(_call("test.echo", arguments))
        assert not result.ok
        assert result.error == "arguments must be an object"

    @pytest.mark.asyncio
    async def test_missing_field_named(self, echo_executor):
        result = await echo_executor.execute(_call("test.echo", {}))
        assert not result.ok
        assert result.error.startswith("invalid argument 'text':")

    @pytest.mark.asyncio
    async def test_wrong_type_named_without_coercion(self, echo_executor):
        result = await echo_executor.execute(_call("test.echo", {"text": "a", "times": "2"}))
        assert not result.ok
        assert "invalid argument 'times'" in result.error

    @pytest.mark.asyncio
    async def test_unknown_extra_fields_ignored(self, echo_executor):
        result = await echo_executor.execute(_call("test.echo", {"text": "a", "verbose": True}))
        assert result.ok

    @pytest.mark.asyncio
    async def test_tool_error_message_passed_through(self):
        ex = ToolExecutor()

        async def refuse(args: EchoArgs):
            raise ToolError("file not found: a.txt")

        ex.register("test.refuse", refuse, EchoArgs)
        result = await ex.execute(_call("test.refuse", {"text": "x"}))
        assert result.to_wire() == {"ok": False, "error": "file not found: a.txt"}

    @pytest.mark.asyncio
    async def test_unexpected_exception_contained(self):
        ex = ToolExecutor()

        async def crash(args: EchoArgs):
            raise KeyError("boom")

        ex.register("test.crash", crash, EchoArgs)
        result = await ex.execute(_call("test.crash", {"text": "x"}))
        assert not result.ok
        assert result.error.startswith("tool error:")
        assert "boom" in result.error

    def test_tool_definitions(self, echo_executor):
        defs = echo_executor.tool_definitions()
        assert len(defs) == 1
        d = defs[0]
        assert d["type"] == "function"
        assert d["function"]["name"] == "test.echo"
        assert d["function"]["description"] == "Echo text back"
        params = d["function"]["parameters"]
        assert params["type"] == "object"
        assert set(params["properties"]) == {"text", "times"}
        assert params["required"] == ["text"]
        assert "title" not in params

    def test_empty_executor_has_no_definitions(self):
        assert ToolExecutor().tool_definitions() == []
