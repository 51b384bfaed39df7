"""Tests for the tool interface and registry."""

from typing import Any

import pytest

from aimate.tools.base import Tool, ToolResult
from aimate.tools.registry import ToolRegistry


class EchoTool(Tool):
    """Echoes its input back."""

    @property
    def name(self) -> str:
        return "echo"

    @property
    def description(self) -> str:
        return "Echo text"

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "text": {"type": "string"},
                "times": {"type": "integer", "minimum": 1, "maximum": 3},
                "mode": {"type": "string", "enum": ["plain", "upper"]},
            },
            "required": ["text"],
        }

    async def execute(self, **kwargs: Any) -> ToolResult:
        text = kwargs["text"]
        if kwargs.get("mode") == "upper":
            text = text.upper()
        return ToolResult(success=True, output=text * kwargs.get("times", 1))


class FailingTool(EchoTool):
    """Raises on every call."""

    @property
    def name(self) -> str:
        return "fail"

    async def execute(self, **kwargs: Any) -> ToolResult:
        raise RuntimeError("boom")


class TestValidateArgs:
    """Tests for Tool.validate_args."""

    def test_valid(self):
        assert EchoTool().validate_args({"text": "hi", "times": 2}) == (True, None)

    def test_missing_required(self):
        assert EchoTool().validate_args({}) == (False, "Missing required argument: text")

    def test_unknown_argument(self):
        assert EchoTool().validate_args({"text": "hi", "loud": True}) == (
            False,
            "Unknown argument: loud",
        )

    def test_wrong_type(self):
        valid, error = EchoTool().validate_args({"text": 5})
        assert not valid
        assert error == "Argument 'text' must be of type string"

    def test_bool_is_not_integer(self):
        valid, error = EchoTool().validate_args({"text": "hi", "times": True})
        assert not valid
        assert error == "Argument 'times' must be of type integer"

    def test_enum(self):
        valid, error = EchoTool().validate_args({"text": "hi", "mode": "shout"})
        assert not valid
        assert error == "Argument 'mode' must be one of: plain, upper"

    @pytest.mark.parametrize(
        "times,message",
        [(0, "Argument 'times' must be >= 1"), (4, "Argument 'times' must be <= 3")],
    )
    def test_bounds(self, times, message):
        assert EchoTool().validate_args({"text": "hi", "times": times}) == (False, message)


class TestToolRegistry:
    """Tests for ToolRegistry."""

    def test_register_and_get(self):
        registry = ToolRegistry()
        tool = EchoTool()
        registry.register(tool)

        assert registry.get("echo") is tool
        assert registry.list_tools() == ["echo"]
        assert registry.get("missing") is None

    def test_register_duplicate(self):
        registry = ToolRegistry()
        registry.register(EchoTool())
        with pytest.raises(ValueError):
            registry.register(EchoTool())

    def test_unregister(self):
        registry = ToolRegistry()
        registry.register(EchoTool())
        registry.unregister("echo")
        registry.unregister("echo")
        assert registry.list_tools() == []

    def test_schema(self):
        registry = ToolRegistry()
        registry.register(EchoTool())

        schema = registry.get_tools_schema()

        assert schema == [
            {
                "type": "function",
                "function": {
                    "name": "echo",
                    "description": "Echo text",
                    "parameters": EchoTool().parameters,
                },
            }
        ]

    @pytest.mark.asyncio
    async def test_dispatch(self):
        registry = ToolRegistry()
        registry.register(EchoTool())

        result = await registry.dispatch("echo", {"text": "ab", "times": 2, "mode": "upper"})

        assert result.success
        assert result.output == "ABAB"

    @pytest.mark.asyncio
    async def test_dispatch_unknown_tool(self):
        result = await ToolRegistry().dispatch("nope", {})
        assert not result.success
        assert result.error == "Unknown tool: nope"

    @pytest.mark.asyncio
    async def test_dispatch_invalid_args(self):
        registry = ToolRegistry()
        registry.register(EchoTool())

        result = await registry.dispatch("echo", {"times": 1})

        assert not result.success
        assert result.error == "Missing required argument: text"

    @pytest.mark.asyncio
    async def test_dispatch_tool_failure(self):
        registry = ToolRegistry()
        registry.register(FailingTool())

        result = await registry.dispatch("fail", {"text": "hi"})

        assert not result.success
        assert result.error == "Tool execution failed: boom"
