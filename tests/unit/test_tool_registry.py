import pytest
from pydantic import BaseModel, Field

from chain_agent.agent.registry import ToolRegistry, ToolSpec
from chain_agent.errors import ParameterValidationError, UnknownToolError
from chain_agent.types import NextAction, SideEffect, ToolContext, ToolResult


class EchoInput(BaseModel):
    value: int = Field(ge=1)


def _handler(data: EchoInput, context: ToolContext) -> str:
    return str(data.value)


def _spec(**overrides) -> ToolSpec:
    fields = {
        "name": "echo",
        "description": "echo positive int",
        "args_schema": EchoInput,
        "handler": _handler,
    }
    fields.update(overrides)
    return ToolSpec(**fields)


def test_tool_registry_validation() -> None:
    registry = ToolRegistry()
    registry.register(_spec())
    context = ToolContext(requester_id="u1")

    result = registry.invoke("echo", {"value": 3}, context)

    assert result.success
    assert result.data == "3"
    assert result.next_action is NextAction.CONTINUE

    with pytest.raises(ParameterValidationError) as excinfo:
        registry.invoke("echo", {"value": 0}, context)
    assert excinfo.value.tool == "echo"
    assert excinfo.value.errors[0]["loc"] == ("value",)


def test_duplicate_tool_registration_rejected() -> None:
    registry = ToolRegistry()
    spec = _spec()

    registry.register(spec)
    with pytest.raises(ValueError):
        registry.register(spec)


def test_unknown_tool_lookup_and_invoke() -> None:
    registry = ToolRegistry()

    with pytest.raises(UnknownToolError):
        registry.lookup("missing")
    with pytest.raises(UnknownToolError):
        registry.invoke("missing", {}, ToolContext(requester_id="u1"))
    assert "missing" not in registry


def test_tool_result_passthrough_and_side_effect_class() -> None:
    def _write(data: EchoInput, context: ToolContext) -> ToolResult:
        return ToolResult(success=True, data={"written": data.value}, next_action="complete")

    registry = ToolRegistry()
    registry.register(_spec(name="write", handler=_write, side_effect=SideEffect.MUTATING))

    spec = registry.lookup("write")
    result = registry.invoke("write", {"value": 2}, ToolContext(requester_id="u1"))

    assert spec.mutating
    assert result.next_action is NextAction.COMPLETE
    assert result.data == {"written": 2}


def test_spec_without_handler_or_fan_out_rejected() -> None:
    registry = ToolRegistry()
    with pytest.raises(ValueError):
        registry.register(_spec(handler=None))


def test_langchain_export_keeps_schema() -> None:
    registry = ToolRegistry()
    registry.register(_spec())

    tools = registry.as_langchain_tools()

    assert [tool.name for tool in tools] == ["echo"]
    assert tools[0].args_schema is EchoInput


def test_confidence_is_clamped() -> None:
    assert ToolResult(success=True, confidence=1.7).confidence == 1.0
    assert ToolResult(success=True, confidence=-0.2).confidence == 0.0
