import pytest
from pydantic import BaseModel

from chain_agent.agent.registry import ToolRegistry, ToolSpec
from chain_agent.agent.validator import ChainValidator
from chain_agent.config import ChainConfig
from chain_agent.errors import ToolSequenceError, UnknownToolError
from chain_agent.types import SideEffect, ToolCall


class AnyInput(BaseModel):
    value: int = 0


def _noop(data: AnyInput, context) -> dict:
    return {}


def _registry() -> ToolRegistry:
    registry = ToolRegistry()
    for name in ("list_items", "summarize", "lookup"):
        registry.register(
            ToolSpec(name=name, description=name, args_schema=AnyInput, handler=_noop)
        )
    registry.register(
        ToolSpec(
            name="write",
            description="write",
            args_schema=AnyInput,
            handler=_noop,
            side_effect=SideEffect.MUTATING,
        )
    )
    return registry


def test_valid_chain_passes_cleanly() -> None:
    validator = ChainValidator(_registry())

    report = validator.validate(
        [ToolCall("list_items"), ToolCall("lookup"), ToolCall("summarize")]
    )

    assert report.clean
    assert report.length == 3


def test_unknown_tool_reported_with_positions() -> None:
    validator = ChainValidator(_registry())

    with pytest.raises(UnknownToolError) as excinfo:
        validator.validate([ToolCall("list_items"), ToolCall("nope"), ToolCall("nope")])

    assert excinfo.value.name == "nope"
    assert excinfo.value.positions == [1, 2]


def test_adjacent_same_tool_rejected_regardless_of_parameters() -> None:
    validator = ChainValidator(_registry())

    with pytest.raises(ToolSequenceError) as excinfo:
        validator.validate(
            [
                ToolCall("lookup"),
                ToolCall("list_items", {"value": 1}),
                ToolCall("list_items", {"value": 2}),
            ]
        )

    assert excinfo.value.code == "ADJACENT_DUPLICATE"
    assert excinfo.value.positions == [1, 2]
    assert excinfo.value.tools == ["list_items"]


def test_non_adjacent_exact_duplicates_are_reported_not_fatal() -> None:
    validator = ChainValidator(_registry())

    report = validator.validate(
        [
            ToolCall("list_items", {"value": 1}),
            ToolCall("lookup"),
            ToolCall("list_items", {"value": 1}),
            ToolCall("lookup", {"value": 9}),
        ]
    )

    assert report.duplicates == [(0, 2)]
    assert report.unsafe_duplicates == []


def test_repeated_mutating_call_flagged_unsafe() -> None:
    validator = ChainValidator(_registry())

    report = validator.validate(
        [ToolCall("write", {"value": 1}), ToolCall("lookup"), ToolCall("write", {"value": 1})]
    )

    assert report.unsafe_duplicates == [(0, 2)]


def test_chain_longer_than_limit_rejected() -> None:
    validator = ChainValidator(_registry(), ChainConfig(max_chain_length=3))
    calls = [
        ToolCall("list_items" if index % 2 == 0 else "lookup", {"value": index})
        for index in range(5)
    ]

    with pytest.raises(ToolSequenceError) as excinfo:
        validator.validate(calls)

    assert excinfo.value.code == "CHAIN_TOO_LONG"
    assert excinfo.value.positions == [3, 4]


def test_unknown_checked_before_adjacency() -> None:
    validator = ChainValidator(_registry())

    with pytest.raises(UnknownToolError):
        validator.validate([ToolCall("nope"), ToolCall("nope")])


class SendInput(BaseModel):
    conversation_id: str | None = None
    recipient_id: str | None = None


def _send_registry() -> ToolRegistry:
    registry = _registry()
    registry.register(
        ToolSpec(
            name="send",
            description="send",
            args_schema=SendInput,
            handler=_noop,
            side_effect=SideEffect.MUTATING,
            target_parameters=("conversation_id", "recipient_id"),
            target_providers=("lookup",),
        )
    )
    return registry


def test_send_without_target_needs_earlier_provider() -> None:
    validator = ChainValidator(_send_registry())

    with pytest.raises(ToolSequenceError) as excinfo:
        validator.validate([ToolCall("list_items"), ToolCall("send")])

    assert excinfo.value.code == "MISSING_TARGET"
    assert excinfo.value.positions == [1]


@pytest.mark.parametrize(
    "calls",
    [
        [ToolCall("lookup"), ToolCall("send")],
        [ToolCall("send", {"recipient_id": "u2"})],
        [ToolCall("send", {"conversation_id": "c1"})],
    ],
)
def test_send_target_satisfied(calls) -> None:
    report = ChainValidator(_send_registry()).validate(calls)

    assert report.length == len(calls)
