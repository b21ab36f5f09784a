import time

import pytest
from pydantic import BaseModel

from chain_agent.agent.executor import ChainExecutor
from chain_agent.agent.registry import FanOut, ToolRegistry, ToolSpec
from chain_agent.config import ChainConfig
from chain_agent.errors import ParameterValidationError
from chain_agent.types import (
    AggregatedAnswer,
    Chain,
    NextAction,
    Partition,
    ToolCall,
    ToolContext,
    ToolResult,
)


class QueryInput(BaseModel):
    query: str


class ItemInput(BaseModel):
    item_id: str


def _fan_out_spec(labels, *, failing=(), delays=None) -> ToolSpec:
    delays = delays or {}

    def _partition(args: QueryInput, context: ToolContext) -> list[Partition]:
        return [
            Partition(source_id=label.lower(), source_label=label, position=position)
            for position, label in enumerate(labels)
        ]

    def _worker(args: QueryInput, partition: Partition, context: ToolContext) -> ToolResult:
        time.sleep(delays.get(partition.source_label, 0.0))
        if partition.source_label in failing:
            raise RuntimeError(f"{partition.source_label} store unavailable")
        return ToolResult(
            success=True,
            data={"answer": f"{partition.source_label}: {args.query}"},
            confidence=0.9,
        )

    return ToolSpec(
        name="analyze_many",
        description="fan-out analysis",
        args_schema=QueryInput,
        fan_out=FanOut(partitioner=_partition, worker=_worker),
    )


def _run(registry: ToolRegistry, call: ToolCall, config: ChainConfig | None = None) -> ToolResult:
    executor = ChainExecutor(registry, config)
    chain = Chain()
    entry = chain.append(executor.prepare(call, chain))
    return executor.execute(entry, chain, ToolContext(requester_id="u1", request_id="r1"))


def test_fan_out_keeps_attribution_when_middle_partition_fails() -> None:
    registry = ToolRegistry()
    registry.register(
        _fan_out_spec(
            ["Alpha", "Beta", "Gamma"],
            failing={"Beta"},
            delays={"Alpha": 0.05},
        )
    )

    result = _run(registry, ToolCall("analyze_many", {"query": "who?"}))

    assert result.success
    assert result.next_action is NextAction.COMPLETE
    answer = result.data
    assert isinstance(answer, AggregatedAnswer)
    assert [(f.source_label, f.answer) for f in answer.per_source] == [
        ("Alpha", "Alpha: who?"),
        ("Gamma", "Gamma: who?"),
    ]
    assert answer.failed == ["beta"]
    assert result.metadata["partitions_total"] == 3
    assert result.metadata["partitions_succeeded"] == 2


def test_fan_out_two_sources_first_fails() -> None:
    def _partition(args: QueryInput, context: ToolContext) -> list[Partition]:
        return [
            Partition(source_id="alpha", source_label="Alpha", position=0),
            Partition(source_id="beta", source_label="Beta", position=1),
        ]

    def _worker(args: QueryInput, partition: Partition, context: ToolContext) -> ToolResult:
        if partition.source_id == "alpha":
            raise RuntimeError("analysis failed")
        return ToolResult(success=True, data={"answer": "X is coming."})

    registry = ToolRegistry()
    registry.register(
        ToolSpec(
            name="analyze_many",
            description="fan-out analysis",
            args_schema=QueryInput,
            fan_out=FanOut(partitioner=_partition, worker=_worker),
        )
    )

    result = _run(registry, ToolCall("analyze_many", {"query": "who is coming tonight"}))

    findings = result.data.per_source
    assert [(f.source_label, f.answer) for f in findings] == [("Beta", "X is coming.")]


def test_fan_out_timeout_counts_as_partition_failure() -> None:
    registry = ToolRegistry()
    registry.register(_fan_out_spec(["Alpha", "Beta"], delays={"Beta": 1.0}))

    started = time.perf_counter()
    result = _run(
        registry,
        ToolCall("analyze_many", {"query": "q"}),
        ChainConfig(tool_timeout_seconds=0.2),
    )

    assert time.perf_counter() - started < 0.9
    assert [f.source_label for f in result.data.per_source] == ["Alpha"]
    assert result.data.failed == ["beta"]


def test_fan_out_all_partitions_failed() -> None:
    registry = ToolRegistry()
    registry.register(_fan_out_spec(["Alpha", "Beta"], failing={"Alpha", "Beta"}))

    result = _run(registry, ToolCall("analyze_many", {"query": "q"}))

    assert not result.success
    assert result.next_action is NextAction.ERROR
    assert result.metadata["error_code"] == "ALL_PARTITIONS_FAILED"


def test_fan_out_without_partitions_completes() -> None:
    registry = ToolRegistry()
    registry.register(_fan_out_spec([]))

    result = _run(registry, ToolCall("analyze_many", {"query": "q"}))

    assert result.success
    assert result.next_action is NextAction.COMPLETE
    assert result.metadata["partitions_total"] == 0


def test_sequential_exception_becomes_failed_result() -> None:
    def _explode(data: ItemInput, context: ToolContext) -> ToolResult:
        raise RuntimeError("disk full")

    registry = ToolRegistry()
    registry.register(
        ToolSpec(name="fetch", description="fetch", args_schema=ItemInput, handler=_explode)
    )
    registry.register(
        ToolSpec(
            name="optional_fetch",
            description="fetch",
            args_schema=ItemInput,
            handler=_explode,
            critical=False,
        )
    )

    critical = _run(registry, ToolCall("fetch", {"item_id": "a"}))
    optional = _run(registry, ToolCall("optional_fetch", {"item_id": "a"}))

    assert not critical.success
    assert critical.next_action is NextAction.ERROR
    assert critical.metadata["error_code"] == "TOOL_FAILED"
    assert "disk full" in critical.error
    assert optional.next_action is NextAction.CONTINUE


def test_sequential_timeout() -> None:
    def _slow(data: ItemInput, context: ToolContext) -> str:
        time.sleep(1.0)
        return "late"

    registry = ToolRegistry()
    registry.register(ToolSpec(name="slow", description="slow", args_schema=ItemInput, handler=_slow))

    result = _run(registry, ToolCall("slow", {"item_id": "a"}), ChainConfig(tool_timeout_seconds=0.1))

    assert not result.success
    assert "timed out" in result.error


def _chain_with_result(data) -> Chain:
    chain = Chain()
    entry = chain.append(ToolCall("list_items", {}))
    entry.result = ToolResult(success=True, data=data)
    return chain


def _item_registry(**overrides) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(
        ToolSpec(
            name="show_item",
            description="show",
            args_schema=ItemInput,
            handler=lambda data, context: data.item_id,
            **overrides,
        )
    )
    return registry


def test_prepare_resolves_step_references() -> None:
    executor = ChainExecutor(_item_registry())
    chain = _chain_with_result({"items": [{"id": "a1"}, {"id": "b2"}]})

    by_index = executor.prepare(ToolCall("show_item", {"item_id": "$0.data.items.1.id"}), chain)
    by_last = executor.prepare(ToolCall("show_item", {"item_id": "$last.data.items.0.id"}), chain)

    assert by_index.parameters == {"item_id": "b2"}
    assert by_last.parameters == {"item_id": "a1"}


@pytest.mark.parametrize(
    "reference",
    ["$0.data.items.5.id", "$0.data.missing", "$3.data.items.0.id"],
)
def test_prepare_rejects_unresolvable_reference(reference: str) -> None:
    executor = ChainExecutor(_item_registry())
    chain = _chain_with_result({"items": [{"id": "a1"}]})

    with pytest.raises(ParameterValidationError):
        executor.prepare(ToolCall("show_item", {"item_id": reference}), chain)


def test_prepare_inherits_missing_parameter_from_latest_result() -> None:
    executor = ChainExecutor(_item_registry(inherit_parameters=("item_id",)))
    chain = _chain_with_result({"item_id": "c3"})

    call = executor.prepare(ToolCall("show_item", {}), chain)

    assert call.parameters == {"item_id": "c3"}


def test_execute_passes_prior_results_and_position() -> None:
    seen: list[ToolContext] = []

    def _record(data: ItemInput, context: ToolContext) -> str:
        seen.append(context)
        return data.item_id

    registry = ToolRegistry()
    registry.register(ToolSpec(name="show_item", description="show", args_schema=ItemInput, handler=_record))
    executor = ChainExecutor(registry)
    chain = _chain_with_result({"item_id": "c3"})
    entry = chain.append(ToolCall("show_item", {"item_id": "c3"}))

    result = executor.execute(entry, chain, ToolContext(requester_id="u1", request_id="r1"))

    assert entry.result is result
    assert seen[0].chain_position == 1
    assert len(seen[0].prior_results) == 1
    assert result.metadata["tool_name"] == "show_item"


def test_fan_out_timeout_starts_when_partition_runs() -> None:
    labels = ["A", "B", "C", "D", "E"]
    registry = ToolRegistry()
    registry.register(_fan_out_spec(labels, delays={label: 0.3 for label in labels}))

    result = _run(
        registry,
        ToolCall("analyze_many", {"query": "q"}),
        ChainConfig(tool_timeout_seconds=0.5, fan_out_max_workers=4),
    )

    assert result.success
    assert result.data.failed == []
    assert [f.source_label for f in result.data.per_source] == labels


def test_fan_out_slow_partition_behind_queue_still_times_out() -> None:
    registry = ToolRegistry()
    registry.register(
        _fan_out_spec(["Alpha", "Beta", "Gamma"], delays={"Alpha": 0.2, "Gamma": 1.0})
    )

    result = _run(
        registry,
        ToolCall("analyze_many", {"query": "q"}),
        ChainConfig(tool_timeout_seconds=0.4, fan_out_max_workers=1),
    )

    assert [f.source_label for f in result.data.per_source] == ["Alpha", "Beta"]
    assert result.data.failed == ["gamma"]


def _send_registry() -> ToolRegistry:
    class SendInput(BaseModel):
        text: str
        conversation_id: str | None = None
        recipient_id: str | None = None

    registry = ToolRegistry()
    registry.register(
        ToolSpec(
            name="send",
            description="send",
            args_schema=SendInput,
            handler=lambda data, context: data.model_dump(),
            inherit_parameters=("conversation_id", "recipient_id"),
            target_parameters=("conversation_id", "recipient_id"),
        )
    )
    return registry


def test_prepare_takes_targets_from_newest_carrier() -> None:
    executor = ChainExecutor(_send_registry())
    chain = _chain_with_result({"conversation_id": "old-chat"})
    lookup = chain.append(ToolCall("lookup_contacts", {"query": "Kim"}))
    lookup.result = ToolResult(success=True, data={"recipient_id": "u9"})

    call = executor.prepare(ToolCall("send", {"text": "hi"}), chain)

    assert call.parameters == {"text": "hi", "recipient_id": "u9"}


def test_prepare_keeps_explicit_target() -> None:
    executor = ChainExecutor(_send_registry())
    chain = _chain_with_result({"recipient_id": "u9"})

    call = executor.prepare(ToolCall("send", {"text": "hi", "conversation_id": "c1"}), chain)

    assert call.parameters == {"text": "hi", "conversation_id": "c1"}
