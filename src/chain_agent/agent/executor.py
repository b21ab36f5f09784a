"""Runs chain entries, sequentially or fanned out over partitions."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from time import perf_counter
from typing import Any, TypeVar

from pydantic import BaseModel

from chain_agent.agent.aggregator import ResultAggregator
from chain_agent.agent.registry import FanOut, ToolRegistry, ToolSpec, as_tool_result
from chain_agent.config import ChainConfig
from chain_agent.errors import (
    AllPartitionsFailedError,
    ParameterValidationError,
    ToolExecutionError,
)
from chain_agent.types import (
    Chain,
    ChainEntry,
    NextAction,
    Partition,
    PartitionResult,
    ToolCall,
    ToolContext,
    ToolResult,
)

logger = logging.getLogger(__name__)

_REFERENCE = re.compile(r"^\$(?P<step>last|\d+)(?P<path>(?:\.[^.]+)*)$")

T = TypeVar("T")


class ChainExecutor:
    """Executes one chain entry at a time against the registry.

    Parameter references of the form `$<step>.<path>` (for example
    `$0.data.conversations.0.id` or `$last.data.conversation_id`) are resolved
    against earlier results before the call is validated.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        config: ChainConfig | None = None,
        aggregator: ResultAggregator | None = None,
    ) -> None:
        self.registry = registry
        self.config = config or ChainConfig()
        self.aggregator = aggregator or ResultAggregator()

    def prepare(self, call: ToolCall, chain: Chain) -> ToolCall:
        """Resolve references and inherited parameters, then validate them."""
        spec = self.registry.lookup(call.tool)
        parameters = _resolve(call.parameters, chain, call.tool)
        # Alternative targets come together from the newest result carrying any of them.
        targets: dict[str, Any] = {}
        if not spec.has_target(parameters):
            targets = _latest_carrying(chain, spec.target_parameters)
        for name in spec.inherit_parameters:
            if parameters.get(name) in (None, ""):
                if name in spec.target_parameters:
                    inherited = targets.get(name)
                else:
                    inherited = _latest_value(chain, name)
                if inherited is not None:
                    parameters[name] = inherited
                    logger.info("Mapped %s into %s from an earlier result", name, call.tool)
        spec.parse(parameters)
        return ToolCall(tool=call.tool, parameters=parameters)

    def execute(
        self, entry: ChainEntry, chain: Chain, context: ToolContext
    ) -> ToolResult:
        spec = self.registry.lookup(entry.call.tool)
        call_context = ToolContext(
            requester_id=context.requester_id,
            conversation_id=context.conversation_id,
            prior_results=list(chain.results),
            request_id=context.request_id,
            chain_position=_position_of(entry, chain),
        )
        start = perf_counter()
        if spec.is_fan_out:
            result = self._run_fan_out(spec, entry.call.parameters, call_context)
        else:
            result = self._run_sequential(spec, entry.call.parameters, call_context)
        latency_ms = (perf_counter() - start) * 1000.0

        result.metadata.setdefault("tool_name", spec.name)
        result.metadata.setdefault("chain_position", call_context.chain_position)
        result.metadata["execution_ms"] = latency_ms
        entry.result = result
        self.registry.notify(spec.name, entry.call.parameters, result, latency_ms)
        logger.info(
            "Executed %s (success=%s, next_action=%s, %.1f ms)",
            spec.name,
            result.success,
            result.next_action.value,
            latency_ms,
        )
        return result

    def _run_sequential(
        self, spec: ToolSpec, parameters: dict[str, Any], context: ToolContext
    ) -> ToolResult:
        handler = spec.handler
        if handler is None:
            raise TypeError(f"Tool {spec.name} has no direct handler")
        args = spec.parse(parameters)
        try:
            output = _call_with_timeout(
                lambda: handler(args, context), self.config.tool_timeout_seconds
            )
        except FutureTimeoutError:
            error = ToolExecutionError(
                spec.name, f"timed out after {self.config.tool_timeout_seconds}s"
            )
            return self._failed(spec, error)
        except Exception as exc:
            logger.exception("Tool %s raised", spec.name)
            return self._failed(spec, ToolExecutionError(spec.name, str(exc)))
        return as_tool_result(output)

    def _failed(self, spec: ToolSpec, error: ToolExecutionError) -> ToolResult:
        next_action = NextAction.ERROR if spec.critical else NextAction.CONTINUE
        result = ToolResult.failure(
            str(error),
            next_action=next_action,
            instruction=f"{spec.name} failed. Try a different approach or tell the user it failed.",
        )
        result.metadata["error_code"] = error.code
        return result

    def _run_fan_out(
        self, spec: ToolSpec, parameters: dict[str, Any], context: ToolContext
    ) -> ToolResult:
        fan_out = _fan_out_of(spec)
        args = spec.parse(parameters)
        query = str(getattr(args, "query", "") or "")
        try:
            partitions = fan_out.partitioner(args, context)
        except Exception as exc:
            logger.exception("Partitioning for %s failed", spec.name)
            return self._failed(spec, ToolExecutionError(spec.name, str(exc)))

        if not partitions:
            return ToolResult(
                success=True,
                data=None,
                next_action=NextAction.COMPLETE,
                instruction_for_planner=(
                    f"No relevant conversations found for {query!r}. "
                    "Tell the user nothing matched."
                ),
                confidence=0.0,
                metadata={"partitions_total": 0, "partitions_succeeded": 0},
            )

        sub_results = self.run_partitions(spec, args, partitions, context)
        try:
            answer = self.aggregator.aggregate(sub_results, query)
        except AllPartitionsFailedError as exc:
            result = ToolResult.failure(
                str(exc),
                instruction="Every conversation failed to analyze. Inform the user.",
            )
            result.metadata.update(
                {
                    "error_code": exc.code,
                    "partitions_total": len(partitions),
                    "partitions_succeeded": 0,
                }
            )
            return result

        return ToolResult(
            success=True,
            data=answer,
            next_action=NextAction.COMPLETE,
            instruction_for_planner=answer.combined_text,
            confidence=answer.confidence,
            metadata={
                "partitions_total": answer.total,
                "partitions_succeeded": answer.succeeded,
                "aggregated": True,
            },
        )

    def run_partitions(
        self,
        spec: ToolSpec,
        args: BaseModel,
        partitions: list[Partition],
        context: ToolContext,
    ) -> list[PartitionResult]:
        """Run every partition concurrently; failures stay local to a partition.

        The timeout applies to each partition from the moment its worker
        starts, so partitions queued behind busy workers keep their full budget.
        """
        worker = _fan_out_of(spec).worker
        timeout = self.config.tool_timeout_seconds
        workers = min(self.config.fan_out_max_workers, len(partitions))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=spec.name) as pool:
            futures = [
                pool.submit(_run_partition, spec.name, worker, args, partition, context, timeout)
                for partition in partitions
            ]
            results = [future.result() for future in futures]

        succeeded = sum(1 for item in results if item.success)
        logger.info("%s: %d of %d partitions succeeded", spec.name, succeeded, len(results))
        return results


def _run_partition(
    tool: str,
    worker: Callable[[BaseModel, Partition, ToolContext], ToolResult],
    args: BaseModel,
    partition: Partition,
    context: ToolContext,
    timeout: float,
) -> PartitionResult:
    try:
        result = as_tool_result(
            _call_with_timeout(lambda: worker(args, partition, context), timeout)
        )
    except FutureTimeoutError:
        # The worker thread is abandoned and its late result discarded.
        logger.warning("Partition %s of %s timed out after %ss", partition.source_id, tool, timeout)
        result = ToolResult.failure(
            str(ToolExecutionError(tool, "timed out", source_id=partition.source_id))
        )
    except Exception as exc:
        logger.error("Partition %s of %s failed: %s", partition.source_id, tool, exc)
        result = ToolResult.failure(
            str(ToolExecutionError(tool, str(exc), source_id=partition.source_id))
        )
    return _stamped(partition, result)


def _stamped(partition: Partition, result: ToolResult) -> PartitionResult:
    result.source_id = partition.source_id
    result.source_label = partition.source_label
    return PartitionResult(
        source_id=partition.source_id,
        source_label=partition.source_label,
        position=partition.position,
        result=result,
    )


def _fan_out_of(spec: ToolSpec) -> FanOut:
    if spec.fan_out is None:
        raise TypeError(f"Tool {spec.name} is not a fan-out tool")
    return spec.fan_out


def _call_with_timeout(fn: Callable[[], T], timeout: float) -> T:
    pool = ThreadPoolExecutor(max_workers=1)
    try:
        return pool.submit(fn).result(timeout=timeout)
    finally:
        pool.shutdown(wait=False, cancel_futures=True)


def _position_of(entry: ChainEntry, chain: Chain) -> int:
    for position, candidate in enumerate(chain.entries):
        if candidate is entry:
            return position
    return len(chain.entries)


def _resolve(value: Any, chain: Chain, tool: str) -> Any:
    if isinstance(value, dict):
        return {key: _resolve(item, chain, tool) for key, item in value.items()}
    if isinstance(value, list):
        return [_resolve(item, chain, tool) for item in value]
    if isinstance(value, str):
        match = _REFERENCE.match(value)
        if match:
            return _lookup_reference(match, chain, tool, value)
    return value


def _lookup_reference(match: re.Match[str], chain: Chain, tool: str, raw: str) -> Any:
    step = match.group("step")
    if not chain.entries:
        raise ParameterValidationError(tool, f"Reference {raw} has no earlier step")
    entry = chain.entries[-1] if step == "last" else _entry_at(chain, int(step), tool, raw)
    if entry.result is None:
        raise ParameterValidationError(tool, f"Reference {raw} points at an unexecuted step")

    current: Any = entry.result
    for segment in filter(None, match.group("path").split(".")):
        try:
            if isinstance(current, dict):
                current = current[segment]
            elif isinstance(current, (list, tuple)):
                current = current[int(segment)]
            else:
                current = getattr(current, segment)
        except (KeyError, IndexError, ValueError, AttributeError) as exc:
            raise ParameterValidationError(
                tool, f"Reference {raw} could not be resolved at {segment!r}"
            ) from exc
    return current


def _entry_at(chain: Chain, index: int, tool: str, raw: str) -> ChainEntry:
    if index >= len(chain.entries):
        raise ParameterValidationError(tool, f"Reference {raw} points past the chain")
    return chain.entries[index]


def _latest_value(chain: Chain, name: str) -> Any:
    for result in reversed(chain.results):
        if result.success and isinstance(result.data, dict) and name in result.data:
            return result.data[name]
    return None


def _latest_carrying(chain: Chain, names: tuple[str, ...]) -> dict[str, Any]:
    if not names:
        return {}
    for result in reversed(chain.results):
        if result.success and isinstance(result.data, dict):
            found = {name: result.data[name] for name in names if name in result.data}
            if found:
                return found
    return {}
