"""Tool registry built on Pydantic v2 models."""

from __future__ import annotations

import logging
from collections.abc import Callable
from time import perf_counter
from typing import Any

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from chain_agent.errors import ParameterValidationError, UnknownToolError
from chain_agent.types import (
    NextAction,
    Partition,
    SideEffect,
    ToolContext,
    ToolResult,
    ToolTrace,
)

logger = logging.getLogger(__name__)


class FanOut(BaseModel):
    """Distributes one tool call over independent partitions.

    `partitioner` lists the partitions for the validated arguments and
    `worker` produces one partition's sub-result. Workers run concurrently and
    must only touch their own partition's data.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    partitioner: Callable[[BaseModel, ToolContext], list[Partition]]
    worker: Callable[[BaseModel, Partition, ToolContext], ToolResult]


class ToolSpec(BaseModel):
    """Declarative tool specification for registration and validation."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    name: str = Field(min_length=1)
    description: str
    args_schema: type[BaseModel]
    handler: Callable[[BaseModel, ToolContext], Any] | None = None
    side_effect: SideEffect = SideEffect.READ_ONLY
    fan_out: FanOut | None = None
    critical: bool = True
    inherit_parameters: tuple[str, ...] = ()
    # At least one target parameter must be set unless a provider ran earlier.
    target_parameters: tuple[str, ...] = ()
    target_providers: tuple[str, ...] = ()
    tags: list[str] = Field(default_factory=list)

    def has_target(self, parameters: dict[str, Any]) -> bool:
        return any(parameters.get(name) not in (None, "") for name in self.target_parameters)

    @property
    def is_fan_out(self) -> bool:
        return self.fan_out is not None

    @property
    def mutating(self) -> bool:
        return self.side_effect is SideEffect.MUTATING

    def parse(self, payload: dict[str, Any]) -> BaseModel:
        try:
            return self.args_schema.model_validate(payload)
        except ValidationError as exc:
            raise ParameterValidationError(
                self.name, exc.errors(include_url=False)
            ) from exc

    def invoke(self, payload: dict[str, Any], context: ToolContext) -> ToolResult:
        if self.handler is None:
            raise TypeError(f"Tool {self.name} has no direct handler")
        data = self.parse(payload)
        return as_tool_result(self.handler(data, context))


class ToolRegistry:
    """Stores tool specs and exports LangChain-compatible tool objects.

    Populated at startup and treated as read-only afterwards.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}
        self._observer: Callable[[ToolTrace], None] | None = None

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        if spec.handler is None and spec.fan_out is None:
            raise ValueError(f"Tool {spec.name} needs a handler or a fan_out")
        self._tools[spec.name] = spec
        logger.info("Registered tool %s (%s)", spec.name, spec.side_effect.value)

    def lookup(self, name: str) -> ToolSpec:
        spec = self._tools.get(name)
        if spec is None:
            raise UnknownToolError(name)
        return spec

    def validate_parameters(self, name: str, payload: dict[str, Any]) -> BaseModel:
        return self.lookup(name).parse(payload)

    def set_observer(self, observer: Callable[[ToolTrace], None] | None) -> None:
        """Set an optional callback invoked after each tool execution."""
        self._observer = observer

    def invoke(
        self, name: str, payload: dict[str, Any], context: ToolContext
    ) -> ToolResult:
        spec = self.lookup(name)
        start = perf_counter()
        result = spec.invoke(payload, context)
        self.notify(spec.name, payload, result, (perf_counter() - start) * 1000.0)
        return result

    def notify(
        self,
        name: str,
        payload: dict[str, Any],
        result: ToolResult,
        latency_ms: float,
    ) -> None:
        if self._observer is None:
            return
        preview = result.instruction_for_planner or str(result.data)
        self._observer(
            ToolTrace(
                name=name,
                input_payload=payload,
                output_preview=preview[:320],
                latency_ms=latency_ms,
                success=result.success,
            )
        )

    def as_langchain_tools(self) -> list[StructuredTool]:
        tools: list[StructuredTool] = []
        for spec in self._tools.values():
            tools.append(
                StructuredTool.from_function(
                    name=spec.name,
                    description=spec.description,
                    args_schema=spec.args_schema,
                    func=_planning_only(spec.name),
                )
            )
        return tools

    def specs(self) -> list[ToolSpec]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools)


def as_tool_result(output: Any) -> ToolResult:
    """Wrap plain handler return values into a successful ToolResult."""
    if isinstance(output, ToolResult):
        return output
    return ToolResult(success=True, data=output, next_action=NextAction.CONTINUE)


def _planning_only(name: str) -> Callable[..., str]:
    # The planner only needs the schemas; execution goes through the executor.
    def _callable(**kwargs: Any) -> str:
        raise RuntimeError(f"{name} must be executed through the chain executor")

    return _callable
