"""Shared domain models."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class NextAction(str, Enum):
    CONTINUE = "continue"
    CLARIFICATION_NEEDED = "clarification_needed"
    COMPLETE = "complete"
    ERROR = "error"


class SideEffect(str, Enum):
    READ_ONLY = "read_only"
    MUTATING = "mutating"


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A planned tool invocation."""

    tool: str
    parameters: dict[str, Any] = field(default_factory=dict)

    def key(self) -> tuple[str, str]:
        """Identity used for exact-duplicate detection."""
        return self.tool, json.dumps(self.parameters, sort_keys=True, default=str)


@dataclass(slots=True)
class ToolResult:
    """Standardized result returned by every tool."""

    success: bool
    data: Any = None
    next_action: NextAction = NextAction.CONTINUE
    instruction_for_planner: str = ""
    confidence: float = 1.0
    source_id: str | None = None
    source_label: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.next_action = NextAction(self.next_action)
        self.confidence = min(max(float(self.confidence), 0.0), 1.0)

    @classmethod
    def failure(
        cls,
        error: str,
        *,
        next_action: NextAction = NextAction.ERROR,
        instruction: str = "",
        source_id: str | None = None,
        source_label: str | None = None,
    ) -> "ToolResult":
        return cls(
            success=False,
            next_action=next_action,
            instruction_for_planner=instruction,
            confidence=0.0,
            source_id=source_id,
            source_label=source_label,
            error=error,
        )


@dataclass(slots=True)
class ToolContext:
    """Context passed to every tool handler."""

    requester_id: str
    conversation_id: str | None = None
    prior_results: list[ToolResult] = field(default_factory=list)
    request_id: str = ""
    chain_position: int = 0


@dataclass(slots=True)
class ChainEntry:
    call: ToolCall
    result: ToolResult | None = None


@dataclass(slots=True)
class Chain:
    """Ordered tool calls for one request, annotated with their results."""

    entries: list[ChainEntry] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def calls(self) -> list[ToolCall]:
        return [entry.call for entry in self.entries]

    @property
    def results(self) -> list[ToolResult]:
        return [entry.result for entry in self.entries if entry.result is not None]

    @property
    def last(self) -> ChainEntry | None:
        return self.entries[-1] if self.entries else None

    def contains(self, call: ToolCall) -> bool:
        key = call.key()
        return any(entry.call.key() == key for entry in self.entries)

    def append(self, call: ToolCall) -> ChainEntry:
        entry = ChainEntry(call=call)
        self.entries.append(entry)
        return entry

    def tool_names(self) -> list[str]:
        return [entry.call.tool for entry in self.entries]

    def planner_view(self, preview_chars: int = 320) -> list[dict[str, Any]]:
        """Abbreviated per-step view handed to the planner."""
        view: list[dict[str, Any]] = []
        for position, entry in enumerate(self.entries):
            step: dict[str, Any] = {
                "step": position,
                "tool": entry.call.tool,
                "parameters": entry.call.parameters,
            }
            if entry.result is not None:
                result = entry.result
                step.update(
                    {
                        "success": result.success,
                        "next_action": result.next_action.value,
                        "instruction_for_planner": result.instruction_for_planner,
                        "result": _preview(result.data, preview_chars),
                    }
                )
                if result.error:
                    step["error"] = result.error
            view.append(step)
        return view


@dataclass(slots=True, frozen=True)
class Partition:
    """One independent unit of fan-out work, e.g. a single conversation."""

    source_id: str
    source_label: str
    position: int
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PartitionResult:
    """A fan-out sub-result stamped with the partition it was produced for."""

    source_id: str
    source_label: str
    position: int
    result: ToolResult

    @property
    def success(self) -> bool:
        return self.result.success


@dataclass(slots=True)
class SourceFinding:
    source_id: str
    source_label: str
    answer: Any
    confidence: float = 1.0


@dataclass(slots=True)
class AggregatedAnswer:
    query: str
    per_source: list[SourceFinding]
    failed: list[str] = field(default_factory=list)
    combined_text: str = ""
    confidence: float = 0.0

    @property
    def succeeded(self) -> int:
        return len(self.per_source)

    @property
    def total(self) -> int:
        return len(self.per_source) + len(self.failed)


@dataclass(slots=True)
class ToolTrace:
    """Trace record for an executed tool call."""

    name: str
    input_payload: dict[str, Any]
    output_preview: str
    latency_ms: float
    success: bool = True


def _preview(data: Any, max_length: int) -> str:
    if data is None:
        return ""
    if isinstance(data, str):
        text = data
    else:
        text = json.dumps(data, default=_json_default, ensure_ascii=False)
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def _json_default(value: Any) -> Any:
    if hasattr(value, "__dataclass_fields__"):
        return {name: getattr(value, name) for name in value.__dataclass_fields__}
    if isinstance(value, Enum):
        return value.value
    return str(value)
