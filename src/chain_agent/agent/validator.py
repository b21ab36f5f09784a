"""Structural checks for proposed tool chains."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from chain_agent.agent.registry import ToolRegistry
from chain_agent.config import ChainConfig
from chain_agent.errors import ToolSequenceError, UnknownToolError
from chain_agent.types import ToolCall

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ValidationReport:
    """Non-fatal findings for a structurally valid chain.

    `duplicates` holds (earlier, later) position pairs of exact repeats;
    `unsafe_duplicates` is the subset that repeats a mutating tool.
    """

    length: int
    duplicates: list[tuple[int, int]] = field(default_factory=list)
    unsafe_duplicates: list[tuple[int, int]] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.duplicates


class ChainValidator:
    """Pure validation of a chain against the registry and length bound."""

    def __init__(self, registry: ToolRegistry, config: ChainConfig | None = None) -> None:
        self.registry = registry
        self.config = config or ChainConfig()

    def validate(self, calls: Sequence[ToolCall]) -> ValidationReport:
        self._check_registered(calls)
        self._check_adjacent(calls)
        self._check_targets(calls)
        report = ValidationReport(length=len(calls))
        self._find_duplicates(calls, report)
        self._check_length(calls)
        return report

    def _check_targets(self, calls: Sequence[ToolCall]) -> None:
        for position, call in enumerate(calls):
            spec = self.registry.lookup(call.tool)
            if not spec.target_parameters or spec.has_target(call.parameters):
                continue
            if any(earlier.tool in spec.target_providers for earlier in calls[:position]):
                continue
            raise ToolSequenceError(
                f"{call.tool} at position {position} needs one of "
                f"{', '.join(spec.target_parameters)} or an earlier "
                f"{' or '.join(spec.target_providers)}",
                code="MISSING_TARGET",
                positions=[position],
                tools=[call.tool],
            )

    def _check_registered(self, calls: Sequence[ToolCall]) -> None:
        unknown: dict[str, list[int]] = {}
        for position, call in enumerate(calls):
            if call.tool not in self.registry:
                unknown.setdefault(call.tool, []).append(position)
        if unknown:
            name, positions = next(iter(unknown.items()))
            raise UnknownToolError(name, positions=positions)

    def _check_adjacent(self, calls: Sequence[ToolCall]) -> None:
        for position in range(1, len(calls)):
            if calls[position].tool == calls[position - 1].tool:
                tool = calls[position].tool
                raise ToolSequenceError(
                    f"Duplicate consecutive tool: {tool} appears twice in a row "
                    f"at positions {position - 1} and {position}",
                    code="ADJACENT_DUPLICATE",
                    positions=[position - 1, position],
                    tools=[tool],
                )

    def _find_duplicates(
        self, calls: Sequence[ToolCall], report: ValidationReport
    ) -> None:
        first_seen: dict[tuple[str, str], int] = {}
        for position, call in enumerate(calls):
            key = call.key()
            earlier = first_seen.get(key)
            if earlier is None:
                first_seen[key] = position
                continue
            pair = (earlier, position)
            report.duplicates.append(pair)
            if self.registry.lookup(call.tool).mutating:
                report.unsafe_duplicates.append(pair)
                logger.warning(
                    "Repeated mutating call %s at positions %s", call.tool, pair
                )

    def _check_length(self, calls: Sequence[ToolCall]) -> None:
        limit = self.config.max_chain_length
        if len(calls) > limit:
            raise ToolSequenceError(
                f"Chain length {len(calls)} exceeds the limit of {limit}",
                code="CHAIN_TOO_LONG",
                positions=list(range(limit, len(calls))),
                tools=[call.tool for call in calls[limit:]],
            )
