"""Error taxonomy for chain planning and execution."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any


class ChainError(Exception):
    """Base class for orchestration errors.

    `code` is an internal diagnostic code; `user_message` is the generic text
    surfaced to the caller.
    """

    code = "CHAIN_ERROR"
    user_message = "Sorry, I couldn't complete that request."

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code

    @property
    def kind(self) -> str:
        return type(self).__name__


class UnknownToolError(ChainError):
    code = "UNKNOWN_TOOL"
    user_message = "Sorry, I don't know how to do that."

    def __init__(self, name: str, *, positions: Sequence[int] = ()) -> None:
        self.name = name
        self.positions = list(positions)
        where = f" at positions {self.positions}" if self.positions else ""
        super().__init__(f"Unknown tool: {name}{where}")


class ParameterValidationError(ChainError):
    code = "INVALID_PARAMETERS"
    user_message = "Sorry, I couldn't work out the details for that request."

    def __init__(self, tool: str, errors: list[dict[str, Any]] | str) -> None:
        self.tool = tool
        self.errors = errors
        super().__init__(f"Invalid parameters for {tool}: {errors}")


class ToolSequenceError(ChainError):
    """Structural chain violation. Always fatal for the request."""

    code = "INVALID_SEQUENCE"
    user_message = "Sorry, I couldn't plan the steps for that request."

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        positions: Sequence[int] = (),
        tools: Sequence[str] = (),
    ) -> None:
        self.positions = list(positions)
        self.tools = list(tools)
        super().__init__(message, code=code)


class ToolExecutionError(ChainError):
    code = "TOOL_FAILED"
    user_message = "Sorry, something went wrong while running that request."

    def __init__(self, tool: str, message: str, *, source_id: str | None = None) -> None:
        self.tool = tool
        self.source_id = source_id
        super().__init__(f"{tool} failed: {message}")


class AllPartitionsFailedError(ChainError):
    code = "ALL_PARTITIONS_FAILED"
    user_message = "Sorry, I couldn't analyze any of those conversations."

    def __init__(self, failed_sources: Sequence[str]) -> None:
        self.failed_sources = list(failed_sources)
        super().__init__(
            f"All {len(self.failed_sources)} partitions failed: {self.failed_sources}"
        )


class PlannerParseError(ChainError):
    code = "PLANNER_PARSE_ERROR"
    user_message = "Sorry, I couldn't understand that command."


_BY_CODE: dict[str, type[ChainError]] = {
    error_type.code: error_type
    for error_type in (
        UnknownToolError,
        ParameterValidationError,
        ToolSequenceError,
        ToolExecutionError,
        AllPartitionsFailedError,
        PlannerParseError,
    )
}
_BY_CODE.update(
    dict.fromkeys(
        ("ADJACENT_DUPLICATE", "CHAIN_TOO_LONG", "SEQUENCE_EXHAUSTED", "MISSING_TARGET"),
        ToolSequenceError,
    )
)


def error_type_for(code: str | None) -> type[ChainError]:
    """Error class whose `kind` and `user_message` describe a diagnostic code."""
    return _BY_CODE.get(code or "", ToolExecutionError)
