"""Iterative chain construction: plan, check, validate, execute."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from chain_agent.agent.executor import ChainExecutor
from chain_agent.agent.planner import Planner, PlannerInput
from chain_agent.agent.validator import ChainValidator
from chain_agent.config import ChainConfig
from chain_agent.errors import ChainError, ParameterValidationError, ToolSequenceError
from chain_agent.types import Chain, NextAction, ToolCall, ToolContext, ToolResult

logger = logging.getLogger(__name__)


class BuildState(str, Enum):
    PLANNING = "planning"
    VALIDATING = "validating"
    EXECUTING = "executing"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class BuildResult:
    state: BuildState
    chain: Chain
    final_answer: str | None = None
    planner_round_trips: int = 0
    error: ChainError | None = None
    skipped: list[ToolCall] = field(default_factory=list)

    @property
    def last_result(self) -> ToolResult | None:
        return self.chain.results[-1] if self.chain.results else None


class ChainBuilder:
    """Drives the planner until the chain completes, stalls or fails.

    Each appended call is executed before the planner is consulted again, so
    the next decision always sees the freshest `instruction_for_planner`.
    Structural violations raise `ToolSequenceError`; everything the planner
    can recover from is fed back as a correction hint.
    """

    def __init__(
        self,
        *,
        planner: Planner,
        validator: ChainValidator,
        executor: ChainExecutor,
        config: ChainConfig | None = None,
    ) -> None:
        self.planner = planner
        self.validator = validator
        self.executor = executor
        self.config = config or ChainConfig()

    def build(
        self, request: str, context: ToolContext, chain: Chain | None = None
    ) -> BuildResult:
        """Run the planning loop for one request.

        `chain` may be supplied by the caller so that the partial chain stays
        inspectable when a `ToolSequenceError` aborts the request.
        """
        chain = chain if chain is not None else Chain()
        outcome = BuildResult(state=BuildState.PLANNING, chain=chain)
        budget = self.config.max_planner_round_trips
        hint: str | None = None

        while outcome.state is BuildState.PLANNING:
            if outcome.planner_round_trips >= budget:
                raise ToolSequenceError(
                    f"Planner did not finish within {budget} round trips",
                    code="SEQUENCE_EXHAUSTED",
                    tools=chain.tool_names(),
                )
            outcome.planner_round_trips += 1
            decision = self.planner.plan(
                PlannerInput(
                    original_request=request,
                    chain=chain.planner_view(self.config.result_preview_chars),
                    correction_hint=hint,
                )
            )
            hint = None

            proposed = decision.call
            if proposed is None:
                outcome.final_answer = decision.final_answer
                outcome.state = BuildState.DONE
                break

            hint = self._pre_append_check(proposed, chain, outcome)
            if hint is not None:
                continue
            try:
                call = self.executor.prepare(proposed, chain)
            except ParameterValidationError as exc:
                logger.info("Rejected %s: %s", proposed.tool, exc)
                hint = f"Your last call to {exc.tool} had invalid parameters: {exc.errors}. Fix them."
                continue
            if chain.contains(call):
                outcome.skipped.append(call)
                hint = _already_done_hint(call)
                continue

            outcome.state = BuildState.VALIDATING
            self.validator.validate([*chain.calls, call])
            entry = chain.append(call)

            outcome.state = BuildState.EXECUTING
            result = self.executor.execute(entry, chain, context)
            self._assert_invariants(chain)
            outcome.state = _next_state(result)

        if outcome.state is BuildState.FAILED:
            last = outcome.last_result
            logger.warning(
                "Chain failed at %s: %s",
                chain.tool_names()[-1] if chain.entries else None,
                last.error if last else None,
            )
        logger.info(
            "Chain finished in state %s with tools %s after %d planner round trips",
            outcome.state.value,
            chain.tool_names(),
            outcome.planner_round_trips,
        )
        return outcome

    def _pre_append_check(
        self, call: ToolCall, chain: Chain, outcome: BuildResult
    ) -> str | None:
        if chain.contains(call):
            logger.info("Skipping repeated call %s", call.tool)
            outcome.skipped.append(call)
            return _already_done_hint(call)
        last = chain.last
        if last is not None and last.call.tool == call.tool:
            logger.info("Rejected consecutive call to %s", call.tool)
            return (
                f"You just called {call.tool}. Do not call the same tool twice in a "
                "row; use its result above and choose a different tool or finish."
            )
        return None

    def _assert_invariants(self, chain: Chain) -> None:
        names = chain.tool_names()
        for position in range(1, len(names)):
            if names[position] == names[position - 1]:
                raise ToolSequenceError(
                    f"Adjacent duplicate {names[position]} in built chain",
                    code="ADJACENT_DUPLICATE",
                    positions=[position - 1, position],
                    tools=[names[position]],
                )


def _next_state(result: ToolResult) -> BuildState:
    if result.next_action is NextAction.ERROR:
        return BuildState.FAILED
    if result.next_action in (NextAction.COMPLETE, NextAction.CLARIFICATION_NEEDED):
        return BuildState.DONE
    return BuildState.PLANNING


def _already_done_hint(call: ToolCall) -> str:
    return (
        f"{call.tool} was already called with these parameters; its result is "
        "in the steps above. Continue from it."
    )
