"""Caller-facing entrypoint: one request in, one outcome out."""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any

from chain_agent.agent.builder import BuildResult, BuildState, ChainBuilder
from chain_agent.agent.executor import ChainExecutor
from chain_agent.agent.planner import Planner
from chain_agent.agent.registry import ToolRegistry
from chain_agent.agent.validator import ChainValidator
from chain_agent.config import ChainConfig
from chain_agent.errors import ChainError, ToolExecutionError, error_type_for
from chain_agent.obs.tracing import Timer, TraceStore
from chain_agent.types import AggregatedAnswer, Chain, NextAction, ToolContext, ToolTrace

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ChainOutcome:
    """Single batch result handed to the presentation layer."""

    success: bool
    action: str
    answer: str | None = None
    data: Any = None
    per_source: list[dict[str, Any]] = field(default_factory=list)
    chain: list[str] = field(default_factory=list)
    error_kind: str | None = None
    message: str | None = None
    diagnostic_code: str | None = None
    trace_id: str | None = None

    def as_payload(self) -> dict[str, Any]:
        payload = {key: value for key, value in asdict(self).items() if value is not None}
        if not self.success:
            # Failures carry no result collections.
            payload = {key: value for key, value in payload.items() if value != []}
        return payload


class ToolChainEngine:
    """Wires planner, validator, executor and builder for each request.

    The registry is the only state shared between requests; every call to
    `invoke` builds its own chain.
    """

    def __init__(
        self,
        *,
        planner: Planner,
        tool_registry: ToolRegistry,
        trace_store: TraceStore,
        config: ChainConfig | None = None,
    ) -> None:
        self.tool_registry = tool_registry
        self.trace_store = trace_store
        self.config = config or ChainConfig()
        self.executor = ChainExecutor(tool_registry, self.config)
        self.builder = ChainBuilder(
            planner=planner,
            validator=ChainValidator(tool_registry, self.config),
            executor=self.executor,
            config=self.config,
        )

    def invoke(
        self,
        request: str,
        *,
        requester_id: str,
        conversation_id: str | None = None,
    ) -> ChainOutcome:
        context = ToolContext(
            requester_id=requester_id,
            conversation_id=conversation_id,
            request_id=uuid.uuid4().hex,
        )
        chain = Chain()
        round_trips = 0

        with Timer() as timer:
            try:
                build = self.builder.build(request, context, chain)
            except ChainError as exc:
                logger.error("Request %s aborted: [%s] %s", context.request_id, exc.code, exc)
                outcome = _failure(exc, chain)
            else:
                round_trips = build.planner_round_trips
                outcome = _from_build(build)

        record = self.trace_store.create_record(
            request=request,
            requester_id=requester_id,
            outcome=outcome.action if outcome.success else outcome.diagnostic_code or "failed",
            success=outcome.success,
            tools=chain.tool_names(),
            tool_traces=_tool_traces(chain, self.config.result_preview_chars),
            planner_round_trips=round_trips,
            latency_ms=timer.elapsed_ms,
        )
        outcome.trace_id = record.trace_id
        return outcome


def _failure(error: ChainError, chain: Chain) -> ChainOutcome:
    return ChainOutcome(
        success=False,
        action="show_error",
        chain=chain.tool_names(),
        error_kind=error.kind,
        message=error.user_message,
        diagnostic_code=error.code,
    )


def _tool_traces(chain: Chain, preview_chars: int) -> list[ToolTrace]:
    traces: list[ToolTrace] = []
    for step in chain.planner_view(preview_chars):
        entry = chain.entries[step["step"]]
        result = entry.result
        traces.append(
            ToolTrace(
                name=entry.call.tool,
                input_payload=entry.call.parameters,
                output_preview=step.get("result", ""),
                latency_ms=float(result.metadata.get("execution_ms", 0.0)) if result else 0.0,
                success=bool(result and result.success),
            )
        )
    return traces


def _from_build(build: BuildResult) -> ChainOutcome:
    tools = build.chain.tool_names()
    last = build.last_result

    if build.state is BuildState.FAILED:
        code = (last.metadata.get("error_code") if last else None) or ToolExecutionError.code
        error_type = error_type_for(code)
        return ChainOutcome(
            success=False,
            action="show_error",
            chain=tools,
            error_kind=error_type.__name__,
            message=error_type.user_message,
            diagnostic_code=code,
        )

    if last is not None and last.next_action is NextAction.CLARIFICATION_NEEDED:
        return ChainOutcome(
            success=True,
            action="request_clarification",
            answer=(last.data or {}).get("question") if isinstance(last.data, dict) else None,
            data=last.data,
            chain=tools,
        )

    if last is None:
        return ChainOutcome(success=True, action="no_action", answer=build.final_answer)

    if not last.success:
        return ChainOutcome(
            success=False,
            action="show_error",
            chain=tools,
            error_kind="NoResult",
            message=build.final_answer or last.instruction_for_planner or last.error,
            diagnostic_code=last.metadata.get("error_code") or "NO_RESULT",
        )

    data = last.data
    per_source: list[dict[str, Any]] = []
    answer = build.final_answer
    if isinstance(data, AggregatedAnswer):
        per_source = [asdict(finding) for finding in data.per_source]
        answer = answer or data.combined_text
        data = asdict(data)
    elif isinstance(data, dict) and answer is None:
        answer = data.get("summary") or data.get("answer")
    return ChainOutcome(
        success=True,
        action="show_result",
        answer=answer or last.instruction_for_planner or None,
        data=data,
        per_source=per_source,
        chain=tools,
    )
