"""Planner contract and the LangChain chat-model planner."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from langchain_core.messages import AIMessage
from langchain_core.prompts import ChatPromptTemplate

from chain_agent.agent.registry import ToolRegistry
from chain_agent.errors import PlannerParseError
from chain_agent.types import ToolCall

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = """
You plan tool calls for a messaging assistant. Call exactly one tool per turn.

Rules:
1) After EVERY tool result, read `next_action` and `instruction_for_planner`.
   - "continue": call the next tool the instruction points to.
   - "clarification_needed" or "complete": stop calling tools.
2) Never call the same tool twice in a row.
3) Never repeat a call with identical parameters; its result is already in the history.
4) Refer to earlier results with `$<step>.<path>`, e.g. `$0.data.conversations.0.conversation_id`.
5) send_message needs a conversation_id or recipient_id; without one, call
   resolve_conversation or lookup_contacts first.
6) When no further tool is needed, reply with JSON only:
   {{"action": "finish", "answer": "<final answer for the user>"}}
""".strip()

_NO_ACTION_PATTERNS = (
    re.compile(r"\bno (?:further |more )?(?:action|tool|step)s? (?:is |are )?(?:needed|required|necessary)\b", re.I),
    re.compile(r"\bnothing (?:else |more )?to do\b", re.I),
    re.compile(r"\b(?:task|request) (?:is )?(?:already )?complete\b", re.I),
)


@dataclass(slots=True)
class PlannerInput:
    original_request: str
    chain: list[dict[str, Any]] = field(default_factory=list)
    correction_hint: str | None = None


@dataclass(slots=True)
class PlannerDecision:
    """Either the next tool call or a finish signal with a final answer."""

    call: ToolCall | None = None
    final_answer: str | None = None

    @property
    def finished(self) -> bool:
        return self.call is None

    @classmethod
    def next_call(cls, tool: str, parameters: dict[str, Any] | None = None) -> "PlannerDecision":
        return cls(call=ToolCall(tool=tool, parameters=dict(parameters or {})))

    @classmethod
    def finish(cls, answer: str | None = None) -> "PlannerDecision":
        return cls(final_answer=answer)


class Planner(Protocol):
    def plan(self, planner_input: PlannerInput) -> PlannerDecision: ...


class LLMPlanner:
    """Planner backed by a tool-calling LangChain chat model."""

    def __init__(self, *, llm: Any, tool_registry: ToolRegistry) -> None:
        self.tool_registry = tool_registry
        self.prompt = ChatPromptTemplate.from_messages(
            [
                ("system", _SYSTEM_PROMPT),
                (
                    "human",
                    "Request: {request}\n\nSteps so far:\n{chain}\n\n{hint}",
                ),
            ]
        )
        self.model = llm.bind_tools(tool_registry.as_langchain_tools())

    def plan(self, planner_input: PlannerInput) -> PlannerDecision:
        messages = self.prompt.format_messages(
            request=planner_input.original_request,
            chain=json.dumps(planner_input.chain, indent=2, default=str) or "[]",
            hint=planner_input.correction_hint or "",
        )
        reply = self.model.invoke(messages)
        return parse_planner_reply(reply)


def parse_planner_reply(reply: Any) -> PlannerDecision:
    """Parse a planner reply, degrading gracefully on verbose prose.

    Order: structured tool calls, a JSON object embedded in the text, explicit
    "no action needed" phrasing. Anything else is a `PlannerParseError`.
    """

    tool_calls = getattr(reply, "tool_calls", None) or []
    if tool_calls:
        if len(tool_calls) > 1:
            logger.info("Planner proposed %d calls; using the first", len(tool_calls))
        first = tool_calls[0]
        return PlannerDecision.next_call(first["name"], first.get("args") or {})

    text = _content_text(reply)
    payload = _extract_json(text)
    if payload is not None:
        decision = _decision_from_payload(payload)
        if decision is not None:
            return decision

    if any(pattern.search(text) for pattern in _NO_ACTION_PATTERNS):
        logger.info("Planner reply treated as finish from no-action phrasing")
        return PlannerDecision.finish(text.strip())

    raise PlannerParseError(f"Unparseable planner reply: {text[:200]!r}")


def _content_text(reply: Any) -> str:
    if isinstance(reply, str):
        return reply
    content = reply.content if isinstance(reply, AIMessage) else getattr(reply, "content", "")
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return " ".join(parts).strip()
    return str(content)


def _extract_json(text: str) -> dict[str, Any] | None:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        payload = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def _decision_from_payload(payload: dict[str, Any]) -> PlannerDecision | None:
    if payload.get("action") in ("finish", "no_action", "complete"):
        answer = payload.get("answer")
        return PlannerDecision.finish(None if answer is None else str(answer))
    tool = payload.get("tool")
    if isinstance(tool, str) and tool:
        parameters = payload.get("parameters") or {}
        if not isinstance(parameters, dict):
            raise PlannerParseError(f"Parameters for {tool} must be an object")
        return PlannerDecision.next_call(tool, parameters)
    return None
