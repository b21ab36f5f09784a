"""Deterministic fallback planner when an external LLM is unavailable."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from chain_agent.agent.planner import PlannerDecision, PlannerInput

_SEND = re.compile(r"^(?:tell|send|message)\s+(?P<name>[\w .'-]+?)\s*(?::|that|saying)\s*(?P<text>.+)$", re.I)
_SUMMARIZE_WITH = re.compile(r"summari[sz]e\b.*?\b(?:with|from)\s+(?P<name>[\w .'-]+?)\s*[?.!]*$", re.I)
_SUMMARIZE = re.compile(r"\bsummari[sz]e\b", re.I)
_QUESTION = re.compile(r"^(?:who|what|when|where|which|how|did|does|is|are)\b|\?\s*$", re.I)

_HELP = (
    "I can summarize a conversation, answer questions across your recent "
    "conversations, or send a message for you."
)


@dataclass(slots=True)
class _Intent:
    kind: str
    name: str | None = None
    text: str | None = None


class DeterministicPlanner:
    """Rule-based planner with the same contract as `LLMPlanner`.

    Useful for local/offline environments where no chat model is configured.
    It picks the first step from the request wording and afterwards only
    follows each result's `next_action`.
    """

    def plan(self, planner_input: PlannerInput) -> PlannerDecision:
        intent = _classify(planner_input.original_request)
        steps = planner_input.chain
        if planner_input.correction_hint:
            return PlannerDecision.finish(_final_text(steps))
        if not steps:
            return _first_step(intent, planner_input.original_request)

        last = steps[-1]
        if not last.get("success", False) or last.get("next_action") != "continue":
            return PlannerDecision.finish(_final_text(steps))
        return _follow_up(intent, last, planner_input.original_request)


def _classify(request: str) -> _Intent:
    text = request.strip()
    match = _SEND.match(text)
    if match:
        return _Intent("send", name=match.group("name").strip(), text=match.group("text").strip())
    match = _SUMMARIZE_WITH.search(text)
    if match:
        return _Intent("summarize", name=match.group("name").strip())
    if _SUMMARIZE.search(text):
        return _Intent("summarize")
    if _QUESTION.search(text):
        return _Intent("question")
    return _Intent("unknown")


def _first_step(intent: _Intent, request: str) -> PlannerDecision:
    if intent.name:
        return PlannerDecision.next_call("resolve_conversation", {"name": intent.name})
    if intent.kind == "summarize":
        return PlannerDecision.next_call("get_conversations", {"limit": 1})
    if intent.kind == "question":
        return PlannerDecision.next_call("analyze_conversations_multi", {"query": request})
    return PlannerDecision.finish(_HELP)


def _follow_up(intent: _Intent, last: dict[str, Any], request: str) -> PlannerDecision:
    step = last["step"]
    if last["tool"] == "get_conversations":
        conversation_ref = f"${step}.data.conversations.0.conversation_id"
    else:
        conversation_ref = f"${step}.data.conversation_id"

    if intent.kind == "summarize":
        return PlannerDecision.next_call(
            "summarize_conversation", {"conversation_id": conversation_ref}
        )
    if intent.kind == "send":
        return PlannerDecision.next_call(
            "send_message", {"conversation_id": conversation_ref, "text": intent.text}
        )
    if intent.kind == "question" and last["tool"] != "analyze_conversation":
        return PlannerDecision.next_call(
            "analyze_conversation", {"conversation_id": conversation_ref, "query": request}
        )
    return PlannerDecision.finish(_final_text([last]))


def _final_text(steps: list[dict[str, Any]]) -> str | None:
    if not steps:
        return None
    last = steps[-1]
    return last.get("instruction_for_planner") or last.get("error") or None
