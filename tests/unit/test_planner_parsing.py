import pytest
from langchain_core.messages import AIMessage
from pydantic import BaseModel

from chain_agent.agent.planner import LLMPlanner, PlannerInput, parse_planner_reply
from chain_agent.agent.registry import ToolRegistry, ToolSpec
from chain_agent.errors import PlannerParseError


def test_structured_tool_call_wins() -> None:
    reply = AIMessage(
        content="Let me look that up.",
        tool_calls=[
            {"name": "get_conversations", "args": {"limit": 1}, "id": "call_1"},
            {"name": "summarize_conversation", "args": {}, "id": "call_2"},
        ],
    )

    decision = parse_planner_reply(reply)

    assert not decision.finished
    assert decision.call.tool == "get_conversations"
    assert decision.call.parameters == {"limit": 1}


def test_json_finish_embedded_in_prose() -> None:
    reply = AIMessage(content='Sure! {"action": "finish", "answer": "You have no plans."} Cheers.')

    decision = parse_planner_reply(reply)

    assert decision.finished
    assert decision.final_answer == "You have no plans."


def test_json_tool_call_in_text() -> None:
    decision = parse_planner_reply('{"tool": "get_messages", "parameters": {"conversation_id": "c1"}}')

    assert decision.call.tool == "get_messages"
    assert decision.call.parameters == {"conversation_id": "c1"}


def test_no_action_phrasing_degrades_to_finish() -> None:
    reply = AIMessage(content="The summary above answers it, so no further action is needed.")

    decision = parse_planner_reply(reply)

    assert decision.finished
    assert "no further action" in decision.final_answer


def test_unparseable_reply_raises() -> None:
    with pytest.raises(PlannerParseError):
        parse_planner_reply(AIMessage(content="Hmm, interesting question about the weather."))


def test_non_object_parameters_rejected() -> None:
    with pytest.raises(PlannerParseError):
        parse_planner_reply('{"tool": "get_messages", "parameters": ["c1"]}')


class _LimitInput(BaseModel):
    limit: int = 5


class _FakeToolModel:
    def __init__(self, reply: AIMessage) -> None:
        self.reply = reply
        self.bound_tools: list = []
        self.seen: list = []

    def bind_tools(self, tools):
        self.bound_tools = list(tools)
        return self

    def invoke(self, messages):
        self.seen.append(messages)
        return self.reply


def test_llm_planner_binds_registry_tools_and_parses_reply() -> None:
    registry = ToolRegistry()
    registry.register(
        ToolSpec(
            name="get_conversations",
            description="list",
            args_schema=_LimitInput,
            handler=lambda data, context: [],
        )
    )
    model = _FakeToolModel(
        AIMessage(content="", tool_calls=[{"name": "get_conversations", "args": {"limit": 1}, "id": "c"}])
    )
    planner = LLMPlanner(llm=model, tool_registry=registry)

    decision = planner.plan(
        PlannerInput(original_request="summarize my latest chat", correction_hint="Do not repeat.")
    )

    assert [tool.name for tool in model.bound_tools] == ["get_conversations"]
    assert decision.call.parameters == {"limit": 1}
    human = model.seen[0][-1].content
    assert "summarize my latest chat" in human
    assert "Do not repeat." in human
