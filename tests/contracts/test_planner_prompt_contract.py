from chain_agent.agent.planner import _SYSTEM_PROMPT
from chain_agent.types import Chain, ToolCall, ToolResult


def test_prompt_contains_chain_constraints() -> None:
    assert "Never call the same tool twice in a row" in _SYSTEM_PROMPT
    assert "next_action" in _SYSTEM_PROMPT
    assert "instruction_for_planner" in _SYSTEM_PROMPT
    assert '"action": "finish"' in _SYSTEM_PROMPT.replace("{{", "{").replace("}}", "}")


def test_planner_view_abbreviates_results() -> None:
    chain = Chain()
    entry = chain.append(ToolCall("get_messages", {"conversation_id": "c1"}))
    entry.result = ToolResult(
        success=True,
        data={"messages": ["word " * 200]},
        instruction_for_planner="Retrieved 1 messages.",
    )

    view = chain.planner_view(preview_chars=80)

    assert view[0]["tool"] == "get_messages"
    assert view[0]["next_action"] == "continue"
    assert view[0]["instruction_for_planner"] == "Retrieved 1 messages."
    assert len(view[0]["result"]) == 80
    assert view[0]["result"].endswith("...")
