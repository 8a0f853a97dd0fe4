"""Tests for the budgeted tool-calling loop."""

import pytest

from conftest import ScriptedModel, call, say
from gitpulse.agent_loop import BudgetedAgent
from gitpulse.errors import StepLimitExceeded, TransportFailure
from gitpulse.models import Budget
from gitpulse.providers.chat import AssistantTurn
from gitpulse.tools import Tool
from gitpulse.transcript import MessageRole, ToolCall, is_budget_sentinel


def _echo_tool(calls=None):
    async def echo(text: str = "") -> str:
        if calls is not None:
            calls.append(text)
        return f"echo: {text}"
    return Tool("echo", "Echo text back", echo)


async def _snapshots(agent, instruction="go"):
    return [s async for s in agent.stream(instruction)]


@pytest.mark.asyncio
async def test_stops_on_plain_answer():
    """No tool calls → one decide step, transcript ends with the answer."""
    model = ScriptedModel([say("final answer", tokens=7)])
    agent = BudgetedAgent(model, [_echo_tool()], "sys", Budget(5, 5))
    snaps = await _snapshots(agent)

    assert [m.role for m in snaps[-1].messages] == [MessageRole.HUMAN, MessageRole.AI]
    assert snaps[-1].messages[-1].content == "final answer"
    assert agent.model_calls == 1
    assert agent.tokens_used == 7
    assert model.calls[0]["system"] == "sys"
    assert model.calls[0]["tools"] == ["echo"]


@pytest.mark.asyncio
async def test_snapshots_replace_not_append():
    """Each snapshot carries the whole transcript so far."""
    model = ScriptedModel([
        AssistantTurn("looking", [ToolCall("1", "echo", {"text": "hi"})]),
        say("done"),
    ])
    agent = BudgetedAgent(model, [_echo_tool()], "sys", Budget(5, 5))
    snaps = await _snapshots(agent)
    lengths = [len(s.messages) for s in snaps]
    assert lengths == sorted(lengths)
    assert lengths[0] == 1
    final = snaps[-1].messages
    assert final[2].role == MessageRole.TOOL
    assert final[2].content == "echo: hi"
    assert final[2].tool_call_id == "1"
    assert final[-1].content == "done"


@pytest.mark.asyncio
async def test_model_call_limit_appends_sentinel():
    """The decide step never runs past the model-call limit."""
    model = ScriptedModel([call("echo", call_id=str(i), text="x") for i in range(10)])
    agent = BudgetedAgent(model, [_echo_tool()], "sys", Budget(model_call_limit=2, tool_call_limit=10))
    snaps = await _snapshots(agent)

    assert len(model.calls) == 2
    last = snaps[-1].messages[-1]
    assert last.role == MessageRole.AI
    assert is_budget_sentinel(last.content)
    assert last.content.startswith("Model call limits exceeded")


@pytest.mark.asyncio
async def test_tool_call_limit_refuses_excess_calls():
    """Calls past the limit are answered with an error and the loop ends."""
    executed = []
    turn = AssistantTurn("", [ToolCall(str(i), "echo", {"text": str(i)}) for i in range(3)])
    model = ScriptedModel([turn, say("never reached")])
    agent = BudgetedAgent(model, [_echo_tool(executed)], "sys", Budget(model_call_limit=5, tool_call_limit=2))
    result = await agent.invoke("go")

    assert executed == ["0", "1"]
    assert agent.tool_calls == 2
    refused = result.messages[-2]
    assert refused.role == MessageRole.TOOL
    assert refused.tool_call_id == "2"
    assert "Tool call limits exceeded" in refused.content
    assert result.messages[-1].content.startswith("Tool call limits exceeded")
    assert len(model.calls) == 1


@pytest.mark.asyncio
async def test_step_ceiling_raises():
    """A tiny step ceiling is a hard stop, distinct from the call limits."""
    model = ScriptedModel([call("echo", call_id=str(i)) for i in range(10)])
    # 2 * 10 * 1 - 17 = 3 steps: decide, act, decide, then the next act overflows
    budget = Budget(model_call_limit=10, tool_call_limit=10, max_retries=0, step_margin=-17)
    agent = BudgetedAgent(model, [_echo_tool()], "sys", budget)
    with pytest.raises(StepLimitExceeded, match="Recursion limit of 3"):
        await agent.invoke("go")


@pytest.mark.asyncio
async def test_model_failure_retried_then_transport():
    model = ScriptedModel([RuntimeError("503"), say("recovered")])
    agent = BudgetedAgent(model, [], "sys", Budget(5, 5, max_retries=1))
    result = await agent.invoke("go")
    assert result.messages[-1].content == "recovered"

    model = ScriptedModel([RuntimeError("503"), RuntimeError("503")])
    agent = BudgetedAgent(model, [], "sys", Budget(5, 5, max_retries=1))
    with pytest.raises(TransportFailure, match="after 2 attempts"):
        await agent.invoke("go")


@pytest.mark.asyncio
async def test_unknown_tool_is_error_message():
    model = ScriptedModel([call("nope"), say("ok")])
    agent = BudgetedAgent(model, [_echo_tool()], "sys", Budget(5, 5))
    result = await agent.invoke("go")
    assert result.messages[2].content.startswith("Error: Unknown tool 'nope'")


@pytest.mark.asyncio
async def test_structured_response_from_json_answer():
    model = ScriptedModel([say('{"events": []}')])
    result = await BudgetedAgent(model, [], "sys", Budget(5, 5)).invoke("go")
    assert result.structured_response == {"events": []}

    model = ScriptedModel([say("plain text")])
    result = await BudgetedAgent(model, [], "sys", Budget(5, 5)).invoke("go")
    assert result.structured_response is None
