"""Tests for the HTTP chat model wrappers."""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from gitpulse.config import Config
from gitpulse.providers import HttpChatModel, create_chat_model
from gitpulse.tools import Tool
from gitpulse.transcript import Message, MessageRole, ToolCall


async def _noop():
    return ""


LS_TOOL = Tool("ls", "List files", _noop)


# --- Anthropic ---

@pytest.mark.asyncio
async def test_anthropic_request_format(httpx_mock):
    """Anthropic: headers, system prompt and tool schemas."""
    httpx_mock.add_response(json={
        "content": [{"type": "text", "text": "response"}],
        "usage": {"input_tokens": 10, "output_tokens": 5},
    })
    m = HttpChatModel("anthropic", "claude-sonnet-4-5", "sk-test")
    turn = await m.chat("system prompt", [Message(MessageRole.HUMAN, "user prompt")], [LS_TOOL])

    assert turn.text == "response"
    assert turn.tool_calls == []
    assert turn.tokens == 15
    req = httpx_mock.get_request()
    assert req.headers["x-api-key"] == "sk-test"
    assert req.headers["anthropic-version"] == "2023-06-01"
    body = json.loads(req.content)
    assert body["model"] == "claude-sonnet-4-5"
    assert body["system"] == "system prompt"
    assert body["messages"] == [{"role": "user", "content": "user prompt"}]
    assert body["tools"][0]["name"] == "ls"
    assert "input_schema" in body["tools"][0]


@pytest.mark.asyncio
async def test_anthropic_tool_use_parsed(httpx_mock):
    httpx_mock.add_response(json={"content": [
        {"type": "text", "text": "Let me look."},
        {"type": "tool_use", "id": "tu_1", "name": "ls", "input": {"path": "src"}},
    ]})
    m = HttpChatModel("anthropic", "claude-sonnet-4-5", "sk-test")
    turn = await m.chat("s", [Message(MessageRole.HUMAN, "go")])
    assert turn.text == "Let me look."
    assert turn.tool_calls == [ToolCall("tu_1", "ls", {"path": "src"})]


@pytest.mark.asyncio
async def test_anthropic_tool_results_share_one_user_turn(httpx_mock):
    """Consecutive tool results are sent back in a single user message."""
    httpx_mock.add_response(json={"content": [{"type": "text", "text": "ok"}]})
    history = [
        Message(MessageRole.HUMAN, "go"),
        Message(MessageRole.AI, "", tool_calls=[ToolCall("a", "ls"), ToolCall("b", "ls")]),
        Message(MessageRole.TOOL, "one", name="ls", tool_call_id="a"),
        Message(MessageRole.TOOL, "two", name="ls", tool_call_id="b"),
    ]
    await HttpChatModel("anthropic", "m", "k").chat("s", history)
    body = json.loads(httpx_mock.get_request().content)
    assert [m["role"] for m in body["messages"]] == ["user", "assistant", "user"]
    assert [b["tool_use_id"] for b in body["messages"][2]["content"]] == ["a", "b"]


# --- OpenAI-compatible ---

@pytest.mark.asyncio
async def test_openai_request_format(httpx_mock):
    """OpenAI: Bearer token, system message first, function tools."""
    httpx_mock.add_response(json={
        "choices": [{"message": {"content": "resp"}}],
        "usage": {"total_tokens": 42},
    })
    m = HttpChatModel("openai", "gpt-4o", "sk-oai")
    turn = await m.chat("sys", [Message(MessageRole.HUMAN, "usr")], [LS_TOOL])

    assert turn.text == "resp"
    assert turn.tokens == 42
    req = httpx_mock.get_request()
    assert "Bearer sk-oai" in req.headers["authorization"]
    body = json.loads(req.content)
    assert body["messages"][0] == {"role": "system", "content": "sys"}
    assert body["messages"][1] == {"role": "user", "content": "usr"}
    assert body["tools"][0]["type"] == "function"


@pytest.mark.asyncio
async def test_openai_tool_calls_parsed(httpx_mock):
    """Arguments arrive as a JSON string; malformed ones become {}."""
    httpx_mock.add_response(json={"choices": [{"message": {
        "content": None,
        "tool_calls": [
            {"id": "1", "function": {"name": "grep", "arguments": '{"pattern": "total"}'}},
            {"id": "2", "function": {"name": "ls", "arguments": "{not json"}},
        ],
    }}]})
    turn = await HttpChatModel("deepseek", "deepseek-chat", "k").chat("s", [])
    assert turn.text == ""
    assert turn.tool_calls[0] == ToolCall("1", "grep", {"pattern": "total"})
    assert turn.tool_calls[1].arguments == {}
    assert "api.deepseek.com" in str(httpx_mock.get_request().url)


@pytest.mark.asyncio
async def test_glm_endpoint(httpx_mock):
    httpx_mock.add_response(json={"choices": [{"message": {"content": "glm resp"}}]})
    turn = await HttpChatModel("glm", "glm-4-air", "glm-key").chat("s", [])
    assert turn.text == "glm resp"
    assert "bigmodel.cn" in str(httpx_mock.get_request().url)


# --- Retry ---

@pytest.mark.asyncio
async def test_retry_on_rate_limit(httpx_mock):
    """429 then 200 → one retry, success."""
    httpx_mock.add_response(status_code=429)
    httpx_mock.add_response(json={"content": [{"type": "text", "text": "ok"}]})
    with patch("gitpulse.providers.chat.anyio.sleep", new=AsyncMock()) as sleep:
        turn = await HttpChatModel("anthropic", "m", "k").chat("s", [])
    assert turn.text == "ok"
    assert len(httpx_mock.get_requests()) == 2
    sleep.assert_awaited_once_with(1)


@pytest.mark.asyncio
async def test_client_error_not_retried(httpx_mock):
    httpx_mock.add_response(status_code=400)
    with pytest.raises(httpx.HTTPStatusError):
        await HttpChatModel("anthropic", "m", "k").chat("s", [])
    assert len(httpx_mock.get_requests()) == 1


# --- Factory ---

def test_unknown_provider():
    with pytest.raises(ValueError, match="Unknown provider"):
        HttpChatModel("google", "gemini", "k")


def test_create_chat_model_needs_key():
    with pytest.raises(ValueError, match="No API key"):
        create_chat_model(Config())


def test_create_chat_model_from_config():
    cfg = Config()
    cfg.model.provider = "deepseek"
    cfg.model.model = "deepseek-chat"
    cfg.providers.deepseek.api_key = "sk-ds"
    m = create_chat_model(cfg)
    assert (m.provider, m.model, m.api_key) == ("deepseek", "deepseek-chat", "sk-ds")
