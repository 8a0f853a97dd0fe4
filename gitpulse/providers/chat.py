"""Tool-calling chat over HTTP: Anthropic Messages and OpenAI-compatible APIs."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import anyio
import httpx

from ..config import Config, get_api_key
from ..transcript import Message, MessageRole, ToolCall

if TYPE_CHECKING:
    from ..tools import Tool

logger = logging.getLogger(__name__)

ENDPOINTS: dict[str, str] = {
    "anthropic": "https://api.anthropic.com/v1/messages",
    "openai": "https://api.openai.com/v1/chat/completions",
    # OpenAI-compatible providers
    "glm": "https://open.bigmodel.cn/api/paas/v4/chat/completions",
    "deepseek": "https://api.deepseek.com/v1/chat/completions",
}

_MAX_RETRIES = 3
_RETRY_STATUSES = {429, 500, 502, 503, 529}


@dataclass
class AssistantTurn:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tokens: int = 0


class HttpChatModel:
    """One decide step: send the transcript and tool specs, get text and tool calls."""

    def __init__(
        self,
        provider: str,
        model: str,
        api_key: str,
        max_tokens: int = 4096,
        timeout: float = 120,
    ):
        if provider not in ENDPOINTS:
            raise ValueError(f"Unknown provider: {provider}")
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.max_tokens = max_tokens
        self.timeout = timeout

    async def chat(
        self,
        system: str,
        messages: list[Message],
        tools: list["Tool"] | None = None,
    ) -> AssistantTurn:
        if self.provider == "anthropic":
            return await self._call_anthropic(system, messages, tools or [])
        return await self._call_openai_compat(
            system, messages, tools or [], ENDPOINTS[self.provider],
        )

    async def _call_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Run one request with exponential-backoff retry. Creates a fresh
        httpx.AsyncClient per call so there is no shared state to clean up."""
        last_exc = None
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for attempt in range(_MAX_RETRIES + 1):
                try:
                    resp = await client.request(method, url, **kwargs)
                    if resp.status_code in _RETRY_STATUSES and attempt < _MAX_RETRIES:
                        logger.info(
                            "%s returned %d, retrying (%d/%d)",
                            self.provider, resp.status_code, attempt + 1, _MAX_RETRIES,
                        )
                        await resp.aclose()
                        await anyio.sleep(2 ** attempt)
                        continue
                    resp.raise_for_status()
                    return resp
                except (httpx.ReadTimeout, httpx.ConnectTimeout, httpx.ConnectError) as exc:
                    last_exc = exc
                    if attempt < _MAX_RETRIES:
                        await anyio.sleep(2 ** attempt)
                        continue
                    raise
        raise last_exc  # type: ignore[misc]

    # ---------------------------------------------------------------
    # Anthropic
    # ---------------------------------------------------------------

    async def _call_anthropic(
        self, system: str, messages: list[Message], tools: list["Tool"],
    ) -> AssistantTurn:
        body: dict = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system,
            "messages": _to_anthropic(messages),
        }
        if tools:
            body["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters}
                for t in tools
            ]
        resp = await self._call_with_retry(
            "POST",
            ENDPOINTS["anthropic"],
            headers={
                "x-api-key": self.api_key,
                "anthropic-version": "2023-06-01",
                "content-type": "application/json",
            },
            json=body,
        )
        data = resp.json()
        turn = AssistantTurn()
        texts = []
        for block in data.get("content", []):
            if block.get("type") == "text":
                texts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                turn.tool_calls.append(ToolCall(
                    id=block["id"], name=block["name"], arguments=block.get("input") or {},
                ))
        turn.text = "".join(texts)
        usage = data.get("usage") or {}
        turn.tokens = usage.get("input_tokens", 0) + usage.get("output_tokens", 0)
        return turn

    # ---------------------------------------------------------------
    # OpenAI-compatible
    # ---------------------------------------------------------------

    async def _call_openai_compat(
        self, system: str, messages: list[Message], tools: list["Tool"], url: str,
    ) -> AssistantTurn:
        body: dict = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "system", "content": system}] + _to_openai(messages),
        }
        if tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.parameters,
                    },
                }
                for t in tools
            ]
        resp = await self._call_with_retry(
            "POST",
            url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            json=body,
        )
        data = resp.json()
        message = data["choices"][0]["message"]
        turn = AssistantTurn(text=message.get("content") or "")
        for call in message.get("tool_calls") or []:
            fn = call.get("function", {})
            try:
                arguments = json.loads(fn.get("arguments") or "{}")
            except json.JSONDecodeError:
                arguments = {}
            turn.tool_calls.append(ToolCall(id=call["id"], name=fn.get("name", ""), arguments=arguments))
        turn.tokens = (data.get("usage") or {}).get("total_tokens", 0)
        return turn


def _to_anthropic(messages: list[Message]) -> list[dict]:
    out: list[dict] = []
    for m in messages:
        if m.role == MessageRole.AI:
            content: list[dict] = []
            if m.content:
                content.append({"type": "text", "text": m.content})
            for call in m.tool_calls:
                content.append({
                    "type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments,
                })
            out.append({"role": "assistant", "content": content or m.content})
        elif m.role == MessageRole.TOOL:
            block = {"type": "tool_result", "tool_use_id": m.tool_call_id, "content": m.content}
            # consecutive tool results share one user turn
            if out and out[-1]["role"] == "user" and isinstance(out[-1]["content"], list):
                out[-1]["content"].append(block)
            else:
                out.append({"role": "user", "content": [block]})
        else:
            out.append({"role": "user", "content": m.content})
    return out


def _to_openai(messages: list[Message]) -> list[dict]:
    out: list[dict] = []
    for m in messages:
        if m.role == MessageRole.AI:
            entry: dict = {"role": "assistant", "content": m.content or None}
            if m.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                    }
                    for call in m.tool_calls
                ]
            out.append(entry)
        elif m.role == MessageRole.TOOL:
            out.append({"role": "tool", "tool_call_id": m.tool_call_id, "content": m.content})
        else:
            out.append({"role": "user", "content": m.content})
    return out


def create_chat_model(config: Config) -> HttpChatModel:
    provider = config.model.provider
    api_key = get_api_key(config, provider)
    if not api_key:
        raise ValueError(
            f"No API key for provider '{provider}'. Set it in "
            ".gitpulse/local.config.yaml or the environment."
        )
    return HttpChatModel(
        provider,
        config.model.model,
        api_key,
        max_tokens=config.model.max_tokens,
        timeout=config.model.timeout_sec,
    )
