"""Budgeted tool-calling loop.

Each cycle is a decide step (one model call) followed by an act step (the
tool calls it asked for). The loop streams full transcript snapshots and
stops when the model answers without tool calls, when a call limit would be
exceeded (a sentinel message ends the transcript), or raises when the step
ceiling is hit.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

from .errors import StepLimitExceeded, TransportFailure
from .models import Budget
from .providers.chat import AssistantTurn
from .tools import Tool
from .transcript import (
    MODEL_LIMIT_SENTINEL,
    TOOL_LIMIT_SENTINEL,
    Message,
    MessageRole,
    Snapshot,
    ToolCall,
)

logger = logging.getLogger(__name__)


class ChatModel(Protocol):
    async def chat(
        self, system: str, messages: list[Message], tools: list[Tool] | None = None,
    ) -> AssistantTurn: ...


@dataclass
class AgentResult:
    messages: list[Message] = field(default_factory=list)
    structured_response: Any = None


def _structured(text: str) -> Any:
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return value if isinstance(value, (dict, list)) else None


class BudgetedAgent:
    def __init__(
        self,
        model: ChatModel,
        tools: list[Tool],
        system_prompt: str,
        budget: Budget,
        name: str = "agent",
    ):
        self.model = model
        self.tools = {t.name: t for t in tools}
        self.system_prompt = system_prompt
        self.budget = budget
        self.name = name
        self.model_calls = 0
        self.tool_calls = 0
        self.steps = 0
        self.tokens_used = 0

    def _step(self) -> None:
        self.steps += 1
        ceiling = self.budget.step_ceiling
        if self.steps > ceiling:
            raise StepLimitExceeded(
                f"Recursion limit of {ceiling} reached without hitting a stop condition"
            )

    async def _decide(self, messages: list[Message]) -> AssistantTurn:
        attempts = self.budget.max_retries + 1
        for attempt in range(attempts):
            self._step()
            try:
                return await self.model.chat(
                    self.system_prompt, messages, list(self.tools.values()),
                )
            except Exception as exc:
                if attempt + 1 >= attempts:
                    raise TransportFailure(
                        f"{self.name}: model call failed after {attempts} attempts: {exc}"
                    ) from exc
                logger.warning(
                    "%s: model call failed (%d/%d): %s", self.name, attempt + 1, attempts, exc,
                )
        raise AssertionError("unreachable")

    async def _act(self, call: ToolCall) -> Message:
        tool = self.tools.get(call.name)
        if tool is None:
            text = f"Error: Unknown tool '{call.name}'. Available: {', '.join(self.tools)}"
        else:
            text = await tool.run(call.arguments)
        return Message(MessageRole.TOOL, text, name=call.name, tool_call_id=call.id)

    async def stream(self, instruction: str) -> AsyncIterator[Snapshot]:
        messages: list[Message] = [Message(MessageRole.HUMAN, instruction)]
        yield Snapshot(list(messages), self.steps)

        mcl = self.budget.model_call_limit
        tcl = self.budget.tool_call_limit
        while True:
            if self.model_calls >= mcl:
                logger.info("%s: model call limit reached (%d)", self.name, mcl)
                messages.append(Message(
                    MessageRole.AI,
                    f"{MODEL_LIMIT_SENTINEL}: run limit ({self.model_calls}/{mcl})",
                ))
                yield Snapshot(list(messages), self.steps)
                return

            turn = await self._decide(messages)
            self.model_calls += 1
            self.tokens_used += turn.tokens
            messages.append(Message(MessageRole.AI, turn.text, tool_calls=list(turn.tool_calls)))
            yield Snapshot(list(messages), self.steps)

            if not turn.tool_calls:
                return

            self._step()
            remaining = max(tcl - self.tool_calls, 0)
            for call in turn.tool_calls[:remaining]:
                logger.debug("%s: tool %s %s", self.name, call.name, call.arguments)
                messages.append(await self._act(call))
                self.tool_calls += 1

            refused = turn.tool_calls[remaining:]
            if refused:
                logger.info("%s: tool call limit reached (%d)", self.name, tcl)
                sentinel = f"{TOOL_LIMIT_SENTINEL}: run limit ({self.tool_calls}/{tcl})"
                for call in refused:
                    messages.append(Message(
                        MessageRole.TOOL, f"Error: {sentinel}", name=call.name, tool_call_id=call.id,
                    ))
                messages.append(Message(MessageRole.AI, sentinel))
                yield Snapshot(list(messages), self.steps)
                return

            yield Snapshot(list(messages), self.steps)

    async def invoke(self, instruction: str) -> AgentResult:
        snapshot = None
        async for snapshot in self.stream(instruction):
            pass
        messages = snapshot.messages if snapshot else []
        last = messages[-1] if messages else None
        structured = None
        if last is not None and last.role == MessageRole.AI:
            structured = _structured(last.content)
        return AgentResult(messages=messages, structured_response=structured)
