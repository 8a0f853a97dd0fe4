"""Task dispatcher: runs one named worker under its own budget.

``TaskDispatcher.dispatch`` is exposed to the controller as the ``task`` tool
and never raises: every outcome, including failures, becomes the string the
controller reads back.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field

import anyio

from .activity import ActivityBus
from .agent_loop import AgentResult, BudgetedAgent, ChatModel
from .errors import DeadlineExceeded, ErrorKind, Outcome, classify_failure, is_limit_like
from .extraction import TASK_TOOL_NAME, fragment_payload, recover_fragments
from .models import ActivityType, Budget, DispatchStatus, TaskDispatchResult
from .prompts import with_skill
from .registry import SubAgentRegistry
from .tools import Tool
from .transcript import is_budget_sentinel, message_text

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """State scoped to one analysis run."""

    run_id: str
    bus: ActivityBus = field(default_factory=ActivityBus)
    dispatch_count: int = 0
    dispatches: list[TaskDispatchResult] = field(default_factory=list)
    tokens_used: int = 0


class TaskDispatcher:
    def __init__(
        self,
        registry: SubAgentRegistry,
        model: ChatModel,
        shared_tools: list[Tool],
        budget: Budget,
        context: RunContext,
        extra_tools: list[Tool] | None = None,
    ):
        self.registry = registry
        self.model = model
        self.shared_tools = shared_tools
        self.extra_tools = {t.name: t for t in extra_tools or []}
        self.budget = budget
        self.context = context

    def _record(self, name: str, status: DispatchStatus, text: str) -> str:
        self.context.dispatches.append(TaskDispatchResult(name, status, text))
        return text

    def _tools_for(self, capabilities: tuple[str, ...]) -> list[Tool]:
        tools = list(self.shared_tools)
        for cap in capabilities:
            if cap in self.extra_tools:
                tools.append(self.extra_tools[cap])
            else:
                logger.warning("capability %s is not available, skipping", cap)
        return tools

    async def _run_worker(self, agent: BudgetedAgent, instruction: str) -> AgentResult:
        deadline = self.budget.deadline_sec
        if deadline <= 0:
            return await agent.invoke(instruction)
        try:
            with anyio.fail_after(deadline):
                return await agent.invoke(instruction)
        except TimeoutError as exc:
            raise DeadlineExceeded(f"Sub-agent timeout after {deadline:g}s") from exc

    async def dispatch(self, sub_agent_name: str, instruction: str) -> str:
        self.context.dispatch_count += 1
        n = self.context.dispatch_count
        bus = self.context.bus
        name = sub_agent_name
        t0 = time.monotonic()

        logger.info("task #%d: %s (%d chars instruction)", n, name, len(instruction))
        bus.emit(ActivityType.TASK_START, f"Dispatching {name}", instruction[:120])

        definition = self.registry.get(name)
        if definition is None:
            logger.error("task #%d: unknown sub-agent %r", n, name)
            text = Outcome.failure(
                ErrorKind.UNKNOWN_ROLE,
                f'Unknown subagent "{name}". Available: {", ".join(self.registry.names())}',
            ).render()
            return self._record(name, DispatchStatus.UNKNOWN_ROLE, text)

        agent = BudgetedAgent(
            self.model,
            self._tools_for(definition.extra_capabilities),
            with_skill(definition.role_prompt),
            self.budget,
            name=f"task #{n} {name}",
        )
        try:
            result = await self._run_worker(agent, instruction)
        except Exception as exc:
            return self._on_failure(n, name, exc, t0)
        finally:
            self.context.tokens_used += agent.tokens_used

        elapsed = time.monotonic() - t0
        messages = result.messages
        last_text = message_text(messages[-1]) if messages else ""
        logger.info("task #%d: %s finished in %.1fs, %d messages", n, name, elapsed, len(messages))

        if last_text and is_budget_sentinel(last_text):
            return self._on_budget(n, name, messages)

        if last_text:
            status, text = DispatchStatus.SUCCESS, last_text
        elif result.structured_response is not None:
            status = DispatchStatus.SUCCESS
            text = json.dumps(result.structured_response, indent=2, ensure_ascii=False)
        else:
            logger.warning("task #%d: no final text, returning the whole result", n)
            status = DispatchStatus.SUCCESS
            text = json.dumps(asdict(result), indent=2, ensure_ascii=False, default=str)

        bus.emit(
            ActivityType.TASK_COMPLETE,
            f"{name} finished ({elapsed:.1f}s)",
            f"{len(messages)} messages",
        )
        return self._record(name, status, text)

    def _on_budget(self, n: int, name: str, messages: list) -> str:
        fragments = recover_fragments(messages)
        bus = self.context.bus
        if fragments:
            payload = fragment_payload(fragments)
            logger.warning("task #%d: budget reached, recovered %d fragments", n, len(fragments))
            bus.emit(
                ActivityType.TASK_COMPLETE,
                f"{name} hit its limit, data recovered",
                f"{len(fragments)} fragments",
            )
            text = (
                f"[{name}] budget reached, {len(fragments)} fragments recovered. "
                f"Analyse the collected data directly:\n\n{payload}"
            )
            return self._record(name, DispatchStatus.DEGRADED_RECOVERED, text)

        logger.warning("task #%d: budget reached, nothing to recover", n)
        bus.emit(ActivityType.TASK_COMPLETE, f"{name} hit its limit", "no recoverable data")
        text = (
            f'Sub-agent "{name}" reached its call limit with no recoverable data. '
            "Build the report from the pre-scan results."
        )
        return self._record(name, DispatchStatus.DEGRADED_EMPTY, text)

    def _on_failure(self, n: int, name: str, exc: Exception, t0: float) -> str:
        kind = classify_failure(exc)
        elapsed = time.monotonic() - t0
        logger.error("task #%d: %s failed after %.1fs (%s): %s", n, name, elapsed, kind.value, exc)
        bus = self.context.bus
        if is_limit_like(kind):
            bus.emit(ActivityType.TASK_ERROR, f"{name} hit an execution limit", str(exc))
            text = (
                f'Sub-agent "{name}" stopped at an execution limit ({exc}). '
                "Do not retry the same task; proceed with the information you already have."
            )
        else:
            bus.emit(ActivityType.TASK_ERROR, f"{name} failed", str(exc))
            text = f'Sub-agent "{name}" error: {exc}'
        return self._record(name, DispatchStatus.FAILED, text)

    def as_tool(self) -> Tool:
        async def task(subAgentName: str, instruction: str) -> str:
            return await self.dispatch(subAgentName, instruction)

        names = " | ".join(self.registry.names())
        return Tool(
            name=TASK_TOOL_NAME,
            description=(
                "Dispatch a specialist sub-agent with its own context window. "
                "Available sub-agents:\n" + self.registry.describe()
            ),
            handler=task,
            parameters={
                "type": "object",
                "properties": {
                    "subAgentName": {"type": "string", "description": f"Sub-agent name: {names}"},
                    "instruction": {
                        "type": "string",
                        "description": "Detailed instruction, including file paths and commit hashes.",
                    },
                },
                "required": ["subAgentName", "instruction"],
            },
        )
