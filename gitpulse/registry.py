"""Static table of worker roles."""

from __future__ import annotations

from .models import SubAgentDefinition
from .prompts import (
    CODE_ARCHAEOLOGIST_PROMPT,
    GIT_FORENSICS_PROMPT,
    PATTERN_DETECTIVE_PROMPT,
)

STATS_TOOLS = ("query_author_stats", "query_file_hotspots")

SUB_AGENTS: tuple[SubAgentDefinition, ...] = (
    SubAgentDefinition(
        name="code-archaeologist",
        description=(
            "Reads source code to explain business function and code quality. "
            "Dispatch it to learn what a file or module does and whether deleted "
            "code had value."
        ),
        role_prompt=CODE_ARCHAEOLOGIST_PROMPT,
    ),
    SubAgentDefinition(
        name="git-forensics",
        description=(
            "Runs git commands to trace change history. Dispatch it for a file's "
            "history (git log), concrete diffs (git show) or ownership (git blame)."
        ),
        role_prompt=GIT_FORENSICS_PROMPT,
        extra_capabilities=STATS_TOOLS,
    ),
    SubAgentDefinition(
        name="pattern-detective",
        description=(
            "Combines code understanding and history into waste verdicts (W1-W7). "
            "Dispatch it once code and history are known."
        ),
        role_prompt=PATTERN_DETECTIVE_PROMPT,
        extra_capabilities=STATS_TOOLS,
    ),
)


class SubAgentRegistry:
    """Read-only lookup over worker roles, keyed by name."""

    def __init__(self, definitions: tuple[SubAgentDefinition, ...] = SUB_AGENTS):
        names = [d.name for d in definitions]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate sub-agent names: {names}")
        self._by_name = {d.name: d for d in definitions}

    def get(self, name: str) -> SubAgentDefinition | None:
        return self._by_name.get(name)

    def names(self) -> list[str]:
        return list(self._by_name)

    def __iter__(self):
        return iter(self._by_name.values())

    def __len__(self) -> int:
        return len(self._by_name)

    def describe(self) -> str:
        return "\n".join(f"- {d.name}: {d.description}" for d in self)
