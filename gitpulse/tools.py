"""Tools the agents can call: repository bridge wrappers and stats queries.

A tool handler must never raise into the agent loop; ``Tool.run`` turns every
exception into an ``Error: ...`` string via ``Outcome``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from .activity import ActivityBus
from .bridge import RepoBridge
from .errors import Outcome
from .models import ActivityType

if TYPE_CHECKING:
    from .db import StatsStore

logger = logging.getLogger(__name__)

MAX_FILE_CHARS = 15000
MAX_COMMAND_CHARS = 20000

Handler = Callable[..., Awaitable[str]]


@dataclass
class Tool:
    name: str
    description: str
    handler: Handler
    parameters: dict = field(default_factory=lambda: {"type": "object", "properties": {}})

    async def run(self, arguments: dict[str, Any] | None = None) -> str:
        try:
            value = await self.handler(**(arguments or {}))
            outcome = Outcome.success(value)
        except Exception as exc:
            logger.warning("tool %s failed: %s", self.name, exc)
            outcome = Outcome.from_exception(exc)
        return outcome.render()


def _schema(required: list[str] | None = None, **properties: dict) -> dict:
    return {
        "type": "object",
        "properties": properties,
        "required": required or [],
    }


def _shorten(text: str, width: int = 80) -> str:
    return text if len(text) <= width else text[: width - 3] + "..."


# ---------------------------------------------------------------------------
# Repository tools
# ---------------------------------------------------------------------------

def build_fs_tools(bridge: RepoBridge, bus: ActivityBus | None = None) -> list[Tool]:
    """read_file, ls, grep, glob and execute bound to one repository."""

    async def read_file(filePath: str, offset: int | None = None, limit: int | None = None) -> str:
        content = await bridge.read_file(filePath, offset, limit)
        if len(content) > MAX_FILE_CHARS:
            return content[:MAX_FILE_CHARS] + "\n\n... [truncated, use offset/limit to paginate]"
        return content

    async def ls(path: str = ".") -> str:
        entries = await bridge.ls(path)
        return json.dumps([asdict(e) for e in entries], indent=2)

    async def grep(pattern: str, path: str = ".", glob: str | None = None) -> str:
        matches = await bridge.grep(pattern, path, glob)
        if not matches:
            return "No matches found."
        return "\n".join(f"{m.file}:{m.line_number}: {m.content}" for m in matches)

    async def glob(pattern: str, path: str = ".") -> str:
        files = await bridge.glob(pattern, path)
        if not files:
            return "No files found."
        return "\n".join(f"{f.path} ({f.size} bytes)" for f in files)

    async def execute(command: str) -> str:
        if bus is not None:
            bus.emit(ActivityType.TOOL_CALL, _shorten(command), command)
        result = await bridge.execute(command)
        output = result.stdout
        if result.stderr:
            output += ("\n--- stderr ---\n" if output else "") + result.stderr
        if result.exit_code != 0:
            output += f"\n[exit code: {result.exit_code}]"
        logger.debug("execute exit=%d output=%d chars", result.exit_code, len(output))
        if len(output) > MAX_COMMAND_CHARS:
            output = output[:MAX_COMMAND_CHARS] + "\n\n... [truncated]"
        return output or "(no output)"

    return [
        Tool(
            name="read_file",
            description=(
                "Read a source file of the repository. Supports line paging "
                "(offset/limit); large files are truncated."
            ),
            handler=read_file,
            parameters=_schema(
                ["filePath"],
                filePath={"type": "string", "description": "Relative path, e.g. src/app.py"},
                offset={"type": "integer", "description": "First line (0-based)"},
                limit={"type": "integer", "description": "Number of lines"},
            ),
        ),
        Tool(
            name="ls",
            description="List files and directories. Hidden entries and vendor directories are skipped.",
            handler=ls,
            parameters=_schema(
                ["path"],
                path={"type": "string", "description": "Relative directory, '.' for the root"},
            ),
        ),
        Tool(
            name="grep",
            description="Literal text search. Returns file:line: content, at most 50 matches.",
            handler=grep,
            parameters=_schema(
                ["pattern"],
                pattern={"type": "string", "description": "Literal text, not a regex"},
                path={"type": "string", "description": "Directory to search, default '.'"},
                glob={"type": "string", "description": "File filter, e.g. *.py"},
            ),
        ),
        Tool(
            name="glob",
            description="Find files by name pattern, e.g. *.py or setup.cfg.",
            handler=glob,
            parameters=_schema(
                ["pattern"],
                pattern={"type": "string", "description": "File name glob"},
                path={"type": "string", "description": "Directory to search, default '.'"},
            ),
        ),
        Tool(
            name="execute",
            description=(
                "Run a read-only command in the repository (git, grep, find, cat, "
                "head, wc ...). Write and delete operations are refused."
            ),
            handler=execute,
            parameters=_schema(
                ["command"],
                command={"type": "string", "description": "e.g. git log --oneline -20"},
            ),
        ),
    ]


# ---------------------------------------------------------------------------
# Statistics tools
# ---------------------------------------------------------------------------

def build_stats_tools(store: "StatsStore") -> list[Tool]:
    """query_author_stats and query_file_hotspots over the statistics store."""

    async def query_author_stats(email: str = "") -> str:
        authors = await store.list_author_stats()
        if email:
            authors = [a for a in authors if a.author_email == email.lower()]
        if not authors:
            return "No author statistics found."
        return json.dumps([asdict(a) for a in authors[:50]], indent=2, ensure_ascii=False)

    async def query_file_hotspots(limit: int = 20) -> str:
        files = await store.list_file_hotspots()
        if not files:
            return "No file statistics found."
        return json.dumps([asdict(f) for f in files[:limit]], indent=2, ensure_ascii=False)

    return [
        Tool(
            name="query_author_stats",
            description="Per-author commit, insertion and deletion totals, most active first.",
            handler=query_author_stats,
            parameters=_schema(
                email={"type": "string", "description": "Only this author (optional)"},
            ),
        ),
        Tool(
            name="query_file_hotspots",
            description="Most frequently changed files with author counts and primary owner.",
            handler=query_file_hotspots,
            parameters=_schema(
                limit={"type": "integer", "description": "Maximum rows, default 20"},
            ),
        ),
    ]
