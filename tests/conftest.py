"""Shared fixtures for gitpulse tests."""

import pytest
import pytest_asyncio

from gitpulse.models import AuthorStats, CommitRecord, HotFile, HotHandoff
from gitpulse.providers.chat import AssistantTurn
from gitpulse.transcript import ToolCall


@pytest.fixture
def tmp_project(tmp_path):
    """Temporary project with .gitpulse/config.yaml and small budgets."""
    gitpulse_dir = tmp_path / ".gitpulse"
    gitpulse_dir.mkdir()
    (gitpulse_dir / "config.yaml").write_text("""\
model:
  provider: anthropic
  model: claude-sonnet-4-5
budgets:
  controller:
    model_call_limit: 6
    tool_call_limit: 4
  worker:
    model_call_limit: 3
    tool_call_limit: 3
    deadline_sec: 5
database:
  path: .gitpulse/stats.db
logging:
  level: WARNING
""")
    return tmp_path


@pytest.fixture
def repo_dir(tmp_path):
    """A small source tree to point the repository bridge at."""
    repo = tmp_path / "shop"
    (repo / "src").mkdir(parents=True)
    (repo / "src" / "cart.py").write_text("def total(items):\n    return sum(items)\n")
    (repo / "src" / "checkout.py").write_text("from cart import total\n# TODO rewrite\n")
    (repo / "README.md").write_text("# shop\n")
    (repo / ".hidden").write_text("secret\n")
    (repo / "node_modules").mkdir()
    return repo


@pytest_asyncio.fixture
async def store(tmp_path):
    """Real SQLite file store (WAL mode)."""
    from gitpulse.db import StatsStore
    s = StatsStore(str(tmp_path / "stats.db"))
    await s.init()
    yield s
    await s.close()


@pytest_asyncio.fixture
async def memory_store():
    """In-memory store for fast unit tests."""
    from gitpulse.db import StatsStore
    s = StatsStore(":memory:")
    await s.init()
    yield s
    await s.close()


def make_commit(hash, email, ts, message="feat: work", ins=10, dels=0, files=None, name=None):
    files = files or ["src/cart.py"]
    return CommitRecord(
        hash=hash,
        author_name=name or email.split("@")[0],
        author_email=email,
        timestamp=ts,
        message=message,
        insertions=ins,
        deletions=dels,
        files_changed=len(files),
        file_paths=files,
    )


@pytest_asyncio.fixture
async def seeded_store(memory_store):
    """Statistics with one hot file, one suspect author and one revert.

    alice: 1000 ins / 450 del (ratio 0.45, suspect)
    bob:   1000 ins / 100 del (ratio 0.10)
    """
    commits = [
        make_commit("a" * 40, "alice@example.com", 1_700_000_000_000, ins=1000, dels=450),
        make_commit("b" * 40, "bob@example.com", 1_700_000_100_000, ins=1000, dels=100),
        make_commit(
            "c" * 40, "bob@example.com", 1_700_000_200_000,
            message='Revert "feat: cart totals"', ins=0, dels=0,
        ),
    ]
    authors = [
        AuthorStats("alice@example.com", "alice", 1, 1000, 450, 1_700_000_000_000, 1_700_000_000_000),
        AuthorStats("bob@example.com", "bob", 2, 1000, 100, 1_700_000_100_000, 1_700_000_200_000),
    ]
    hotspots = [
        HotFile("src/cart.py", 40, 2, "alice@example.com"),
        HotFile("src/checkout.py", 3, 2, "bob@example.com"),
        HotFile("README.md", 2, 1, "bob@example.com"),
        HotFile("src/util.py", 3, 1, "alice@example.com"),
    ]
    handoffs = [
        HotHandoff("alice@example.com", "bob@example.com", "src/cart.py", 5),
        HotHandoff("bob@example.com", "alice@example.com", "src/cart.py", 2),
    ]
    await memory_store.replace_statistics(commits, authors, hotspots, handoffs)
    return memory_store


class ScriptedModel:
    """Chat model that replays a fixed list of turns.

    Each entry is an AssistantTurn, an exception instance (raised), or a
    callable taking (system, messages) and returning one of those.
    """

    def __init__(self, script):
        self.script = list(script)
        self.calls = []

    async def chat(self, system, messages, tools=None):
        self.calls.append({
            "system": system,
            "messages": list(messages),
            "tools": [t.name for t in tools or []],
        })
        if not self.script:
            return AssistantTurn(text="done")
        step = self.script.pop(0)
        if callable(step):
            step = step(system, messages)
        if isinstance(step, Exception):
            raise step
        return step


def say(text, tokens=0):
    return AssistantTurn(text=text, tokens=tokens)


def call(name, call_id="c1", text="", **arguments):
    return AssistantTurn(text=text, tool_calls=[ToolCall(call_id, name, arguments)])
