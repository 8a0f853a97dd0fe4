"""Tests for the read-only repository bridge."""

import shutil

import pytest

from gitpulse.bridge import BridgeError, RepoBridge, validate_command


@pytest.mark.parametrize("command", [
    "git log --oneline -5",
    "git",
    "ls",
    "pwd",
    "wc -l src/cart.py",
    "grep\t-rn total src",
])
def test_allowed_commands(command):
    validate_command(command)


@pytest.mark.parametrize("command, message", [
    ("python -c 'print(1)'", "Command not allowed"),
    ("gitx log", "Command not allowed"),
    ("curl http://example.com", "Command not allowed"),
    ("git push origin main", "Forbidden operation"),
    ("git reset --hard HEAD~1", "Forbidden operation"),
    ("cat a.txt > b.txt", "Forbidden operation"),
    ("ls; rm -rf /", "Forbidden operation"),
    ("find . -name x | rm", "Forbidden operation"),
])
def test_rejected_commands(command, message):
    with pytest.raises(BridgeError, match=message):
        validate_command(command)


@pytest.mark.asyncio
async def test_read_file_whole_and_paged(repo_dir):
    """Paging returns numbered lines; no paging returns raw content."""
    bridge = RepoBridge(repo_dir)
    assert await bridge.read_file("src/cart.py") == "def total(items):\n    return sum(items)\n"
    paged = await bridge.read_file("src/cart.py", offset=1, limit=5)
    assert paged == "     2|    return sum(items)"


@pytest.mark.asyncio
async def test_path_traversal_denied(repo_dir, tmp_path):
    (tmp_path / "outside.txt").write_text("nope")
    bridge = RepoBridge(repo_dir)
    with pytest.raises(BridgeError, match="Path traversal denied"):
        await bridge.read_file("../outside.txt")


@pytest.mark.asyncio
async def test_missing_file(repo_dir):
    with pytest.raises(BridgeError, match="Invalid file path"):
        await RepoBridge(repo_dir).read_file("nope.py")


@pytest.mark.asyncio
async def test_ls_skips_hidden_and_vendor(repo_dir):
    """Directories first, hidden entries and node_modules skipped."""
    entries = await RepoBridge(repo_dir).ls(".")
    assert [e.name for e in entries] == ["src", "README.md"]
    assert entries[0].is_dir


@pytest.mark.asyncio
async def test_grep_literal(repo_dir):
    if not (shutil.which("rg") or shutil.which("grep")):
        pytest.skip("no grep available")
    matches = await RepoBridge(repo_dir).grep("sum(items)")
    assert len(matches) == 1
    assert matches[0].file == "src/cart.py"
    assert matches[0].line_number == 2


@pytest.mark.asyncio
async def test_glob(repo_dir):
    files = await RepoBridge(repo_dir).glob("*.py")
    assert sorted(f.path for f in files) == ["src/cart.py", "src/checkout.py"]


@pytest.mark.asyncio
async def test_execute_read_only(repo_dir):
    result = await RepoBridge(repo_dir).execute("cat src/cart.py")
    assert result.exit_code == 0
    assert "return sum(items)" in result.stdout


@pytest.mark.asyncio
async def test_execute_refuses_before_running(repo_dir):
    with pytest.raises(BridgeError):
        await RepoBridge(repo_dir).execute("rm -rf src")
    assert (repo_dir / "src" / "cart.py").exists()
