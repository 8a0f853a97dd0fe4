"""Read-only filesystem/command bridge into the analysed repository."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

import anyio

from .errors import ErrorKind, GitPulseError

_ALLOWED_PREFIXES = (
    "git", "rg", "grep", "find", "wc", "head", "tail", "cat",
    "ls", "stat", "file", "sort", "uniq", "awk", "sed", "echo",
)
_ALLOWED_BARE = {"git", "ls", "pwd"}

_FORBIDDEN = (
    "rm ", "rm\t", "rmdir", "mv ", "cp ", "> ", ">> ", "| rm", "; rm",
    "git push", "git reset --hard", "git checkout", "git clean",
    "git stash drop", "chmod", "chown", "sudo",
)

_SKIP_NAMES = {"node_modules", "target"}
_MAX_GREP_MATCHES = 50


class BridgeError(GitPulseError):
    kind = ErrorKind.TRANSPORT


@dataclass
class FileInfo:
    name: str
    path: str
    is_dir: bool
    size: int


@dataclass
class GrepMatch:
    file: str
    line_number: int
    content: str


@dataclass
class ExecuteResult:
    stdout: str
    stderr: str
    exit_code: int


def validate_command(command: str) -> None:
    """Raise BridgeError unless ``command`` is on the read-only allow-list."""
    trimmed = command.strip()
    allowed = trimmed in _ALLOWED_BARE or any(
        trimmed.startswith(p + " ") or trimmed.startswith(p + "\t")
        for p in _ALLOWED_PREFIXES
    )
    if not allowed:
        raise BridgeError(f"Command not allowed: {trimmed[:50]}")
    for fragment in _FORBIDDEN:
        if fragment in trimmed:
            raise BridgeError(f"Forbidden operation in command: {fragment.strip()}")


def _number_lines(lines: list[str], start: int) -> str:
    return "\n".join(f"{start + i + 1:>6}|{line}" for i, line in enumerate(lines))


async def _run(args: list[str], cwd: Path) -> subprocess.CompletedProcess:
    # Abandoned on cancellation: a process that already started keeps running.
    return await anyio.to_thread.run_sync(
        lambda: subprocess.run(
            args,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            errors="replace",
        ),
        abandon_on_cancel=True,
    )


class RepoBridge:
    """The five read-only operations agents use to look at a repository."""

    def __init__(self, repo_path: str | Path):
        self.repo_path = Path(repo_path)

    def _base(self) -> Path:
        try:
            return self.repo_path.resolve(strict=True)
        except OSError as exc:
            raise BridgeError(f"Invalid repo path: {exc}") from exc

    def resolve(self, rel_path: str) -> Path:
        """Resolve ``rel_path`` inside the repository, refusing traversal."""
        base = self._base()
        try:
            target = (base / rel_path).resolve(strict=True)
        except OSError as exc:
            raise BridgeError(f"Invalid file path '{rel_path}': {exc}") from exc
        if target != base and base not in target.parents:
            raise BridgeError(f"Path traversal denied: {rel_path}")
        return target

    def _relative(self, path: str | Path) -> str:
        base = self._base()
        try:
            return str(Path(path).resolve().relative_to(base))
        except ValueError:
            return str(path)

    async def read_file(
        self, path: str, offset: int | None = None, limit: int | None = None,
    ) -> str:
        full = self.resolve(path)
        try:
            content = full.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            raise BridgeError(f"Failed to read '{path}': {exc}") from exc
        if offset is None and limit is None:
            return content
        lines = content.splitlines()
        start = min(offset or 0, len(lines))
        end = len(lines) if limit is None else min(start + limit, len(lines))
        return _number_lines(lines[start:end], start)

    async def ls(self, path: str = ".") -> list[FileInfo]:
        full = self.resolve(path)
        if not full.is_dir():
            raise BridgeError(f"Not a directory: {path}")
        entries = []
        for child in full.iterdir():
            name = child.name
            if name.startswith(".") or name in _SKIP_NAMES:
                continue
            entries.append(FileInfo(
                name=name,
                path=str(Path(path) / name),
                is_dir=child.is_dir(),
                size=child.stat().st_size,
            ))
        entries.sort(key=lambda e: (not e.is_dir, e.name))
        return entries

    async def grep(
        self, pattern: str, path: str = ".", glob: str | None = None,
    ) -> list[GrepMatch]:
        """Literal text search; ripgrep when available, grep otherwise."""
        full = self.resolve(path)
        args = [
            "rg", "--no-heading", "--line-number", "--max-count", str(_MAX_GREP_MATCHES),
            "--max-filesize", "1M", "--fixed-strings", pattern,
        ]
        if glob:
            args += ["--glob", glob]
        args.append(str(full))
        try:
            result = await _run(args, self._base())
        except FileNotFoundError:
            fallback = ["grep", "-rHnF"]
            if glob:
                fallback.append(f"--include={glob}")
            fallback += [pattern, str(full)]
            try:
                result = await _run(fallback, self._base())
            except FileNotFoundError as exc:
                raise BridgeError(f"Neither rg nor grep available: {exc}") from exc

        matches = []
        for line in result.stdout.splitlines():
            parts = line.split(":", 2)
            if len(parts) < 2 or not parts[1].isdigit():
                continue
            matches.append(GrepMatch(
                file=self._relative(parts[0]),
                line_number=int(parts[1]),
                content=parts[2] if len(parts) > 2 else "",
            ))
            if len(matches) >= _MAX_GREP_MATCHES:
                break
        return matches

    async def glob(self, pattern: str, path: str = ".") -> list[FileInfo]:
        full = self.resolve(path)
        args = [
            "find", str(full), "-maxdepth", "10", "-type", "f", "-name", pattern,
            "-not", "-path", "*/node_modules/*",
            "-not", "-path", "*/.git/*",
            "-not", "-path", "*/target/*",
        ]
        try:
            result = await _run(args, self._base())
        except FileNotFoundError as exc:
            raise BridgeError(f"find failed: {exc}") from exc
        entries = []
        for line in result.stdout.splitlines():
            if not line:
                continue
            found = Path(line)
            try:
                size = found.stat().st_size
            except OSError:
                continue
            entries.append(FileInfo(
                name=found.name, path=self._relative(found), is_dir=False, size=size,
            ))
        return entries

    async def execute(self, command: str) -> ExecuteResult:
        validate_command(command)
        try:
            result = await _run(["bash", "-c", command], self._base())
        except OSError as exc:
            raise BridgeError(f"Failed to execute command: {exc}") from exc
        return ExecuteResult(
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.returncode,
        )
