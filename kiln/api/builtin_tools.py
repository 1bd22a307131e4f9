"""Built-in tools: bash, read_file, write_file, search and git queries.

Tools that spawn processes or mutate the workspace run behind the
sandbox boundary and receive it as ``sandbox``. read_file and search
are read-only and run in-process against the workspace directory.

Handlers raise on error; the dispatcher turns exceptions into Failure
outcomes for the model.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
import re
import shlex
from pathlib import Path

from kiln.api.models import Failure, FailureKind, Success
from kiln.api.registry import ParamSpec, ToolRegistry, ToolSpec
from kiln.config import Settings
from kiln.sandbox.base import Sandbox
from kiln.sandbox.security import resolve_within

logger = logging.getLogger(__name__)

# Limits
_MAX_BASH_TIMEOUT = 300  # seconds
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB
_MAX_SEARCH_RESULTS = 500
_SKIP_DIRS = {".git", "__pycache__", "node_modules", ".venv"}


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def bash_tool(command: str, timeout: int = 30, *, sandbox: Sandbox) -> Success | Failure:
    """Execute a shell command in the workspace directory.

    Args:
        command: Shell command to execute
        timeout: Timeout in seconds (default 30, max 300)
        sandbox: Boundary the command runs behind

    Returns:
        stdout, labelled stderr and nonzero exit code, or a timeout Failure
    """
    effective_timeout = max(1, min(timeout, _MAX_BASH_TIMEOUT))
    result = await sandbox.run(command, timeout=effective_timeout)
    if result.timed_out:
        return Failure(
            FailureKind.TIMEOUT,
            f"Command timed out after {effective_timeout}s.\nCommand: {command}",
        )
    return Success(
        result.format(),
        {"exit_code": result.exit_code, "duration_ms": result.duration_ms},
    )


async def read_file_tool(path: str, offset: int = 0, limit: int = 0, *, workspace_dir: str) -> str:
    """Read a workspace file, optionally a line window of it.

    Args:
        path: File path (relative to workspace or absolute within workspace)
        offset: Line offset to start reading from (0-indexed)
        limit: Number of lines to read (0 = all)
    """
    target = resolve_within(path, Path(workspace_dir))
    if not target.exists():
        raise FileNotFoundError(f"File not found: {path}")
    if not target.is_file():
        raise IsADirectoryError(f"Not a file: {path}")

    file_size = target.stat().st_size
    if file_size > _MAX_FILE_SIZE and offset <= 0 and limit <= 0:
        raise ValueError(
            f"File too large: {file_size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes). "
            "Use offset/limit to read portions."
        )

    content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
    if offset > 0 or limit > 0:
        lines = content.splitlines(keepends=True)
        if offset > 0:
            lines = lines[offset:]
        if limit > 0:
            lines = lines[:limit]
        content = "".join(lines)
    return content if content else "(empty file)"


async def write_file_tool(path: str, content: str, *, sandbox: Sandbox) -> str:
    """Write content to a workspace file, creating parent directories."""
    target = await sandbox.write_text(path, content)
    return f"File written successfully: {target}\nSize: {len(content):,} bytes"


def _search_files(root: Path, workspace: Path, regex: re.Pattern[str], glob: str, max_results: int) -> list[str]:
    matches: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
        for filename in sorted(filenames):
            if not fnmatch.fnmatch(filename, glob):
                continue
            file_path = Path(dirpath) / filename
            try:
                if file_path.stat().st_size > _MAX_FILE_SIZE:
                    continue
                text = file_path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            rel = file_path.relative_to(workspace).as_posix()
            for lineno, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    matches.append(f"{rel}:{lineno}: {line.strip()[:200]}")
                    if len(matches) >= max_results:
                        return matches
    return matches


async def search_tool(
    pattern: str,
    path: str = ".",
    glob: str = "*",
    max_results: int = 100,
    *,
    workspace_dir: str,
) -> Success:
    """Regex search over workspace text files. Returns path:line: text lines."""
    regex = re.compile(pattern)
    workspace = Path(workspace_dir).resolve()
    root = resolve_within(path, workspace)
    if not root.exists():
        raise FileNotFoundError(f"Path not found: {path}")
    limit = max(1, min(max_results, _MAX_SEARCH_RESULTS))

    if root.is_file():
        matches = await asyncio.to_thread(_search_files, root.parent, workspace, regex, root.name, limit)
    else:
        matches = await asyncio.to_thread(_search_files, root, workspace, regex, glob, limit)

    if not matches:
        return Success(f"No matches for /{pattern}/", {"matches": 0})
    text = "\n".join(matches)
    if len(matches) >= limit:
        text += f"\n... [stopped at {limit} matches]"
    return Success(text, {"matches": len(matches)})


async def _git(sandbox: Sandbox, command: str) -> Success:
    result = await sandbox.run(command)
    return Success(result.format(), {"exit_code": result.exit_code})


async def git_status_tool(*, sandbox: Sandbox) -> Success:
    return await _git(sandbox, "git status --short --branch")


async def git_diff_tool(path: str | None = None, staged: bool = False, *, sandbox: Sandbox) -> Success:
    command = "git diff"
    if staged:
        command += " --staged"
    if path:
        command += f" -- {shlex.quote(path)}"
    return await _git(sandbox, command)


async def git_log_tool(max_count: int = 10, *, sandbox: Sandbox) -> Success:
    count = max(1, min(max_count, 100))
    return await _git(sandbox, f"git log --oneline --decorate -n {count}")


async def git_commit_tool(message: str, *, sandbox: Sandbox) -> Success:
    """Stage everything in the workspace and commit."""
    return await _git(sandbox, f"git add -A && git commit -m {shlex.quote(message)}")


# ---------------------------------------------------------------------------
# Tool specs
# ---------------------------------------------------------------------------

BASH_SPEC = ToolSpec(
    name="bash",
    description="Execute a shell command in the workspace directory",
    parameters={
        "command": ParamSpec("string", required=True, description="Shell command to execute"),
        "timeout": ParamSpec("integer", description="Timeout in seconds (default 30, max 300)", default=30),
    },
    requires_sandbox=True,
)

READ_FILE_SPEC = ToolSpec(
    name="read_file",
    description="Read a file from the workspace directory",
    parameters={
        "path": ParamSpec("string", required=True, description="File path (relative or absolute within workspace)"),
        "offset": ParamSpec("integer", description="Line offset to start reading from (0-indexed)", default=0),
        "limit": ParamSpec("integer", description="Number of lines to read (0 = all)", default=0),
    },
)

WRITE_FILE_SPEC = ToolSpec(
    name="write_file",
    description="Write content to a file in the workspace directory",
    parameters={
        "path": ParamSpec("string", required=True, description="File path (relative or absolute within workspace)"),
        "content": ParamSpec("string", required=True, description="Content to write to the file"),
    },
    requires_sandbox=True,
    exclusive=True,
    resource_arg="path",
)

SEARCH_SPEC = ToolSpec(
    name="search",
    description="Search workspace files for lines matching a regular expression",
    parameters={
        "pattern": ParamSpec("string", required=True, description="Python regular expression"),
        "path": ParamSpec("string", description="File or directory to search (default: workspace root)", default="."),
        "glob": ParamSpec("string", description="Filename filter, e.g. *.py", default="*"),
        "max_results": ParamSpec("integer", description="Maximum matching lines to return", default=100),
    },
)

GIT_STATUS_SPEC = ToolSpec(
    name="git_status",
    description="Show the working tree status of the workspace repository",
    requires_sandbox=True,
)

GIT_DIFF_SPEC = ToolSpec(
    name="git_diff",
    description="Show unstaged (or staged) changes, optionally for one path",
    parameters={
        "path": ParamSpec("string", description="Limit the diff to this path"),
        "staged": ParamSpec("boolean", description="Show staged changes instead", default=False),
    },
    requires_sandbox=True,
)

GIT_LOG_SPEC = ToolSpec(
    name="git_log",
    description="Show recent commits, one per line",
    parameters={
        "max_count": ParamSpec("integer", description="Number of commits (default 10, max 100)", default=10),
    },
    requires_sandbox=True,
)

GIT_COMMIT_SPEC = ToolSpec(
    name="git_commit",
    description="Stage all changes in the workspace and create a commit",
    parameters={
        "message": ParamSpec("string", required=True, description="Commit message"),
    },
    requires_sandbox=True,
    exclusive=True,
)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(registry: ToolRegistry, settings: Settings) -> None:
    """Register the built-in tools with the registry.

    In-process tools get workspace_dir from settings through a closure;
    sandboxed tools are handed the sandbox by the dispatcher.
    """
    workspace = settings.workspace_dir

    async def _read_file(path: str, offset: int = 0, limit: int = 0) -> str:
        return await read_file_tool(path, offset, limit, workspace_dir=workspace)

    async def _search(pattern: str, path: str = ".", glob: str = "*", max_results: int = 100) -> Success:
        return await search_tool(pattern, path, glob, max_results, workspace_dir=workspace)

    registry.register(BASH_SPEC, bash_tool)
    registry.register(READ_FILE_SPEC, _read_file)
    registry.register(WRITE_FILE_SPEC, write_file_tool)
    registry.register(SEARCH_SPEC, _search)
    registry.register(GIT_STATUS_SPEC, git_status_tool)
    registry.register(GIT_DIFF_SPEC, git_diff_tool)
    registry.register(GIT_LOG_SPEC, git_log_tool)
    registry.register(GIT_COMMIT_SPEC, git_commit_tool)
    logger.info("Registered %d built-in tools (workspace: %s)", len(registry), workspace)
