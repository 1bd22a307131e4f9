"""Abstract sandbox boundary and shared process-group plumbing.

Every sandboxed command runs as the leader of a fresh session/process
group so that timeout or cancellation can take down the whole tree
(SIGTERM, grace period, SIGKILL) instead of just the direct child.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from kiln.sandbox.security import resolve_within

logger = logging.getLogger(__name__)

# Exit code reported for commands killed on timeout (128 + SIGKILL)
TIMEOUT_EXIT_CODE = 137

_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB


@dataclass
class ExecResult:
    """Outcome of a sandboxed command. Nonzero exit is a result, not an error."""

    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int = 0
    timed_out: bool = False
    truncated: bool = False

    def format(self) -> str:
        """Model-facing rendering: stdout, labelled stderr, nonzero exit code."""
        parts = []
        if self.stdout:
            parts.append(self.stdout)
        if self.stderr:
            parts.append(f"STDERR:\n{self.stderr}")
        if self.exit_code != 0:
            parts.append(f"Exit code: {self.exit_code}")
        return "\n".join(parts) if parts else "(no output)"


def truncate_output(output: str, max_chars: int) -> tuple[str, bool]:
    """Keep the first 20% and last 80% of an oversized output."""
    if len(output) <= max_chars:
        return output, False

    head_size = int(max_chars * 0.2)
    tail_size = max_chars - head_size
    omitted = len(output) - head_size - tail_size
    text = (
        f"{output[:head_size]}\n\n--- truncated {omitted} characters ---\n\n"
        f"{output[-tail_size:]}"
    )
    return text, True


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    """Send a signal to the process group led by proc. Missing group is fine."""
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


async def terminate_process_group(
    proc: asyncio.subprocess.Process, grace_period: float
) -> None:
    """SIGTERM the group, wait up to grace_period, then SIGKILL whatever is left.

    The final SIGKILL is sent even when the leader exits in time, so
    children that ignored SIGTERM do not survive.
    """
    _signal_group(proc, signal.SIGTERM)
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_period)
    except asyncio.TimeoutError:
        pass
    except asyncio.CancelledError:
        _signal_group(proc, signal.SIGKILL)
        raise
    _signal_group(proc, signal.SIGKILL)
    if proc.returncode is None:
        await proc.wait()


class Sandbox(ABC):
    """Execution boundary for side-effecting tool operations.

    Subclasses decide where commands run; file access always goes
    through the host view of the workspace.
    """

    def __init__(
        self,
        workspace_dir: str,
        *,
        default_timeout: float = 300.0,
        grace_period: float = 2.0,
        max_output_chars: int = 100_000,
    ) -> None:
        self._workspace = Path(workspace_dir)
        self._default_timeout = default_timeout
        self._grace_period = grace_period
        self._max_output_chars = max_output_chars
        self._running: dict[int, asyncio.subprocess.Process] = {}

    @property
    @abstractmethod
    def kind(self) -> str:
        """Backend discriminator ("local", "docker")."""

    @property
    def workspace(self) -> Path:
        return self._workspace

    async def start(self) -> None:
        """Prepare the boundary. Raises SandboxSetupError on failure."""
        self._workspace.mkdir(parents=True, exist_ok=True)

    async def close(self) -> None:
        """Kill anything still running and release resources."""
        for proc in list(self._running.values()):
            await terminate_process_group(proc, self._grace_period)
        self._running.clear()

    @abstractmethod
    async def run(
        self,
        command: str,
        working_dir: str | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        """Run a shell command. Returns rather than raising on nonzero exit."""

    def running_pids(self) -> set[int]:
        """Process-group leaders currently alive under this sandbox."""
        return set(self._running)

    def effective_timeout(self, timeout: float | None) -> float:
        if timeout is None or timeout <= 0:
            return self._default_timeout
        return min(timeout, self._default_timeout)

    # ------------------------------------------------------------------
    # File access (host side of the workspace)
    # ------------------------------------------------------------------

    def resolve_path(self, path: str) -> Path:
        """Host path for a workspace path. Raises SandboxPolicyError outside it."""
        return resolve_within(path, self._workspace)

    async def read_text(self, path: str) -> str:
        target = self.resolve_path(path)
        if not target.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        size = target.stat().st_size
        if size > _MAX_FILE_SIZE:
            raise ValueError(f"File too large: {size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes)")
        return await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")

    async def write_text(self, path: str, content: str) -> Path:
        target = self.resolve_path(path)
        await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_text, content, encoding="utf-8")
        return target

    # ------------------------------------------------------------------
    # Process plumbing
    # ------------------------------------------------------------------

    async def _spawn(
        self,
        argv: list[str],
        *,
        timeout: float,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        preexec_fn: Callable[[], None] | None = None,
        on_abort: Callable[[], Awaitable[None]] | None = None,
    ) -> ExecResult:
        """Run argv in its own process group with timeout and cancellation cleanup."""
        start = time.monotonic()
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
            start_new_session=True,
            preexec_fn=preexec_fn,
        )
        self._running[proc.pid] = proc
        try:
            try:
                stdout_bytes, stderr_bytes = await asyncio.wait_for(
                    proc.communicate(), timeout=timeout
                )
            except asyncio.TimeoutError:
                logger.warning("Sandboxed command timed out after %.1fs: %s", timeout, argv[-1][:200])
                if on_abort is not None:
                    await on_abort()
                await terminate_process_group(proc, self._grace_period)
                return ExecResult(
                    exit_code=TIMEOUT_EXIT_CODE,
                    stdout="",
                    stderr=f"[Process killed: timed out after {timeout:g}s]",
                    duration_ms=int((time.monotonic() - start) * 1000),
                    timed_out=True,
                )
            except asyncio.CancelledError:
                logger.info("Sandboxed command cancelled, terminating group %d", proc.pid)
                if on_abort is not None:
                    await on_abort()
                await terminate_process_group(proc, self._grace_period)
                raise
        finally:
            self._running.pop(proc.pid, None)

        # Leader exited; sweep any background children left in its group
        _signal_group(proc, signal.SIGKILL)

        stdout, out_truncated = truncate_output(
            stdout_bytes.decode("utf-8", errors="replace"), self._max_output_chars
        )
        stderr, _ = truncate_output(
            stderr_bytes.decode("utf-8", errors="replace"), self._max_output_chars
        )
        return ExecResult(
            exit_code=proc.returncode if proc.returncode is not None else 1,
            stdout=stdout,
            stderr=stderr,
            duration_ms=int((time.monotonic() - start) * 1000),
            truncated=out_truncated,
        )
