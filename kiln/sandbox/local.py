"""Local sandbox: host execution behind an allow-list and rlimits.

Commands run via ``sh -c`` inside the workspace, each in a new session
so timeout/cancel kills the whole group. CPU-time and address-space
limits are applied in the child before exec. POSIX only.
"""

from __future__ import annotations

import logging
import os
import resource
from collections.abc import Callable

from kiln.errors import SandboxSetupError
from kiln.sandbox.base import ExecResult, Sandbox
from kiln.sandbox.security import check_command

logger = logging.getLogger(__name__)


# Provider credentials and service settings never reach sandboxed commands
_SCRUBBED_VARS = frozenset({"ANTHROPIC_API_KEY", "ANTHROPIC_AUTH_TOKEN"})
_SCRUBBED_PREFIX = "KILN_"


def _child_env(extra: dict[str, str] | None) -> dict[str, str]:
    """Host environment minus credentials, with caller overrides on top."""
    env = {
        k: v for k, v in os.environ.items()
        if k not in _SCRUBBED_VARS and not k.startswith(_SCRUBBED_PREFIX)
    }
    env.update(extra or {})
    return env


def _limits_preexec(cpu_seconds: int, memory_mb: int) -> Callable[[], None] | None:
    """Build a preexec_fn applying RLIMIT_CPU / RLIMIT_AS, or None if unlimited."""
    if cpu_seconds <= 0 and memory_mb <= 0:
        return None

    def _apply() -> None:
        if cpu_seconds > 0:
            resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds))
        if memory_mb > 0:
            limit = memory_mb * 1024 * 1024
            resource.setrlimit(resource.RLIMIT_AS, (limit, limit))

    return _apply


class LocalSandbox(Sandbox):
    """Run commands directly on the host, restricted to the workspace."""

    def __init__(
        self,
        workspace_dir: str,
        *,
        allowed_commands: list[str] | None = None,
        cpu_seconds: int = 0,
        memory_mb: int = 0,
        default_timeout: float = 300.0,
        grace_period: float = 2.0,
        max_output_chars: int = 100_000,
    ) -> None:
        super().__init__(
            workspace_dir,
            default_timeout=default_timeout,
            grace_period=grace_period,
            max_output_chars=max_output_chars,
        )
        self._allowed = allowed_commands if allowed_commands is not None else ["*"]
        self._preexec = _limits_preexec(cpu_seconds, memory_mb)

    @property
    def kind(self) -> str:
        return "local"

    async def start(self) -> None:
        try:
            await super().start()
        except OSError as e:
            raise SandboxSetupError(f"Cannot create workspace {self._workspace}: {e}") from e
        logger.info("Local sandbox ready (workspace: %s)", self._workspace)

    async def run(
        self,
        command: str,
        working_dir: str | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        check_command(command, self._allowed)
        cwd = self.resolve_path(working_dir) if working_dir else self._workspace.resolve()
        if not cwd.is_dir():
            raise FileNotFoundError(f"Working directory does not exist: {working_dir}")

        return await self._spawn(
            ["sh", "-c", command],
            timeout=self.effective_timeout(timeout),
            cwd=str(cwd),
            env=_child_env(env),
            preexec_fn=self._preexec,
        )
