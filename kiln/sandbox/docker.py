"""Docker sandbox: commands run in an isolated container.

A long-lived container (``sleep infinity``) bind-mounts the workspace
at /workspace with no network by default. Commands go through
``docker exec`` under ``setsid`` so the in-container process group can
be killed on timeout or cancellation; file access uses the host side
of the bind mount.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
import uuid

from kiln.errors import SandboxSetupError
from kiln.sandbox.base import ExecResult, Sandbox
from kiln.sandbox.security import check_command

logger = logging.getLogger(__name__)

CONTAINER_WORKDIR = "/workspace"
_PID_DIR = "/tmp/kiln-pids"


async def _docker(*args: str, timeout: float = 60) -> tuple[int, str, str]:
    """Run a docker CLI command for container management (not sandboxed work)."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "docker",
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise SandboxSetupError("docker CLI not found on PATH") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return 124, "", f"docker {args[0]} timed out"
    return (
        proc.returncode if proc.returncode is not None else 1,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


class DockerSandbox(Sandbox):
    """Container-isolated execution with a scoped workspace mount."""

    def __init__(
        self,
        workspace_dir: str,
        *,
        image: str = "python:3.12-slim",
        network: str = "none",
        memory: str | None = "2g",
        cpus: str | None = "2",
        pids_limit: int = 512,
        allowed_commands: list[str] | None = None,
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
        self._image = image
        self._network = network
        self._memory = memory
        self._cpus = cpus
        self._pids_limit = pids_limit
        self._allowed = allowed_commands if allowed_commands is not None else ["*"]
        self._container_name = f"kiln-sandbox-{uuid.uuid4().hex[:8]}"
        self._container_id: str | None = None

    @property
    def kind(self) -> str:
        return "docker"

    @property
    def container_name(self) -> str:
        return self._container_name

    async def start(self) -> None:
        if self._container_id:
            return
        try:
            await super().start()
        except OSError as e:
            raise SandboxSetupError(f"Cannot create workspace {self._workspace}: {e}") from e

        args = [
            "run", "-d",
            "--name", self._container_name,
            "-v", f"{self._workspace.resolve()}:{CONTAINER_WORKDIR}:rw",
            "-w", CONTAINER_WORKDIR,
            "--network", self._network or "none",
            "--pids-limit", str(self._pids_limit),
        ]
        if self._memory:
            args.extend(["--memory", self._memory])
        if self._cpus:
            args.extend(["--cpus", self._cpus])
        args.extend([self._image, "sleep", "infinity"])

        exit_code, stdout, stderr = await _docker(*args, timeout=120)
        if exit_code != 0:
            raise SandboxSetupError(f"Failed to create Docker container: {stderr.strip()}")
        self._container_id = stdout.strip()[:12]

        exit_code, _, stderr = await _docker("exec", self._container_name, "mkdir", "-p", _PID_DIR)
        if exit_code != 0:
            raise SandboxSetupError(f"Container setup failed: {stderr.strip()}")
        logger.info("Docker sandbox %s started (image=%s, network=%s)",
                    self._container_id, self._image, self._network)

    async def close(self) -> None:
        await super().close()
        if not self._container_id:
            return
        try:
            await _docker("rm", "-f", self._container_name, timeout=30)
        finally:
            self._container_id = None
        logger.info("Docker sandbox %s removed", self._container_name)

    def to_container_path(self, working_dir: str | None) -> str:
        """Translate a workspace path to its location inside the container."""
        if not working_dir:
            return CONTAINER_WORKDIR
        host = self.resolve_path(working_dir)
        relative = host.relative_to(self._workspace.resolve()).as_posix()
        return posixpath.normpath(posixpath.join(CONTAINER_WORKDIR, relative))

    async def run(
        self,
        command: str,
        working_dir: str | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        if not self._container_id:
            raise SandboxSetupError("Docker sandbox not started -- call start() first")
        check_command(command, self._allowed)

        token = uuid.uuid4().hex[:12]
        pid_file = f"{_PID_DIR}/{token}"
        # setsid makes the inner shell a group leader; its pid is the pgid
        wrapper = f'echo $$ > {pid_file}; exec sh -c "$1"'

        args = ["docker", "exec", "-w", self.to_container_path(working_dir)]
        for key, value in (env or {}).items():
            args.extend(["-e", f"{key}={value}"])
        args.extend([self._container_name, "setsid", "sh", "-c", wrapper, "kiln", command])

        async def _kill_inner() -> None:
            kill = (
                f"pgid=$(cat {pid_file} 2>/dev/null) && "
                f"kill -TERM -- -$pgid 2>/dev/null; sleep {self._grace_period:g}; "
                f"kill -KILL -- -$pgid 2>/dev/null; rm -f {pid_file}"
            )
            await _docker("exec", self._container_name, "sh", "-c", kill,
                          timeout=self._grace_period + 10)

        try:
            return await self._spawn(
                args,
                timeout=self.effective_timeout(timeout),
                on_abort=_kill_inner,
            )
        finally:
            await _docker("exec", self._container_name, "rm", "-f", pid_file, timeout=10)
