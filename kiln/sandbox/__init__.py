"""Sandbox boundary -- where side-effecting tool operations execute.

Public API:
    Sandbox         - Abstract boundary (run, resolve_path, read/write)
    LocalSandbox    - Host execution with allow-list and rlimits
    DockerSandbox   - Container execution with scoped bind mount
    ExecResult      - Outcome of a sandboxed command
    create_sandbox  - Build the backend selected in Settings
"""

from kiln.config import Settings
from kiln.sandbox.base import ExecResult, Sandbox, terminate_process_group
from kiln.sandbox.docker import DockerSandbox
from kiln.sandbox.local import LocalSandbox


def create_sandbox(settings: Settings) -> Sandbox:
    """Instantiate the sandbox backend named by settings.sandbox_backend."""
    common = {
        "allowed_commands": settings.allowed_commands,
        "default_timeout": settings.sandbox_timeout,
        "grace_period": settings.sandbox_grace_period,
        "max_output_chars": settings.sandbox_max_output_chars,
    }
    if settings.sandbox_backend == "docker":
        return DockerSandbox(
            settings.workspace_dir,
            image=settings.docker_image,
            network=settings.docker_network,
            memory=settings.docker_memory or None,
            cpus=settings.docker_cpus or None,
            pids_limit=settings.docker_pids_limit,
            **common,
        )
    return LocalSandbox(
        settings.workspace_dir,
        cpu_seconds=settings.sandbox_cpu_seconds,
        memory_mb=settings.sandbox_memory_mb,
        **common,
    )


__all__ = [
    "DockerSandbox",
    "ExecResult",
    "LocalSandbox",
    "Sandbox",
    "create_sandbox",
    "terminate_process_group",
]
