"""Exception hierarchy for the Kiln agent core.

Tool-level errors never escape the dispatcher; they are folded into a
Failure outcome and fed back to the model. Provider and session errors
surface to the caller of the agent loop.
"""

from __future__ import annotations

from enum import StrEnum


class KilnError(Exception):
    """Base class for all Kiln errors."""


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class DuplicateToolError(KilnError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Tool already registered: {name}")
        self.name = name


class UnknownToolError(KilnError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class RegistryFrozenError(KilnError):
    """Registration attempted after the registry was frozen."""


class InvalidArgumentsError(KilnError):
    """A tool call's arguments do not match the tool's parameter schema."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field


# ---------------------------------------------------------------------------
# Sandbox
# ---------------------------------------------------------------------------


class SandboxError(KilnError):
    """Base class for sandbox boundary errors."""


class SandboxSetupError(SandboxError):
    """The isolated environment could not be created or reached."""


class SandboxPolicyError(SandboxError):
    """A command or path was rejected by the sandbox policy."""


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class ProviderErrorKind(StrEnum):
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"


_RETRYABLE = frozenset({ProviderErrorKind.RATE_LIMITED, ProviderErrorKind.NETWORK_ERROR})


class ProviderError(KilnError):
    """The model collaborator failed to produce a response."""

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(f"{kind}: {message}")
        self.kind = kind
        self.message = message
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE


# ---------------------------------------------------------------------------
# Session / loop
# ---------------------------------------------------------------------------


class BudgetExceeded(KilnError):
    """Soft signal: token usage crossed the session limit. Triggers compression."""

    def __init__(self, used: int, limit: int) -> None:
        super().__init__(f"Token budget exceeded: {used} > {limit}")
        self.used = used
        self.limit = limit


class CancellationRequested(KilnError):
    """The session's cancellation signal fired during a turn."""


class SessionCancelledError(KilnError):
    """A turn was started on a session that is already cancelled."""


class SessionBusyError(KilnError):
    """A turn was started while another turn of the same session is running."""


class MaxIterationsExceeded(KilnError):
    """The model kept requesting tools past the configured iteration limit."""

    def __init__(self, iterations: int) -> None:
        super().__init__(
            f"Stopped after {iterations} consecutive tool-call responses"
        )
        self.iterations = iterations
