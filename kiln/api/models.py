"""Shared data models for the agent core.

Kept free of behaviour so runner.py, tools.py, compaction.py and
provider.py can all import it without cycles.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Union
from uuid import uuid4

# ---------------------------------------------------------------------------
# Tool calls and outcomes
# ---------------------------------------------------------------------------


class FailureKind(StrEnum):
    UNKNOWN_TOOL = "unknown_tool"
    INVALID_ARGUMENTS = "invalid_arguments"
    EXECUTION_ERROR = "execution_error"
    TIMEOUT = "timeout"
    SANDBOX_SETUP_ERROR = "sandbox_setup_error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ToolCall:
    """A model-requested invocation. Consumed exactly once by the dispatcher."""

    name: str
    call_id: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Success:
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    message: str

    @property
    def ok(self) -> bool:
        return False


ToolOutcome = Union[Success, Failure]


def outcome_text(outcome: ToolOutcome) -> str:
    """Model-facing text for an outcome."""
    if isinstance(outcome, Success):
        return outcome.content
    return f"[{outcome.kind}] {outcome.message}"


# ---------------------------------------------------------------------------
# Turns
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UserMessage:
    text: str


@dataclass(frozen=True)
class ModelMessage:
    text: str = ""
    tool_calls: tuple[ToolCall, ...] = ()


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    tool_name: str
    outcome: ToolOutcome

    @property
    def is_error(self) -> bool:
        return not self.outcome.ok


@dataclass(frozen=True)
class SystemSummary:
    """Synthetic, lossy stand-in for a range of earlier turns.

    Only the compressor creates these. A summary is never summarized
    again and is kept for the rest of the session.
    """

    text: str
    replaced_turns: int = 0
    lossy: bool = True


Turn = Union[UserMessage, ModelMessage, ToolResult, SystemSummary]


def render_turn(turn: Turn) -> str:
    """Plain-text rendering of a turn, used for token estimation and summaries."""
    if isinstance(turn, UserMessage):
        return turn.text
    if isinstance(turn, ModelMessage):
        parts = [turn.text] if turn.text else []
        for call in turn.tool_calls:
            args = json.dumps(call.arguments, sort_keys=True, default=str)
            parts.append(f"{call.name}({args})")
        return "\n".join(parts)
    if isinstance(turn, ToolResult):
        return outcome_text(turn.outcome)
    if isinstance(turn, SystemSummary):
        return turn.text
    raise TypeError(f"Not a turn: {turn!r}")


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@dataclass
class TokenBudget:
    """Per-session token counter. used <= limit is a soft bound."""

    limit: int
    used: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def exceeded(self) -> bool:
        return self.used > self.limit


class LoopState(StrEnum):
    AWAITING_USER_INPUT = "awaiting_user_input"
    MODEL_REQUESTED = "model_requested"
    TOOLS_PENDING = "tools_pending"
    RESPONDING = "responding"
    CANCELLED = "cancelled"


@dataclass
class Session:
    """One user-facing conversation, owned by the agent loop."""

    budget: TokenBudget
    id: str = field(default_factory=lambda: uuid4().hex)
    instructions: str | None = None  # pinned, never compressed
    turns: list[Turn] = field(default_factory=list)
    state: LoopState = LoopState.AWAITING_USER_INPUT
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    last_input: str | None = None
    compression_count: int = 0

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


# ---------------------------------------------------------------------------
# Turn outcome (returned to the presentation layer)
# ---------------------------------------------------------------------------


class TurnStatus(StrEnum):
    COMPLETED = "completed"
    MAX_ITERATIONS_EXCEEDED = "max_iterations_exceeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class TurnOutcome:
    """Result of one user turn."""

    status: TurnStatus
    text: str = ""
    error: str | None = None
    iterations: int = 0
    tool_results: list[ToolResult] = field(default_factory=list)
