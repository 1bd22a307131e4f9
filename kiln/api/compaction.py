"""Conversation compaction -- keeps a session inside its token budget.

When the accountant reports the session is over the compression
threshold, the older part of the history (the head) is summarized by
the model and replaced with a single lossy SystemSummary. The last
``preserve_tail_turns`` turns and the pinned instructions are never
touched, and existing summaries are never summarized again.

The summarization call is an isolated sub-request with tools disabled.
It does not go through the agent loop.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence

from kiln.api.accounting import TokenAccountant
from kiln.api.models import (
    ModelMessage,
    Session,
    SystemSummary,
    ToolResult,
    Turn,
    UserMessage,
    outcome_text,
)
from kiln.api.provider import ModelClient
from kiln.config import Settings
from kiln.events import COMPRESSION_OCCURRED, Event, EventBus

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# Summarization prompt
# ------------------------------------------------------------------

SUMMARY_SYSTEM_PROMPT = """\
You are a conversation summarizer for a coding agent. Output ONLY a
structured summary of the conversation excerpt you are given.
Be brief: the summary replaces the excerpt and must be much shorter.

## Format

## Goal
[1-2 sentences]

## Progress
### Done
- [x] [Completed items]
### In Progress
- [ ] [Current work]

## Key Decisions
- **[Decision]**: [Rationale]

## Critical Context
- [File paths, commands run, error messages, function names]

## Next Steps
1. [Ordered list]
"""

# Per-result cap when serializing tool output for the summarizer
_MAX_RESULT_CHARS = 2000


class SummaryRejected(ValueError):
    """The model's summary was empty or did not shrink the history."""


class ConversationCompactor:
    """Replaces the compressible head of a session with a SystemSummary."""

    def __init__(
        self,
        model: ModelClient,
        accountant: TokenAccountant,
        settings: Settings,
        bus: EventBus | None = None,
    ) -> None:
        self._model = model
        self._accountant = accountant
        self._settings = settings
        self._bus = bus

    def partition(self, turns: Sequence[Turn]) -> tuple[int, int]:
        """Return [start, end) of the compressible head.

        The head is the run of non-summary turns after the last
        SystemSummary and before the preserved tail. start == end means
        there is nothing to compress.
        """
        tail_start = max(0, len(turns) - self._settings.preserve_tail_turns)
        start = 0
        for i in range(tail_start - 1, -1, -1):
            if isinstance(turns[i], SystemSummary):
                start = i + 1
                break
        return start, max(start, tail_start)

    async def compress(self, session: Session, pending: list[Event] | None = None) -> bool:
        """Compress the session history in place.

        Returns True if a summary replaced part of the history. On any
        failure the session is left untouched and False is returned, so
        the next threshold crossing retries.

        When pending is given the compression_occurred event is appended
        to it instead of being emitted; the caller emits it once the
        history it describes is committed.
        """
        start, end = self.partition(session.turns)
        if start == end:
            logger.debug("Session %s: nothing to compress", session.id)
            return False

        head = session.turns[start:end]
        head_tokens = self._accountant.estimate_turns(head)
        before = session.budget.used
        start_time = time.monotonic()

        try:
            summary_text = await self._summarize(head)
            summary = SystemSummary(text=summary_text, replaced_turns=len(head))
            self._validate(summary, head_tokens)
        except Exception as e:
            logger.error("Compression of session %s failed: %s", session.id, e)
            return False

        session.turns[start:end] = [summary]
        after = self._accountant.recompute(session)
        session.compression_count += 1

        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            "Compressed session %s: %d turns -> summary (%d -> %d tokens, "
            "%d ms, compression #%d)",
            session.id, len(head), before, after, duration_ms,
            session.compression_count,
        )
        event = Event(
            COMPRESSION_OCCURRED,
            session.id,
            {
                "tokens_before": before,
                "tokens_after": after,
                "replaced_turns": len(head),
                "compression_count": session.compression_count,
            },
        )
        if pending is not None:
            pending.append(event)
        elif self._bus:
            await self._bus.emit(event)
        return True

    async def _summarize(self, head: Sequence[Turn]) -> str:
        message = await self._model.complete(
            [UserMessage(self.serialize(head))],
            [],
            instructions=SUMMARY_SYSTEM_PROMPT,
            model=self._settings.effective_summary_model,
        )
        return message.text.strip()

    def _validate(self, summary: SystemSummary, head_tokens: int) -> None:
        if not summary.text:
            raise SummaryRejected("empty summary")
        summary_tokens = self._accountant.estimate_turn(summary)
        if summary_tokens >= head_tokens:
            raise SummaryRejected(
                f"summary ({summary_tokens} tokens) is not smaller than "
                f"the turns it replaces ({head_tokens} tokens)"
            )

    @staticmethod
    def serialize(turns: Sequence[Turn]) -> str:
        """Render turns as readable text for the summarizer."""
        lines = []
        for turn in turns:
            if isinstance(turn, UserMessage):
                lines.append(f"**User:** {turn.text}")
            elif isinstance(turn, ModelMessage):
                parts = [turn.text] if turn.text else []
                parts.extend(
                    f"[called {c.name} with {c.arguments}]" for c in turn.tool_calls
                )
                lines.append(f"**Assistant:** {chr(10).join(parts)}")
            elif isinstance(turn, ToolResult):
                text = outcome_text(turn.outcome)
                if len(text) > _MAX_RESULT_CHARS:
                    text = text[:_MAX_RESULT_CHARS] + "\n[...truncated]"
                lines.append(f"**Tool result ({turn.tool_name}):** {text}")
        return "\n\n".join(lines)
