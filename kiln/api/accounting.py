"""Token accounting -- estimates and tracks session token usage.

The estimate is a fixed chars-per-token heuristic. It does not try to
match the provider tokenizer; it only has to be deterministic and
monotonic so budget decisions are reproducible.
"""

from __future__ import annotations

import logging
import math
from typing import Any

from kiln.api.models import Session, Turn, render_turn
from kiln.config import Settings
from kiln.errors import BudgetExceeded

logger = logging.getLogger(__name__)


class TokenEstimator:
    """chars/N token estimate with a floor of 1."""

    def __init__(self, chars_per_token: int = 4) -> None:
        if chars_per_token < 1:
            raise ValueError("chars_per_token must be >= 1")
        self._chars_per_token = chars_per_token

    @property
    def chars_per_token(self) -> int:
        return self._chars_per_token

    def estimate(self, text: str | Any) -> int:
        """Estimate token count for text content."""
        if not isinstance(text, str):
            text = str(text)
        return max(1, math.ceil(len(text) / self._chars_per_token))


class TokenAccountant:
    """Budget bookkeeping for sessions.

    record() is called by the agent loop for every appended turn;
    recompute() rebuilds the count after the compressor rewrites history.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self.estimator = TokenEstimator(settings.chars_per_token)

    def estimate(self, text: str) -> int:
        return self.estimator.estimate(text)

    def estimate_turn(self, turn: Turn) -> int:
        """Rendered text estimate plus fixed per-turn overhead."""
        return self.estimator.estimate(render_turn(turn)) + self._settings.turn_overhead_tokens

    def estimate_turns(self, turns: list[Turn]) -> int:
        return sum(self.estimate_turn(t) for t in turns)

    def estimate_output(self, text: str) -> int:
        """Estimate a single tool output before it becomes a turn."""
        return self.estimator.estimate(text)

    def instructions_cost(self, session: Session) -> int:
        if not session.instructions:
            return 0
        return self.estimator.estimate(session.instructions) + self._settings.turn_overhead_tokens

    def record(self, session: Session, turn: Turn) -> int:
        """Add a turn's estimate to the session budget. Returns the estimate."""
        cost = self.estimate_turn(turn)
        session.budget.used += cost
        return cost

    def check_limit(self, session: Session) -> None:
        """Raise BudgetExceeded if used is past the (soft) limit."""
        if session.budget.exceeded:
            raise BudgetExceeded(session.budget.used, session.budget.limit)

    def recompute(self, session: Session) -> int:
        """Rebuild used from pinned instructions plus the current turns."""
        session.budget.used = self.instructions_cost(session) + self.estimate_turns(session.turns)
        logger.debug("Recomputed session %s: %d tokens over %d turns",
                     session.id, session.budget.used, len(session.turns))
        return session.budget.used

    def threshold(self, session: Session) -> float:
        return self._settings.compress_fraction * session.budget.limit

    def should_compress(self, session: Session) -> bool:
        """True once used crosses compress_fraction of the limit."""
        if not self._settings.compaction_enabled:
            return False
        return session.budget.used > self.threshold(session)
