"""Agent loop -- drives one session through model requests and tool calls.

A user turn moves the session through

    awaiting_user_input -> model_requested -> tools_pending -> model_requested ...
                                           -> responding -> awaiting_user_input

with ``cancelled`` reachable (and terminal) from any of them. Only one
turn runs per session at a time; independent sessions run concurrently
and share nothing mutable except the frozen tool registry.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Awaitable
from typing import TypeVar

from kiln.api.accounting import TokenAccountant
from kiln.api.compaction import ConversationCompactor
from kiln.api.models import (
    LoopState,
    ModelMessage,
    Session,
    Success,
    TokenBudget,
    ToolResult,
    Turn,
    TurnOutcome,
    TurnStatus,
    UserMessage,
)
from kiln.api.provider import ModelClient
from kiln.api.tools import ToolDispatcher
from kiln.config import Settings
from kiln.errors import (
    BudgetExceeded,
    CancellationRequested,
    KilnError,
    MaxIterationsExceeded,
    ProviderError,
    SessionBusyError,
    SessionCancelledError,
)
from kiln.events import (
    SESSION_CANCELLED,
    TURN_APPENDED,
    TURN_FAILED,
    Event,
    EventBus,
)
from kiln.sandbox.base import Sandbox

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AgentRunner:
    """Runs user turns against the model with an internal tool loop."""

    def __init__(
        self,
        model: ModelClient,
        dispatcher: ToolDispatcher,
        accountant: TokenAccountant,
        compactor: ConversationCompactor | None,
        settings: Settings,
        bus: EventBus | None = None,
    ) -> None:
        self._model = model
        self._dispatcher = dispatcher
        self._accountant = accountant
        self._compactor = compactor
        self._settings = settings
        self._bus = bus
        self._sessions: OrderedDict[str, Session] = OrderedDict()
        self._busy: set[str] = set()

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def new_session(
        self,
        instructions: str | None = None,
        session_id: str | None = None,
    ) -> Session:
        """Create a session. The tool registry is frozen from here on."""
        self._dispatcher.registry.freeze()
        session = Session(budget=TokenBudget(limit=self._settings.token_limit), instructions=instructions)
        if session_id:
            if session_id in self._sessions:
                raise KilnError(f"Session already exists: {session_id}")
            session.id = session_id
        self._accountant.recompute(session)
        self._sessions[session.id] = session
        logger.info("Created session %s (limit=%d)", session.id, session.budget.limit)
        return session

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    @property
    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    @property
    def sandbox(self) -> Sandbox | None:
        return self._dispatcher.sandbox

    def is_busy(self, session: Session) -> bool:
        return session.id in self._busy

    async def cancel(self, session: Session) -> None:
        """Request cancellation. A running turn stops at its next check."""
        if session.state == LoopState.CANCELLED:
            return
        session.cancel_event.set()
        if not self.is_busy(session):
            await self._mark_cancelled(session)
        logger.info("Cancellation requested for session %s", session.id)

    async def end_session(self, session: Session) -> None:
        """Cancel the session and forget it."""
        await self.cancel(session)
        self._sessions.pop(session.id, None)

    async def replay_last(self, session: Session) -> TurnOutcome:
        """Resubmit the last user input, typically after a failed turn."""
        if session.last_input is None:
            raise KilnError(f"Session {session.id} has no input to replay")
        return await self.run_turn(session, session.last_input)

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def run_turn(self, session: Session, text: str) -> TurnOutcome:
        """Execute one user turn to completion, failure or cancellation.

        Steps:
        1. Append the user message and record its tokens
        2. Compress history if over the threshold
        3. Request a model response (retrying transient provider errors)
        4. Without tool calls: append the response and finish
        5. With tool calls: append, dispatch all, append results, go to 2
        """
        if session.cancelled or session.state == LoopState.CANCELLED:
            raise SessionCancelledError(f"Session {session.id} is cancelled")
        if self.is_busy(session):
            raise SessionBusyError(f"Session {session.id} already has a turn in progress")

        self._busy.add(session.id)
        session.last_input = text
        timer: asyncio.TimerHandle | None = None
        if self._settings.turn_timeout > 0:
            timer = asyncio.get_running_loop().call_later(
                self._settings.turn_timeout, self._on_turn_timeout, session,
            )
        try:
            return await self._run(session, text)
        finally:
            if timer:
                timer.cancel()
            self._busy.discard(session.id)

    def _on_turn_timeout(self, session: Session) -> None:
        logger.warning("Session %s turn exceeded %.1fs, cancelling",
                       session.id, self._settings.turn_timeout)
        session.cancel_event.set()

    async def _run(self, session: Session, text: str) -> TurnOutcome:
        snapshot = (list(session.turns), session.budget.used, session.compression_count)
        # compression_occurred events wait until the turn's history is kept
        pending: list[Event] = []

        results: list[ToolResult] = []
        iterations = 0
        last_text = ""
        try:
            await self._append(session, UserMessage(text))
            while True:
                self._check_cancelled(session)
                session.state = LoopState.MODEL_REQUESTED
                await self._maybe_compress(session, pending)
                self._check_cancelled(session)

                message = await self._request(session)
                iterations += 1
                last_text = message.text

                if not message.tool_calls:
                    session.state = LoopState.RESPONDING
                    await self._append(session, message)
                    session.state = LoopState.AWAITING_USER_INPUT
                    await self._flush(pending)
                    return TurnOutcome(
                        TurnStatus.COMPLETED,
                        text=message.text,
                        iterations=iterations,
                        tool_results=results,
                    )

                await self._append(session, message)
                session.state = LoopState.TOOLS_PENDING
                outcomes = await self._dispatcher.dispatch_all(
                    message.tool_calls, session.cancel_event, session.id,
                )
                for call, outcome in zip(message.tool_calls, outcomes):
                    if isinstance(outcome, Success):
                        logger.debug("Tool %s returned ~%d tokens",
                                     call.name, self._accountant.estimate_output(outcome.content))
                    result = ToolResult(call.call_id, call.name, outcome)
                    await self._append(session, result)
                    results.append(result)

                self._check_cancelled(session)
                if iterations >= self._settings.max_iterations:
                    raise MaxIterationsExceeded(iterations)

        except CancellationRequested:
            await self._flush(pending)
            await self._mark_cancelled(session)
            return TurnOutcome(
                TurnStatus.CANCELLED,
                text=last_text,
                error="Turn cancelled",
                iterations=iterations,
                tool_results=results,
            )

        except MaxIterationsExceeded as e:
            logger.warning("Session %s: %s", session.id, e)
            session.state = LoopState.AWAITING_USER_INPUT
            await self._flush(pending)
            return TurnOutcome(
                TurnStatus.MAX_ITERATIONS_EXCEEDED,
                text=last_text,
                error=str(e),
                iterations=iterations,
                tool_results=results,
            )

        except ProviderError as e:
            logger.error("Session %s turn failed: %s", session.id, e)
            await self._rollback(session, snapshot, pending, kind=str(e.kind), error=e.message)
            return TurnOutcome(
                TurnStatus.FAILED,
                error=str(e),
                iterations=iterations,
                tool_results=results,
            )

        except Exception as e:
            logger.exception("Session %s turn failed unexpectedly", session.id)
            error = f"{type(e).__name__}: {e}"
            await self._rollback(session, snapshot, pending, kind="internal_error", error=error)
            return TurnOutcome(
                TurnStatus.FAILED,
                error=error,
                iterations=iterations,
                tool_results=results,
            )

    async def _rollback(
        self,
        session: Session,
        snapshot: tuple[list[Turn], int, int],
        pending: list[Event],
        **failure: str,
    ) -> None:
        """Restore the pre-turn history so the input can be replayed cleanly."""
        turns, used, compressions = snapshot
        session.turns[:] = turns
        session.budget.used = used
        session.compression_count = compressions
        session.state = LoopState.AWAITING_USER_INPUT
        if pending:
            logger.debug("Session %s: dropping %d compression events of the failed turn",
                         session.id, len(pending))
            pending.clear()
        await self._emit(TURN_FAILED, session, **failure)

    async def _flush(self, pending: list[Event]) -> None:
        for event in pending:
            if self._bus:
                await self._bus.emit(event)
        pending.clear()

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _append(self, session: Session, turn: Turn) -> None:
        session.turns.append(turn)
        cost = self._accountant.record(session, turn)
        await self._emit(
            TURN_APPENDED, session,
            kind=type(turn).__name__, tokens=cost, tokens_used=session.budget.used,
        )

    async def _maybe_compress(self, session: Session, pending: list[Event]) -> None:
        if self._compactor is None or not self._accountant.should_compress(session):
            return
        try:
            self._accountant.check_limit(session)
        except BudgetExceeded as e:
            logger.warning("Session %s: %s", session.id, e)
        await self._race_cancel(session, self._compactor.compress(session, pending))

    async def _request(self, session: Session) -> ModelMessage:
        """One model request with bounded exponential backoff on transient errors."""
        tools = self._dispatcher.registry.specs()
        attempt = 0
        while True:
            try:
                return await self._race_cancel(
                    session,
                    self._model.complete(
                        list(session.turns), tools, instructions=session.instructions,
                    ),
                )
            except ProviderError as e:
                if not e.retryable or attempt >= self._settings.provider_max_retries:
                    raise
                delay = self._backoff(attempt, e.retry_after)
                attempt += 1
                logger.warning(
                    "Provider %s, retrying in %.1fs (attempt %d/%d)",
                    e.kind, delay, attempt, self._settings.provider_max_retries,
                )
                await self._race_cancel(session, asyncio.sleep(delay))

    def _backoff(self, attempt: int, retry_after: float | None) -> float:
        delay = self._settings.provider_backoff_base * (2 ** attempt)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self._settings.provider_backoff_max)

    async def _race_cancel(self, session: Session, aw: Awaitable[T]) -> T:
        """Await aw unless the session's cancellation signal fires first."""
        task = asyncio.ensure_future(aw)
        cancel_wait = asyncio.create_task(session.cancel_event.wait())
        try:
            await asyncio.wait({task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if task.cancelled():
            raise CancellationRequested(f"Session {session.id} cancelled")
        return task.result()

    def _check_cancelled(self, session: Session) -> None:
        if session.cancelled:
            raise CancellationRequested(f"Session {session.id} cancelled")

    async def _mark_cancelled(self, session: Session) -> None:
        session.state = LoopState.CANCELLED
        logger.info("Session %s cancelled", session.id)
        await self._emit(SESSION_CANCELLED, session)

    async def _emit(self, event_type: str, session: Session, **data: object) -> None:
        if self._bus:
            await self._bus.emit(Event(event_type, session.id, dict(data)))
