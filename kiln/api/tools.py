"""Tool dispatcher -- turns model tool calls into ToolOutcomes.

dispatch() never raises: unknown tools, bad arguments, implementation
errors, sandbox setup problems and timeouts all come back as a Failure
so the model can see and react to them.

dispatch_all() runs one iteration's calls concurrently, serializing
exclusive calls that touch overlapping resources, and returns outcomes
in the order the model requested them.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from kiln.api.models import Failure, FailureKind, Success, ToolCall, ToolOutcome
from kiln.api.registry import RegisteredTool, ToolRegistry, resources_overlap
from kiln.config import Settings
from kiln.errors import (
    InvalidArgumentsError,
    SandboxPolicyError,
    SandboxSetupError,
    UnknownToolError,
)
from kiln.events import TOOL_FINISHED, TOOL_STARTED, Event, EventBus
from kiln.sandbox.base import Sandbox
from kiln.sandbox.security import resolve_within

logger = logging.getLogger(__name__)


class ToolDispatcher:
    """Validates, schedules and invokes registered tools."""

    def __init__(
        self,
        registry: ToolRegistry,
        sandbox: Sandbox | None,
        settings: Settings,
        bus: EventBus | None = None,
    ) -> None:
        self._registry = registry
        self._sandbox = sandbox
        self._settings = settings
        self._bus = bus

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def sandbox(self) -> Sandbox | None:
        return self._sandbox

    # ------------------------------------------------------------------
    # Single call
    # ------------------------------------------------------------------

    async def dispatch(self, call: ToolCall) -> ToolOutcome:
        """Resolve, validate and run one call."""
        try:
            tool = self._registry.lookup(call.name)
        except UnknownToolError as e:
            return Failure(FailureKind.UNKNOWN_TOOL, str(e))

        try:
            arguments = tool.spec.validate(call.arguments)
        except InvalidArgumentsError as e:
            return Failure(FailureKind.INVALID_ARGUMENTS, str(e))

        return await self._invoke(tool, arguments)

    async def _invoke(self, tool: RegisteredTool, arguments: dict[str, Any]) -> ToolOutcome:
        name = tool.spec.name
        kwargs = dict(arguments)
        if tool.spec.requires_sandbox:
            if self._sandbox is None:
                return Failure(FailureKind.SANDBOX_SETUP_ERROR, f"No sandbox available for {name}")
            kwargs["sandbox"] = self._sandbox

        timeout = self._settings.tool_timeout
        try:
            result = await asyncio.wait_for(tool.handler(**kwargs), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %.1fs", name, timeout)
            return Failure(FailureKind.TIMEOUT, f"Tool {name} timed out after {timeout:g}s")
        except SandboxSetupError as e:
            logger.error("Sandbox unavailable for %s: %s", name, e)
            return Failure(FailureKind.SANDBOX_SETUP_ERROR, str(e))
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            return Failure(FailureKind.EXECUTION_ERROR, f"{type(e).__name__}: {e}")

        if isinstance(result, Failure):
            return result
        if not isinstance(result, Success):
            result = Success(str(result))
        return self._trim(name, result)

    def _trim(self, name: str, outcome: Success) -> Success:
        """Soft-trim oversized output, keeping head and tail."""
        text = outcome.content
        limit = self._settings.tool_output_max_chars
        if len(text) <= limit:
            return outcome
        head = self._settings.tool_output_head_chars
        tail = self._settings.tool_output_tail_chars
        logger.info("Trimmed %s output: %d chars (keeping %d head + %d tail)",
                    name, len(text), head, tail)
        trimmed = (
            f"{text[:head]}\n\n"
            f"--- trimmed (kept {head} head + {tail} tail "
            f"of {len(text)} chars) ---\n\n"
            f"{text[-tail:]}"
        )
        return Success(trimmed, {**outcome.metadata, "original_chars": len(text)})

    # ------------------------------------------------------------------
    # One iteration's calls
    # ------------------------------------------------------------------

    def _workspace(self) -> Path:
        if self._sandbox is not None:
            return self._sandbox.workspace
        return Path(self._settings.workspace_dir)

    def _resource_key(self, call: ToolCall) -> str | None:
        """Resource key with paths resolved against the workspace.

        ``a.txt``, ``./a.txt`` and ``<workspace>/a.txt`` name one file and
        must get one key. Paths that cannot be resolved keep the
        normalized spelling; the call itself will fail on them.
        """
        if call.name not in self._registry:
            return None
        spec = self._registry.lookup(call.name).spec
        args = call.arguments if isinstance(call.arguments, dict) else {}
        key = spec.resource_key(args)
        if key is None or key.startswith("tool:"):
            return key
        try:
            return str(resolve_within(args[spec.resource_arg], self._workspace()))
        except (SandboxPolicyError, OSError, ValueError):
            return key

    async def dispatch_all(
        self,
        calls: Sequence[ToolCall],
        cancel_event: asyncio.Event | None = None,
        session_id: str = "",
    ) -> list[ToolOutcome]:
        """Run calls concurrently; outcomes come back in call order.

        An exclusive call waits for every earlier call whose resource
        overlaps its own before taking a concurrency slot. When
        cancel_event fires, in-flight calls are cancelled and report
        Failure(cancelled); a call that dies any other way reports
        Failure(execution_error).
        """
        if not calls:
            return []

        semaphore = asyncio.Semaphore(self._settings.max_concurrent_tools)
        keys = [self._resource_key(c) for c in calls]
        finished = [asyncio.Event() for _ in calls]
        outcomes: list[ToolOutcome | None] = [None] * len(calls)

        async def run_one(i: int) -> None:
            call = calls[i]
            try:
                key = keys[i]
                if key is not None:
                    for j in range(i):
                        if keys[j] is not None and resources_overlap(key, keys[j]):
                            await finished[j].wait()
                async with semaphore:
                    await self._emit(TOOL_STARTED, session_id, call)
                    started = time.monotonic()
                    outcome = await self.dispatch(call)
                outcomes[i] = outcome
                await self._emit(
                    TOOL_FINISHED, session_id, call,
                    ok=outcome.ok,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
            finally:
                finished[i].set()

        tasks = [
            asyncio.create_task(run_one(i), name=f"tool-{c.name}-{c.call_id}")
            for i, c in enumerate(calls)
        ]
        everything = asyncio.gather(*tasks, return_exceptions=True)
        try:
            if cancel_event is None:
                await everything
            else:
                cancel_wait = asyncio.create_task(cancel_event.wait())
                try:
                    await asyncio.wait(
                        {everything, cancel_wait},
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                finally:
                    cancel_wait.cancel()
                if not everything.done():
                    logger.info("Cancelling %d in-flight tool calls",
                                sum(1 for t in tasks if not t.done()))
                    for task in tasks:
                        task.cancel()
                    await everything
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        return [self._settle(o, t, c) for o, t, c in zip(outcomes, tasks, calls)]

    @staticmethod
    def _settle(outcome: ToolOutcome | None, task: asyncio.Task, call: ToolCall) -> ToolOutcome:
        """Outcome for a finished task; only a cancelled task reports cancelled."""
        if outcome is not None:
            return outcome
        if task.cancelled():
            return Failure(FailureKind.CANCELLED, f"Tool {call.name} was cancelled")
        error = task.exception()
        logger.error("Tool %s finished without an outcome: %r", call.name, error)
        if error is None:
            return Failure(FailureKind.EXECUTION_ERROR, f"Tool {call.name} produced no outcome")
        return Failure(FailureKind.EXECUTION_ERROR, f"{type(error).__name__}: {error}")

    async def _emit(self, event_type: str, session_id: str, call: ToolCall, **data: Any) -> None:
        if self._bus:
            await self._bus.emit(Event(
                event_type,
                session_id,
                {"tool": call.name, "call_id": call.call_id, **data},
            ))
