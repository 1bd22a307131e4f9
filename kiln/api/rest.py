"""REST API for Kiln.

Endpoints:
  POST   /sessions                 - Create a session
  GET    /sessions/{id}            - Session state, budget and turns
  POST   /sessions/{id}/messages   - Run a user turn (or replay the last one)
  POST   /sessions/{id}/cancel     - Cancel the session
  DELETE /sessions/{id}            - Cancel and discard the session
  GET    /health                   - Health check
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from kiln.api.models import Session, ToolResult, TurnOutcome, render_turn
from kiln.api.runner import AgentRunner
from kiln.config import Settings
from kiln.errors import KilnError, SessionBusyError, SessionCancelledError

logger = logging.getLogger(__name__)


def _session_json(session: Session, include_turns: bool = False) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": session.id,
        "state": str(session.state),
        "budget": {
            "used": session.budget.used,
            "limit": session.budget.limit,
            "remaining": session.budget.remaining,
        },
        "turn_count": len(session.turns),
        "compression_count": session.compression_count,
        "last_input": session.last_input,
    }
    if include_turns:
        data["turns"] = [
            {"kind": type(t).__name__, "text": render_turn(t)} for t in session.turns
        ]
    return data


def _tool_result_json(result: ToolResult) -> dict[str, Any]:
    return {
        "call_id": result.call_id,
        "tool": result.tool_name,
        "ok": not result.is_error,
        "kind": None if not result.is_error else str(result.outcome.kind),
    }


def _outcome_json(session: Session, outcome: TurnOutcome) -> dict[str, Any]:
    return {
        "session_id": session.id,
        "status": str(outcome.status),
        "response": outcome.text,
        "error": outcome.error,
        "iterations": outcome.iterations,
        "tool_results": [_tool_result_json(r) for r in outcome.tool_results],
        "budget": {"used": session.budget.used, "limit": session.budget.limit},
    }


def create_app(
    runner: AgentRunner,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    def _lookup(request: Request) -> Session | None:
        return runner.get_session(request.path_params["session_id"])

    def _not_found(request: Request) -> JSONResponse:
        return JSONResponse(
            {"error": f"Session not found: {request.path_params['session_id']}"},
            status_code=404,
        )

    async def create_session(request: Request) -> JSONResponse:
        """POST /sessions - Create a session with optional pinned instructions."""
        body: dict[str, Any] = {}
        if await request.body():
            try:
                body = await request.json()
            except ValueError:
                return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
            if not isinstance(body, dict):
                return JSONResponse({"error": "Body must be a JSON object"}, status_code=400)

        instructions = body.get("instructions")
        if instructions is not None and not isinstance(instructions, str):
            return JSONResponse({"error": "instructions must be a string"}, status_code=400)
        try:
            session = runner.new_session(instructions, body.get("session_id"))
        except KilnError as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        return JSONResponse(_session_json(session), status_code=201)

    async def get_session(request: Request) -> JSONResponse:
        """GET /sessions/{id} - Session detail including rendered turns."""
        session = _lookup(request)
        if session is None:
            return _not_found(request)
        return JSONResponse(_session_json(session, include_turns=True))

    async def post_message(request: Request) -> JSONResponse:
        """POST /sessions/{id}/messages - Run one user turn."""
        session = _lookup(request)
        if session is None:
            return _not_found(request)
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Body must be a JSON object"}, status_code=400)

        replay = bool(body.get("replay", False))
        message = body.get("message")
        if not replay and (not isinstance(message, str) or not message):
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)

        try:
            if replay:
                outcome = await runner.replay_last(session)
            else:
                outcome = await runner.run_turn(session, message)
        except (SessionBusyError, SessionCancelledError) as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        except KilnError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except Exception as e:
            logger.error("Turn error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse(_outcome_json(session, outcome))

    async def cancel_session(request: Request) -> JSONResponse:
        """POST /sessions/{id}/cancel - Cancel the running turn and the session."""
        session = _lookup(request)
        if session is None:
            return _not_found(request)
        await runner.cancel(session)
        return JSONResponse({"status": "cancelled", "session_id": session.id})

    async def delete_session(request: Request) -> JSONResponse:
        """DELETE /sessions/{id} - End a session."""
        session = _lookup(request)
        if session is None:
            return _not_found(request)
        await runner.end_session(session)
        return JSONResponse({"status": "ended", "session_id": session.id})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Liveness plus basic configuration."""
        sandbox = runner.sandbox
        return JSONResponse({
            "status": "healthy",
            "model": settings.model,
            "sandbox": sandbox.kind if sandbox is not None else None,
            "sessions": len(runner.sessions),
        })

    routes = [
        Route("/sessions", create_session, methods=["POST"]),
        Route("/sessions/{session_id}", get_session, methods=["GET"]),
        Route("/sessions/{session_id}", delete_session, methods=["DELETE"]),
        Route("/sessions/{session_id}/messages", post_message, methods=["POST"]),
        Route("/sessions/{session_id}/cancel", cancel_session, methods=["POST"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
