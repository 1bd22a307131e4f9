"""Kiln entry point.

Initializes all components and starts the server:
  Settings -> EventBus -> Sandbox -> ToolRegistry -> ModelClient -> Runner -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from kiln.api.accounting import TokenAccountant
from kiln.api.builtin_tools import register_builtin_tools
from kiln.api.compaction import ConversationCompactor
from kiln.api.provider import AnthropicClient
from kiln.api.registry import ToolRegistry
from kiln.api.runner import AgentRunner
from kiln.api.tools import ToolDispatcher
from kiln.config import Settings
from kiln.events import ALL_EVENTS, Event, EventBus
from kiln.sandbox import create_sandbox

logger = logging.getLogger(__name__)


async def _log_event(event: Event) -> None:
    logger.debug("event %s session=%s %s", event.type, event.session_id, event.data)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    1. EventBus - session events for presentation layers
    2. Sandbox - execution boundary (local or docker)
    3. ToolRegistry - built-in tools
    4. AnthropicClient - model collaborator
    5. AgentRunner - loop, dispatcher, accountant, compactor
    """
    bus = EventBus()
    bus.on(ALL_EVENTS, _log_event)
    await bus.start()

    sandbox = create_sandbox(settings)
    await sandbox.start()

    registry = ToolRegistry()
    register_builtin_tools(registry, settings)

    model = AnthropicClient(settings)
    await model.start()

    accountant = TokenAccountant(settings)
    compactor = ConversationCompactor(model, accountant, settings, bus=bus)
    dispatcher = ToolDispatcher(registry, sandbox, settings, bus=bus)
    runner = AgentRunner(model, dispatcher, accountant, compactor, settings, bus=bus)

    return {
        "bus": bus,
        "sandbox": sandbox,
        "registry": registry,
        "model": model,
        "dispatcher": dispatcher,
        "runner": runner,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Kiln...")

    runner = components.get("runner")
    if runner:
        for session in runner.sessions:
            await runner.end_session(session)

    model = components.get("model")
    if model:
        await model.close()

    sandbox = components.get("sandbox")
    if sandbox:
        await sandbox.close()

    bus = components.get("bus")
    if bus:
        await bus.stop()

    logger.info("Kiln shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created in the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components
        logger.info(
            "Kiln started: model=%s, sandbox=%s, workspace=%s, token_limit=%d",
            settings.model,
            settings.sandbox_backend,
            settings.workspace_dir,
            settings.token_limit,
        )
        yield
        await shutdown_components(components)

    from kiln.api.rest import create_app

    return create_app(
        runner=_lazy_component(components, "runner"),
        settings=settings,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Lets create_app() receive the runner before the lifespan has built it.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized -- lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Kiln (model: %s, sandbox: %s)", settings.model, settings.sandbox_backend)
    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
            "message endpoints will fail"
        )

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
