"""Palaver entry point.

Initializes all components and starts the server:
  Settings -> EventLog -> WorkspaceLoader -> ToolExecutor -> Runner -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
import uvicorn
from starlette.applications import Starlette

from palaver.api.builtin_tools import register_builtin_tools
from palaver.api.runner import AgentRunner
from palaver.api.tools import ToolExecutor
from palaver.api.web_tools import register_web_tools
from palaver.config import Settings
from palaver.storage.event_log import EventLog
from palaver.workspace import WorkspaceLoader

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


def executor_factory(
    settings: Settings,
    workspaces: WorkspaceLoader,
    web_http: httpx.AsyncClient,
) -> Callable[[str], ToolExecutor]:
    """Return a factory building the capability allow-list for one agent.

    This is the only place capabilities are registered, so the executor and
    the ``tools`` metadata sent to the model always agree.
    """

    def build(agent_id: str) -> ToolExecutor:
        executor = ToolExecutor()
        register_builtin_tools(executor, workspaces.root_for(agent_id))
        register_web_tools(executor, settings, web_http)
        return executor

    return build


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Raises WorkspaceError if the default agent's workspace is incomplete;
    that agent cannot serve any turn, so startup stops there.
    """
    event_log = EventLog(Path(settings.sessions_dir))
    workspaces = WorkspaceLoader(settings.workspaces_dir)

    # Web tools httpx client (separate from runner)
    web_http = httpx.AsyncClient(
        timeout=httpx.Timeout(connect=10, read=30, write=10, pool=10),
        limits=httpx.Limits(max_connections=5, max_keepalive_connections=2),
        follow_redirects=True,
    )

    factory = executor_factory(settings, workspaces, web_http)
    try:
        workspaces.check(settings.agent_id, factory(settings.agent_id).allowed)
    except Exception:
        await web_http.aclose()
        raise

    runner = AgentRunner(event_log, workspaces, settings)
    runner.set_executor_factory(factory)
    await runner.start()
    logger.info("Event log at %s", event_log.root)

    return {
        "event_log": event_log,
        "workspaces": workspaces,
        "runner": runner,
        "web_http": web_http,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Palaver...")

    runner = components.get("runner")
    if runner:
        await runner.close()

    web_http = components.get("web_http")
    if web_http:
        await web_http.aclose()

    logger.info("Palaver shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created in the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components

        logger.info("Palaver started: agent=%s model=%s", settings.agent_id, settings.model)
        logger.info(
            "max_rounds=%d, state=%s, workspaces=%s",
            settings.max_rounds,
            settings.state_dir,
            settings.workspaces_dir,
        )
        yield

        await shutdown_components(components)

    from palaver.api.rest import create_app

    return create_app(
        runner=_lazy_component(components, "runner"),
        event_log=_lazy_component(components, "event_log"),
        workspaces=_lazy_component(components, "workspaces"),
        settings=settings,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized, lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    """Create a lazy proxy for a component that will be initialized in lifespan."""
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()
    configure_logging(settings)

    logger.info("Starting Palaver: agent=%s", settings.agent_id)
    logger.info("Model: %s at %s", settings.model, settings.model_base_url)
    if settings.web_search_enabled and settings.search_engine == "brave" and not settings.brave_search_api_key:
        logger.warning("BRAVE_SEARCH_API_KEY not set, web.search will fail")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
