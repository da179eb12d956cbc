"""vaultchat entry point.

Initializes all components and starts the server:
  Settings -> Database -> ConversationStore -> RequestClient -> Tools -> Runner -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from vaultchat.api.client import RequestClient
from vaultchat.api.runner import AgentRunner
from vaultchat.api.tools import ToolDispatcher
from vaultchat.api.vault_tools import register_vault_tools
from vaultchat.config import Settings
from vaultchat.storage.conversations import ConversationStore, DatabaseBlobBackend
from vaultchat.storage.database import Database

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    1. Database - SQLite engine, tables created on connect
    2. ConversationStore - loads persisted conversations
    3. RequestClient - Messages API over httpx
    4. ToolDispatcher - vault tools
    5. AgentRunner - turn orchestration; also names conversations
    """
    database = Database(settings)
    await database.connect()

    store = ConversationStore(DatabaseBlobBackend(database), settings)
    await store.load_all()

    client = RequestClient(settings)
    await client.start()

    dispatcher = ToolDispatcher()
    register_vault_tools(dispatcher, settings)

    runner = AgentRunner(client, store, dispatcher, dispatcher.tool_specs(), settings)
    store.set_namer(runner.name_conversation)

    return {
        "database": database,
        "store": store,
        "client": client,
        "dispatcher": dispatcher,
        "runner": runner,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down vaultchat...")

    client = components.get("client")
    if client:
        await client.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("vaultchat shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created in the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components
        logger.info(
            "vaultchat started: vault=%s, max_conversations=%d",
            settings.vault_dir,
            settings.max_conversations,
        )
        yield
        await shutdown_components(components)

    from vaultchat.api.rest import create_app

    return create_app(
        runner=_lazy_component(components, "runner"),
        store=_lazy_component(components, "store"),
        settings=settings,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Lets create_app() receive component references before the lifespan
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
            raise RuntimeError(f"Component '{key}' not yet initialized - lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)

    def __len__(self):
        return len(self._resolve())


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point - parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting vaultchat")
    logger.info("Model: %s (summaries: %s)", settings.model, settings.summary_model)
    logger.info("Database: %s", settings.db_url)

    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY is not set - /chat and /ask will fail")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
