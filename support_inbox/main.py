"""FastAPI application wiring for the support inbox.

- Configures logging and builds the inbox pipeline (PostgreSQL-backed when
  ``DATABASE_URL`` is set, in-memory otherwise).
- Exposes the health check, the WhatsApp webhook and the agent sandbox.

Run with ``uvicorn support_inbox.main:create_app --factory``.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

from .__version__ import __build_date__, __commit_sha__, __version__
from .agents.debounce import DebounceCoordinator
from .agents.knowledge import KnowledgeBase, KnowledgeSearchTool
from .agents.logs import (
    InMemoryInteractionLogRepository,
    InteractionLogWriter,
    PostgresInteractionLogRepository,
)
from .agents.providers import ModelProviderGateway
from .agents.service import SupportAgentService
from .app_logging import init_logging
from .channels.whatsapp import WhatsAppSender, load_credentials
from .conversations.repository import InMemoryInboxRepository, PostgresInboxRepository
from .conversations.service import SupportInbox
from .routers import agents, webhooks
from .settings import create_settings_store

load_dotenv()


def build_inbox(
    dsn: str | None = None, knowledge_base: KnowledgeBase | None = None
) -> SupportInbox:
    """Assemble the pipeline from environment configuration.

    Without ``knowledge_base`` the search tool answers that no knowledge base
    is configured.
    """

    dsn = dsn or os.getenv("DATABASE_URL")
    settings = create_settings_store(dsn)
    if dsn:
        repository = PostgresInboxRepository(dsn)
        log_repository = PostgresInteractionLogRepository(dsn)
    else:
        repository = InMemoryInboxRepository()
        log_repository = InMemoryInteractionLogRepository()
    agent_service = SupportAgentService(
        ModelProviderGateway(settings),
        InteractionLogWriter(log_repository),
        knowledge_tool=KnowledgeSearchTool(knowledge_base),
        language=os.getenv("AGENT_LANGUAGE") or "português do Brasil",
    )
    sender = WhatsAppSender(load_credentials(settings))
    return SupportInbox(repository, agent_service, sender, debounce=DebounceCoordinator())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Release the model clients when the application shuts down."""
    yield
    aclose = getattr(app.state.inbox.agent_service.gateway, "aclose", None)
    if aclose is not None:
        await aclose()


def create_app(inbox: SupportInbox | None = None) -> FastAPI:
    app = FastAPI(title="Support Inbox", version=__version__, lifespan=lifespan)
    init_logging(app)
    app.state.inbox = inbox or build_inbox()
    app.state.tasks = set()
    app.include_router(webhooks.router)
    app.include_router(agents.router)

    @app.get("/api/health")
    async def health():
        """Liveness check that also reports pending debounce batches."""
        return {
            "status": "ok",
            "pending_batches": app.state.inbox.debounce.pending_count(),
        }

    @app.get("/api/version")
    async def version():
        return {
            "version": __version__,
            "build_date": __build_date__,
            "commit_sha": __commit_sha__,
        }

    return app
