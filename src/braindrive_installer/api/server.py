from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from braindrive_installer import __version__
from braindrive_installer.application.correlator import RpcCorrelator
from braindrive_installer.application.hub import ConnectionHub
from braindrive_installer.application.orchestrator import Orchestrator
from braindrive_installer.api.routes import health, operations, websocket
from braindrive_installer.config import OrchestratorSettings
from braindrive_installer.core.domain.session import Session
from braindrive_installer.core.interfaces.llm import DecisionMakerProtocol
from braindrive_installer.infrastructure.llm.litellm_decision_maker import LiteLLMDecisionMaker

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start and stop the turn worker with the application."""
    orchestrator: Orchestrator = app.state.orchestrator
    orchestrator.start()
    await logger.ainfo(
        "fastapi.startup",
        message="BrainDrive installer relay starting...",
        session_id=app.state.session.id,
    )
    yield
    await orchestrator.stop()
    app.state.correlator.detach(reason="Relay shutting down")
    await logger.ainfo("fastapi.shutdown", message="BrainDrive installer relay shutting down...")


def create_app(
    settings: OrchestratorSettings | None = None,
    decision_maker: DecisionMakerProtocol | None = None,
) -> FastAPI:
    """Create and configure the relay application."""
    settings = settings or OrchestratorSettings()
    decision_maker = decision_maker or LiteLLMDecisionMaker(
        model=settings.model,
        api_key=settings.api_key,
        max_tokens=settings.max_tokens,
    )

    app = FastAPI(
        title="BrainDrive Installer Relay",
        description="Relays an LLM-guided installation to the local BrainDrive installer agent",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    session = Session()
    correlator = RpcCorrelator()
    hub = ConnectionHub(session, correlator)
    app.state.settings = settings
    app.state.session = session
    app.state.correlator = correlator
    app.state.hub = hub
    app.state.orchestrator = Orchestrator(
        session,
        hub,
        decision_maker,
        max_steps=settings.max_steps,
        max_queued_turns=settings.max_queued_turns,
    )

    app.include_router(websocket.router, tags=["relay"])
    app.include_router(operations.router, prefix="/api/v1", tags=["operations"])
    app.include_router(health.router, tags=["health"])

    return app
