"""Roomchat Backend Application.

This is the main entry point for the Roomchat backend service: a real-time,
room-based chat hub. Clients connect over WebSocket, join named rooms,
exchange room and private messages, and see live presence and typing state.

Modules:
    - chat.engine: protocol state machine (join, leave, messages, typing)
    - chat.rooms / chat.registry: in-memory room store and session registry
    - chat.manager: WebSocket transport and per-room serialisation
    - chat.router: WebSocket endpoint, bundled client page, room endpoints
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from app.chat.engine import ChatEngine
from app.chat.manager import ConnectionManager
from app.chat.router import router as chat_router
from app.config import AppConfig, get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# uvicorn's access log repeats every WebSocket handshake and page load
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config: AppConfig = app.state.config

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in roomchat.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    logger.info(
        f"Chat server listening on http://{config.server.host}:{config.server.port}"
    )

    yield  # Application runs here

    # Shutdown
    await app.state.chat_manager.close()
    logger.info("Application shutdown complete")


async def health(request: Request) -> dict:
    """Health check endpoint.

    Returns:
        dict: Status plus the number of rooms and open connections.
    """
    manager: ConnectionManager = request.app.state.chat_manager
    return {
        "status": "ok",
        "rooms": len(manager.engine.rooms),
        "connections": manager.get_connection_count(),
    }


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Build the FastAPI application with its own room store and registry.

    Args:
        config: Settings to use. Defaults to the process-wide config.
    """
    config = config or get_config()

    app = FastAPI(
        title="Roomchat API",
        description="Real-time room-based chat hub",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # State lives for the life of the process; nothing is persisted
    app.state.config = config
    app.state.chat_manager = ConnectionManager(ChatEngine.from_settings(config.rooms))

    app.include_router(chat_router)
    app.add_api_route("/health", health, methods=["GET"])
    return app


app = create_app()


def main() -> None:
    """Run the server with uvicorn on the configured host and port."""
    config = get_config()
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
