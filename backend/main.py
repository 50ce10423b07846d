"""FastAPI application entry point for the code generation backend.

The app serves session WebSockets and a health check. Sessions are created
and generation is started by the host process through
``SessionManager.create_session`` and ``SessionManager.start_generation``;
clients then connect to ``/ws/{session_id}``.

Usage:
    uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from api.websocket import set_session_manager, websocket_router
from config import configure_logging, settings
from session_manager import SessionManager

configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


def create_app(session_manager: SessionManager | None = None) -> FastAPI:
    """Build the application around a session manager.

    Args:
        session_manager: Registry to serve; a default one is created if None.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        manager = session_manager or SessionManager(settings)
        set_session_manager(manager)
        app.state.session_manager = manager
        logger.info(
            "application_started",
            sandbox_backend=settings.sandbox_backend,
            default_model=settings.default_model,
        )

        yield

        logger.info("application_shutting_down")
        await manager.cleanup_all()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="Codegen Agent Backend",
        description="Phased code generation sessions over WebSocket.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(websocket_router, tags=["websocket"])

    @app.get("/health", include_in_schema=False)
    async def health() -> dict[str, str | int]:
        manager = app.state.session_manager
        return {"status": "ok", "sessions": len(manager.get_all_sessions())}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
