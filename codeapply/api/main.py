"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from codeapply.config import Settings, get_settings
from codeapply.llm.morph import MorphClient
from codeapply.sandbox.registry import SandboxRegistry
from codeapply.services.autocomplete import MissingImportCompleter
from codeapply.services.installer import build_installer
from codeapply.api.routes import router


# Configure logging
logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings: Settings = app.state.settings
    registry: SandboxRegistry = app.state.registry

    # Startup
    logger.info(f"Starting {settings.app_name} v{settings.app_version} ({settings.sandbox_provider} sandboxes)")
    registry.start_sweeper()

    yield

    # Shutdown
    logger.info("Shutting down...")
    await registry.stop_sweeper()
    terminated = await registry.terminate_all()
    if terminated:
        logger.info(f"Terminated {terminated} sandboxes")
    await app.state.installer.close()
    await app.state.completer.close()
    if app.state.morph is not None:
        await app.state.morph.close()


def create_app(
    settings: Settings | None = None,
    registry: SandboxRegistry | None = None,
) -> FastAPI:
    """Create the FastAPI application with its registry and collaborators."""
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Apply AI-generated code to live sandboxes",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.registry = registry or SandboxRegistry(settings)
    app.state.installer = build_installer(settings)
    app.state.completer = MissingImportCompleter(settings)
    app.state.morph = MorphClient(settings) if settings.morph_active else None

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routes
    app.include_router(router, prefix="/api")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "codeapply.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
