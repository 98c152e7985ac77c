"""LIMS Custody Engine service entry point.

Initializes the FastAPI application with:
- The engine container (registry, requirement catalog, Resource Store,
  recorder, compliance service, report aggregator, live event stream)
- Engine error handlers mapping the error taxonomy onto HTTP statuses
- The /api/v1 router

The container is built when the app is created, so the app serves requests
even when driven without lifespan events (e.g., httpx ASGITransport).
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from lims_custody_engine.api.router import register_exception_handlers, router
from lims_custody_engine.container import EngineContainer, build_container
from lims_custody_engine.observability import configure_logging, get_logger
from lims_custody_engine.settings import Settings

logger = get_logger(__name__)


def create_app(settings: Settings | None = None, container: EngineContainer | None = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Service settings. Read from the environment when omitted.
        container: Pre-built engine container (tests inject one with fakes).

    Returns:
        The configured FastAPI application.
    """
    settings = settings or Settings()
    configure_logging(settings.log_level, settings.log_json)
    container = container or build_container(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Log startup and release collaborator connections on shutdown.

        Args:
            app: The FastAPI application instance.

        Yields:
            None
        """
        logger.info(
            "Custody engine startup complete",
            service=settings.service_name,
            resource_store=settings.resource_store_url or "in-memory",
        )

        yield

        logger.info("Shutting down custody engine")
        await app.state.container.close()
        logger.info("Custody engine shutdown complete")

    app = FastAPI(title=settings.service_name, version="0.1.0", lifespan=lifespan)
    app.state.container = container
    app.state.settings = settings

    register_exception_handlers(app)
    app.include_router(router, prefix="/api/v1")

    @app.get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.service_name}

    return app


def run() -> None:
    """Serve the application with uvicorn using host and port from Settings."""
    import uvicorn

    settings = Settings()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
