""" main.py: FastAPI application entry point and runtime configuration.

This module builds the ASGI app, mounts API routers, configures CORS (Cross-Origin Resource Sharing) and exposes a
Prometheus metrics endpoint. The application context (registries, stores, orchestrator, background sweep) is built
by `create_app` and owned by the app through `app.state.context`; the lifespan handler starts the background sweep
once the event loop is running and shuts everything down when the server stops. When executed directly, it starts a
Uvicorn server using host/port values from configuration.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from config import CONFIG
from core.context import AppContext
from version import __version__

# --- Router Imports ---
from api import domains as domains_router
from api import message as message_router

# Get a logger instance for this module
logger = logging.getLogger(__name__)


def create_app(context: Optional[AppContext] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        context (AppContext, optional): Prebuilt application context. Tests pass
            their own; by default one is built from CONFIG with the configured
            plugins loaded.

    Returns:
        FastAPI: The configured application.
    """
    app_context = context if context is not None else AppContext.from_config(CONFIG)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_context.start()
        try:
            yield
        finally:
            app_context.shutdown()

    app = FastAPI(title="Conversation Orchestrator", version=__version__, lifespan=lifespan)
    app.state.context = app_context

    # Include routers
    app.include_router(message_router.router, prefix="/api", tags=["Message"])
    app.include_router(domains_router.router, prefix="/api", tags=["Plugins"])

    # Add Prometheus metrics endpoint
    app.mount("/metrics", make_asgi_app())

    # Configure CORS
    allow_origins = CONFIG.get('cors', {}).get('allow_origins', ["*"])
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


app = create_app()

# The uvicorn server is used to run the FastAPI application.
if __name__ == '__main__':
    import uvicorn
    logger.info("[__main__] Starting Uvicorn server for main.py")
    uvicorn.run(
        app,
        host=CONFIG.get('server', {}).get('host', '0.0.0.0'),
        port=CONFIG.get('server', {}).get('port', 8080)
    )
