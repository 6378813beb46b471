import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from api.routes import api_router, router
from providers.base import DatabaseProvider
from providers.factory import close_provider, open_provider
from utils.env_loader import load_environments

logger = logging.getLogger(__name__)


def create_app(provider: Optional[DatabaseProvider] = None) -> FastAPI:
    """Build the API around ``provider``, or open one from the environment on startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if provider is not None:
            yield
            return
        app.state.provider = await open_provider()
        logger.info("SQL viewer API using %s provider", app.state.provider.engine)
        try:
            yield
        finally:
            await close_provider(app.state.provider)

    app = FastAPI(
        title="SQL Viewer API",
        version="0.1.0",
        description="Development-time inspection of SQLite and PostgreSQL databases.",
        lifespan=lifespan,
    )
    app.state.provider = provider
    app.include_router(router)
    app.include_router(api_router)
    return app


load_environments()
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

app = create_app()
