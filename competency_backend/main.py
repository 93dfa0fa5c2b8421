"""
Main application entry point for the competency assessment engine.

This module creates the FastAPI application, registers the competency
router and the shared exception handlers, and manages the database engine
and the evaluation orchestrator over the application's lifetime.

Usage:
    - Direct: python -m competency_backend.main
    - ASGI server: uvicorn competency_backend.main:app
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from competency_backend.api import register_exception_handlers
from competency_backend.assessments.competency.evaluation_service import build_evaluation_orchestrator
from competency_backend.assessments.competency.repository import SQLAlchemyCompetencyRepository
from competency_backend.assessments.competency.router import router as competency_router
from competency_backend.common.logger import app_logger
from competency_backend.config import settings
from competency_backend.database.init_db import close_database, get_session_factory, initialize_database

# Setup module logger
logger = app_logger.getChild("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the database and the orchestrator on startup, release them on shutdown."""
    try:
        await initialize_database(
            database_url=settings.DATABASE_URL,
            echo=settings.SQL_ECHO,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
            # SQLite is the development database; other backends are migrated with Alembic
            create_tables=settings.DATABASE_URL.startswith("sqlite"),
        )
        app.state.evaluation_orchestrator = build_evaluation_orchestrator(
            SQLAlchemyCompetencyRepository(get_session_factory()), settings
        )
        logger.info("Application startup complete")
    except Exception as e:
        logger.error(f"Failed to initialize application: {str(e)}")
        raise

    yield

    try:
        await app.state.evaluation_orchestrator.close()
        await close_database()
        logger.info("Application shutdown complete")
    except Exception as e:
        logger.error(f"Error during application shutdown: {str(e)}")
        raise


def create_app() -> FastAPI:
    """Create the FastAPI application."""
    application = FastAPI(
        title=settings.PROJECT_NAME,
        description="API for the teacher competency assessment",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(application)
    application.include_router(
        competency_router,
        prefix=f"{settings.API_V1_STR}/competency",
        tags=["competency"],
    )

    @application.get("/")
    async def root():
        """Root endpoint."""
        return {"message": f"Welcome to the {settings.PROJECT_NAME} API"}

    return application


app = create_app()

# Entry point for running the application directly
if __name__ == "__main__":
    import uvicorn

    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", 8000))
    reload_enabled = os.environ.get("RELOAD", "false").lower() == "true"

    logger.info(f"Starting server on {host}:{port} (reload: {reload_enabled})")

    uvicorn.run(
        "competency_backend.main:app",
        host=host,
        port=port,
        reload=reload_enabled,
        log_level="info"
    )
