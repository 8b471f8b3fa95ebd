"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from profit_service.config import settings
from profit_service.database import create_db_and_tables
from profit_service.utils.logging import setup_logging
from profit_service.api import auth, distribution, positions, system


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    create_db_and_tables()

    if settings.scheduler_enabled:
        from profit_service.engine.scheduler import start_scheduler
        start_scheduler()

    yield

    if settings.scheduler_enabled:
        from profit_service.engine.scheduler import stop_scheduler
        stop_scheduler()


app = FastAPI(
    title="Profit Service",
    description="Periodic profit distribution engine for investments and live trades",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(auth.router)
app.include_router(distribution.router)
app.include_router(positions.router)
app.include_router(system.router)
