from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional
import logging
import sys

from api.src.config import get_settings
from api.src.routes import definitions_router, events_router, health_router, pipelines_router
from controller.src.bootstrap import build_scheduler
from controller.src.config import get_settings as get_controller_settings
from controller.src.services.scheduler import Scheduler

settings = get_settings()

logger = logging.getLogger(__name__)

def create_app(scheduler: Optional[Scheduler] = None) -> FastAPI:
    """
    Build the API application. Without a scheduler, one is assembled from
    settings at startup and shut down with the application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info("Starting Kiln API")
        owned = app.state.scheduler is None
        if owned:
            app.state.scheduler = build_scheduler(get_controller_settings())
        yield
        # Shutdown
        logger.info("Shutting down Kiln API")
        if owned:
            await app.state.scheduler.shutdown(timeout=get_controller_settings().kill_grace_period * 2)
            app.state.scheduler = None

    app = FastAPI(
        title="Kiln",
        description="Build-pipeline orchestrator",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.scheduler = scheduler

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(health_router)
    app.include_router(pipelines_router, prefix="/api")
    app.include_router(events_router, prefix="/api")
    app.include_router(definitions_router, prefix="/api")

    @app.get("/")
    async def root():
        return {
            "name": "Kiln",
            "version": "0.1.0",
            "docs": "/docs"
        }

    return app

app = create_app()

def main():
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)]
    )
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)

if __name__ == "__main__":
    main()
