from api.src.routes.health import router as health_router
from api.src.routes.pipelines import router as pipelines_router
from api.src.routes.events import router as events_router
from api.src.routes.definitions import router as definitions_router

__all__ = ["health_router", "pipelines_router", "events_router", "definitions_router"]
