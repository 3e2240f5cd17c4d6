from fastapi import APIRouter

from waterfall.api.routes import coordinator, failures, health, pipeline, queue, webhooks, workers

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(coordinator.router, prefix="/coordinator", tags=["coordinator"])
api_router.include_router(workers.router, prefix="/workers", tags=["workers"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["workers"])
api_router.include_router(queue.router, prefix="/queue", tags=["queue"])
api_router.include_router(pipeline.router, prefix="/pipeline", tags=["pipeline"])
api_router.include_router(failures.router, prefix="/failures", tags=["pipeline"])
