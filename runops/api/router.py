from fastapi import APIRouter

from runops.api.routes import cron, health, imports, jobs, runs, settings

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(jobs.router, tags=["revisions"])
api_router.include_router(runs.router, prefix="/runs", tags=["runs"])
api_router.include_router(imports.router, prefix="/runs", tags=["imports"])
api_router.include_router(settings.router, tags=["settings"])
api_router.include_router(cron.router, prefix="/cron", tags=["cron"])
