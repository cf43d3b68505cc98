from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from runops.api.router import api_router
from runops.core.config import get_settings
from runops.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from runops.services.repository import get_repository

logger = logging.getLogger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "runops api starting environment=%s storage=%s channel=%s",
        settings.environment,
        settings.storage_backend,
        settings.channel,
    )
    try:
        yield
    finally:
        shutdown_telemetry(app.state.telemetry)
        await get_repository().close()
        get_repository.cache_clear()


configure_logging()
app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.state.telemetry = setup_telemetry(settings, app=app)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "%s %s -> %s in %.1fms",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started_at) * 1000.0,
    )
    return response


app.include_router(api_router)
