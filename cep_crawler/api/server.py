from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..config.settings import get_cached_settings
from ..health import CompositeHealthMonitor
from ..utils.logging import setup_crawler_logger
from .routers.crawl import get_health_monitor, initialize_crawl_service, shutdown_crawl_service
from .routers.crawl import router as crawl_router
from .schemas import HealthStatus


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings = get_cached_settings()
    setup_crawler_logger("cep_crawler.api", level=settings.log_level, json_logs=settings.json_logs)

    await initialize_crawl_service(settings)
    yield
    await shutdown_crawl_service()


app = FastAPI(title="CEP Range Crawler", lifespan=lifespan)

app.include_router(crawl_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed request bodies are client errors, reported as 400
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.get("/health")
async def health_check(monitor: Optional[CompositeHealthMonitor] = Depends(get_health_monitor)) -> HealthStatus:
    if monitor is None:
        return HealthStatus(status="down")

    records = [m.status() for m in monitor.monitors]
    if records and all(r.is_healthy for r in records):
        status = "ok"
    elif any(r.is_healthy for r in records):
        status = "degraded"
    else:
        status = "down"
    return HealthStatus(status=status, providers=records)
