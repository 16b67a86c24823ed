"""
Crawl API router.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ...broker import Broker, create_broker
from ...config.settings import CrawlerSettings, get_cached_settings
from ...core.exceptions import InvalidRange, PartialEnqueueError, UpstreamUnavailable
from ...health import CompositeHealthMonitor, create_health_monitor
from ...orchestrator import CrawlOrchestrator
from ...provider import CepProvider, create_providers
from ...state import create_job_store
from ..schemas import CrawlCreateRequest, CrawlResponse, CrawlResultsResponse, CrawlStatusResponse

logger = logging.getLogger(__name__)

# Service instances (initialized on startup)
_orchestrator: Optional[CrawlOrchestrator] = None
_health_monitor: Optional[CompositeHealthMonitor] = None
_broker: Optional[Broker] = None
_providers: list[CepProvider] = []

router = APIRouter(prefix="/cep", tags=["cep"])


def get_orchestrator() -> CrawlOrchestrator:
    """Get orchestrator instance."""
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Crawl service not initialized")
    return _orchestrator


def get_health_monitor() -> Optional[CompositeHealthMonitor]:
    return _health_monitor


@router.post("/crawl", response_model=CrawlResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_crawl(
    request: CrawlCreateRequest,
    orchestrator: CrawlOrchestrator = Depends(get_orchestrator),
) -> CrawlResponse:
    """
    Request the lookup of a CEP range.

    The range is split into one work item per CEP; poll the status endpoint
    for progress.
    """
    try:
        result = await orchestrator.create_job(request.cep_start, request.cep_end)
    except InvalidRange as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UpstreamUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    except PartialEnqueueError as e:
        logger.error(f"Crawl {e.job_id} only partially enqueued: {e}")
        raise HTTPException(
            status_code=500,
            detail={"message": str(e), "crawl_id": e.job_id, "enqueued": e.enqueued, "total_ceps": e.total_items},
        )

    return CrawlResponse(crawl_id=result.job_id, message=result.message, total_ceps=result.total_items)


@router.get("/crawl/{crawl_id}", response_model=CrawlStatusResponse)
async def get_crawl_status(
    crawl_id: str,
    orchestrator: CrawlOrchestrator = Depends(get_orchestrator),
) -> CrawlStatusResponse:
    """Check the status of a crawl."""
    job = await orchestrator.get_status(crawl_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Crawl request with ID {crawl_id} not found")
    return CrawlStatusResponse.from_job(job)


@router.get("/crawl/{crawl_id}/results", response_model=CrawlResultsResponse)
async def get_crawl_results(
    crawl_id: str,
    page: int = Query(1, description="Page number"),
    limit: int = Query(50, description="Results per page"),
    orchestrator: CrawlOrchestrator = Depends(get_orchestrator),
) -> CrawlResultsResponse:
    """Processed results, newest first."""
    if page < 1 or limit < 1 or limit > 100:
        raise HTTPException(status_code=400, detail="Invalid pagination parameters")

    results = await orchestrator.get_results(crawl_id, page, limit)
    if results is None:
        raise HTTPException(status_code=404, detail=f"Crawl request with ID {crawl_id} not found")
    return CrawlResultsResponse.from_page(results)


# Startup and shutdown functions
async def initialize_crawl_service(settings: Optional[CrawlerSettings] = None):
    """Initialize the crawl service on startup."""
    global _orchestrator, _health_monitor, _broker, _providers

    try:
        settings = settings or get_cached_settings()

        _providers = create_providers(settings)
        _health_monitor = create_health_monitor(_providers, settings)
        await _health_monitor.start()

        _broker = create_broker(settings)
        await _broker.initialize()

        _orchestrator = CrawlOrchestrator(create_job_store(settings), _broker, _health_monitor, settings)
        logger.info("Crawl service initialized successfully")

    except Exception as e:
        logger.error(f"Failed to initialize crawl service: {e}")
        # Let the API start; crawl endpoints answer 503 until fixed
        _orchestrator = None


async def shutdown_crawl_service():
    """Cleanup crawl service on shutdown."""
    global _orchestrator, _health_monitor, _broker, _providers

    try:
        if _health_monitor:
            await _health_monitor.stop()
        for provider in _providers:
            await provider.close()
        if _broker:
            await _broker.close()
        logger.info("Crawl service shutdown completed")
    except Exception as e:
        logger.error(f"Error during crawl service shutdown: {e}")
    finally:
        _orchestrator = None
        _health_monitor = None
        _broker = None
        _providers = []
