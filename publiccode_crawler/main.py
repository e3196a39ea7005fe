"""FastAPI application entry point"""

from fastapi import FastAPI, BackgroundTasks, HTTPException
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel
from typing import Optional
import logging

from publiccode_crawler.config.settings import settings
from publiccode_crawler.jobs.crawl import parse_publisher_ids, run_crawl_publishers, run_crawl_repository
from publiccode_crawler.orchestrator import CrawlerOrchestrator

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    description="Crawler indexing publiccode.yml manifests of public administrations",
    version=settings.APP_VERSION,
)

# Store last run stats (in-memory, for simple deployment)
last_stats = {}

_orchestrator: Optional[CrawlerOrchestrator] = None


def get_orchestrator() -> CrawlerOrchestrator:
    """Build the orchestrator on first use so startup checks run with the live config."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = CrawlerOrchestrator()
    return _orchestrator


class RepositoryCrawlRequest(BaseModel):
    repo_url: str
    publisher_id: Optional[str] = None


@app.get("/api/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "publiccode-crawler",
        "version": settings.APP_VERSION,
    }


@app.get("/api/stats")
async def get_stats():
    """Get last crawl statistics"""
    return last_stats or {"last_run": None}


@app.post("/api/crawl/publishers")
async def crawl_publishers(background_tasks: BackgroundTasks, publisher_ids: Optional[str] = None):
    """Trigger a full crawl of the whitelisted publishers"""
    logger.info("Publishers crawl triggered")
    orchestrator = _orchestrator_or_503()
    selected = parse_publisher_ids(publisher_ids)

    async def run_crawler():
        try:
            stats = await run_crawl_publishers(orchestrator=orchestrator, publisher_ids=selected)
            last_stats.clear()
            last_stats.update(stats)
            logger.info(f"Publishers crawl completed: {len(stats['blacklisted'])} blacklisted")
        except Exception as e:
            logger.error(f"Publishers crawl failed: {e}", exc_info=True)

    background_tasks.add_task(run_crawler)
    return {
        "status": "started",
        "source": "publishers",
        "message": "Publishers crawl started in background",
    }


@app.post("/api/crawl/repository")
async def crawl_repository(request: RepositoryCrawlRequest, background_tasks: BackgroundTasks):
    """Trigger a crawl of a single repository"""
    logger.info(f"Repository crawl triggered: {request.repo_url}")
    orchestrator = _orchestrator_or_503()

    async def run_crawler():
        try:
            stats = await run_crawl_repository(
                orchestrator=orchestrator,
                repo_url=request.repo_url,
                publisher_id=request.publisher_id,
            )
            last_stats.clear()
            last_stats.update(stats)
            logger.info(f"Repository crawl completed: {request.repo_url}")
        except Exception as e:
            logger.error(f"Repository crawl failed: {e}", exc_info=True)

    background_tasks.add_task(run_crawler)
    return {
        "status": "started",
        "source": "repository",
        "repository": request.repo_url,
        "message": "Repository crawl started in background",
    }


@app.get("/metrics")
async def metrics():
    """Prometheus exposition of the crawl counters"""
    return Response(content=_orchestrator_or_503().counters.exposition(), media_type=CONTENT_TYPE_LATEST)


def _orchestrator_or_503() -> CrawlerOrchestrator:
    try:
        return get_orchestrator()
    except Exception as e:
        logger.error(f"Crawler is not configured: {e}")
        raise HTTPException(status_code=503, detail=str(e))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "publiccode_crawler.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
