"""
Event-driven entrypoint for the publiccode crawler

Triggered by a scheduler or an ad-hoc invocation; no HTTP server logic.
"""

import asyncio
import logging
from typing import Dict, Any, Optional

from publiccode_crawler.jobs.crawl import parse_publisher_ids, run_crawl_publishers, run_crawl_repository

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def lambda_handler(event: Optional[Dict[str, Any]], context: Any) -> Dict[str, Any]:
    """
    Dispatches to a crawl job based on `event["source"]`.

    Expected event payloads:
    - {"source": "publishers"}
    - {"source": "publishers", "publisher_ids": "pa1,pa2"}
    - {"source": "repository", "repo_url": "https://github.com/org/repo"}
    - {"source": "repository", "repo_url": "...", "publisher_id": "pa1"}

    Default is "publishers" if no source is provided.

    Args:
        event: Event payload
        context: Invocation context object

    Returns:
        Dictionary with statusCode, source, and result
    """
    payload = event or {}
    source = payload.get("source", "publishers")
    logger.info(f"Handler invoked with source: {source}")

    try:
        if source == "publishers":
            result = asyncio.run(
                run_crawl_publishers(publisher_ids=parse_publisher_ids(payload.get("publisher_ids")))
            )

        elif source == "repository":
            repo_url = str(payload.get("repo_url") or "").strip()
            if not repo_url:
                raise ValueError("repo_url is required for source 'repository'")
            result = asyncio.run(
                run_crawl_repository(repo_url=repo_url, publisher_id=payload.get("publisher_id"))
            )

        else:
            error_msg = f"Unknown source: {source}"
            logger.error(error_msg)
            raise ValueError(error_msg)

        logger.info(f"Crawl completed successfully: {result}")

        return {
            "statusCode": 200,
            "source": source,
            "result": result,
        }

    except Exception as e:
        logger.error(f"Crawl execution failed: {e}", exc_info=True)
        return {
            "statusCode": 500,
            "source": source,
            "error": str(e),
        }


# Allow local testing via `python -m publiccode_crawler.handler`
if __name__ == "__main__":
    print("=" * 60)
    print("Publiccode Crawler - Local Run")
    print("=" * 60)

    test_event = {"source": "publishers"}
    print(f"\nRunning with event: {test_event}")
    print("-" * 60)

    result = lambda_handler(test_event, None)

    print("\nResult:")
    print(result)
    print("=" * 60)
