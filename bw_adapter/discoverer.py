"""
Job discovery: resolve the build-detail URLs of each configured job.

Discovery runs once per adapter lifetime. Each job gets one asyncio task whose
result (or failure) is memoized and read by every later query.
"""

import asyncio
import json
import logging
from dataclasses import dataclass

from bw_common.errors import (
    BuildWatchError,
    JobDiscoveryFailed,
    ParseError,
    QueryCancelled,
)
from bw_common.models import BuildTarget

from .fetcher import BuildServerFetcher

logger = logging.getLogger(__name__)


def api_json_url(url: str) -> str:
    """Return the JSON API URL for a job or build URL."""
    if not url.endswith("/"):
        url += "/"
    return url + "api/json"


def parse_build_urls(document: bytes | str) -> list[str]:
    """
    Extract build URLs from a job listing document.

    Raises:
        ParseError: If the document is not a JSON object with a builds array
            whose entries carry a url
    """
    try:
        job = json.loads(document)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ParseError(f"Job listing is not valid JSON: {e}") from e

    if not isinstance(job, dict) or not isinstance(job.get("builds"), list):
        raise ParseError("Job listing has no builds array")

    urls = []
    for build in job["builds"]:
        if not isinstance(build, dict) or not isinstance(build.get("url"), str):
            raise ParseError(f"Build entry without url: {build!r}")
        urls.append(build["url"])
    return urls


@dataclass
class DiscoveryHandle:
    """Write-once handle on the discovery of one job."""

    target: BuildTarget
    task: asyncio.Task

    async def result(self) -> list[str]:
        """
        Wait for the memoized discovery result.

        The task is shielded so that cancelling a reader never cancels the
        discovery shared with other queries.
        """
        return await asyncio.shield(self.task)


class JobDiscoverer:
    """Resolves the list of build-detail URLs for jobs."""

    def __init__(self, fetcher: BuildServerFetcher):
        self.fetcher = fetcher

    async def discover(
        self, target: BuildTarget, cancel_event: asyncio.Event | None = None
    ) -> list[str]:
        """
        Fetch a job's listing and return its build URLs in listing order.

        Args:
            target: Job to discover
            cancel_event: Set by the caller to abandon discovery

        Returns:
            Build-detail URLs as returned by the server

        Raises:
            QueryCancelled: If the caller cancelled
            JobDiscoveryFailed: If fetching or parsing the listing failed
        """
        try:
            document = await self.fetcher.fetch(api_json_url(target.url), cancel_event)
            urls = parse_build_urls(document)
        except QueryCancelled:
            raise
        except BuildWatchError as e:
            logger.error(f"Discovery failed for job {target.name}: {e}")
            raise JobDiscoveryFailed(target, e) from e

        logger.info(f"Discovered {len(urls)} builds for job {target.name}")
        return urls

    def start(self, targets: list[BuildTarget]) -> list[DiscoveryHandle]:
        """
        Start one discovery task per target, in configuration order.

        Must be called from a running event loop.
        """
        return [
            DiscoveryHandle(
                target=target,
                task=asyncio.create_task(
                    self.discover(target), name=f"discover:{target.name}"
                ),
            )
            for target in targets
        ]
