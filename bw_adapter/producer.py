"""
Build stream producer.

Composes the memoized job discoveries, the fetcher and the translator into a
single-pass async stream of BuildStreamItems for one query. Failures are
scoped to the job they occur in so that one broken job never hides the
builds of healthy ones.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator, Awaitable
from concurrent.futures import Executor
from typing import TypeVar

from bw_common.errors import JobDiscoveryFailed, ParseError, QueryCancelled
from bw_common.models import BuildStreamItem, BuildTarget, QueryFilter

from .discoverer import DiscoveryHandle, api_json_url
from .fetcher import BuildServerFetcher
from .translator import BuildTranslator

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BuildStreamProducer:
    """
    Produces filtered build streams over a fixed set of discovered jobs.

    Streams are emitted in configuration order across jobs and in discovery
    order within a job. Nothing is sorted by time.
    """

    def __init__(
        self,
        fetcher: BuildServerFetcher,
        translator: BuildTranslator,
        handles: list[DiscoveryHandle],
    ):
        """
        Initialize the producer.

        Args:
            fetcher: Fetcher for build-detail documents
            translator: Translator for build-detail documents
            handles: Discovery handles, one per job, in configuration order
        """
        self.fetcher = fetcher
        self.translator = translator
        self.handles = handles

    async def stream(
        self,
        query_filter: QueryFilter,
        cancel_event: asyncio.Event | None = None,
        executor: Executor | None = None,
    ) -> AsyncGenerator[BuildStreamItem, None]:
        """
        Stream the builds matching a filter.

        Args:
            query_filter: Time and running-state predicate
            cancel_event: Set by the caller to stop the stream early
            executor: Thread pool for blocking fetches (loop default if None)

        Yields:
            BuildStreamItem objects:
                - type "build" for each matching build with at least one commit
                - type "error" for each job that could not be read
                - exactly one trailing type "complete" (cancelled=True if the
                  caller cancelled)
        """
        if self.handles and all(h.task.cancelled() for h in self.handles):
            logger.info("All job discoveries were cancelled, nothing to stream")
            yield BuildStreamItem.complete()
            return

        cancelled = False
        for handle in self.handles:
            if self._is_cancelled(cancel_event):
                cancelled = True
                break

            target = handle.target
            try:
                build_urls = await self._until_cancelled(handle.result(), cancel_event)
            except QueryCancelled:
                cancelled = True
                break
            except asyncio.CancelledError:
                if not handle.task.cancelled():
                    # The stream itself is being cancelled
                    raise
                logger.warning(f"Discovery of job {target.name} was cancelled, skipping")
                continue
            except JobDiscoveryFailed as e:
                yield BuildStreamItem.for_error(e, target)
                continue
            except Exception as e:
                logger.error(
                    f"Unexpected discovery failure for job {target.name}: {e}",
                    exc_info=True,
                )
                yield BuildStreamItem.for_error(JobDiscoveryFailed(target, e), target)
                continue

            try:
                async for item in self._stream_job(
                    target, build_urls, query_filter, cancel_event, executor
                ):
                    yield item
            except QueryCancelled:
                cancelled = True
                break

        if cancelled or self._is_cancelled(cancel_event):
            logger.info("Build stream cancelled by caller")
            yield BuildStreamItem.complete(cancelled=True)
        else:
            yield BuildStreamItem.complete()

    async def _stream_job(
        self,
        target: BuildTarget,
        build_urls: list[str],
        query_filter: QueryFilter,
        cancel_event: asyncio.Event | None,
        executor: Executor | None,
    ) -> AsyncGenerator[BuildStreamItem, None]:
        """
        Stream the matching builds of one job.

        Raises:
            QueryCancelled: If the caller cancelled
        """
        for build_url in build_urls:
            if self._is_cancelled(cancel_event):
                raise QueryCancelled("Query cancelled by caller")

            try:
                document = await self._until_cancelled(
                    self.fetcher.fetch(api_json_url(build_url), cancel_event, executor),
                    cancel_event,
                )
            except QueryCancelled:
                raise
            except Exception as e:
                logger.error(f"Error reading build {build_url} of job {target.name}: {e}")
                yield BuildStreamItem.for_error(e, target)
                return

            try:
                event = self.translator.translate(document, url=build_url)
            except ParseError as e:
                logger.warning(f"Skipping malformed build {build_url}: {e}")
                continue
            except Exception as e:
                logger.error(
                    f"Unexpected error translating build {build_url} "
                    f"of job {target.name}: {e}",
                    exc_info=True,
                )
                yield BuildStreamItem.for_error(e, target)
                return

            if not query_filter.matches(event):
                continue
            if not event.commit_hashes:
                logger.debug(f"Skipping build {build_url} without commits")
                continue

            if self._is_cancelled(cancel_event):
                raise QueryCancelled("Query cancelled by caller")
            yield BuildStreamItem.for_build(event, target)

    @staticmethod
    async def _until_cancelled(
        awaitable: Awaitable[T], cancel_event: asyncio.Event | None
    ) -> T:
        """
        Await something, giving up as soon as the caller cancels.

        Raises:
            QueryCancelled: If cancel_event is set first
        """
        if cancel_event is None:
            return await awaitable

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for future in (work, waiter):
                if not future.done():
                    future.cancel()

        if cancel_event.is_set():
            await asyncio.gather(work, return_exceptions=True)
            raise QueryCancelled("Query cancelled by caller")
        return work.result()

    @staticmethod
    def _is_cancelled(cancel_event: asyncio.Event | None) -> bool:
        return cancel_event is not None and cancel_event.is_set()
