"""
Build server adapter with an explicit initialize-once, dispose-once lifecycle.

The adapter wires the fetcher, discoverer, translator and stream producer
together for one configured server, and hands out one stream per query.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from concurrent.futures import Executor
from datetime import datetime
from enum import Enum

from bw_common.credentials import CredentialProvider
from bw_common.errors import (
    AdapterDisposed,
    AdapterNotInitialized,
    AlreadyInitialized,
    ConfigInvalid,
)
from bw_common.models import AdapterKey, BuildStreamItem, BuildTarget, QueryFilter

from .discoverer import DiscoveryHandle, JobDiscoverer
from .fetcher import BuildServerFetcher
from .producer import BuildStreamProducer
from .settings import AdapterSettings
from .translator import BuildTranslator, get_commit_extractor

logger = logging.getLogger(__name__)


class AdapterState(Enum):
    """Lifecycle state of a build server adapter."""

    CREATED = "created"
    INITIALIZED = "initialized"
    DISPOSED = "disposed"


class BuildServerAdapter:
    """
    Polls one build server for the builds of its configured jobs.

    Lifecycle: CREATED -> INITIALIZED -> DISPOSED. Job discovery runs once,
    during initialize(); every query afterwards reads the same snapshot of
    build URLs. An adapter whose settings are invalid still initializes but
    stays unconfigured, and its queries complete without emitting anything.
    """

    def __init__(self) -> None:
        self.state = AdapterState.CREATED
        self.settings: AdapterSettings | None = None
        self.targets: list[BuildTarget] = []

        self._fetcher: BuildServerFetcher | None = None
        self._handles: list[DiscoveryHandle] = []
        self._producer: BuildStreamProducer | None = None

    @property
    def key(self) -> AdapterKey:
        """Unique identity of this adapter: server/team_collection/project."""
        if self.settings is None:
            return AdapterKey(None, None, None)
        return self.settings.key

    @property
    def is_configured(self) -> bool:
        return self._producer is not None

    async def initialize(
        self, settings: AdapterSettings, credential_provider: CredentialProvider
    ) -> None:
        """
        Initialize the adapter and start job discovery.

        Args:
            settings: Server, jobs and transport settings
            credential_provider: Host's source of credentials

        Raises:
            AlreadyInitialized: If called more than once
        """
        if self.state is not AdapterState.CREATED:
            raise AlreadyInitialized(f"Adapter {self.key} is already {self.state.value}")

        self.state = AdapterState.INITIALIZED
        self.settings = settings

        try:
            targets = settings.build_targets()
        except ConfigInvalid as e:
            logger.warning(f"Build server adapter {self.key} left unconfigured: {e}")
            return

        self._fetcher = BuildServerFetcher(
            base_url=settings.base_address(),
            key=settings.key,
            credential_provider=credential_provider,
            timeout=settings.timeout,
            max_attempts=settings.max_attempts,
            retry_backoff=settings.retry_backoff,
        )

        loop = asyncio.get_running_loop()
        credentials = await loop.run_in_executor(
            None, credential_provider.get_credentials, settings.key, False
        )
        self._fetcher.set_credentials(credentials)

        self.targets = targets
        self._handles = JobDiscoverer(self._fetcher).start(targets)
        self._producer = BuildStreamProducer(
            fetcher=self._fetcher,
            translator=BuildTranslator(get_commit_extractor(settings.commit_field)),
            handles=self._handles,
        )
        logger.info(
            f"Build server adapter {self.key} initialized with {len(targets)} jobs"
        )

    async def get_builds(
        self,
        query_filter: QueryFilter | None = None,
        cancel_event: asyncio.Event | None = None,
        executor: Executor | None = None,
    ) -> AsyncGenerator[BuildStreamItem, None]:
        """
        Stream the builds matching a filter.

        Args:
            query_filter: Time and running-state predicate (no filtering if None)
            cancel_event: Set by the caller to stop the stream early
            executor: Thread pool for blocking fetches (loop default if None)

        Yields:
            BuildStreamItem objects, ending with exactly one "complete" item

        Raises:
            AdapterNotInitialized: If initialize() has not been called
            AdapterDisposed: If the adapter was disposed
        """
        self._check_queryable()

        if self._producer is None:
            yield BuildStreamItem.complete()
            return

        async for item in self._producer.stream(
            query_filter or QueryFilter(), cancel_event, executor
        ):
            yield item

    def get_finished_builds_since(
        self,
        since: datetime | None = None,
        cancel_event: asyncio.Event | None = None,
        executor: Executor | None = None,
    ) -> AsyncGenerator[BuildStreamItem, None]:
        """Stream finished builds started at or after `since`."""
        return self.get_builds(
            QueryFilter(since=since, running=False), cancel_event, executor
        )

    def get_running_builds(
        self,
        cancel_event: asyncio.Event | None = None,
        executor: Executor | None = None,
    ) -> AsyncGenerator[BuildStreamItem, None]:
        """Stream builds that are currently running."""
        return self.get_builds(QueryFilter(running=True), cancel_event, executor)

    async def dispose(self) -> None:
        """Cancel pending discoveries and release the connection pool."""
        if self.state is AdapterState.DISPOSED:
            logger.debug(f"Adapter {self.key} already disposed")
            return

        self.state = AdapterState.DISPOSED

        for handle in self._handles:
            if not handle.task.done():
                handle.task.cancel()
        for handle in self._handles:
            try:
                await handle.task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Discovery of job {handle.target.name} had failed: {e}")

        if self._fetcher is not None:
            self._fetcher.close()

        logger.info(f"Build server adapter {self.key} disposed")

    async def __aenter__(self) -> "BuildServerAdapter":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.dispose()

    def _check_queryable(self) -> None:
        if self.state is AdapterState.CREATED:
            raise AdapterNotInitialized("Adapter has not been initialized")
        if self.state is AdapterState.DISPOSED:
            raise AdapterDisposed(f"Adapter {self.key} has been disposed")
