"""
Authenticated HTTP fetcher for build server REST resources.

Each fetch issues one blocking requests GET on a thread pool, classifies the
outcome and either returns the full response body or raises a FetchError.
Transport-level cancellations are retried with backoff, and authentication
challenges trigger one round of re-authentication through the host's
credential provider.
"""

import asyncio
import logging
from concurrent.futures import Executor
from urllib.parse import urljoin

import requests
from requests.auth import AuthBase

from bw_common.credentials import CredentialProvider, Credentials
from bw_common.errors import (
    AuthenticationCancelled,
    QueryCancelled,
    RequestFailed,
    TransientCancel,
)
from bw_common.models import AdapterKey

logger = logging.getLogger(__name__)

JSON_MEDIA_TYPES = ("application/json", "text/json")


def is_json_media_type(content_type: str | None) -> bool:
    """Return True if a Content-Type header value denotes JSON."""
    if not content_type:
        return False
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type in JSON_MEDIA_TYPES or media_type.endswith("+json")


class BuildServerFetcher:
    """
    Fetches JSON documents from one build server.

    A single requests.Session (and therefore connection pool) is created
    lazily on first use and shared by every job and query of the adapter
    that owns this fetcher.
    """

    def __init__(
        self,
        base_url: str,
        key: AdapterKey,
        credential_provider: CredentialProvider,
        timeout: float = 120.0,
        max_attempts: int = 3,
        retry_backoff: float = 0.5,
    ):
        """
        Initialize the fetcher.

        Args:
            base_url: Server base address that relative paths are resolved against
            key: Identity of the owning adapter (passed to the credential provider)
            credential_provider: Source of credentials when a request is challenged
            timeout: Per-request timeout in seconds
            max_attempts: Total attempts for transport-level failures
            retry_backoff: Initial delay in seconds between transport retries
        """
        self.base_url = base_url
        self.key = key
        self.credential_provider = credential_provider
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff = retry_backoff

        self._auth: AuthBase | None = None
        self._session: requests.Session | None = None
        # Bumped on every credential change or declined prompt
        self._auth_generation = 0
        self._auth_lock = asyncio.Lock()

    @property
    def session(self) -> requests.Session:
        """The shared session, created on first access."""
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({"Accept": "application/json"})
        return self._session

    def set_credentials(self, credentials: Credentials | None) -> None:
        """Use these credentials for subsequent requests (None for anonymous)."""
        self._auth = credentials.to_auth() if credentials is not None else None
        self._auth_generation += 1

    def close(self) -> None:
        """Close the shared session if it was ever created."""
        if self._session is not None:
            self._session.close()
            self._session = None

    async def fetch(
        self,
        path: str,
        cancel_event: asyncio.Event | None = None,
        executor: Executor | None = None,
    ) -> bytes:
        """
        Fetch one resource and return its complete body.

        Args:
            path: Absolute URL, or path relative to the server base address
            cancel_event: Set by the caller to abandon the fetch
            executor: Thread pool for the blocking request (loop default if None)

        Returns:
            The response body

        Raises:
            QueryCancelled: If the caller cancelled
            AuthenticationCancelled: If the server challenged the request and
                no (working) credentials were granted
            RequestFailed: On any other failure status, or when transport
                retries are exhausted
        """
        url = urljoin(self.base_url, path)
        loop = asyncio.get_running_loop()
        attempt = 0
        reauthenticated = False

        while True:
            self._raise_if_cancelled(cancel_event)
            attempt += 1
            auth, generation = self._auth, self._auth_generation

            try:
                response = await loop.run_in_executor(
                    executor, self._get, self.session, url, auth
                )
            except TransientCancel as e:
                # Caller cancellation is never retried
                self._raise_if_cancelled(cancel_event)
                if attempt >= self.max_attempts:
                    raise RequestFailed(
                        f"Giving up on {url} after {attempt} attempts: {e}"
                    ) from e
                delay = self.retry_backoff * 2 ** (attempt - 1)
                logger.warning(
                    f"Transient failure fetching {url} (attempt {attempt}/"
                    f"{self.max_attempts}), retrying in {delay:.1f}s: {e}"
                )
                await asyncio.sleep(delay)
                continue

            # A response that arrives after the caller cancelled is discarded
            self._raise_if_cancelled(cancel_event)

            status = response.status_code
            reason = response.reason or ""

            if 200 <= status < 300:
                if is_json_media_type(response.headers.get("Content-Type")):
                    return response.content
                # Servers answer with an HTML login page when guest access is denied
                logger.debug(
                    f"Non-JSON response from {url} "
                    f"({response.headers.get('Content-Type')}), treating as unauthorized"
                )
                challenged = True
            else:
                challenged = status in (401, 403)

            if not challenged:
                raise RequestFailed(reason, status_code=status)

            if reauthenticated:
                raise AuthenticationCancelled(reason)

            await self._reauthenticate(generation, url, reason, executor)
            reauthenticated = True

    async def _reauthenticate(
        self,
        generation: int,
        url: str,
        reason: str,
        executor: Executor | None,
    ) -> None:
        """
        Ask the credential provider for fresh credentials after a challenge.

        Only one fetch prompts at a time. A fetch whose challenge was answered
        with credentials older than the current ones retries with the current
        ones instead of prompting again.

        Raises:
            AuthenticationCancelled: If no credentials were granted
        """
        async with self._auth_lock:
            if self._auth_generation != generation:
                if self._auth is None:
                    raise AuthenticationCancelled(reason)
                logger.info(f"Retrying {url} with credentials granted meanwhile")
                return

            loop = asyncio.get_running_loop()
            credentials = await loop.run_in_executor(
                executor, self.credential_provider.get_credentials, self.key, True
            )
            if credentials is None:
                self._auth_generation += 1
                logger.info(
                    f"No credentials granted for {self.key}, giving up on {url}"
                )
                raise AuthenticationCancelled(reason)

            logger.info(f"Retrying {url} with fresh credentials")
            self.set_credentials(credentials)

    def _get(
        self, session: requests.Session, url: str, auth: AuthBase | None
    ) -> requests.Response:
        """Issue one blocking GET and read the whole body."""
        logger.debug(f"GET {url}")
        try:
            return session.get(url, auth=auth, timeout=self.timeout)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise TransientCancel(str(e)) from e
        except requests.exceptions.RequestException as e:
            raise RequestFailed(str(e)) from e

    @staticmethod
    def _raise_if_cancelled(cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise QueryCancelled("Query cancelled by caller")
