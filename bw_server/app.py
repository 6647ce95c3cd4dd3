import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from bw_adapter.adapter import BuildServerAdapter
from bw_adapter.settings import AdapterSettings
from bw_common.credentials import EnvCredentialProvider
from bw_common.models import QueryFilter, parse_instant

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Global instance (initialized at startup)
adapter: BuildServerAdapter | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI app.

    Handles startup and shutdown events:
    - Startup: Create the adapter from BW_* environment variables and start
      job discovery
    - Shutdown: Dispose the adapter (cancels discovery, closes connections)
    """
    global adapter

    adapter = BuildServerAdapter()
    await adapter.initialize(AdapterSettings.from_env(), EnvCredentialProvider())

    yield

    if adapter:
        await adapter.dispose()


app = FastAPI(lifespan=lifespan)


def get_adapter() -> BuildServerAdapter:
    """
    Get the global adapter instance.

    Returns:
        The initialized BuildServerAdapter

    Raises:
        RuntimeError: If the adapter is not initialized
    """
    if adapter is None:
        raise RuntimeError("Adapter not initialized")
    return adapter


def parse_query_filter(since: str | None, running: bool | None) -> QueryFilter:
    """
    Build a QueryFilter from query parameters.

    Raises:
        HTTPException: 400 if since is not epoch milliseconds or ISO-8601
    """
    if since is None:
        return QueryFilter(running=running)
    try:
        return QueryFilter(since=parse_instant(since), running=running)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid since value: {since}")


async def stream_build_events(
    bw_adapter: BuildServerAdapter,
    query_filter: QueryFilter,
    request: Request | None = None,
) -> AsyncGenerator[str, None]:
    """
    Helper function to stream build items as SSE.

    Args:
        bw_adapter: Adapter to query
        query_filter: Filter for the query
        request: Optional FastAPI request to check for client disconnection

    Yields:
        SSE-formatted event strings
    """
    cancel_event = asyncio.Event()

    async for item in bw_adapter.get_builds(query_filter, cancel_event):
        yield f"data: {json.dumps(item.to_dict())}\n\n"

        # Check if client disconnected
        if request and await request.is_disconnected():
            cancel_event.set()


@app.get("/builds/stream")
async def stream_builds(
    request: Request,
    since: str | None = None,
    running: bool | None = None,
    bw_adapter: BuildServerAdapter = Depends(get_adapter),
) -> StreamingResponse:
    """
    Stream builds via Server-Sent Events (SSE).

    Args:
        since: Only builds started at or after this time (epoch ms or ISO-8601)
        running: True for running builds only, False for finished builds only
        bw_adapter: Build server adapter (injected by dependency)

    Returns:
        StreamingResponse with one "build" or "error" event per item and a
        final "complete" event

    Raises:
        HTTPException: 400 if since cannot be parsed
    """
    query_filter = parse_query_filter(since, running)

    return StreamingResponse(
        stream_build_events(bw_adapter, query_filter, request),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.get("/builds")
async def list_builds(
    since: str | None = None,
    running: bool | None = None,
    bw_adapter: BuildServerAdapter = Depends(get_adapter),
) -> dict[str, list[dict[str, Any]]]:
    """
    Collect matching builds (non-streaming).

    Returns:
        Dictionary with "builds" (build items) and "errors" (job-scoped errors)
    """
    query_filter = parse_query_filter(since, running)

    builds = []
    errors = []
    async for item in bw_adapter.get_builds(query_filter):
        if item.type == "build":
            builds.append(item.to_dict())
        elif item.type == "error":
            errors.append(item.to_dict())
    return {"builds": builds, "errors": errors}


@app.get("/adapter")
async def describe_adapter(
    bw_adapter: BuildServerAdapter = Depends(get_adapter),
) -> dict[str, Any]:
    """
    Describe the configured adapter.

    Returns:
        Dictionary with the adapter key, lifecycle state, whether it is
        configured, and the polled jobs
    """
    return {
        "key": str(bw_adapter.key),
        "state": bw_adapter.state.value,
        "configured": bw_adapter.is_configured,
        "targets": [target.to_dict() for target in bw_adapter.targets],
    }


@app.get("/health")
async def health_check() -> dict[str, str]:
    """
    Health check endpoint.

    Returns:
        Dictionary with status="ok" if server is running
    """
    return {"status": "ok"}
