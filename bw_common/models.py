"""
Data models for build polling.

These models represent the domain objects passed between the fetcher,
discoverer, translator and stream producer, independent of the build
server product being polled.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def timestamp_to_datetime(milliseconds: int) -> datetime:
    """Convert epoch milliseconds (UTC) to an aware datetime."""
    return EPOCH + timedelta(milliseconds=milliseconds)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def parse_instant(value: str | int) -> datetime:
    """
    Parse a point in time supplied by a caller.

    Accepts integer epoch milliseconds (as int or digit string) or an
    ISO-8601 timestamp. Naive timestamps are interpreted as UTC.

    Raises:
        ValueError: If the value is neither
    """
    if isinstance(value, int):
        return timestamp_to_datetime(value)

    text = value.strip()
    if text.lstrip("-").isdigit():
        return timestamp_to_datetime(int(text))
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def format_instant(value: datetime) -> str:
    """Format an aware datetime as ISO-8601 with a Z suffix."""
    return value.astimezone(UTC).replace(tzinfo=None).isoformat() + "Z"


@dataclass(frozen=True)
class AdapterKey:
    """
    Identity of one configured build server adapter.

    Hosts use the string form to deduplicate adapters pointing at the same
    server, collection and project.
    """

    server: str | None
    team_collection: str | None
    project: str | None

    def __str__(self) -> str:
        return f"{self.server or ''}/{self.team_collection or ''}/{self.project or ''}"


@dataclass(frozen=True)
class BuildTarget:
    """One job to poll, identified by its base URL."""

    name: str
    url: str  # Always ends with "/"

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "url": self.url}


@dataclass(frozen=True)
class BuildEvent:
    """
    Normalized record for one build execution.

    Only events with at least one commit hash are ever emitted to callers,
    since a build without commits cannot be correlated to repository history.
    """

    description: str
    start_time: datetime  # Aware, UTC
    is_running: bool
    commit_hashes: tuple[str, ...] = ()
    url: str | None = None  # Build detail URL this event was read from

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary format (for JSON serialization)."""
        return {
            "description": self.description,
            "start_time": format_instant(self.start_time),
            "is_running": self.is_running,
            "commit_hashes": list(self.commit_hashes),
            "url": self.url,
        }


@dataclass(frozen=True)
class QueryFilter:
    """
    Time and running-state predicate for a single query.

    Either field may be None, meaning "do not filter on this".
    """

    since: datetime | None = None
    running: bool | None = None

    def matches(self, event: BuildEvent) -> bool:
        """Return True if the event passes this filter."""
        if self.since is not None and event.start_time < ensure_utc(self.since):
            return False
        if self.running is not None and event.is_running != self.running:
            return False
        return True


@dataclass
class BuildStreamItem:
    """
    A single message on a build stream.

    Streams emit "build" items for matching builds, "error" items for
    job-scoped failures, and exactly one trailing "complete" item.
    """

    type: str  # "build", "error" or "complete"
    build: BuildEvent | None = None  # Set for "build" type
    target: BuildTarget | None = None  # Job the item belongs to
    error: Exception | None = None  # Set for "error" type
    cancelled: bool | None = None  # Set on "complete" when the caller cancelled

    @classmethod
    def for_build(cls, build: BuildEvent, target: BuildTarget) -> "BuildStreamItem":
        return cls(type="build", build=build, target=target)

    @classmethod
    def for_error(cls, error: Exception, target: BuildTarget) -> "BuildStreamItem":
        return cls(type="error", error=error, target=target)

    @classmethod
    def complete(cls, cancelled: bool = False) -> "BuildStreamItem":
        return cls(type="complete", cancelled=cancelled)

    def to_dict(self) -> dict[str, Any]:
        """Convert item to dictionary format (for JSON/SSE serialization)."""
        result: dict[str, Any] = {"type": self.type}
        if self.target is not None:
            result["job"] = self.target.name
        if self.build is not None:
            result["build"] = self.build.to_dict()
        if self.error is not None:
            result["error"] = str(self.error)
            result["error_type"] = type(self.error).__name__
        if self.cancelled is not None:
            result["cancelled"] = self.cancelled
        return result
