"""
Adapter configuration.

Settings come from the host: either a mapping of its stored settings keys or
environment variables. Validation never raises past the adapter; an invalid
configuration leaves the adapter unconfigured.

Environment Variables:
    BW_SERVER: Build server address, with or without scheme
    BW_TEAM_COLLECTION: Team collection name (part of the adapter identity)
    BW_PROJECT: Job names to poll, separated by "|"
    BW_BUILD_DEFINITION_FILTER: Regular expression job names must match (default: all)
    BW_COMMIT_FIELD: Dotted field holding commit hashes (default: Jenkins layout)
    BW_TIMEOUT: Per-request timeout in seconds (default: 120)
    BW_MAX_ATTEMPTS: Attempts per request on transport failures (default: 3)
    BW_RETRY_BACKOFF: Initial retry delay in seconds (default: 0.5)
"""

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

from bw_common.errors import ConfigInvalid
from bw_common.models import AdapterKey, BuildTarget

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF = 0.5


def _get_positive_env(name: str, default: float, cast: type = float) -> Any:
    """
    Read a positive number from the environment.

    Invalid or non-positive values log a warning and fall back to the default.
    """
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw}, using default {default}")
        return default
    if value <= 0:
        logger.warning(f"Invalid {name}={value}, using default {default}")
        return default
    return value


def _get_number(
    config: Mapping[str, Any], key: str, default: float, cast: type = float
) -> Any:
    """Read a number from stored settings; missing or null keys use the default."""
    value = config.get(key)
    if value is None or value == "":
        return default
    return cast(value)


@dataclass(frozen=True)
class AdapterSettings:
    """Configuration of one build server adapter."""

    server: str | None = None
    team_collection: str | None = None
    project: str | None = None  # Job names separated by "|"
    build_definition_filter: str = ""
    commit_field: str | None = None
    timeout: float = DEFAULT_TIMEOUT
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_backoff: float = DEFAULT_RETRY_BACKOFF

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "AdapterSettings":
        """
        Create settings from a host's stored settings.

        Recognized keys: server, team_collection, project_name,
        build_definition_name, commit_field, timeout, max_attempts,
        retry_backoff.
        """
        return cls(
            server=config.get("server"),
            team_collection=config.get("team_collection"),
            project=config.get("project_name"),
            build_definition_filter=config.get("build_definition_name") or "",
            commit_field=config.get("commit_field"),
            timeout=_get_number(config, "timeout", DEFAULT_TIMEOUT),
            max_attempts=_get_number(
                config, "max_attempts", DEFAULT_MAX_ATTEMPTS, cast=int
            ),
            retry_backoff=_get_number(config, "retry_backoff", DEFAULT_RETRY_BACKOFF),
        )

    @classmethod
    def from_env(cls) -> "AdapterSettings":
        """Create settings from BW_* environment variables."""
        return cls(
            server=os.environ.get("BW_SERVER"),
            team_collection=os.environ.get("BW_TEAM_COLLECTION"),
            project=os.environ.get("BW_PROJECT"),
            build_definition_filter=os.environ.get("BW_BUILD_DEFINITION_FILTER", ""),
            commit_field=os.environ.get("BW_COMMIT_FIELD") or None,
            timeout=_get_positive_env("BW_TIMEOUT", DEFAULT_TIMEOUT),
            max_attempts=_get_positive_env(
                "BW_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS, cast=int
            ),
            retry_backoff=_get_positive_env("BW_RETRY_BACKOFF", DEFAULT_RETRY_BACKOFF),
        )

    @property
    def key(self) -> AdapterKey:
        return AdapterKey(self.server, self.team_collection, self.project)

    def validate(self) -> re.Pattern:
        """
        Check the settings and compile the job name filter.

        Returns:
            Compiled build definition filter

        Raises:
            ConfigInvalid: If the filter is not a valid regular expression or
                server, team collection or project is missing
        """
        try:
            pattern = re.compile(self.build_definition_filter)
        except re.error as e:
            raise ConfigInvalid(
                f"Invalid build definition filter {self.build_definition_filter!r}: {e}"
            ) from e

        missing = [
            name
            for name, value in (
                ("server", self.server),
                ("team_collection", self.team_collection),
                ("project", self.project),
            )
            if not value
        ]
        if missing:
            raise ConfigInvalid(f"Missing settings: {', '.join(missing)}")

        return pattern

    def base_address(self) -> str:
        """Server base URL, defaulting to http and always ending with "/"."""
        server = self.server or ""
        address = server if "://" in server else f"http://{server}"
        if not address.endswith("/"):
            address += "/"
        return address

    def job_names(self) -> list[str]:
        """Configured job names, trimmed, in configuration order."""
        return [name.strip() for name in (self.project or "").split("|") if name.strip()]

    def build_targets(self) -> list[BuildTarget]:
        """
        Targets for every configured job that matches the filter.

        Raises:
            ConfigInvalid: If the settings are invalid
        """
        pattern = self.validate()
        base = self.base_address()
        targets = []
        for name in self.job_names():
            if not pattern.search(name):
                logger.debug(f"Job {name} does not match build definition filter")
                continue
            targets.append(BuildTarget(name=name, url=f"{base}job/{quote(name)}/"))
        return targets
