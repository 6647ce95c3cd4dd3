"""
Translate build-detail JSON documents into BuildEvent records.

Where a build server keeps the commit identifiers of a build differs between
products, so commit extraction is pluggable. The default understands the
Jenkins git plugin's JSON shape.
"""

import json
from collections.abc import Callable
from typing import Any

from bw_common.errors import ParseError
from bw_common.models import BuildEvent, timestamp_to_datetime

CommitExtractor = Callable[[dict[str, Any]], list[str]]


def _unique(values: list[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def _change_set_commits(change_set: Any) -> list[str]:
    if not isinstance(change_set, dict):
        return []
    return [
        item["commitId"]
        for item in change_set.get("items") or []
        if isinstance(item, dict) and isinstance(item.get("commitId"), str)
    ]


def jenkins_commit_hashes(build: dict[str, Any]) -> list[str]:
    """
    Collect commit hashes from a Jenkins build document.

    Looks at the revision each SCM action built, then at the commits listed
    in the build's change sets (pipeline and freestyle layouts).
    """
    hashes = []

    for action in build.get("actions") or []:
        if not isinstance(action, dict):
            continue
        revision = action.get("lastBuiltRevision")
        if isinstance(revision, dict) and isinstance(revision.get("SHA1"), str):
            hashes.append(revision["SHA1"])

    for change_set in build.get("changeSets") or []:
        hashes.extend(_change_set_commits(change_set))
    hashes.extend(_change_set_commits(build.get("changeSet")))

    return _unique(hashes)


def field_commit_extractor(path: str) -> CommitExtractor:
    """
    Build an extractor that reads commit hashes from a dotted field path.

    A string value yields one hash, a list yields its string entries, and a
    missing field yields none.

    Example:
        >>> extract = field_commit_extractor("sourceVersion")
        >>> extract({"sourceVersion": "abc123"})
        ['abc123']
    """
    parts = path.split(".")

    def extract(build: dict[str, Any]) -> list[str]:
        value: Any = build
        for part in parts:
            if not isinstance(value, dict):
                return []
            value = value.get(part)
        if isinstance(value, str):
            return [value] if value else []
        if isinstance(value, list):
            return _unique([v for v in value if isinstance(v, str) and v])
        return []

    return extract


def get_commit_extractor(name: str | None) -> CommitExtractor:
    """Return the Jenkins extractor for None/"jenkins", else a field extractor."""
    if not name or name.lower() == "jenkins":
        return jenkins_commit_hashes
    return field_commit_extractor(name)


class BuildTranslator:
    """Parses build-detail documents into BuildEvents."""

    def __init__(self, commit_extractor: CommitExtractor = jenkins_commit_hashes):
        self.commit_extractor = commit_extractor

    def translate(
        self, document: bytes | str | dict[str, Any], url: str | None = None
    ) -> BuildEvent:
        """
        Translate one build document.

        Args:
            document: Raw JSON body, or an already decoded object
            url: URL the document was read from

        Returns:
            BuildEvent for the build (commit list may be empty)

        Raises:
            ParseError: If the document is malformed or lacks startTime/building
        """
        if isinstance(document, dict):
            build = document
        else:
            try:
                build = json.loads(document)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise ParseError(f"Build document is not valid JSON: {e}") from e
            if not isinstance(build, dict):
                raise ParseError("Build document is not a JSON object")

        start_time = build.get("startTime")
        # bool is an int subclass, reject it explicitly
        if not isinstance(start_time, int) or isinstance(start_time, bool):
            raise ParseError(f"Build has no integer startTime: {start_time!r}")

        is_running = build.get("building")
        if not isinstance(is_running, bool):
            raise ParseError(f"Build has no boolean building flag: {is_running!r}")

        try:
            started = timestamp_to_datetime(start_time)
        except (OverflowError, ValueError) as e:
            raise ParseError(f"Build startTime out of range: {start_time}") from e

        try:
            commit_hashes = tuple(self.commit_extractor(build))
        except (TypeError, ValueError, AttributeError, KeyError) as e:
            raise ParseError(f"Build has malformed commit data: {e}") from e

        return BuildEvent(
            description=self._describe(build, is_running),
            start_time=started,
            is_running=is_running,
            commit_hashes=commit_hashes,
            url=url or build.get("url"),
        )

    @staticmethod
    def _describe(build: dict[str, Any], is_running: bool) -> str:
        name = build.get("fullDisplayName") or build.get("displayName")
        if not name:
            number = build.get("number")
            name = f"#{number}" if number is not None else "Build"
        status = "RUNNING" if is_running else (build.get("result") or "UNKNOWN")
        return f"{name} {status}"
