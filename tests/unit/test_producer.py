"""
Unit tests for bw_adapter.producer.

These tests use an in-memory fetcher and hand-built discovery handles to
test filtering, ordering, partial failure and cancellation in isolation.
"""

import asyncio
import json
from unittest.mock import Mock

import pytest

from bw_adapter.discoverer import DiscoveryHandle
from bw_adapter.fetcher import BuildServerFetcher
from bw_adapter.producer import BuildStreamProducer
from bw_adapter.translator import BuildTranslator, field_commit_extractor
from bw_common.credentials import Credentials, StaticCredentialProvider
from bw_common.errors import (
    JobDiscoveryFailed,
    QueryCancelled,
    RequestFailed,
)
from bw_common.models import (
    AdapterKey,
    BuildTarget,
    QueryFilter,
    timestamp_to_datetime,
)

JOB_ONE = BuildTarget(name="one", url="http://jenkins/job/one/")
JOB_TWO = BuildTarget(name="two", url="http://jenkins/job/two/")


class FakeFetcher:
    """Serves canned build documents keyed by URL."""

    def __init__(self, documents: dict):
        self.documents = documents
        self.requested: list[str] = []

    async def fetch(self, path, cancel_event=None, executor=None):
        if cancel_event is not None and cancel_event.is_set():
            raise QueryCancelled("Query cancelled by caller")
        self.requested.append(path)
        document = self.documents[path]
        if isinstance(document, Exception):
            raise document
        return document


def build_doc(start_ms: int, building: bool, commits: list[str]) -> bytes:
    """Helper to create a build document with commits in a flat field."""
    return json.dumps(
        {"startTime": start_ms, "building": building, "commits": commits}
    ).encode()


def make_producer(documents: dict, handles: list[DiscoveryHandle]):
    fetcher = FakeFetcher(documents)
    translator = BuildTranslator(field_commit_extractor("commits"))
    return BuildStreamProducer(fetcher, translator, handles), fetcher


async def resolved(urls: list[str]) -> list[str]:
    return urls


async def failing(target: BuildTarget) -> list[str]:
    raise JobDiscoveryFailed(target, RequestFailed("Not Found", 404))


def handle(target: BuildTarget, urls: list[str]) -> DiscoveryHandle:
    return DiscoveryHandle(target, asyncio.create_task(resolved(urls)))


async def cancelled_handle(target: BuildTarget) -> DiscoveryHandle:
    task = asyncio.create_task(asyncio.sleep(10))
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    return DiscoveryHandle(target, task)


async def collect(producer, query_filter=None, cancel_event=None) -> list:
    return [
        item
        async for item in producer.stream(query_filter or QueryFilter(), cancel_event)
    ]


def example_documents() -> dict:
    """Two jobs: one lists [b1, b2], two lists [b3]."""
    return {
        "http://jenkins/job/one/1/api/json": build_doc(100, False, ["abc"]),
        "http://jenkins/job/one/2/api/json": build_doc(200, True, []),
        "http://jenkins/job/two/3/api/json": build_doc(150, False, ["def"]),
    }


def example_handles() -> list[DiscoveryHandle]:
    return [
        handle(JOB_ONE, ["http://jenkins/job/one/1/", "http://jenkins/job/one/2/"]),
        handle(JOB_TWO, ["http://jenkins/job/two/3/"]),
    ]


class TestBuildStreamProducer:
    """Test suite for BuildStreamProducer.stream."""

    @pytest.mark.asyncio
    async def test_since_and_finished_filter_example(self):
        """Test that only b3 survives since=120ms and running=False."""
        producer, _ = make_producer(example_documents(), example_handles())
        query_filter = QueryFilter(since=timestamp_to_datetime(120), running=False)

        items = await collect(producer, query_filter)

        assert [item.type for item in items] == ["build", "complete"]
        build_item = items[0]
        assert build_item.target == JOB_TWO
        assert build_item.build.commit_hashes == ("def",)
        assert build_item.build.url == "http://jenkins/job/two/3/"
        assert items[-1].cancelled is False

    @pytest.mark.asyncio
    async def test_unfiltered_stream_keeps_discovery_order(self):
        """Test that events follow configuration then discovery order."""
        producer, fetcher = make_producer(example_documents(), example_handles())

        items = await collect(producer)

        builds = [item.build for item in items if item.type == "build"]
        # b2 has no commits and is never emitted
        assert [b.commit_hashes for b in builds] == [("abc",), ("def",)]
        assert fetcher.requested == [
            "http://jenkins/job/one/1/api/json",
            "http://jenkins/job/one/2/api/json",
            "http://jenkins/job/two/3/api/json",
        ]

    @pytest.mark.asyncio
    async def test_every_emitted_event_has_commits(self):
        """Test that builds without commits are dropped regardless of filter."""
        documents = {
            "http://jenkins/job/one/1/api/json": build_doc(100, True, []),
            "http://jenkins/job/one/2/api/json": build_doc(200, True, ["abc"]),
        }
        handles = [
            handle(JOB_ONE, ["http://jenkins/job/one/1/", "http://jenkins/job/one/2/"])
        ]
        producer, _ = make_producer(documents, handles)

        items = await collect(producer, QueryFilter(running=True))

        builds = [item.build for item in items if item.type == "build"]
        assert len(builds) == 1
        assert all(build.commit_hashes for build in builds)

    @pytest.mark.asyncio
    async def test_running_filter(self):
        """Test running=True, running=False and unset running filters."""
        documents = {
            "http://jenkins/job/one/1/api/json": build_doc(100, True, ["a"]),
            "http://jenkins/job/one/2/api/json": build_doc(200, False, ["b"]),
        }
        urls = ["http://jenkins/job/one/1/", "http://jenkins/job/one/2/"]
        producer, _ = make_producer(documents, [handle(JOB_ONE, urls)])

        running = await collect(producer, QueryFilter(running=True))
        finished = await collect(producer, QueryFilter(running=False))
        both = await collect(producer, QueryFilter())

        assert [i.build.is_running for i in running if i.type == "build"] == [True]
        assert [i.build.is_running for i in finished if i.type == "build"] == [False]
        assert [i.build.is_running for i in both if i.type == "build"] == [True, False]

    @pytest.mark.asyncio
    async def test_since_filter_excludes_earlier_builds(self):
        """Test that no emitted event starts before since."""
        producer, _ = make_producer(example_documents(), example_handles())
        since = timestamp_to_datetime(150)

        items = await collect(producer, QueryFilter(since=since))

        builds = [item.build for item in items if item.type == "build"]
        assert builds
        assert all(build.start_time >= since for build in builds)

    @pytest.mark.asyncio
    async def test_same_query_is_idempotent(self):
        """Test that repeating a query over the same snapshot yields the same sequence."""
        producer, _ = make_producer(example_documents(), example_handles())

        first = await collect(producer)
        second = await collect(producer)

        assert [i.to_dict() for i in first] == [i.to_dict() for i in second]

    @pytest.mark.asyncio
    async def test_failed_discovery_is_job_scoped(self):
        """Test that a failed job yields one error and healthy jobs still stream."""
        documents = {"http://jenkins/job/two/3/api/json": build_doc(150, False, ["def"])}
        handles = [
            DiscoveryHandle(JOB_ONE, asyncio.create_task(failing(JOB_ONE))),
            handle(JOB_TWO, ["http://jenkins/job/two/3/"]),
        ]
        producer, _ = make_producer(documents, handles)

        items = await collect(producer)

        assert [item.type for item in items] == ["error", "build", "complete"]
        assert items[0].target == JOB_ONE
        assert isinstance(items[0].error, JobDiscoveryFailed)
        assert items[1].target == JOB_TWO

    @pytest.mark.asyncio
    async def test_unexpected_discovery_exception_is_wrapped(self):
        """Test that arbitrary discovery exceptions surface as JobDiscoveryFailed."""

        async def broken() -> list[str]:
            raise KeyError("builds")

        handles = [DiscoveryHandle(JOB_ONE, asyncio.create_task(broken()))]
        producer, _ = make_producer({}, handles)

        items = await collect(producer)

        assert [item.type for item in items] == ["error", "complete"]
        assert isinstance(items[0].error, JobDiscoveryFailed)
        assert isinstance(items[0].error.cause, KeyError)

    @pytest.mark.asyncio
    async def test_build_fetch_failure_skips_rest_of_job_only(self):
        """Test that a build fetch error ends that job but not the next one."""
        documents = {
            "http://jenkins/job/one/1/api/json": RequestFailed("Server Error", 500),
            "http://jenkins/job/one/2/api/json": build_doc(200, False, ["abc"]),
            "http://jenkins/job/two/3/api/json": build_doc(150, False, ["def"]),
        }
        handles = [
            handle(JOB_ONE, ["http://jenkins/job/one/1/", "http://jenkins/job/one/2/"]),
            handle(JOB_TWO, ["http://jenkins/job/two/3/"]),
        ]
        producer, fetcher = make_producer(documents, handles)

        items = await collect(producer)

        assert [item.type for item in items] == ["error", "build", "complete"]
        assert items[0].target == JOB_ONE
        assert items[1].target == JOB_TWO
        assert "http://jenkins/job/one/2/api/json" not in fetcher.requested

    @pytest.mark.asyncio
    async def test_malformed_build_is_skipped(self):
        """Test that a ParseError skips the build without an error item."""
        documents = {
            "http://jenkins/job/one/1/api/json": b"not json",
            "http://jenkins/job/one/2/api/json": build_doc(200, False, ["abc"]),
        }
        handles = [
            handle(JOB_ONE, ["http://jenkins/job/one/1/", "http://jenkins/job/one/2/"])
        ]
        producer, _ = make_producer(documents, handles)

        items = await collect(producer)

        assert [item.type for item in items] == ["build", "complete"]

    @pytest.mark.asyncio
    async def test_all_discoveries_cancelled_completes_empty(self):
        """Test that a stream over only cancelled discoveries just completes."""
        handles = [await cancelled_handle(JOB_ONE), await cancelled_handle(JOB_TWO)]
        producer, fetcher = make_producer({}, handles)

        items = await collect(producer)

        assert [item.to_dict() for item in items] == [
            {"type": "complete", "cancelled": False}
        ]
        assert fetcher.requested == []

    @pytest.mark.asyncio
    async def test_one_cancelled_discovery_is_skipped(self):
        """Test that a single cancelled discovery does not affect siblings."""
        handles = [
            await cancelled_handle(JOB_ONE),
            handle(JOB_TWO, ["http://jenkins/job/two/3/"]),
        ]
        producer, _ = make_producer(example_documents(), handles)

        items = await collect(producer)

        assert [item.type for item in items] == ["build", "complete"]

    @pytest.mark.asyncio
    async def test_cancel_mid_stream(self):
        """Test that cancelling after N events yields exactly N and a clean completion."""
        documents = {
            f"http://jenkins/job/one/{n}/api/json": build_doc(n, False, [f"c{n}"])
            for n in range(1, 4)
        }
        urls = [f"http://jenkins/job/one/{n}/" for n in range(1, 4)]
        handles = [handle(JOB_ONE, urls), handle(JOB_TWO, [])]
        producer, fetcher = make_producer(documents, handles)
        cancel_event = asyncio.Event()

        items = []
        async for item in producer.stream(QueryFilter(), cancel_event):
            items.append(item)
            if item.type == "build":
                cancel_event.set()

        assert [item.type for item in items] == ["build", "complete"]
        assert items[-1].cancelled is True
        assert all(item.type != "error" for item in items)
        assert fetcher.requested == ["http://jenkins/job/one/1/api/json"]

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self):
        """Test that a pre-cancelled query emits only a cancelled completion."""
        producer, fetcher = make_producer(example_documents(), example_handles())
        cancel_event = asyncio.Event()
        cancel_event.set()

        items = await collect(producer, cancel_event=cancel_event)

        assert [item.to_dict() for item in items] == [
            {"type": "complete", "cancelled": True}
        ]
        assert fetcher.requested == []

    @pytest.mark.asyncio
    async def test_reader_cancellation_does_not_cancel_discovery(self):
        """Test that cancelling a stream waiting on discovery leaves discovery intact."""
        release = asyncio.Event()

        async def slow_discovery() -> list[str]:
            await release.wait()
            return ["http://jenkins/job/one/1/"]

        discovery = asyncio.create_task(slow_discovery())
        producer, _ = make_producer(
            example_documents(), [DiscoveryHandle(JOB_ONE, discovery)]
        )

        reader = asyncio.create_task(collect(producer))
        await asyncio.sleep(0.01)
        reader.cancel()
        with pytest.raises(asyncio.CancelledError):
            await reader

        assert not discovery.cancelled()
        release.set()
        assert await discovery == ["http://jenkins/job/one/1/"]


class SlowFetcher(FakeFetcher):
    """Fetcher whose requests take a while to answer."""

    def __init__(self, documents: dict, delay: float):
        super().__init__(documents)
        self.delay = delay

    async def fetch(self, path, cancel_event=None, executor=None):
        await asyncio.sleep(self.delay)
        return await super().fetch(path, None, executor)


class TestMalformedBuilds:
    """Test suite for builds that cannot be translated."""

    @pytest.mark.asyncio
    async def test_out_of_range_start_time_is_skipped(self):
        """Test that a startTime beyond the datetime range does not end the stream."""
        documents = {
            "http://jenkins/job/one/1/api/json": build_doc(10**15, False, ["abc"]),
            "http://jenkins/job/two/3/api/json": build_doc(150, False, ["def"]),
        }
        handles = [
            handle(JOB_ONE, ["http://jenkins/job/one/1/"]),
            handle(JOB_TWO, ["http://jenkins/job/two/3/"]),
        ]
        producer, _ = make_producer(documents, handles)

        items = await collect(producer)

        assert [item.type for item in items] == ["build", "complete"]
        assert items[0].target == JOB_TWO
        assert items[0].build.commit_hashes == ("def",)

    @pytest.mark.asyncio
    async def test_non_list_change_sets_are_skipped(self):
        """Test that Jenkins commit data of the wrong shape skips only that build."""
        documents = {
            "http://jenkins/job/one/1/api/json": json.dumps(
                {"startTime": 100, "building": False, "changeSets": 5}
            ).encode(),
            "http://jenkins/job/one/2/api/json": json.dumps(
                {
                    "startTime": 200,
                    "building": False,
                    "changeSets": [{"items": [{"commitId": "abc"}]}],
                }
            ).encode(),
        }
        handles = [
            handle(JOB_ONE, ["http://jenkins/job/one/1/", "http://jenkins/job/one/2/"])
        ]
        producer = BuildStreamProducer(
            FakeFetcher(documents), BuildTranslator(), handles
        )

        items = await collect(producer)

        assert [item.type for item in items] == ["build", "complete"]
        assert items[0].build.commit_hashes == ("abc",)

    @pytest.mark.asyncio
    async def test_unexpected_translator_error_is_job_scoped(self):
        """Test that an unexpected translator failure becomes one error for its job."""

        class BrokenTranslator(BuildTranslator):
            def translate(self, document, url=None):
                if "/one/" in url:
                    raise RuntimeError("boom")
                return super().translate(document, url)

        handles = [
            handle(JOB_ONE, ["http://jenkins/job/one/1/", "http://jenkins/job/one/2/"]),
            handle(JOB_TWO, ["http://jenkins/job/two/3/"]),
        ]
        producer = BuildStreamProducer(
            FakeFetcher(example_documents()),
            BrokenTranslator(field_commit_extractor("commits")),
            handles,
        )

        items = await collect(producer)

        assert [item.type for item in items] == ["error", "build", "complete"]
        assert items[0].target == JOB_ONE
        assert isinstance(items[0].error, RuntimeError)
        assert items[1].target == JOB_TWO
        assert items[-1].cancelled is False


class TestPromptCancellation:
    """Test suite for cancellation while the stream is waiting."""

    @pytest.mark.asyncio
    async def test_cancel_while_fetch_pending(self):
        """Test that a build fetched after cancellation is never emitted."""
        handles = [handle(JOB_TWO, ["http://jenkins/job/two/3/"])]
        producer = BuildStreamProducer(
            SlowFetcher(example_documents(), delay=0.05),
            BuildTranslator(field_commit_extractor("commits")),
            handles,
        )
        cancel_event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, cancel_event.set)

        items = await collect(producer, cancel_event=cancel_event)

        assert [item.to_dict() for item in items] == [
            {"type": "complete", "cancelled": True}
        ]

    @pytest.mark.asyncio
    async def test_cancel_while_discovery_pending(self):
        """Test that a slow discovery does not delay a cancelled query."""
        release = asyncio.Event()

        async def slow_discovery() -> list[str]:
            await release.wait()
            return ["http://jenkins/job/one/1/"]

        discovery = asyncio.create_task(slow_discovery())
        producer, fetcher = make_producer(
            example_documents(), [DiscoveryHandle(JOB_ONE, discovery)]
        )
        cancel_event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, cancel_event.set)

        items = await asyncio.wait_for(
            collect(producer, cancel_event=cancel_event), timeout=1
        )

        assert [item.to_dict() for item in items] == [
            {"type": "complete", "cancelled": True}
        ]
        assert fetcher.requested == []
        assert not discovery.cancelled()
        release.set()
        await discovery


class TestAuthenticatedStream:
    @pytest.mark.asyncio
    async def test_challenge_then_credentials_yields_build(self):
        """Test that a 401 answered with credentials surfaces as one build, no error."""
        credentials = Credentials(username="alice", secret="token")
        fetcher = BuildServerFetcher(
            base_url="http://jenkins/",
            key=AdapterKey("jenkins", "main", "two"),
            credential_provider=StaticCredentialProvider(credentials),
            retry_backoff=0.0,
        )
        fetcher._session = Mock()

        def get(url, auth=None, timeout=None):
            response = Mock()
            if auth is None:
                response.status_code = 401
                response.reason = "Unauthorized"
                response.headers = {}
                return response
            response.status_code = 200
            response.reason = "OK"
            response.headers = {"Content-Type": "application/json"}
            response.content = build_doc(150, False, ["def"])
            return response

        fetcher._session.get.side_effect = get
        producer = BuildStreamProducer(
            fetcher,
            BuildTranslator(field_commit_extractor("commits")),
            [handle(JOB_TWO, ["http://jenkins/job/two/3/"])],
        )

        items = await collect(producer)

        assert [item.type for item in items] == ["build", "complete"]
        assert items[0].build.commit_hashes == ("def",)
        assert fetcher._session.get.call_count == 2
