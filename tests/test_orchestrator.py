"""Tests for the orchestrator lifecycle: modes, serialization, timeouts and resets."""

import asyncio

import pytest
from prometheus_client import REGISTRY

from conftest import ConcurrencyTracker, FakeBrowser, FakePage, make_orchestrator, make_route
from htmlproxy.core.exceptions import InvalidUrl, ModeNotApplicable
from htmlproxy.schemas.fetch import FetchRequest
from htmlproxy.services.orchestrator import LifecycleMode
from htmlproxy.services.routing import host_suffix_matcher

PERSISTENT = LifecycleMode.PERSISTENT


def _slow_then_fast(delay: float):
    pages = [FakePage(goto_delay=delay)]
    return FakeBrowser(lambda: pages.pop(0) if pages else FakePage())


class TestEphemeralMode:
    @pytest.mark.asyncio
    async def test_pool_built_and_torn_down_per_request(self):
        orchestrator, recorder = make_orchestrator()
        result = await orchestrator.submit(FetchRequest(target_url="https://example.com/"))

        assert result.ok
        assert recorder.events == ["build:0", "teardown:0"]
        assert orchestrator.shared_pool is None

    @pytest.mark.asyncio
    async def test_repeated_fetch_returns_same_html(self):
        orchestrator, recorder = make_orchestrator()
        first = await orchestrator.submit(FetchRequest(target_url="https://example.com/"))
        second = await orchestrator.submit(FetchRequest(target_url="https://example.com/"))

        assert first.html == second.html
        assert first.request_id != second.request_id
        assert len(recorder.pools) == 2
        assert all(pool.closed for pool in recorder.pools)

    @pytest.mark.asyncio
    async def test_invalid_url_rejected_before_any_pool(self):
        orchestrator, recorder = make_orchestrator()
        with pytest.raises(InvalidUrl) as exc:
            await orchestrator.submit(FetchRequest(target_url="not a url"))
        assert exc.value.message == "Invalid URL format"
        assert recorder.pools == []

    @pytest.mark.asyncio
    async def test_missing_url_rejected(self):
        orchestrator, _ = make_orchestrator()
        with pytest.raises(InvalidUrl) as exc:
            await orchestrator.submit(FetchRequest(target_url=""))
        assert exc.value.message == "URL parameter is required"

    @pytest.mark.asyncio
    async def test_route_default_timeout_used(self):
        browser = FakeBrowser()
        orchestrator, _ = make_orchestrator(
            browser, default=make_route(timeout_ms=1234), max_retries=0
        )
        await orchestrator.submit(FetchRequest(target_url="https://example.com/"))
        assert 1100 < browser.pages[0].goto_calls[0]["timeout"] <= 1234

    @pytest.mark.asyncio
    async def test_timeout_returns_fetch_timeout(self):
        orchestrator, recorder = make_orchestrator(_slow_then_fast(0.5))
        result = await orchestrator.submit(
            FetchRequest(target_url="https://example.com/", timeout_ms=20)
        )

        assert result.error_kind == "FetchTimeout"
        assert result.message == "Timeout fetching URL after 20ms"
        assert recorder.events == ["build:0", "teardown:0"]
        await orchestrator.shutdown()
        assert not orchestrator._background

    @pytest.mark.asyncio
    async def test_reset_not_applicable(self):
        orchestrator, _ = make_orchestrator()
        with pytest.raises(ModeNotApplicable) as exc:
            await orchestrator.reset()
        assert exc.value.message == "Persistent crawler mode is disabled"


class TestPersistentMode:
    @pytest.mark.asyncio
    async def test_requests_are_serialized(self):
        tracker = ConcurrencyTracker()
        browser = FakeBrowser(lambda: FakePage(goto_delay=0.03, tracker=tracker))
        orchestrator, recorder = make_orchestrator(browser, mode=PERSISTENT)

        results = await asyncio.gather(
            *(
                orchestrator.submit(FetchRequest(target_url=f"https://example.com/{i}"))
                for i in range(3)
            )
        )

        assert all(r.ok for r in results)
        assert tracker.peak == 1
        assert recorder.events == [
            "build:0", "teardown:0",
            "build:1", "teardown:1",
            "build:2", "teardown:2",
        ]
        assert orchestrator.shared_pool is None
        assert orchestrator.state == "torn-down"

    @pytest.mark.asyncio
    async def test_timeout_tears_down_shared_pool(self):
        orchestrator, recorder = make_orchestrator(_slow_then_fast(0.1), mode=PERSISTENT)
        result = await orchestrator.submit(
            FetchRequest(target_url="https://example.com/", timeout_ms=1)
        )

        assert result.error_kind == "FetchTimeout"
        assert orchestrator.shared_pool is None
        assert recorder.events == ["build:0", "teardown:0"]
        assert len(orchestrator.results) == 0

        # The next request gets a fresh pool and succeeds
        follow_up = await orchestrator.submit(FetchRequest(target_url="https://example.com/"))
        assert follow_up.ok
        assert recorder.events[-2:] == ["build:1", "teardown:1"]
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_reset_starts_fresh_pool(self):
        browser = FakeBrowser()
        orchestrator, recorder = make_orchestrator(browser, mode=PERSISTENT)
        assert orchestrator.state == "uninitialized"

        await orchestrator.reset()

        assert orchestrator.shared_pool is recorder.pools[0]
        assert orchestrator.state == "pool-active"
        assert browser.started == 1

        result = await orchestrator.submit(FetchRequest(target_url="https://example.com/"))
        assert result.ok
        assert recorder.events == ["build:0", "teardown:0"]

    @pytest.mark.asyncio
    async def test_force_fresh_session_discards_pool(self):
        orchestrator, recorder = make_orchestrator(mode=PERSISTENT)
        await orchestrator.reset()
        reset_pool = orchestrator.shared_pool

        result = await orchestrator.submit(
            FetchRequest(target_url="https://example.com/", force_fresh_session=True)
        )

        assert result.ok
        assert reset_pool.closed
        assert recorder.events == ["build:0", "teardown:0", "build:1", "teardown:1"]

    @pytest.mark.asyncio
    async def test_reset_waits_for_in_flight_fetch(self):
        browser = FakeBrowser(lambda: FakePage(goto_delay=0.05))
        orchestrator, recorder = make_orchestrator(browser, mode=PERSISTENT)

        fetch = asyncio.create_task(
            orchestrator.submit(FetchRequest(target_url="https://example.com/"))
        )
        await asyncio.sleep(0.01)
        await orchestrator.reset()

        assert fetch.done()
        assert (await fetch).ok
        assert recorder.events == ["build:0", "teardown:0", "build:1"]
        await orchestrator.shutdown()
        assert recorder.events[-1] == "teardown:1"

    @pytest.mark.asyncio
    async def test_unshareable_route_bypasses_shared_pool(self):
        tracker = ConcurrencyTracker()
        browser = FakeBrowser(lambda: FakePage(goto_delay=0.05, tracker=tracker))
        challenge = make_route(
            "challenge", shareable=False, matches=host_suffix_matcher(["mircli.ru"])
        )
        orchestrator, recorder = make_orchestrator(browser, mode=PERSISTENT, routes=[challenge])

        shared, isolated = await asyncio.gather(
            orchestrator.submit(FetchRequest(target_url="https://example.com/")),
            orchestrator.submit(FetchRequest(target_url="https://www.mircli.ru/")),
        )

        assert shared.ok and isolated.ok
        assert tracker.peak == 2
        assert len(recorder.pools) == 2
        assert all(pool.closed for pool in recorder.pools)
        assert orchestrator.shared_pool is None


class TestHealthAndMetrics:
    def test_health(self):
        orchestrator, _ = make_orchestrator()
        health = orchestrator.health()
        assert health["status"] == "ok"
        assert health["timestamp"].tzinfo is not None

    @pytest.mark.asyncio
    async def test_outcomes_are_counted(self):
        labels = {"route": "default", "status": "FetchTimeout"}
        before = REGISTRY.get_sample_value("fetch_requests_total", labels) or 0
        orchestrator, _ = make_orchestrator(_slow_then_fast(0.2))
        await orchestrator.submit(FetchRequest(target_url="https://example.com/", timeout_ms=5))
        await orchestrator.shutdown()
        assert REGISTRY.get_sample_value("fetch_requests_total", labels) == before + 1
