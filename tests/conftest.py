"""Shared fakes: a scripted Playwright-like page/context/browser and app clients."""

import asyncio
from contextlib import asynccontextmanager

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from htmlproxy.services.fetcher import PageHandler
from htmlproxy.services.fingerprint import GENERAL_PROFILE
from htmlproxy.services.orchestrator import FetchOrchestrator, LifecycleMode
from htmlproxy.services.routing import RouteTable, SiteRoute
from htmlproxy.services.session import SessionPool

DEFAULT_HTML = "<html><head><title>ok</title></head><body><main>hello</main></body></html>"


class FakeResponse:
    def __init__(self, status: int):
        self.status = status


class FakeElement:
    def __init__(self):
        self.clicks = 0

    async def click(self):
        self.clicks += 1


class FakePage:
    """Minimal stand-in for playwright's Page."""

    def __init__(
        self,
        html: str = DEFAULT_HTML,
        status: int | None = 200,
        goto_delay: float = 0.0,
        goto_error: Exception | None = None,
        content_errors: int = 0,
        indicators: list | None = None,
        selectors: set[str] | None = None,
        overlays: dict | None = None,
        tracker: "ConcurrencyTracker | None" = None,
        stall_waits: bool = False,
        honor_timeout: bool = False,
    ):
        self.html = html
        self.status = status
        self.goto_delay = goto_delay
        self.goto_error = goto_error
        self.content_errors = content_errors
        # Successive results of the challenge predicate; the last one repeats
        self.indicators = list(indicators or [[]])
        self.selectors = set(selectors or ())
        self.overlays = dict(overlays or {})
        self.tracker = tracker
        # Load-state and unmatched selector waits spend their whole timeout
        self.stall_waits = stall_waits
        # goto gives up at its timeout instead of sleeping out goto_delay
        self.honor_timeout = honor_timeout
        self.url = None
        self.closed = False
        self.extra_headers: dict = {}
        self.goto_calls: list[dict] = []
        self.load_states: list[str] = []
        self.selector_calls: list[str] = []

    async def set_extra_http_headers(self, headers):
        self.extra_headers.update(headers)

    async def goto(self, url, wait_until="load", timeout=None):
        self.goto_calls.append({"url": url, "wait_until": wait_until, "timeout": timeout})
        if self.tracker:
            self.tracker.enter()
        try:
            if self.honor_timeout and timeout is not None and self.goto_delay * 1000 > timeout:
                await asyncio.sleep(timeout / 1000)
                raise TimeoutError(f"Timeout {timeout}ms exceeded navigating to {url}")
            if self.goto_delay:
                await asyncio.sleep(self.goto_delay)
        finally:
            if self.tracker:
                self.tracker.leave()
        if self.goto_error is not None:
            raise self.goto_error
        self.url = url
        return FakeResponse(self.status) if self.status is not None else None

    async def content(self):
        if self.content_errors > 0:
            self.content_errors -= 1
            raise RuntimeError("Execution context was destroyed")
        return self.html

    async def evaluate(self, script):
        if len(self.indicators) > 1:
            value = self.indicators.pop(0)
        else:
            value = self.indicators[0]
        if isinstance(value, Exception):
            raise value
        return value

    async def wait_for_load_state(self, state="load", timeout=None):
        self.load_states.append(state)
        if self.stall_waits:
            await self._stall(timeout, state)

    async def wait_for_selector(self, selector, timeout=None):
        self.selector_calls.append(selector)
        if selector in self.selectors:
            return FakeElement()
        if self.stall_waits:
            await self._stall(timeout, selector)
        raise TimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")

    async def _stall(self, timeout, what):
        await asyncio.sleep((timeout or 0) / 1000)
        raise TimeoutError(f"Timeout {timeout}ms exceeded waiting for {what}")

    async def query_selector(self, selector):
        return self.overlays.get(selector)

    async def close(self):
        self.closed = True


class FakeContext:
    def __init__(self, page_source, identity=None, proxy=None):
        self._page_source = page_source
        self.identity = identity
        self.proxy = proxy
        self.pages: list[FakePage] = []
        self.closed = False

    async def new_page(self):
        page = self._page_source()
        self.pages.append(page)
        return page

    async def close(self):
        self.closed = True


class ConcurrencyTracker:
    """Records the peak number of navigations in flight at once."""

    def __init__(self):
        self.active = 0
        self.peak = 0

    def enter(self):
        self.active += 1
        self.peak = max(self.peak, self.active)

    def leave(self):
        self.active -= 1


class FakeBrowser:
    """Context factory with the same shape as BrowserRuntime.

    ``pages`` is a zero-argument callable returning the page for the next
    navigation.
    """

    def __init__(self, pages=FakePage):
        self._next_page = pages
        self.contexts: list[FakeContext] = []
        self.started = 0
        self.shutdowns = 0

    async def new_context(self, identity, proxy=None):
        context = FakeContext(self._next_page, identity, proxy)
        self.contexts.append(context)
        return context

    async def initialize(self):
        self.started += 1

    async def shutdown(self):
        self.shutdowns += 1

    @property
    def pages(self) -> list[FakePage]:
        return [page for context in self.contexts for page in context.pages]


def make_pool(browser: FakeBrowser, **kwargs) -> SessionPool:
    kwargs.setdefault("identity_policy", GENERAL_PROFILE)
    return SessionPool(
        context_factory=browser.new_context,
        on_start=browser.initialize,
        on_teardown=browser.shutdown,
        **kwargs,
    )


def make_route(name="default", handler=None, shareable=True, timeout_ms=2000, matches=None):
    return SiteRoute(
        name=name,
        matches=matches or (lambda hostname: True),
        handler=handler or PageHandler(),
        identity_policy=GENERAL_PROFILE,
        default_timeout_ms=timeout_ms,
        shareable=shareable,
    )


class PoolRecorder:
    """Pool factory that remembers every pool it built, in order."""

    def __init__(self, browser: FakeBrowser, events: list | None = None):
        self.browser = browser
        self.pools: list[SessionPool] = []
        self.events = events if events is not None else []

    def __call__(self, route: SiteRoute) -> SessionPool:
        index = len(self.pools)
        browser = self.browser

        async def on_teardown():
            self.events.append(f"teardown:{index}")
            await browser.shutdown()

        pool = SessionPool(
            context_factory=browser.new_context,
            identity_policy=route.identity_policy,
            on_start=browser.initialize,
            on_teardown=on_teardown,
        )
        self.pools.append(pool)
        self.events.append(f"build:{index}")
        return pool


def make_orchestrator(
    browser: FakeBrowser | None = None,
    mode: LifecycleMode = LifecycleMode.EPHEMERAL,
    routes: list[SiteRoute] | None = None,
    default: SiteRoute | None = None,
    **kwargs,
) -> tuple[FetchOrchestrator, PoolRecorder]:
    recorder = PoolRecorder(browser or FakeBrowser())
    orchestrator = FetchOrchestrator(
        routes=RouteTable(routes or [], default or make_route()),
        pool_factory=recorder,
        mode=mode,
        **kwargs,
    )
    return orchestrator, recorder


@pytest.fixture
def browser():
    return FakeBrowser()


@pytest.fixture
def orchestrator(browser):
    orch, _ = make_orchestrator(browser)
    return orch


@asynccontextmanager
async def client_for(orchestrator: FetchOrchestrator):
    from htmlproxy.api.deps import get_orchestrator
    from htmlproxy.main import app

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
    finally:
        app.dependency_overrides.pop(get_orchestrator, None)
        await orchestrator.shutdown()


@pytest_asyncio.fixture
async def client(orchestrator):
    async with client_for(orchestrator) as ac:
        yield ac
