"""Orchestrator lifecycle manager.

Ephemeral mode (default) builds a fresh session pool for every request and
tears it down afterwards. Persistent mode keeps one shared pool, runs
requests against it strictly one at a time in arrival order, and still tears
the pool down after every run so it is recreated lazily for the next one.

Every submission runs under an overall timeout. When it fires the caller
gets a ``FetchTimeout`` result immediately; the abandoned run is cancelled
in the background and its resources are reclaimed by the pool teardown.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from htmlproxy.core.exceptions import FetchFailed, FetchTimeout, ModeNotApplicable
from htmlproxy.core.metrics import (
    fetch_duration_seconds,
    fetch_requests_total,
    session_pool_teardowns_total,
)
from htmlproxy.middleware.request_id import bind_request_id, get_request_id
from htmlproxy.schemas.fetch import FetchRequest, FetchResult, validate_target_url
from htmlproxy.services.browser import BrowserRuntime
from htmlproxy.services.fetcher import DEFAULT_MAX_RETRIES, FetchTask
from htmlproxy.services.proxy import ProxyRotator, load_proxy_endpoints
from htmlproxy.services.results import ResultBuffer
from htmlproxy.services.routing import RouteTable, SiteRoute, build_route_table
from htmlproxy.services.session import SessionPool
from htmlproxy.services.waits import try_with_timeout

logger = logging.getLogger(__name__)

PoolFactory = Callable[[SiteRoute], SessionPool]


class LifecycleMode(str, Enum):
    EPHEMERAL = "ephemeral"
    PERSISTENT = "persistent"


class FetchOrchestrator:
    def __init__(
        self,
        routes: RouteTable,
        pool_factory: PoolFactory,
        mode: LifecycleMode = LifecycleMode.EPHEMERAL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        result_buffer_size: int = 256,
        teardown_timeout_ms: float = 10000,
    ):
        self.routes = routes
        self.mode = LifecycleMode(mode)
        self.max_retries = max_retries
        self.results = ResultBuffer(result_buffer_size)
        self.teardown_timeout_ms = teardown_timeout_ms
        self._pool_factory = pool_factory
        self._shared_pool: SessionPool | None = None
        self._shared_route: SiteRoute | None = None
        self._pools_built = 0
        self._run_lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings, mode: LifecycleMode | None = None) -> "FetchOrchestrator":
        rotator = ProxyRotator(strategy=settings.PROXY_ROTATION)

        def pool_factory(route: SiteRoute) -> SessionPool:
            # Proxy sources are re-read for every pool so edits apply without restart
            rotator.update(load_proxy_endpoints(settings))
            runtime = BrowserRuntime(engine=route.engine, headless=route.headless)
            return SessionPool(
                context_factory=runtime.new_context,
                identity_policy=route.identity_policy,
                proxy_rotator=rotator if rotator.has_proxies else None,
                max_pool_size=settings.SESSION_POOL_SIZE,
                max_usage=settings.SESSION_MAX_USAGE,
                max_error_score=settings.SESSION_MAX_ERROR_SCORE,
                on_start=runtime.initialize,
                on_teardown=runtime.shutdown,
            )

        if mode is None:
            mode = LifecycleMode.PERSISTENT if settings.PERSISTENT_CRAWLER else LifecycleMode.EPHEMERAL
        return cls(
            routes=build_route_table(settings),
            pool_factory=pool_factory,
            mode=mode,
            max_retries=settings.MAX_REQUEST_RETRIES,
            result_buffer_size=settings.RESULT_BUFFER_SIZE,
            teardown_timeout_ms=settings.TEARDOWN_TIMEOUT_SECONDS * 1000,
        )

    @property
    def persistent(self) -> bool:
        return self.mode is LifecycleMode.PERSISTENT

    @property
    def shared_pool(self) -> SessionPool | None:
        return self._shared_pool

    @property
    def state(self) -> str:
        if self._shared_pool is not None:
            return "pool-active"
        return "torn-down" if self._pools_built else "uninitialized"

    def health(self) -> dict:
        return {"status": "ok", "timestamp": datetime.now(timezone.utc)}

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, request: FetchRequest) -> FetchResult:
        """Fetch ``request.target_url`` and return its single result.

        Raises InvalidUrl before any browser resource is allocated; every
        other failure is reported inside the returned FetchResult.
        """
        url = validate_target_url(request.target_url)
        route = self.routes.resolve(url)
        timeout_ms = request.timeout_ms or route.default_timeout_ms
        started = time.monotonic()

        with bind_request_id(get_request_id() or request.id):
            if self.persistent and route.shareable:
                async with self._run_lock:
                    result = await self._run_shared(request, route, timeout_ms)
            else:
                result = await self._run_ephemeral(request, route, timeout_ms)

        fetch_requests_total.labels(
            route=route.name, status="ok" if result.ok else result.error_kind
        ).inc()
        fetch_duration_seconds.labels(route=route.name).observe(time.monotonic() - started)
        return result

    async def _run_shared(
        self, request: FetchRequest, route: SiteRoute, timeout_ms: int
    ) -> FetchResult:
        if request.force_fresh_session and self._shared_pool is not None:
            logger.info("forceReset requested, discarding shared session pool")
            await self._discard_shared_pool("force_reset")
        pool = self._ensure_shared_pool(route)
        try:
            return await self._run_guarded(pool, route, request, timeout_ms)
        finally:
            # Rebuilt lazily for the next request
            await self._discard_shared_pool("after_run")

    async def _run_ephemeral(
        self, request: FetchRequest, route: SiteRoute, timeout_ms: int
    ) -> FetchResult:
        pool = self._build_pool(route)
        try:
            return await self._run_guarded(pool, route, request, timeout_ms)
        finally:
            await self._teardown(pool, "ephemeral")

    async def _run_guarded(
        self, pool: SessionPool, route: SiteRoute, request: FetchRequest, timeout_ms: int
    ) -> FetchResult:
        task = FetchTask(pool, route.handler, self.max_retries, self.results)
        runner = asyncio.create_task(task.run(request, timeout_ms))
        try:
            done, _ = await asyncio.wait({runner}, timeout=timeout_ms / 1000)
        except asyncio.CancelledError:
            runner.cancel()
            self.results.abandon(request.id)
            raise

        if runner not in done:
            runner.cancel()
            self._track_background(runner)
            self.results.abandon(request.id)
            error = FetchTimeout(request.target_url, timeout_ms)
            logger.warning(f"{error.message}: {request.target_url}")
            return FetchResult.failure(request.id, error)

        runner.result()
        result = self.results.pop(request.id)
        if result is None:
            logger.error(f"Result for request {request.id} was evicted before it was read")
            result = FetchResult.failure(request.id, FetchFailed(request.target_url))
        return result

    # ------------------------------------------------------------------
    # Pool lifecycle
    # ------------------------------------------------------------------

    def _build_pool(self, route: SiteRoute) -> SessionPool:
        self._pools_built += 1
        return self._pool_factory(route)

    def _ensure_shared_pool(self, route: SiteRoute) -> SessionPool:
        if self._shared_pool is None or self._shared_route is not route:
            self._shared_pool = self._build_pool(route)
            self._shared_route = route
            logger.debug(f"Shared session pool created for route {route.name}")
        return self._shared_pool

    async def _discard_shared_pool(self, reason: str) -> None:
        pool, self._shared_pool = self._shared_pool, None
        self._shared_route = None
        if pool is not None:
            await self._teardown(pool, reason)

    async def _teardown(self, pool: SessionPool, reason: str) -> None:
        outcome = await try_with_timeout(
            pool.teardown, self.teardown_timeout_ms, label="session pool teardown"
        )
        if not outcome.ok:
            logger.warning(f"Session pool teardown ({reason}) did not complete: {outcome.error}")
        session_pool_teardowns_total.labels(reason=reason).inc()

    def _track_background(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._finish_background)

    def _finish_background(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Abandoned fetch ended with {task.exception()!r}")

    async def reset(self) -> None:
        """Replace the shared pool with a freshly started one (persistent mode only)."""
        if not self.persistent:
            raise ModeNotApplicable()
        async with self._run_lock:
            await self._discard_shared_pool("admin_reset")
            pool = self._ensure_shared_pool(self.routes.default)
            await pool.start()
        logger.info("Shared session pool reset")

    async def shutdown(self) -> None:
        await self._discard_shared_pool("shutdown")
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
