"""Navigation sessions and the pool that owns them.

A ``NavigationSession`` is one browser context wearing one ``Identity`` and
optionally bound to one proxy. It counts completed navigations
(``usage_count``) and failures (``error_score``) and becomes retireable once
either crosses its limit. The ``SessionPool`` creates sessions lazily,
checks them out exclusively, evicts retireable ones and tears everything
down, browser included, on ``teardown()``.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from htmlproxy.core.exceptions import NavigationFailed
from htmlproxy.core.metrics import active_navigation_sessions
from htmlproxy.services.fingerprint import Identity, IdentityPolicy
from htmlproxy.services.proxy import ProxyEndpoint, ProxyRotator

logger = logging.getLogger(__name__)

DEFAULT_MAX_USAGE = 50
DEFAULT_MAX_ERROR_SCORE = 3


@dataclass
class NavigationOutcome:
    page: Any
    final_url: str
    status: int

    async def close(self) -> None:
        try:
            await self.page.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing page: {e}")


class NavigationSession:
    def __init__(
        self,
        context: Any,
        identity: Identity,
        proxy: ProxyEndpoint | None = None,
        max_usage: int = DEFAULT_MAX_USAGE,
        max_error_score: int = DEFAULT_MAX_ERROR_SCORE,
    ):
        self.id = uuid.uuid4().hex[:12]
        self.context = context
        self.identity = identity
        self.proxy = proxy
        self.max_usage = max_usage
        self.max_error_score = max_error_score
        self.usage_count = 0
        self.error_score = 0

    def __repr__(self) -> str:
        return (
            f"NavigationSession(id={self.id}, usage={self.usage_count}/{self.max_usage}, "
            f"errors={self.error_score}/{self.max_error_score})"
        )

    async def open(
        self,
        url: str,
        timeout_ms: int,
        wait_until: str = "load",
        extra_headers: dict[str, str] | None = None,
    ) -> NavigationOutcome:
        """Navigate a fresh page to ``url``.

        Raises NavigationFailed (and bumps ``error_score``) on network errors
        and navigation timeouts. The caller owns the returned page and must
        ``close()`` the outcome.
        """
        page = await self.context.new_page()
        try:
            if extra_headers:
                await page.set_extra_http_headers(extra_headers)
            response = await page.goto(url, wait_until=wait_until, timeout=timeout_ms)
        except Exception as e:
            self.error_score += 1
            try:
                await page.close()
            except Exception:
                logger.debug("Page close after failed navigation raised", exc_info=True)
            raise NavigationFailed(url, str(e)) from e

        self.usage_count += 1
        status = response.status if response is not None else 200
        final_url = getattr(page, "url", None) or url
        return NavigationOutcome(page=page, final_url=final_url, status=status)

    def mark_bad(self) -> None:
        """Record a failure that happened after navigation (e.g. extraction)."""
        self.error_score += 1

    def is_retireable(self) -> bool:
        return self.usage_count >= self.max_usage or self.error_score >= self.max_error_score

    async def close(self) -> None:
        try:
            await self.context.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing session {self.id}: {e}")


ContextFactory = Callable[[Identity, ProxyEndpoint | None], Awaitable[Any]]


class SessionPool:
    """Lazily populated pool of exclusively checked-out sessions."""

    def __init__(
        self,
        context_factory: ContextFactory,
        identity_policy: IdentityPolicy,
        proxy_rotator: ProxyRotator | None = None,
        max_pool_size: int = 20,
        max_usage: int = DEFAULT_MAX_USAGE,
        max_error_score: int = DEFAULT_MAX_ERROR_SCORE,
        on_start: Callable[[], Awaitable[None]] | None = None,
        on_teardown: Callable[[], Awaitable[None]] | None = None,
    ):
        self._context_factory = context_factory
        self.identity_policy = identity_policy
        self._rotator = proxy_rotator
        self.max_pool_size = max_pool_size
        self.max_usage = max_usage
        self.max_error_score = max_error_score
        self._on_start = on_start
        self._on_teardown = on_teardown
        self._idle: list[NavigationSession] = []
        self._in_use: set[NavigationSession] = set()
        self._creating = 0
        self._cond = asyncio.Condition()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def size(self) -> int:
        return len(self._idle) + len(self._in_use)

    @property
    def in_use_count(self) -> int:
        return len(self._in_use)

    async def start(self) -> None:
        """Eagerly prepare the underlying browser (optional; sessions are lazy)."""
        if self._on_start:
            await self._on_start()

    async def _create_session(self) -> NavigationSession:
        identity = self.identity_policy.sample()
        proxy = self._rotator.next() if self._rotator else None
        context = await self._context_factory(identity, proxy)
        session = NavigationSession(
            context,
            identity,
            proxy,
            max_usage=self.max_usage,
            max_error_score=self.max_error_score,
        )
        logger.debug(f"Created {session!r} ({identity.browser_family}/{identity.locale})")
        return session

    def _pick_idle(self, avoid: set[str]) -> NavigationSession | None:
        for session in self._idle:
            if session.id not in avoid and not session.is_retireable():
                self._idle.remove(session)
                return session
        return None

    async def _acquire(self, avoid: set[str]) -> NavigationSession:
        async with self._cond:
            while True:
                if self._closed:
                    raise RuntimeError("Session pool has been torn down")
                session = self._pick_idle(avoid)
                if session is not None:
                    self._in_use.add(session)
                    return session
                if self.size + self._creating < self.max_pool_size:
                    self._creating += 1
                    break
                # Pool full: fall back to an avoided idle session rather than wait
                if self._idle:
                    session = self._idle.pop(0)
                    self._in_use.add(session)
                    return session
                await self._cond.wait()

        try:
            session = await self._create_session()
        finally:
            async with self._cond:
                self._creating -= 1
                self._cond.notify_all()
        async with self._cond:
            if self._closed:
                await session.close()
                raise RuntimeError("Session pool has been torn down")
            self._in_use.add(session)
        return session

    async def _release(self, session: NavigationSession) -> None:
        async with self._cond:
            self._in_use.discard(session)
            retire = session.is_retireable() or self._closed
            if not retire:
                self._idle.append(session)
            self._cond.notify_all()
        if retire:
            logger.debug(f"Retiring {session!r}")
            await session.close()

    @asynccontextmanager
    async def checkout(self, avoid: set[str] | None = None):
        """Check out a session for the duration of one fetch attempt.

        Sessions whose ids are in ``avoid`` are skipped while the pool has
        room for a fresh one.
        """
        session = await self._acquire(set(avoid or ()))
        active_navigation_sessions.inc()
        try:
            yield session
        finally:
            active_navigation_sessions.dec()
            await asyncio.shield(self._release(session))

    async def teardown(self) -> None:
        """Close every session and the browser behind them. Idempotent."""
        async with self._cond:
            if self._closed:
                return
            self._closed = True
            sessions = self._idle + list(self._in_use)
            self._idle.clear()
            self._cond.notify_all()
        for session in sessions:
            await session.close()
        if self._on_teardown:
            await self._on_teardown()
        logger.debug(f"Session pool torn down ({len(sessions)} sessions closed)")
