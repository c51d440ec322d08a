"""Fetch task state machine.

One ``FetchTask`` drives one ``FetchRequest`` from QUEUED to SUCCEEDED or
FAILED. Each attempt checks a session out of the pool and hands it to the
route's page handler; failed attempts are retried on a different session
until the retry budget is spent.
"""

import asyncio
import logging
from enum import Enum

from htmlproxy.core.exceptions import (
    ContentExtractionFailed,
    FetchError,
    FetchFailed,
    NavigationFailed,
)
from htmlproxy.core.metrics import fetch_attempts_total
from htmlproxy.schemas.fetch import FetchRequest, FetchResult, PageCapture
from htmlproxy.services.results import ResultBuffer
from htmlproxy.services.session import NavigationOutcome, NavigationSession, SessionPool

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 2


class FetchState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PageHandler:
    """Turns a checked-out session into a page capture for one attempt."""

    name = "default"

    def __init__(self, wait_until: str = "load"):
        self.wait_until = wait_until

    def terminal_error(self, url: str) -> FetchError:
        """Error reported once the retry budget is exhausted."""
        return FetchFailed(url)

    async def capture(
        self,
        session: NavigationSession,
        request: FetchRequest,
        timeout_ms: int,
        deadline: float | None = None,
    ) -> PageCapture:
        """Navigate and capture within one attempt.

        ``timeout_ms`` bounds the navigation; ``deadline`` (event-loop time)
        is when the whole run is abandoned.
        """
        outcome = await session.open(request.target_url, timeout_ms, wait_until=self.wait_until)
        try:
            return await self._extract(session, outcome)
        finally:
            await outcome.close()

    async def _extract(
        self, session: NavigationSession, outcome: NavigationOutcome
    ) -> PageCapture:
        """Read the DOM, retrying exactly once.

        A capture obtained by the retry reports status 200: content is
        preferred over a precise status code.
        """
        status = outcome.status
        try:
            html = await outcome.page.content()
        except Exception as first:
            logger.debug(f"Content extraction failed once for {outcome.final_url}: {first}")
            try:
                html = await outcome.page.content()
                status = 200
            except Exception as e:
                session.mark_bad()
                raise ContentExtractionFailed(outcome.final_url, str(e)) from e
        if not html:
            session.mark_bad()
            raise ContentExtractionFailed(outcome.final_url, "empty document")
        return PageCapture(final_url=outcome.final_url, html=html, http_status=status)


class FetchTask:
    def __init__(
        self,
        pool: SessionPool,
        handler: PageHandler | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        results: ResultBuffer | None = None,
    ):
        self.pool = pool
        self.handler = handler or PageHandler()
        self.max_retries = max(0, max_retries)
        self.results = results
        self.state = FetchState.QUEUED
        self.attempts = 0
        self.errors: list[FetchError] = []

    async def run(self, request: FetchRequest, timeout_ms: int | None = None) -> FetchResult:
        """Run ``request`` to a terminal state and publish exactly one result."""
        if self.state is not FetchState.QUEUED:
            raise RuntimeError(f"FetchTask already {self.state.value}")
        timeout_ms = timeout_ms or request.timeout_ms or 30000
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        failed_sessions: set[str] = set()

        while self.attempts <= self.max_retries:
            remaining_ms = (deadline - loop.time()) * 1000
            if remaining_ms <= 0:
                logger.warning(f"Deadline for {request.target_url} passed after {self.attempts} attempts")
                break
            self.state = FetchState.RUNNING
            self.attempts += 1
            # A hung navigation only spends its share, leaving time for retries
            attempts_left = self.max_retries + 2 - self.attempts
            navigation_ms = max(int(remaining_ms / attempts_left), 1)
            try:
                async with self.pool.checkout(avoid=failed_sessions) as session:
                    try:
                        capture = await self.handler.capture(
                            session, request, navigation_ms, deadline
                        )
                    except Exception:
                        failed_sessions.add(session.id)
                        raise
            except FetchError as e:
                self._record_failure(request, e)
                continue
            except Exception as e:
                # Context creation, browser crashes and similar count as navigation failures
                self._record_failure(request, NavigationFailed(request.target_url, str(e)))
                continue

            fetch_attempts_total.labels(outcome="success").inc()
            self.state = FetchState.SUCCEEDED
            logger.info(
                f"Fetched {capture.final_url} ({len(capture.html)} chars, "
                f"status={capture.http_status}, attempt {self.attempts})"
            )
            return self._publish(FetchResult.success(request.id, capture))

        self.state = FetchState.FAILED
        error = self.handler.terminal_error(request.target_url)
        logger.error(f"{error.message} after {self.attempts} attempts")
        return self._publish(FetchResult.failure(request.id, error))

    def _record_failure(self, request: FetchRequest, error: FetchError) -> None:
        fetch_attempts_total.labels(outcome=error.kind).inc()
        self.errors.append(error)
        remaining = self.max_retries + 1 - self.attempts
        logger.warning(
            f"Attempt {self.attempts} for {request.target_url} failed ({error.kind}): "
            f"{error.message}; {remaining} retries left"
        )

    def _publish(self, result: FetchResult) -> FetchResult:
        if self.results is not None:
            self.results.put(result)
        return result
