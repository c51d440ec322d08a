"""Challenge resolution for hosts that interpose bot checks.

After a full ``load`` navigation the handler waits, best-effort, for the
page to settle, polls a composite challenge-indicator predicate until the
interstitial disappears or its budget runs out, waits for real content,
dismisses overlays and captures the DOM. Every intermediate step goes
through ``try_with_timeout`` and can only cost time; the capture is always
attempted, and only a missing capture fails the attempt.
"""

import asyncio
import logging

from htmlproxy.core.exceptions import ChallengeResolutionFailed, FetchError
from htmlproxy.core.metrics import challenge_timeouts_total
from htmlproxy.schemas.fetch import FetchRequest, PageCapture
from htmlproxy.services.fetcher import PageHandler
from htmlproxy.services.session import NavigationSession
from htmlproxy.services.waits import WaitOutcome, try_with_timeout

logger = logging.getLogger(__name__)

# Returns the list of challenge vendors still visible on the page; [] = clear
CHALLENGE_INDICATORS_JS = """
() => {
    const text = (document.body && document.body.innerText) || '';
    const html = (document.documentElement && document.documentElement.outerHTML) || '';
    const found = [];
    if (/checking your browser|verify you are human|attention required/i.test(text) ||
        document.querySelector('[class*="cf-"], [id*="cf-"], form#challenge-form, #cf-challenge-running')) {
        found.push('cloudflare');
    }
    if (/sucuri/i.test(text) ||
        document.querySelector('script[src*="sucuri"], input[name="sucuri_cloudproxy_js"]')) {
        found.push('sucuri');
    }
    if (/perimeterx|px-captcha|_px/i.test(html)) {
        found.push('perimeterx');
    }
    if (/distil|dstl/i.test(html) || document.querySelector('script[src*="distil"]')) {
        found.push('distil');
    }
    return found;
}
"""

GENERIC_CONTENT_SELECTORS = ("main", "header", "#content", "article", "body")

OVERLAY_CLOSE_SELECTORS = (
    '[aria-label="Close"]',
    ".fancybox-close",
    ".modal .close",
    "text=×",
)


async def wait_for_challenge_clear(
    page,
    timeout_ms: float = 20000,
    poll_interval_ms: float = 500,
) -> bool:
    """Poll the challenge predicate until it reports nothing or time runs out.

    Evaluation errors (the document is being replaced mid-challenge) count as
    "still challenged". Returns True when the page came up clear.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_ms / 1000
    vendors: list[str] = []
    while True:
        remaining_ms = (deadline - loop.time()) * 1000
        outcome = await try_with_timeout(
            lambda: page.evaluate(CHALLENGE_INDICATORS_JS),
            max(remaining_ms, 1),
            label="challenge predicate",
        )
        if outcome.ok:
            vendors = list(outcome.value or [])
            if not vendors:
                return True
        remaining_ms = (deadline - loop.time()) * 1000
        if remaining_ms <= 0:
            logger.debug(
                f"Challenge indicators still present after {timeout_ms:.0f}ms "
                f"({', '.join(vendors) or 'unknown'}), continuing"
            )
            return False
        await asyncio.sleep(min(poll_interval_ms, remaining_ms) / 1000)


class ChallengePageHandler(PageHandler):
    name = "challenge"

    def __init__(
        self,
        accept_language: str | None = None,
        fallback_selectors: tuple[str, ...] = GENERIC_CONTENT_SELECTORS,
        load_state_timeout_ms: float = 15000,
        challenge_timeout_ms: float = 20000,
        poll_interval_ms: float = 500,
        selector_timeout_ms: float = 15000,
        fallback_selector_timeout_ms: float = 3000,
        final_idle_timeout_ms: float = 5000,
        capture_reserve_ms: float = 2000,
    ):
        super().__init__(wait_until="load")
        self.accept_language = accept_language
        self.fallback_selectors = tuple(fallback_selectors)
        self.load_state_timeout_ms = load_state_timeout_ms
        self.challenge_timeout_ms = challenge_timeout_ms
        self.poll_interval_ms = poll_interval_ms
        self.selector_timeout_ms = selector_timeout_ms
        self.fallback_selector_timeout_ms = fallback_selector_timeout_ms
        self.final_idle_timeout_ms = final_idle_timeout_ms
        # Time kept back from the best-effort waits for page.content()
        self.capture_reserve_ms = capture_reserve_ms

    def terminal_error(self, url: str) -> FetchError:
        return ChallengeResolutionFailed(url, "retry budget exhausted")

    def _budget(self, deadline: float | None, step_ms: float) -> float:
        """Clamp a wait to what is left before the capture reserve."""
        if deadline is None:
            return step_ms
        left_ms = (deadline - asyncio.get_running_loop().time()) * 1000 - self.capture_reserve_ms
        return max(0.0, min(step_ms, left_ms))

    async def _wait(self, deadline, step_ms, label, wait) -> WaitOutcome | None:
        """Run ``wait(budget_ms)`` best-effort; None when no time is left for it."""
        budget = self._budget(deadline, step_ms)
        if budget <= 0:
            logger.debug(f"Skipping {label}: no time left before capture")
            return None
        return await try_with_timeout(lambda: wait(budget), budget, label=label)

    async def capture(
        self,
        session: NavigationSession,
        request: FetchRequest,
        timeout_ms: int,
        deadline: float | None = None,
    ) -> PageCapture:
        headers = {"Accept-Language": self.accept_language} if self.accept_language else None
        outcome = await session.open(
            request.target_url, timeout_ms, wait_until=self.wait_until, extra_headers=headers
        )
        page = outcome.page
        try:
            await self._settle(page, deadline)

            challenge_ms = self._budget(deadline, self.challenge_timeout_ms)
            cleared = challenge_ms > 0 and await wait_for_challenge_clear(
                page, challenge_ms, self.poll_interval_ms
            )
            if not cleared:
                challenge_timeouts_total.inc()
                logger.info(f"Challenge not confirmed cleared on {request.target_url}, continuing")

            await self._wait_for_content(page, request.wait_selector, deadline)
            await self._dismiss_overlay(page, deadline)
            await self._wait(
                deadline,
                self.final_idle_timeout_ms,
                "final networkidle",
                lambda ms: page.wait_for_load_state("networkidle", timeout=ms),
            )

            try:
                html = await page.content()
            except Exception as e:
                session.mark_bad()
                raise ChallengeResolutionFailed(request.target_url, str(e)) from e
            if not html:
                session.mark_bad()
                raise ChallengeResolutionFailed(request.target_url, "empty document")

            final_url = getattr(page, "url", None) or outcome.final_url
            return PageCapture(final_url=final_url, html=html, http_status=outcome.status)
        finally:
            await outcome.close()

    async def _settle(self, page, deadline: float | None) -> None:
        for state in ("domcontentloaded", "networkidle"):
            await self._wait(
                deadline,
                self.load_state_timeout_ms,
                state,
                lambda ms, state=state: page.wait_for_load_state(state, timeout=ms),
            )

    async def _wait_for_content(self, page, wait_selector: str | None, deadline: float | None) -> None:
        if wait_selector:
            outcome = await self._wait(
                deadline,
                self.selector_timeout_ms,
                f"selector {wait_selector}",
                lambda ms: page.wait_for_selector(wait_selector, timeout=ms),
            )
            if outcome is None or not outcome.ok:
                logger.debug(f"waitForSelector timeout: {wait_selector}")
            return

        for selector in self.fallback_selectors:
            outcome = await self._wait(
                deadline,
                self.fallback_selector_timeout_ms,
                f"fallback selector {selector}",
                lambda ms, selector=selector: page.wait_for_selector(selector, timeout=ms),
            )
            if outcome is None or outcome.ok:
                return

    async def _dismiss_overlay(self, page, deadline: float | None) -> None:
        for selector in OVERLAY_CLOSE_SELECTORS:
            found = await self._wait(
                deadline,
                1000,
                f"overlay {selector}",
                lambda ms, selector=selector: page.query_selector(selector),
            )
            if found is None:
                return
            if found.ok and found.value is not None:
                await self._wait(deadline, 2000, "overlay close", lambda ms: found.value.click())
                return
