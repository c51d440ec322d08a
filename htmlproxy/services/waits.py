"""Best-effort waits.

``try_with_timeout`` runs an awaitable under a time budget and reports what
happened instead of raising. Only cancellation of the caller propagates.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WaitOutcome:
    ok: bool
    value: Any = None
    timed_out: bool = False
    error: BaseException | None = None


async def try_with_timeout(
    operation: Callable[[], Awaitable[Any]],
    budget_ms: float,
    label: str = "wait",
) -> WaitOutcome:
    try:
        value = await asyncio.wait_for(operation(), timeout=max(budget_ms, 0) / 1000)
    except asyncio.TimeoutError as e:
        logger.debug(f"{label}: no result within {budget_ms:.0f}ms")
        return WaitOutcome(ok=False, timed_out=True, error=e)
    except Exception as e:
        # Playwright reports its own timeouts as errors; both are non-fatal here
        logger.debug(f"{label}: {e}")
        return WaitOutcome(ok=False, timed_out="timeout" in str(e).lower(), error=e)
    return WaitOutcome(ok=True, value=value)
