import logging

from htmlproxy.config import settings
from htmlproxy.services.orchestrator import FetchOrchestrator

logger = logging.getLogger(__name__)

_orchestrator: FetchOrchestrator | None = None


def get_orchestrator() -> FetchOrchestrator:
    """Process-wide orchestrator, built from settings on first use."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = FetchOrchestrator.from_settings(settings)
        logger.info(f"Fetch orchestrator ready (mode={_orchestrator.mode.value})")
    return _orchestrator


async def close_orchestrator() -> None:
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.shutdown()
        _orchestrator = None
