"""Operator endpoints for the persistent session pool."""

import logging

from fastapi import APIRouter, Depends

from htmlproxy.api.deps import get_orchestrator
from htmlproxy.api.fetch import error_response
from htmlproxy.core.exceptions import ModeNotApplicable
from htmlproxy.schemas.fetch import ResetResponse
from htmlproxy.services.orchestrator import FetchOrchestrator

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/reset-crawler",
    response_model=ResetResponse,
    summary="Reset the shared crawler",
    description="Tear down the shared session pool and start a fresh one. "
    "Waits for the in-flight fetch to finish. Only available when "
    "PERSISTENT_CRAWLER is enabled.",
)
async def reset_crawler(orchestrator: FetchOrchestrator = Depends(get_orchestrator)):
    try:
        await orchestrator.reset()
    except ModeNotApplicable as e:
        return error_response(e.status_code, e.message)
    except Exception as e:
        logger.exception("Crawler reset failed")
        return error_response(500, str(e) or e.__class__.__name__)
    return ResetResponse()
