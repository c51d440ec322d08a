import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import HTMLResponse, JSONResponse

from htmlproxy.api.deps import get_orchestrator
from htmlproxy.core.exceptions import FetchError, status_for_kind
from htmlproxy.schemas.fetch import FetchRequest
from htmlproxy.services.orchestrator import FetchOrchestrator

router = APIRouter()
logger = logging.getLogger(__name__)


def error_response(status_code: int, message: str, kind: str | None = None) -> JSONResponse:
    content = {"error": message}
    if kind and status_code >= 500:
        content["kind"] = kind
    return JSONResponse(status_code=status_code, content=content)


def parse_timeout_ms(raw: str | None) -> int | None:
    """Positive integer timeout, or None so the route default applies."""
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


@router.get(
    "/fetch",
    response_class=HTMLResponse,
    summary="Fetch rendered HTML",
    description="Load the URL in a real browser and return the rendered DOM as text/html. "
    "Challenge-protected hosts are routed through the challenge resolution loop. "
    "Errors are returned as JSON with an `error` message.",
)
async def fetch_page(
    url: str | None = Query(None, description="Absolute http(s) URL to fetch"),
    wait_for_selector: str | None = Query(
        None, alias="waitForSelector", description="CSS selector to wait for before capture"
    ),
    timeout_ms: str | None = Query(
        None, alias="timeoutMs", description="Overall timeout in milliseconds"
    ),
    force_reset: bool = Query(
        False, alias="forceReset", description="Discard the shared session pool before fetching"
    ),
    orchestrator: FetchOrchestrator = Depends(get_orchestrator),
):
    request = FetchRequest(
        target_url=url or "",
        wait_selector=wait_for_selector,
        timeout_ms=parse_timeout_ms(timeout_ms),
        force_fresh_session=force_reset,
    )
    try:
        result = await orchestrator.submit(request)
    except FetchError as e:
        return error_response(e.status_code, e.message, e.kind)
    except Exception as e:
        logger.exception(f"Unhandled error fetching {url}")
        return error_response(500, str(e) or e.__class__.__name__, "FetchError")

    if not result.ok:
        return error_response(status_for_kind(result.error_kind), result.message, result.error_kind)

    headers = {"X-Upstream-Status": str(result.http_status)}
    if result.final_url:
        headers["X-Final-URL"] = result.final_url
    return HTMLResponse(content=result.html, headers=headers)
