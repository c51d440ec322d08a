import uuid
from datetime import datetime
from urllib.parse import urlsplit

from pydantic import AnyUrl, BaseModel, Field, TypeAdapter, ValidationError

from htmlproxy.core.exceptions import FetchError, InvalidUrl

_url_adapter = TypeAdapter(AnyUrl)


def validate_target_url(url: str | None) -> str:
    """Return ``url`` unchanged if it is an absolute http(s) URL, else raise InvalidUrl."""
    if not url or not str(url).strip():
        raise InvalidUrl(url or "", "URL parameter is required")
    url = str(url).strip()
    try:
        _url_adapter.validate_python(url)
    except ValidationError:
        raise InvalidUrl(url) from None
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise InvalidUrl(url)
    return url


def new_request_id() -> str:
    return uuid.uuid4().hex


class FetchRequest(BaseModel):
    id: str = Field(default_factory=new_request_id)
    target_url: str
    wait_selector: str | None = None
    timeout_ms: int | None = None  # None = route default
    force_fresh_session: bool = False

    model_config = {"frozen": True}


class PageCapture(BaseModel):
    """What a page handler hands back after a successful attempt."""

    final_url: str
    html: str
    http_status: int = 200


class FetchResult(BaseModel):
    request_id: str
    final_url: str | None = None
    html: str | None = None
    http_status: int | None = None
    error_kind: str | None = None
    message: str | None = None

    model_config = {"frozen": True}

    @property
    def ok(self) -> bool:
        return self.error_kind is None and bool(self.html)

    @classmethod
    def success(cls, request_id: str, capture: PageCapture) -> "FetchResult":
        return cls(
            request_id=request_id,
            final_url=capture.final_url,
            html=capture.html,
            http_status=capture.http_status,
        )

    @classmethod
    def failure(cls, request_id: str, error: FetchError) -> "FetchResult":
        return cls(request_id=request_id, error_kind=error.kind, message=error.message)


class HealthResponse(BaseModel):
    status: str = "ok"
    timestamp: datetime


class ErrorResponse(BaseModel):
    error: str
    kind: str | None = None


class ResetResponse(BaseModel):
    ok: bool = True
    message: str = "Crawler reset"
