import logging
import random
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable
from urllib.parse import urlparse, urlunparse

from pydantic import AnyUrl, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

_SCHEME_RE = re.compile(r"^\w+://")
_url_adapter = TypeAdapter(AnyUrl)


@dataclass(frozen=True)
class ProxyEndpoint:
    url: str  # normalized, always scheme-prefixed

    def __str__(self) -> str:
        return self.url


def _normalize(raw: str) -> str | None:
    value = str(raw or "").strip()
    if not value or value.startswith("#"):
        return None
    if not _SCHEME_RE.match(value):
        value = f"http://{value}"
    try:
        _url_adapter.validate_python(value)
    except ValidationError:
        logger.warning(f"Discarding invalid proxy entry: {mask_url(value)}")
        return None
    return value


def resolve_proxy_urls(*sources: Iterable[str]) -> list[ProxyEndpoint]:
    """Merge raw proxy strings into a deduplicated, normalized endpoint list.

    Entries are stripped, blank and ``#`` lines dropped, ``http://`` is
    prepended when no scheme is present, and anything that does not parse as
    a URI is logged and skipped. First-seen order is preserved. An empty
    result means "no proxy rotation".
    """
    seen: set[str] = set()
    endpoints: list[ProxyEndpoint] = []
    for source in sources:
        for raw in source or ():
            url = _normalize(raw)
            if url is None or url in seen:
                continue
            seen.add(url)
            endpoints.append(ProxyEndpoint(url))
    return endpoints


def read_proxy_file(path: str | Path) -> list[str]:
    """Read a line-delimited proxy file; a missing file yields no entries."""
    path = Path(path)
    if not path.exists():
        return []
    try:
        return path.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        logger.warning(f'Failed to read proxy file "{path}": {e}')
        return []


def load_proxy_endpoints(settings) -> list[ProxyEndpoint]:
    """Load endpoints from the PROXY_URLS list and the PROXY_FILE file."""
    from_env = settings.PROXY_URLS.split(",") if settings.PROXY_URLS else []
    from_file = read_proxy_file(settings.PROXY_FILE) if settings.PROXY_FILE else []
    endpoints = resolve_proxy_urls(from_env, from_file)
    if endpoints:
        logger.debug(f"Resolved {len(endpoints)} proxy endpoints")
    return endpoints


class ProxyRotator:
    """Hands out proxy endpoints for new sessions.

    The cursor survives ``update()`` so rotation keeps advancing when the
    endpoint list is reloaded for every rebuilt session pool.
    """

    def __init__(
        self,
        endpoints: list[ProxyEndpoint] | None = None,
        strategy: str = "round_robin",
        rng: random.Random | None = None,
    ):
        self._endpoints = list(endpoints or [])
        self.strategy = strategy
        self._cursor = 0
        self._rng = rng or random.Random()

    @property
    def has_proxies(self) -> bool:
        return len(self._endpoints) > 0

    @property
    def endpoints(self) -> list[ProxyEndpoint]:
        return list(self._endpoints)

    def update(self, endpoints: list[ProxyEndpoint]) -> None:
        self._endpoints = list(endpoints)

    def next(self) -> ProxyEndpoint | None:
        if not self._endpoints:
            return None
        if self.strategy == "random":
            return self._rng.choice(self._endpoints)
        endpoint = self._endpoints[self._cursor % len(self._endpoints)]
        self._cursor += 1
        return endpoint


def to_playwright(endpoint: ProxyEndpoint) -> dict:
    """Convert an endpoint to Playwright's ``proxy`` context option."""
    parsed = urlparse(endpoint.url)
    server = f"{parsed.scheme}://{parsed.hostname}"
    if parsed.port:
        server += f":{parsed.port}"
    result = {"server": server}
    if parsed.username:
        result["username"] = parsed.username
    if parsed.password:
        result["password"] = parsed.password
    return result


def mask_url(url: str) -> str:
    """Mask credentials in a proxy URL for display."""
    try:
        parsed = urlparse(url)
        if parsed.username:
            masked_user = parsed.username[:2] + "***"
            masked_pass = "***" if parsed.password else ""
            netloc = f"{masked_user}:{masked_pass}@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            return urlunparse((parsed.scheme, netloc, parsed.path, "", "", ""))
    except ValueError:
        return "<unparseable>"
    return url
