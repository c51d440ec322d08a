"""Host-based dispatch of fetch requests.

A ``RouteTable`` is an ordered list of routes; the first route whose
predicate accepts the target hostname decides the page handler, identity
profile, browser engine and default timeout. The last route is the
catch-all default.
"""

import logging
from dataclasses import dataclass
from typing import Callable
from urllib.parse import urlsplit

from htmlproxy.services.challenge import ChallengePageHandler
from htmlproxy.services.fetcher import PageHandler
from htmlproxy.services.fingerprint import GENERAL_PROFILE, REGIONAL_PROFILE, IdentityPolicy

logger = logging.getLogger(__name__)

# Layout landmarks of the Russian storefront this route was built for
REGIONAL_FALLBACK_SELECTORS = ("header", "main", "#page", ".menu", ".block-products", "#catalog")


@dataclass(frozen=True)
class SiteRoute:
    name: str
    matches: Callable[[str], bool]  # receives the lower-cased hostname
    handler: PageHandler
    identity_policy: IdentityPolicy
    engine: str = "firefox"
    headless: bool = True
    default_timeout_ms: int = 30000
    # Whether the persistent shared pool may serve this route
    shareable: bool = True


def host_suffix_matcher(suffixes: list[str] | tuple[str, ...]) -> Callable[[str], bool]:
    normalized = tuple(s.lower().lstrip(".") for s in suffixes if s.strip())

    def matches(hostname: str) -> bool:
        return any(hostname.endswith(s) for s in normalized)

    return matches


class RouteTable:
    def __init__(self, routes: list[SiteRoute], default: SiteRoute):
        self._routes = list(routes)
        self.default = default

    @property
    def routes(self) -> list[SiteRoute]:
        return [*self._routes, self.default]

    def add(self, route: SiteRoute) -> None:
        """Register a site-specific route ahead of the default."""
        self._routes.append(route)

    def resolve(self, url: str) -> SiteRoute:
        hostname = (urlsplit(url).hostname or "").lower()
        for route in self._routes:
            if route.matches(hostname):
                logger.debug(f"{hostname} routed to {route.name}")
                return route
        return self.default


def build_route_table(settings) -> RouteTable:
    default = SiteRoute(
        name="default",
        matches=lambda hostname: True,
        handler=PageHandler(wait_until=settings.NAVIGATION_WAIT_UNTIL),
        identity_policy=GENERAL_PROFILE,
        engine=settings.BROWSER_ENGINE,
        headless=settings.BROWSER_HEADLESS,
        default_timeout_ms=settings.FETCH_TIMEOUT_MS,
    )
    routes = []
    if settings.CHALLENGE_HOSTS:
        routes.append(
            SiteRoute(
                name="challenge",
                matches=host_suffix_matcher(settings.CHALLENGE_HOSTS),
                handler=ChallengePageHandler(
                    accept_language=settings.CHALLENGE_ACCEPT_LANGUAGE,
                    fallback_selectors=REGIONAL_FALLBACK_SELECTORS,
                ),
                identity_policy=REGIONAL_PROFILE,
                engine=settings.CHALLENGE_ENGINE,
                headless=settings.CHALLENGE_HEADLESS,
                default_timeout_ms=settings.CHALLENGE_TIMEOUT_MS,
                shareable=False,
            )
        )
    return RouteTable(routes, default)
