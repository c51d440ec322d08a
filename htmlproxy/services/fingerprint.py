"""Simulated browser identities.

An ``IdentityPolicy`` enumerates the allowed browser families, device
classes, operating systems and locales. Each session draws one
``Identity`` from it; concrete request headers for that identity come from
browserforge's Bayesian header generator so user agents stay realistic.
"""

import logging
import random
import secrets
from dataclasses import dataclass, field
from functools import lru_cache

from browserforge.headers import Browser, HeaderGenerator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BrowserSpec:
    name: str  # chrome, firefox, safari, edge
    min_version: int | None = None


@dataclass(frozen=True)
class Identity:
    browser_family: str
    os_family: str
    device_class: str  # desktop | mobile
    locale: str
    min_version: int | None = None
    token: str = field(default_factory=lambda: secrets.token_hex(8))

    @property
    def is_mobile(self) -> bool:
        return self.device_class == "mobile"

    @property
    def accept_language(self) -> str:
        """Accept-Language preference derived from the locale."""
        primary = self.locale.split("-")[0]
        if primary == self.locale:
            return f"{self.locale},en;q=0.5"
        return f"{self.locale},{primary};q=0.9,en;q=0.5"


@dataclass(frozen=True)
class IdentityPolicy:
    name: str
    browsers: tuple[BrowserSpec, ...]
    devices: tuple[str, ...]
    operating_systems: tuple[str, ...]
    locales: tuple[str, ...]

    def __post_init__(self):
        for label in ("browsers", "devices", "operating_systems", "locales"):
            if not getattr(self, label):
                raise ValueError(f"IdentityPolicy {self.name!r}: {label} must not be empty")

    def sample(self, rng: random.Random | None = None) -> Identity:
        """Draw one identity; every dimension is chosen independently."""
        rng = rng or random
        browser = rng.choice(self.browsers)
        return Identity(
            browser_family=browser.name,
            min_version=browser.min_version,
            os_family=rng.choice(self.operating_systems),
            device_class=rng.choice(self.devices),
            locale=rng.choice(self.locales),
        )

    @property
    def combination_count(self) -> int:
        return (
            len(self.browsers)
            * len(self.devices)
            * len(self.operating_systems)
            * len(self.locales)
        )


GENERAL_PROFILE = IdentityPolicy(
    name="general",
    browsers=(BrowserSpec("firefox", 90), BrowserSpec("chrome", 90)),
    devices=("desktop", "mobile"),
    operating_systems=("windows", "macos", "linux"),
    locales=("en-US", "en-GB"),
)

# Narrow Chrome-on-desktop set with Russian locales, for ru-region hosts
REGIONAL_PROFILE = IdentityPolicy(
    name="regional-ru",
    browsers=(BrowserSpec("chrome", 100),),
    devices=("desktop",),
    operating_systems=("windows", "macos"),
    locales=("ru-RU", "ru"),
)


@lru_cache(maxsize=1)
def _header_generator() -> HeaderGenerator:
    return HeaderGenerator()


def identity_headers(identity: Identity) -> dict[str, str]:
    """Generate request headers (User-Agent included) matching ``identity``."""
    browser = Browser(name=identity.browser_family, min_version=identity.min_version)
    headers = _header_generator().generate(
        browser=[browser],
        os=identity.os_family,
        device=identity.device_class,
        locale=identity.locale,
        strict=False,
    )
    return dict(headers)


def user_agent_of(headers: dict[str, str]) -> str | None:
    for key, value in headers.items():
        if key.lower() == "user-agent":
            return value
    return None
