import asyncio
import logging
import random

from playwright.async_api import async_playwright, Browser, BrowserContext

from htmlproxy.services.fingerprint import Identity, identity_headers, user_agent_of
from htmlproxy.services.proxy import ProxyEndpoint, mask_url, to_playwright

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Viewports per device class, picked per session
# ---------------------------------------------------------------------------

DESKTOP_VIEWPORTS = [
    {"width": 1920, "height": 1080},
    {"width": 1366, "height": 768},
    {"width": 1440, "height": 900},
    {"width": 1536, "height": 864},
    {"width": 1280, "height": 720},
]

MOBILE_VIEWPORTS = [
    {"width": 375, "height": 812},
    {"width": 390, "height": 844},
    {"width": 412, "height": 915},
]

# Headers that Playwright manages itself and must not be overridden
_MANAGED_HEADERS = frozenset({"user-agent", "accept-encoding", "connection", "host"})

_CHROMIUM_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-infobars",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-dev-shm-usage",
    "--disable-background-timer-throttling",
    "--disable-renderer-backgrounding",
]


def _build_stealth_script(identity: Identity, hw_concurrency: int) -> str:
    """Navigator patches consistent with the session identity."""
    primary = identity.locale.split("-")[0]
    languages = [identity.locale] if primary == identity.locale else [identity.locale, primary]
    touch_points = 5 if identity.is_mobile else 0
    return f"""
Object.defineProperty(navigator, 'webdriver', {{ get: () => false }});
Object.defineProperty(navigator, 'languages', {{ get: () => {languages!r} }});
Object.defineProperty(navigator, 'hardwareConcurrency', {{ get: () => {hw_concurrency} }});
Object.defineProperty(navigator, 'maxTouchPoints', {{ get: () => {touch_points} }});

const ua = navigator.userAgent;
if (ua.includes('Win')) {{
    Object.defineProperty(navigator, 'platform', {{ get: () => 'Win32' }});
}} else if (ua.includes('Mac')) {{
    Object.defineProperty(navigator, 'platform', {{ get: () => 'MacIntel' }});
}} else if (ua.includes('Linux')) {{
    Object.defineProperty(navigator, 'platform', {{ get: () => 'Linux x86_64' }});
}}

['domAutomation','domAutomationController','_selenium','__webdriver_script_fn',
 '__driver_evaluate','__webdriver_evaluate','__fxdriver_evaluate','_phantom','__nightmare'
].forEach(p => {{ try {{ delete window[p]; }} catch(e) {{}} }});

Object.defineProperty(document, 'hidden', {{ get: () => false }});
Object.defineProperty(document, 'visibilityState', {{ get: () => 'visible' }});
"""


def context_options(
    identity: Identity,
    proxy: ProxyEndpoint | None,
    headers: dict[str, str],
    rng: random.Random | None = None,
    engine: str = "chromium",
) -> dict:
    """Build ``browser.new_context`` kwargs for one session."""
    rng = rng or random
    viewports = MOBILE_VIEWPORTS if identity.is_mobile else DESKTOP_VIEWPORTS
    extra_headers = {
        k: v for k, v in headers.items() if k.lower() not in _MANAGED_HEADERS
    }
    extra_headers.setdefault("Accept-Language", identity.accept_language)

    options = dict(
        viewport=rng.choice(viewports),
        locale=identity.locale,
        has_touch=identity.is_mobile,
        ignore_https_errors=True,
        java_script_enabled=True,
        color_scheme="light",
        extra_http_headers=extra_headers,
    )
    # Firefox has no mobile emulation mode
    if engine != "firefox":
        options["is_mobile"] = identity.is_mobile
    user_agent = user_agent_of(headers)
    if user_agent:
        options["user_agent"] = user_agent
    if proxy:
        options["proxy"] = to_playwright(proxy)
    return options


class BrowserRuntime:
    """One lazily launched Playwright browser that mints per-session contexts.

    Owned by exactly one session pool; ``shutdown()`` is part of that pool's
    teardown.
    """

    def __init__(self, engine: str = "firefox", headless: bool = True):
        if engine not in ("firefox", "chromium", "webkit"):
            raise ValueError(f"Unsupported browser engine: {engine}")
        self.engine = engine
        self.headless = headless
        self._playwright = None
        self._browser: Browser | None = None
        self._init_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def initialize(self) -> None:
        if self.is_running:
            return
        async with self._init_lock:
            if self.is_running:
                return
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            launcher = getattr(self._playwright, self.engine)
            launch_kwargs = {"headless": self.headless}
            if self.engine == "chromium":
                launch_kwargs["args"] = _CHROMIUM_ARGS
            self._browser = await launcher.launch(**launch_kwargs)
            logger.info(f"{self.engine} browser launched (headless={self.headless})")

    async def new_context(
        self, identity: Identity, proxy: ProxyEndpoint | None = None
    ) -> BrowserContext:
        """Create a browser context wearing ``identity`` and bound to ``proxy``."""
        await self.initialize()
        headers = identity_headers(identity)
        options = context_options(identity, proxy, headers, engine=self.engine)
        try:
            context = await self._browser.new_context(**options)
        except Exception as e:
            if not self._is_browser_closed_error(e):
                raise
            logger.warning(f"{self.engine} browser closed during new_context, relaunching")
            self._browser = None
            await self.initialize()
            context = await self._browser.new_context(**options)

        await context.add_init_script(
            _build_stealth_script(identity, random.choice([4, 8, 12, 16]))
        )
        logger.debug(
            f"Context created: {identity.browser_family}/{identity.os_family}/"
            f"{identity.device_class}/{identity.locale}"
            + (f" via {mask_url(proxy.url)}" if proxy else "")
        )
        return context

    async def shutdown(self) -> None:
        browser, self._browser = self._browser, None
        playwright, self._playwright = self._playwright, None
        if browser:
            try:
                await browser.close()
            except Exception as e:
                logger.debug(f"Ignoring error while closing {self.engine}: {e}")
        if playwright:
            try:
                await playwright.stop()
            except Exception as e:
                logger.debug(f"Ignoring error while stopping Playwright: {e}")
        logger.info(f"{self.engine} browser shut down")

    @staticmethod
    def _is_browser_closed_error(exc: Exception) -> bool:
        """Check if an exception indicates the browser process has died."""
        msg = str(exc).lower()
        return any(
            phrase in msg
            for phrase in [
                "browser has been closed",
                "target page, context or browser has been closed",
                "connection closed",
                "browser closed",
            ]
        )
