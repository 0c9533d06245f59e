"""
Page transports for the marketplace adapters.

Two interchangeable fetchers return the same ``FetchOutcome``:

* ``StaticFetcher`` - plain httpx GETs with rotating desktop browser headers.
* ``RenderedFetcher`` - headless Chromium via Playwright: render, scroll to
  trigger lazy loading, wait for network idle.

Neither raises for network problems; failures come back as an outcome with
``error`` set and empty ``html``. Block pages (bot checks, login walls,
429/503) are flagged on the outcome so adapters can stop paginating.
"""

import asyncio
import random
import re
import time
from dataclasses import dataclass
from typing import Optional

import httpx
from playwright.async_api import (
    Browser,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from aggregator.config.settings import Settings, get_settings
from aggregator.utils.logger import get_logger

logger = get_logger(__name__)


# =============================================================================
# Block detection
# =============================================================================

BLOCK_STATUS_CODES = {429, 503}

BLOCK_BODY_MARKERS = (
    "x5secdata",
    "_____tmd_____",
    "punish?x5",
    "/punish",
    "slide to verify",
    "nc_1_n1z",
    "滑动验证",
    "亲，请登录",
)

# Only trusted on short pages; full result pages may mention these in scripts
SHORT_PAGE_MARKERS = (
    "captcha",
    "access denied",
    "unusual traffic",
    "are you a robot",
    "verify you are human",
)
SHORT_PAGE_LIMIT = 30000

LOGIN_WALL_PATTERN = re.compile(
    r"(?:login\.(?:alibaba|1688|taobao)\.com|passport\.|/login(?:\.htm)?\b|/signin|my\.indiamart\.com/login)",
    re.IGNORECASE,
)


def detect_block(status: int, html: Optional[str], final_url: Optional[str] = None) -> Optional[str]:
    """
    Return a short reason string when the response is a block page.

    Checks the status code first, then login-wall redirects, then bot-check
    markers in the body.
    """
    if status in BLOCK_STATUS_CODES:
        return f"http_{status}"
    if final_url and LOGIN_WALL_PATTERN.search(final_url):
        return "login_wall"
    if html:
        body = html.lower()
        for marker in BLOCK_BODY_MARKERS:
            if marker in body:
                return f"marker:{marker}"
        if len(html) < SHORT_PAGE_LIMIT:
            for marker in SHORT_PAGE_MARKERS:
                if marker in body:
                    return f"marker:{marker}"
    return None


@dataclass
class FetchOutcome:
    """Result of fetching one page."""
    url: str
    final_url: Optional[str] = None
    status: int = 0
    html: str = ""
    blocked: bool = False
    block_reason: Optional[str] = None
    error: Optional[str] = None
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return not self.blocked and self.error is None and bool(self.html)


# =============================================================================
# User agents
# =============================================================================

class UserAgentPool:
    """Pool of realistic desktop user-agent strings."""

    DESKTOP_USER_AGENTS: list[str] = [
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:124.0) Gecko/20100101 Firefox/124.0",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36 Edg/124.0.0.0",
    ]

    def __init__(self, rotate: bool = True, rng: Optional[random.Random] = None):
        self.rotate = rotate
        self._rng = rng or random.Random()

    def get(self) -> str:
        if not self.rotate:
            return self.DESKTOP_USER_AGENTS[0]
        return self._rng.choice(self.DESKTOP_USER_AGENTS)


def build_headers(user_agent: str, accept_language: str = "en-US,en;q=0.9") -> dict[str, str]:
    return {
        "User-Agent": user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
        "Accept-Language": accept_language,
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
        "Upgrade-Insecure-Requests": "1",
    }


# =============================================================================
# Static transport
# =============================================================================

class StaticFetcher:
    """Paginated plain-HTTP transport."""

    name = "static"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        user_agents: Optional[UserAgentPool] = None,
    ):
        self.settings = settings or get_settings()
        self.user_agents = user_agents or UserAgentPool(rotate=self.settings.rotate_user_agents)
        self._client = client
        self._owns_client = client is None

    async def connect(self) -> None:
        """Initialize HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.request_timeout_seconds, connect=10.0),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
                follow_redirects=True,
            )
            self._owns_client = True

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "StaticFetcher":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def fetch(self, url: str, timeout: Optional[float] = None) -> FetchOutcome:
        await self.connect()
        headers = build_headers(self.user_agents.get(), self.settings.accept_language)
        started = time.monotonic()
        try:
            response = await self._client.get(
                url,
                headers=headers,
                timeout=timeout or self.settings.request_timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.debug("static_fetch_failed", url=url, error=str(e) or type(e).__name__)
            return FetchOutcome(
                url=url,
                error=f"{type(e).__name__}: {e}",
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )

        elapsed_ms = int((time.monotonic() - started) * 1000)
        html = response.text or ""
        final_url = str(response.url)
        reason = detect_block(response.status_code, html, final_url)
        outcome = FetchOutcome(
            url=url,
            final_url=final_url,
            status=response.status_code,
            html=html,
            blocked=reason is not None,
            block_reason=reason,
            elapsed_ms=elapsed_ms,
        )
        if not outcome.blocked and not 200 <= response.status_code < 300:
            outcome.error = f"HTTP {response.status_code}"
            outcome.html = ""
        if outcome.blocked:
            logger.info("static_fetch_blocked", url=url, reason=reason, status=response.status_code)
        return outcome


# =============================================================================
# Rendered transport
# =============================================================================

SCROLL_SCRIPT = "(y) => window.scrollTo(0, y)"
HEIGHT_SCRIPT = "() => document.body ? document.body.scrollHeight : 0"

LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-gpu",
]


class RenderedFetcher:
    """
    Headless Chromium transport.

    The browser is launched lazily on first use and shared across fetches;
    every fetch gets a fresh context with its own user agent.
    """

    name = "rendered"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        user_agents: Optional[UserAgentPool] = None,
        headless: bool = True,
    ):
        self.settings = settings or get_settings()
        self.user_agents = user_agents or UserAgentPool(rotate=self.settings.rotate_user_agents)
        self.headless = headless
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()

    async def _ensure_browser(self) -> Browser:
        async with self._lock:
            if self._browser is None:
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=self.headless,
                    args=LAUNCH_ARGS,
                )
                logger.info("browser_launched", headless=self.headless)
            return self._browser

    async def close(self) -> None:
        async with self._lock:
            if self._browser is not None:
                await self._browser.close()
                self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None

    async def __aenter__(self) -> "RenderedFetcher":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def fetch(
        self,
        url: str,
        timeout: Optional[float] = None,
        scroll_rounds: Optional[int] = None,
    ) -> FetchOutcome:
        timeout_ms = int((timeout or self.settings.page_timeout_seconds) * 1000)
        rounds = self.settings.render_scroll_rounds if scroll_rounds is None else scroll_rounds
        started = time.monotonic()
        context = None
        try:
            browser = await self._ensure_browser()
            context = await browser.new_context(
                user_agent=self.user_agents.get(),
                locale="en-US",
                viewport={"width": 1366, "height": 900},
            )
            await context.set_extra_http_headers({"Accept-Language": self.settings.accept_language})
            page = await context.new_page()
            response = await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
            status = response.status if response is not None else 0

            try:
                await page.wait_for_load_state("networkidle", timeout=min(timeout_ms, 8000))
            except PlaywrightTimeoutError:
                logger.debug("network_idle_timeout", url=url)

            if rounds > 0:
                height = await page.evaluate(HEIGHT_SCRIPT)
                step = 900 if not isinstance(height, int) or height <= 0 else max(900, height // (rounds + 1))
                y = 0
                for _ in range(rounds):
                    y += step
                    await page.evaluate(SCROLL_SCRIPT, y)
                    await page.wait_for_timeout(600)
                try:
                    await page.wait_for_load_state("networkidle", timeout=3000)
                except PlaywrightTimeoutError:
                    pass

            html = await page.content()
            final_url = page.url
        except Exception as e:
            logger.warning("rendered_fetch_failed", url=url, error=f"{type(e).__name__}: {e}")
            return FetchOutcome(
                url=url,
                error=f"{type(e).__name__}: {e}",
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )
        finally:
            if context is not None:
                await context.close()

        reason = detect_block(status, html, final_url)
        outcome = FetchOutcome(
            url=url,
            final_url=final_url,
            status=status,
            html=html,
            blocked=reason is not None,
            block_reason=reason,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
        if not outcome.blocked and status and not 200 <= status < 300:
            outcome.error = f"HTTP {status}"
            outcome.html = ""
        return outcome


__all__ = [
    "BLOCK_BODY_MARKERS",
    "FetchOutcome",
    "RenderedFetcher",
    "StaticFetcher",
    "UserAgentPool",
    "build_headers",
    "detect_block",
]
