from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright, Error as PWError

from .config import Config
from .utils import NavigationError, try_close_page

logger = logging.getLogger(__name__)

# Benign/expected errors we don't want to spam logs for when closing
_SILENCE_PATTERNS = (
    "Target closed",
    "Target page, context or browser has been closed",
    "Browser has been closed",
    "Connection closed",
)

# Hides the most common automation tells from page scripts.
_STEALTH_INIT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
"""

# (visible) -> open session; lets the pipeline and human handlers stay browser-agnostic
SessionFactory = Callable[..., Awaitable["BrowserSession"]]


def _browser_args(cfg: Config, *, visible: bool) -> list[str]:
    args: list[str] = [
        "--disable-blink-features=AutomationControlled",
        "--disable-dev-shm-usage",
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-infobars",
        "--window-position=0,0",
        "--ignore-certificate-errors",
        "--no-default-browser-check",
        "--no-first-run",
        "--mute-audio",
    ]
    if not visible:
        args.append("--headless=new")

    extra = getattr(cfg, "browser_args_extra", None)
    if extra:
        for a in extra:
            if isinstance(a, str) and a.strip():
                args.append(a.strip())
    return args


async def _install_request_blocking(context: BrowserContext) -> None:
    async def route_handler(route, request):
        if request.resource_type in {"image", "media", "font"}:
            return await route.abort()
        return await route.continue_()
    await context.route("**/*", route_handler)


class BrowserSession:
    """
    One Chromium process + context + page, owned by exactly one source task
    (or one human-in-the-loop side session). Never shared across tasks.
    """

    def __init__(
        self,
        cfg: Config,
        pw: Playwright,
        browser: Browser,
        context: BrowserContext,
        page: Page,
        *,
        visible: bool,
    ) -> None:
        self.cfg = cfg
        self.visible = visible
        self._pw = pw
        self._browser = browser
        self._context = context
        self._page = page
        self._closed = False
        self.last_status: Optional[int] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def url(self) -> str:
        try:
            return self._page.url
        except Exception:
            return ""

    async def navigate(self, url: str, timeout_ms: Optional[int] = None) -> Optional[int]:
        if self._closed:
            raise NavigationError("session closed")
        timeout = timeout_ms or self.cfg.nav_timeout_ms
        try:
            resp = await self._page.goto(url, wait_until=self.cfg.navigation_wait_until, timeout=timeout)
        except (PWError, asyncio.TimeoutError) as e:
            raise NavigationError(f"navigation to {url} failed: {e}") from e
        self.last_status = resp.status if resp is not None else None
        return self.last_status

    async def wait_for_selector(self, selector: str, timeout_ms: int) -> bool:
        try:
            await self._page.wait_for_selector(selector, timeout=timeout_ms)
            return True
        except Exception:
            return False

    async def read_rendered_content(self) -> str:
        try:
            return await self._page.content()
        except Exception as e:
            raise NavigationError(f"could not read page content: {e}") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await try_close_page(self._page, self.cfg.page_close_timeout_ms)
        await shutdown_browser(self._pw, self._browser, self._context)


async def open_session(cfg: Config, *, visible: bool = False) -> BrowserSession:
    pw, browser, context = await init_browser(cfg, visible=visible)
    try:
        page = await context.new_page()
    except BaseException:
        await shutdown_browser(pw, browser, context)
        raise
    logger.info("Browser session opened (visible=%s)", visible)
    return BrowserSession(cfg, pw, browser, context, page, visible=visible)


async def init_browser(cfg: Config, *, visible: bool = False) -> tuple[Playwright, Browser, BrowserContext]:
    proxy = {"server": cfg.proxy_server} if getattr(cfg, "proxy_server", None) else None

    pw = await async_playwright().start()
    browser: Optional[Browser] = None
    context: Optional[BrowserContext] = None
    try:
        browser = await pw.chromium.launch(
            headless=not visible,
            args=_browser_args(cfg, visible=visible),
            proxy=proxy,
            slow_mo=getattr(cfg, "browser_slow_mo_ms", 0) or 0,
        )
        context = await browser.new_context(
            user_agent=cfg.user_agent,
            viewport={"width": 1366, "height": 900},
            java_script_enabled=True,
            locale="en-US",
            extra_http_headers={
                "Accept-Language": "en-US,en;q=0.9",
                "Upgrade-Insecure-Requests": "1",
            },
            ignore_https_errors=True,
        )
        context.set_default_timeout(cfg.nav_timeout_ms)
        context.set_default_navigation_timeout(cfg.nav_timeout_ms)

        try:
            await context.add_init_script(_STEALTH_INIT_SCRIPT)
        except Exception as e:
            logger.debug("stealth init script not installed: %s", e)

        if getattr(cfg, "block_heavy_resources", False):
            await _install_request_blocking(context)
    except BaseException:
        # also reached when a stop cancels the launch
        await shutdown_browser(pw, browser, context)
        raise

    logger.info(
        "Browser initialized UA=%s proxy=%s visible=%s",
        cfg.user_agent, bool(proxy), visible,
    )
    return pw, browser, context


def _quiet(e: Exception) -> bool:
    text = str(e)
    return any(p in text for p in _SILENCE_PATTERNS)


async def shutdown_browser(
    pw: Playwright, browser: Optional[Browser], context: Optional[BrowserContext] = None
) -> None:
    try:
        if context:
            await context.close()
    except Exception as e:
        if not _quiet(e):
            logger.warning("Error while closing context: %s", e)

    try:
        if browser:
            await browser.close()
    except Exception as e:
        if not _quiet(e):
            logger.warning("Error while closing browser: %s", e)

    try:
        await pw.stop()
    except Exception as e:
        logger.warning("Error while stopping Playwright: %s", e)


def session_factory(cfg: Config) -> SessionFactory:
    async def _open(visible: bool = False) -> BrowserSession:
        return await open_session(cfg, visible=visible)
    return _open
