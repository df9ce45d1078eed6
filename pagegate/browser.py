import asyncio
import logging
from dataclasses import dataclass

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from .blocker import ContentBlocker
from .settings import FetchConfig, ProxySettings

logger = logging.getLogger(__name__)


@dataclass
class SharedSession:
    context: BrowserContext
    blocker: ContentBlocker


class BrowserSession:
    """
    Shared Playwright browser plus content blocker, reused by every request.

    - Started lazily on the first `acquire()`; later calls get the same instance
    - Proxy from ProxySettings, headless/locale/user agent from FetchConfig
    - Every fetch gets its own page from `open_page()`; pages are never shared
    - `shutdown()` tears everything down once
    """

    def __init__(self, config: FetchConfig, proxy: ProxySettings | None = None):
        self.config = config
        self.proxy = proxy

        self._lock = asyncio.Lock()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._shared: SharedSession | None = None

    @property
    def started(self) -> bool:
        return self._shared is not None

    async def acquire(self) -> SharedSession:
        if self._shared is not None:
            return self._shared
        async with self._lock:
            if self._shared is None:
                self._shared = await self._start()
        return self._shared

    async def _start(self) -> SharedSession:
        proxy_dict = self.proxy.playwright_proxy() if self.proxy else None
        logger.info(
            "Launching browser (headless=%s, proxy=%s)",
            self.config.browser_headless,
            proxy_dict["server"] if proxy_dict else "none",
        )

        self._playwright = await async_playwright().start()
        try:
            self._browser = await self._playwright.chromium.launch(
                headless=self.config.browser_headless,
                args=self.config.browser_args,
                proxy=proxy_dict,
            )
            context = await self._browser.new_context(
                user_agent=self.config.user_agent,
                locale=self.config.browser_locale,
                no_viewport=True,
            )
            blocker = await ContentBlocker.from_filter_lists(
                self.config.adblock_filter_lists,
                timeout_s=self.config.adblock_fetch_timeout_s,
                blocked_resource_types=self.config.adblock_block_resource_types,
            )
        except Exception:
            await self._teardown()
            raise
        return SharedSession(context=context, blocker=blocker)

    async def open_page(self, adblock: bool = True) -> Page:
        shared = await self.acquire()
        page = await shared.context.new_page()
        if adblock:
            try:
                await shared.blocker.enable_in_page(page)
            except Exception:
                await page.close()
                raise
        return page

    async def shutdown(self) -> None:
        async with self._lock:
            if self._shared is None and self._playwright is None:
                return
            logger.info("Closing browser session")
            await self._teardown()

    async def _teardown(self) -> None:
        shared, self._shared = self._shared, None
        browser, self._browser = self._browser, None
        playwright, self._playwright = self._playwright, None

        if shared:
            try:
                await shared.context.close()
            except Exception as e:
                logger.error("Error closing browser context: %s", e)
        if browser:
            try:
                await browser.close()
            except Exception as e:
                logger.error("Error closing browser: %s", e)
        if playwright:
            try:
                await playwright.stop()
            except Exception as e:
                logger.error("Error stopping playwright: %s", e)
