import asyncio
import logging
from typing import Iterable

import adblock
import aiohttp
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, Request, Route

logger = logging.getLogger(__name__)

# Used when the filter lists cannot be downloaded.
FALLBACK_BLOCKED_DOMAINS = frozenset({
    "doubleclick.net",
    "googlesyndication.com",
    "googleadservices.com",
    "google-analytics.com",
    "googletagmanager.com",
    "googletagservices.com",
    "adservice.google.com",
    "amazon-adsystem.com",
    "adnxs.com",
    "criteo.com",
    "criteo.net",
    "taboola.com",
    "outbrain.com",
    "scorecardresearch.com",
    "quantserve.com",
    "hotjar.com",
    "facebook.net",
    "ads-twitter.com",
    "moatads.com",
    "pubmatic.com",
    "rubiconproject.com",
    "openx.net",
})

# Playwright resource type -> filter-list request type
_REQUEST_TYPES = {
    "document": "subdocument",
    "xhr": "xmlhttprequest",
    "manifest": "web_manifest",
    "texttrack": "other",
    "eventsource": "other",
}


def fallback_filter_list() -> str:
    return "\n".join(f"||{domain}^$third-party" for domain in sorted(FALLBACK_BLOCKED_DOMAINS))


def is_main_document(request: Request) -> bool:
    """True for the top-level navigation of a page, which is never blocked."""
    if request.resource_type != "document":
        return False
    try:
        return request.frame.parent_frame is None
    except PlaywrightError:
        return True


class ContentBlocker:
    """
    Ad/tracker blocking engine shared by every page of the browser session.

    Filter lists are EasyList-style text evaluated by the `adblock` engine,
    so rule options ($third-party, $image, ...) and @@ exceptions apply.
    Requests whose resource type is in `blocked_resource_types` are dropped
    regardless of the lists. The page's own main document always goes through.
    """

    def __init__(self, filter_lists: Iterable[str], blocked_resource_types: Iterable[str] = ()):
        filter_set = adblock.FilterSet()
        for text in filter_lists:
            filter_set.add_filter_list(text)
        self._engine = adblock.Engine(filter_set)
        self.blocked_resource_types = frozenset(blocked_resource_types)

    @classmethod
    async def from_filter_lists(
        cls,
        urls: Iterable[str],
        timeout_s: float = 15.0,
        blocked_resource_types: Iterable[str] = (),
    ) -> "ContentBlocker":
        urls = list(urls)
        texts: list[str] = []
        if urls:
            timeout = aiohttp.ClientTimeout(total=timeout_s)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                downloaded = await asyncio.gather(
                    *(_download_list(session, u) for u in urls)
                )
            texts = [t for t in downloaded if t]

        if not texts:
            logger.warning("No filter list could be loaded, using built-in ads/tracking domains")
            texts = [fallback_filter_list()]
        else:
            logger.info("Loaded %d of %d filter lists", len(texts), len(urls))
        return cls(texts, blocked_resource_types)

    def should_block(self, url: str, resource_type: str | None = None, source_url: str | None = None) -> bool:
        if resource_type and resource_type in self.blocked_resource_types:
            return True
        request_type = _REQUEST_TYPES.get(resource_type or "other", resource_type or "other")
        result = self._engine.check_network_urls(url, source_url or url, request_type)
        return result.matched

    async def enable_in_page(self, page: Page) -> None:
        async def route_handler(route: Route) -> None:
            request = route.request
            if not is_main_document(request) and self.should_block(request.url, request.resource_type, page.url):
                await route.abort()
            else:
                await route.continue_()

        await page.route("**/*", route_handler)


async def _download_list(session: aiohttp.ClientSession, url: str) -> str | None:
    """Fetch one filter list; None if it cannot be retrieved."""
    try:
        async with session.get(url) as resp:
            if resp.status >= 400:
                logger.warning("Filter list %s returned HTTP %d", url, resp.status)
                return None
            return await resp.text()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.warning("Could not download filter list %s: %s", url, e)
        return None
