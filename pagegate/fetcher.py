import asyncio
import logging
from typing import Sequence

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from .browser import BrowserSession
from .cache import ResponseCache, make_cache_key
from .errors import BrowserIOError, NoResponseError, PageClosedError, ValidationError
from .limiter import ConcurrencyLimiter
from .models import FetchRequest, FetchResult, NavigationOptions, RawResponse
from .race import ContentReadyRace, navigate
from .retry import RetryPolicy
from .settings import FetchConfig, ProxySettings

logger = logging.getLogger(__name__)


class PageFetcher:
    """
    Fetch orchestration: cache, permit, page, detection, retries.

    For every URL the cache is checked first, without a permit. On a miss,
    each attempt takes a permit, opens a fresh page, runs the content-ready
    race (or reads the raw main response), then closes the page and gives
    the permit back whatever happened. Results are cached on success.
    """

    def __init__(
        self,
        session: BrowserSession,
        cache: ResponseCache,
        limiter: ConcurrencyLimiter,
        retry: RetryPolicy,
        race: ContentReadyRace | None = None,
    ):
        self.session = session
        self.cache = cache
        self.limiter = limiter
        self.retry = retry
        self.race = race or ContentReadyRace()

    @classmethod
    def from_config(cls, config: FetchConfig, proxy: ProxySettings | None = None) -> "PageFetcher":
        return cls(
            session=BrowserSession(config, proxy),
            cache=ResponseCache(ttl_s=config.cache_ttl_s, max_entries=config.cache_max_entries),
            limiter=ConcurrencyLimiter(config.max_concurrent_pages, strict=config.strict_permits),
            retry=RetryPolicy(
                max_retries=config.fetch_max_retries,
                base_delay_s=config.retry_base_delay_s,
                max_delay_s=config.retry_max_delay_s,
            ),
            race=ContentReadyRace(poll_interval_s=config.poll_interval_s),
        )

    async def get_page_content(
        self,
        urls: str | Sequence[str],
        selector: str | None,
        options: NavigationOptions,
    ) -> tuple[list[str], bool]:
        """
        Rendered HTML for every URL, in input order.

        Returns (documents, from_cache) where from_cache is True only when
        every document came out of the cache.
        """
        urls = [urls] if isinstance(urls, str) else list(urls)
        if not urls:
            raise ValidationError("At least one URL is required")

        results = await asyncio.gather(
            *(self.fetch(FetchRequest(url=u, selector=selector, options=options)) for u in urls)
        )
        documents = [doc for doc, _ in results]
        return documents, all(hit for _, hit in results)

    async def get_raw_response(
        self,
        url: str | Sequence[str],
        options: NavigationOptions,
    ) -> tuple[RawResponse, bool]:
        if not isinstance(url, str):
            if len(url) != 1:
                raise ValidationError("Raw response only supports a single URL")
            url = url[0]
        return await self.fetch(FetchRequest(url=url, options=options, raw=True))

    async def fetch(self, request: FetchRequest) -> tuple[FetchResult, bool]:
        if request.raw and request.selector:
            raise ValidationError("raw mode cannot be combined with a selector")

        key = make_cache_key(request.url, request.cache_options())
        cached = self.cache.get(key)
        if cached is not None:
            logger.info("Cache hit for %s", request.url)
            return cached, True

        result = await self.retry.run(lambda: self.fetch_once(request), label=request.url)
        self.cache.set(key, result)
        return result, False

    async def fetch_once(self, request: FetchRequest) -> FetchResult:
        """One attempt: its own permit and its own page, both always given back."""
        async with self.limiter.permit():
            page: Page | None = None
            try:
                logger.info("Fetching %sURL: %s", "raw " if request.raw else "", request.url)
                page = await self.session.open_page(adblock=request.options.adblock)
                if request.raw:
                    return await self._read_raw(page, request)
                return await self.race.run(page, request.url, request.selector, request.options)
            finally:
                if page is not None:
                    await _close_page(page, request.url)

    async def _read_raw(self, page: Page, request: FetchRequest) -> RawResponse:
        response = await navigate(page, request.url, request.options, request.options.timeout_s)
        if response is None:
            raise NoResponseError(f"No response received for {request.url}")
        try:
            body = await response.body()
        except PlaywrightError as e:
            if page.is_closed():
                raise PageClosedError(f"Page closed before body of {request.url} was read") from e
            raise BrowserIOError(f"Reading response body of {request.url} failed: {e}") from e
        return RawResponse(
            body=body,
            content_type=response.headers.get("content-type"),
            status=response.status,
        )

    async def shutdown(self) -> None:
        await self.session.shutdown()


async def _close_page(page: Page, url: str) -> None:
    try:
        if not page.is_closed():
            await page.close()
    except Exception as e:
        logger.error("Failed to close page for %s: %s", url, e)
