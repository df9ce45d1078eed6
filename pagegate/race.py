"""
Content-ready detection.

Two strategies run side by side against the same page:

- intercept: watch network responses and look for the selector in the raw
  body of the main document, which can win before rendering finishes
- poll: navigate, let the page settle, then check the live DOM once per
  interval until the selector shows up

The race goes to the first strategy that *succeeds*; a strategy failing
early does not end it.
"""

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Iterator, TypeVar

from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, Response

from .errors import BrowserIOError, PageClosedError, SelectorTimeoutError
from .models import NavigationOptions

logger = logging.getLogger(__name__)

T = TypeVar("T")

POLL_INTERVAL_S = 1.0


async def first_success(*aws: Awaitable[T]) -> T:
    """
    Run all awaitables concurrently and return the first successful result.

    Failures are remembered, not propagated, until every awaitable has
    failed; then the most recent failure is raised. Whatever is still
    running when a winner appears is cancelled and awaited.
    """
    if not aws:
        raise ValueError("first_success() needs at least one awaitable")

    pending = {asyncio.ensure_future(aw) for aw in aws}
    last_error: BaseException | None = None
    try:
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            failed = []
            for task in done:
                if task.cancelled():
                    continue
                if task.exception() is None:
                    return task.result()
                failed.append(task.exception())
            if failed:
                last_error = failed[-1]
        if last_error is None:
            raise asyncio.CancelledError()
        raise last_error
    finally:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


@contextmanager
def subscribe(page: Page, event: str, handler: Callable[[Any], None]) -> Iterator[None]:
    """Attach `handler` to a page event for the duration of the block."""
    page.on(event, handler)
    try:
        yield
    finally:
        try:
            page.remove_listener(event, handler)
        except Exception as e:
            logger.debug("Could not remove %s listener: %s", event, e)


def selector_present(html: str, selector: str) -> bool:
    soup = BeautifulSoup(html, "lxml")
    return soup.select_one(selector) is not None


def is_document_response(response: Response, url: str) -> bool:
    """True for the main HTML document of a navigation to exactly `url`."""
    if response.url != url:
        return False
    if response.request.resource_type != "document":
        return False
    content_type = response.headers.get("content-type", "").lower()
    return not content_type or "text/html" in content_type


async def navigate(page: Page, url: str, options: NavigationOptions, timeout_s: float) -> Response | None:
    # Playwright treats timeout=0 as "wait forever".
    timeout_ms = max(1, int(timeout_s * 1000))
    try:
        return await page.goto(url, wait_until=options.wait_until.playwright_state, timeout=timeout_ms)
    except PlaywrightError as e:
        if page.is_closed():
            raise PageClosedError(f"Page closed while navigating to {url}") from e
        raise BrowserIOError(f"Navigation to {url} failed: {e}") from e


async def intercept_document(page: Page, url: str, selector: str, timeout_s: float) -> str:
    """
    Resolve with the main document body once it contains `selector`.

    The response listener lives exactly as long as this coroutine: it is
    removed on success, on timeout and when the race cancels us.
    """
    found: asyncio.Future[str] = asyncio.get_running_loop().create_future()
    inspections: set[asyncio.Task] = set()

    async def inspect(response: Response) -> None:
        try:
            text = await response.text()
            if text and selector_present(text, selector) and not found.done():
                logger.info('(intercept): Found selector "%s" in response for %s', selector, url)
                found.set_result(text)
        except Exception as e:
            logger.debug("Error processing response for %s: %s", url, e)

    def on_response(response: Response) -> None:
        if found.done() or not is_document_response(response, url):
            return
        task = asyncio.ensure_future(inspect(response))
        inspections.add(task)
        task.add_done_callback(inspections.discard)

    try:
        with subscribe(page, "response", on_response):
            return await asyncio.wait_for(found, timeout=timeout_s)
    except asyncio.TimeoutError:
        raise SelectorTimeoutError(selector, url, "intercept") from None
    finally:
        for task in list(inspections):
            task.cancel()


async def poll_dom(
    page: Page,
    url: str,
    selector: str,
    options: NavigationOptions,
    deadline: float,
    interval_s: float = POLL_INTERVAL_S,
) -> str:
    """Navigate, then check the live DOM for `selector` every `interval_s` until `deadline`."""
    loop = asyncio.get_running_loop()
    await navigate(page, url, options, deadline - loop.time())

    while True:
        if page.is_closed():
            raise PageClosedError("Page closed unexpectedly while waiting for selector")
        try:
            handle = await page.query_selector(selector)
        except PlaywrightError as e:
            if page.is_closed():
                raise PageClosedError("Page closed unexpectedly while waiting for selector") from e
            raise BrowserIOError(f"Selector query failed on {url}: {e}") from e
        if handle is not None:
            break
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise SelectorTimeoutError(selector, url, "poll")
        await asyncio.sleep(min(interval_s, remaining))

    content = await read_content(page, url)
    logger.info('(poll): Found selector "%s" in page content for %s', selector, url)
    return content


async def read_content(page: Page, url: str) -> str:
    try:
        return await page.content()
    except PlaywrightError as e:
        if page.is_closed():
            raise PageClosedError(f"Page closed before content of {url} could be read") from e
        raise BrowserIOError(f"Reading content of {url} failed: {e}") from e


class ContentReadyRace:
    """
    Decide as fast as possible that a page contains `selector`.

    Without a selector there is nothing to race: navigation settling is
    enough and whatever content is there gets returned.
    """

    def __init__(self, poll_interval_s: float = POLL_INTERVAL_S):
        self.poll_interval_s = poll_interval_s

    async def run(self, page: Page, url: str, selector: str | None, options: NavigationOptions) -> str:
        loop = asyncio.get_running_loop()
        timeout_s = options.timeout_s

        if not selector:
            await navigate(page, url, options, timeout_s)
            return await read_content(page, url)

        deadline = loop.time() + timeout_s
        try:
            # Interception goes first so its listener is attached before goto runs.
            return await first_success(
                intercept_document(page, url, selector, timeout_s),
                poll_dom(page, url, selector, options, deadline, self.poll_interval_s),
            )
        except SelectorTimeoutError:
            raise
        except (BrowserIOError, PageClosedError) as e:
            if loop.time() >= deadline:
                raise SelectorTimeoutError(selector, url) from e
            raise
