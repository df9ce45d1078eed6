import asyncio

import pytest
from playwright.async_api import Error as PlaywrightError

from pagegate.cache import ResponseCache
from pagegate.errors import NoResponseError, SelectorTimeoutError, ValidationError
from pagegate.fetcher import PageFetcher
from pagegate.limiter import ConcurrencyLimiter
from pagegate.models import NavigationOptions, RawResponse
from pagegate.race import ContentReadyRace
from pagegate.retry import RetryPolicy
from fakes import FakePage, FakeSession, RecordingSleep

URL = "https://example.com/"
MAIN = '<html><body><div class="main">hello</div></body></html>'
EMPTY = "<html><body></body></html>"


def make_fetcher(session: FakeSession, capacity: int = 5, max_retries: int = 3):
    sleep = RecordingSleep()
    fetcher = PageFetcher(
        session=session,
        cache=ResponseCache(ttl_s=300.0, max_entries=50),
        limiter=ConcurrencyLimiter(capacity, strict=True),
        retry=RetryPolicy(max_retries=max_retries, sleep=sleep),
        race=ContentReadyRace(poll_interval_s=0.01),
    )
    return fetcher, sleep


def opts(**kw) -> NavigationOptions:
    kw.setdefault("timeout_ms", 1000)
    return NavigationOptions(**kw)


async def test_rendered_fetch_then_cache_hit():
    session = FakeSession(lambda n: FakePage(raw_html=MAIN))
    fetcher, _ = make_fetcher(session)

    docs, from_cache = await fetcher.get_page_content(URL, ".main", opts())
    assert docs == [MAIN]
    assert from_cache is False

    docs, from_cache = await fetcher.get_page_content(URL, ".main", opts())
    assert docs == [MAIN]
    assert from_cache is True
    assert len(session.pages) == 1


async def test_cache_key_separates_adblock_flag():
    session = FakeSession(lambda n: FakePage(raw_html=MAIN))
    fetcher, _ = make_fetcher(session)

    await fetcher.get_page_content(URL, ".main", opts(adblock=True))
    _, from_cache = await fetcher.get_page_content(URL, ".main", opts(adblock=False))

    assert from_cache is False
    assert session.adblock_flags == [True, False]


async def test_pages_closed_and_permits_returned():
    session = FakeSession(lambda n: FakePage(raw_html=MAIN))
    fetcher, _ = make_fetcher(session, capacity=2)

    await fetcher.get_page_content([URL, "https://example.org/"], ".main", opts())

    assert all(p.closed for p in session.pages)
    assert fetcher.limiter.available == 2


async def test_open_pages_never_exceed_capacity():
    # No interception match, so each page stays open through navigation.
    session = FakeSession(lambda n: FakePage(raw_html=MAIN, emit_response=False, nav_delay_s=0.02))
    fetcher, _ = make_fetcher(session, capacity=3)
    urls = [f"https://example.com/{i}" for i in range(10)]

    docs, _ = await fetcher.get_page_content(urls, ".main", opts())

    assert len(docs) == 10
    assert session.max_open == 3
    assert fetcher.limiter.in_use == 0


async def test_retries_with_new_page_each_attempt():
    def factory(n):
        if n < 2:
            return FakePage(goto_error=PlaywrightError("net::ERR_CONNECTION_RESET"), emit_response=False)
        return FakePage(raw_html=MAIN)

    session = FakeSession(factory)
    fetcher, sleep = make_fetcher(session)

    docs, _ = await fetcher.get_page_content(URL, ".main", opts(timeout_ms=50))

    assert docs == [MAIN]
    assert len(session.pages) == 3
    assert all(p.close_calls == 1 for p in session.pages)
    assert sleep.delays == [1.0, 2.0]


async def test_exhausted_retries_propagate_and_cleanup():
    session = FakeSession(lambda n: FakePage(raw_html=EMPTY))
    fetcher, sleep = make_fetcher(session, capacity=1)

    with pytest.raises(SelectorTimeoutError):
        await fetcher.get_page_content(URL, ".main", opts(timeout_ms=50))

    assert len(session.pages) == 3
    assert all(p.closed for p in session.pages)
    assert fetcher.limiter.available == 1
    assert len(fetcher.cache) == 0
    assert sleep.delays == [1.0, 2.0]


async def test_raw_response_is_returned_verbatim():
    session = FakeSession(lambda n: FakePage(raw_html="plain body", content_type="text/plain", status=203))
    fetcher, _ = make_fetcher(session)

    raw, from_cache = await fetcher.get_raw_response(URL, opts())

    assert raw == RawResponse(body=b"plain body", content_type="text/plain", status=203)
    assert from_cache is False
    assert session.pages[0].closed


async def test_raw_without_response_is_retried_then_fails():
    session = FakeSession(lambda n: FakePage(return_response=False))
    fetcher, sleep = make_fetcher(session)

    with pytest.raises(NoResponseError):
        await fetcher.get_raw_response(URL, opts())
    assert len(session.pages) == 3
    assert len(sleep.delays) == 2


async def test_raw_multi_url_rejected_before_browser_work():
    session = FakeSession()
    fetcher, _ = make_fetcher(session)

    with pytest.raises(ValidationError):
        await fetcher.get_raw_response([URL, "https://example.org/"], opts())
    assert session.pages == []


async def test_raw_and_rendered_do_not_share_cache_entries():
    session = FakeSession(lambda n: FakePage(raw_html=MAIN))
    fetcher, _ = make_fetcher(session)

    await fetcher.get_page_content(URL, ".main", opts())
    raw, from_cache = await fetcher.get_raw_response(URL, opts())

    assert isinstance(raw, RawResponse)
    assert from_cache is False


async def test_concurrent_identical_requests_each_release():
    session = FakeSession(lambda n: FakePage(raw_html=MAIN, nav_delay_s=0.01))
    fetcher, _ = make_fetcher(session, capacity=1)

    await asyncio.gather(*(fetcher.get_page_content(URL, ".main", opts()) for _ in range(4)))
    assert fetcher.limiter.available == 1
    assert all(p.closed for p in session.pages)


async def test_shutdown_delegates_to_session():
    session = FakeSession()
    fetcher, _ = make_fetcher(session)
    await fetcher.shutdown()
    assert session.shutdown_calls == 1
