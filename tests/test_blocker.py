from pagegate.blocker import ContentBlocker
from fakes import FakePage

NEWS = "https://news.example/article"

FILTER_LIST = """\
[Adblock Plus 2.0]
! Title: test list
||ads.example.com^
@@||ads.example.com/allowed.js
||tracker.net^$third-party
||img.cdn.com^$image
example.com##.ad-banner
"""


def make_blocker(**kw) -> ContentBlocker:
    return ContentBlocker([FILTER_LIST], **kw)


def test_plain_host_rule_blocks_host_and_subdomains():
    blocker = make_blocker()
    assert blocker.should_block("https://ads.example.com/x.js", "script", NEWS)
    assert blocker.should_block("https://eu.ads.example.com/x.js", "script", NEWS)
    assert not blocker.should_block("https://example.com/app.js", "script", NEWS)


def test_exception_rule_wins():
    blocker = make_blocker()
    assert not blocker.should_block("https://ads.example.com/allowed.js", "script", NEWS)


def test_third_party_rule_spares_first_party_requests():
    blocker = make_blocker()
    assert blocker.should_block("https://tracker.net/t.js", "script", NEWS)
    assert not blocker.should_block("https://tracker.net/t.js", "script", "https://tracker.net/")
    assert not blocker.should_block("https://tracker.net/", "document", "https://tracker.net/")


def test_type_scoped_rule_only_applies_to_that_type():
    blocker = make_blocker()
    assert blocker.should_block("https://img.cdn.com/a.png", "image", NEWS)
    assert not blocker.should_block("https://img.cdn.com/app.js", "script", NEWS)


def test_blocks_resource_types():
    blocker = ContentBlocker([], blocked_resource_types={"image", "font"})
    assert blocker.should_block("https://example.com/a.png", "image", NEWS)
    assert not blocker.should_block("https://example.com/app.js", "script", NEWS)


class FakeFrame:
    def __init__(self, parent=None):
        self.parent_frame = parent


class FakeRoute:
    def __init__(self, url, resource_type="script", frame=None):
        self.request = type(
            "Req", (), {"url": url, "resource_type": resource_type, "frame": frame or FakeFrame()}
        )()
        self.outcome = None

    async def abort(self):
        self.outcome = "abort"

    async def continue_(self):
        self.outcome = "continue"


async def route_through(blocker: ContentBlocker, page_url: str, *routes: FakeRoute) -> None:
    page = FakePage()
    page.url = page_url
    await blocker.enable_in_page(page)
    pattern, handler = page.routes[0]
    assert pattern == "**/*"
    for route in routes:
        await handler(route)


async def test_route_handler_aborts_blocked_requests():
    blocked = FakeRoute("https://ads.example.com/x.js")
    allowed = FakeRoute("https://example.com/app.js")

    await route_through(make_blocker(), NEWS, blocked, allowed)

    assert blocked.outcome == "abort"
    assert allowed.outcome == "continue"


async def test_main_document_is_never_blocked():
    # Even a host matched by a plain rule loads when it is the page itself.
    main = FakeRoute("https://ads.example.com/", resource_type="document")
    iframe = FakeRoute("https://ads.example.com/frame", resource_type="document", frame=FakeFrame(parent=FakeFrame()))

    await route_through(make_blocker(), "https://ads.example.com/", main)
    await route_through(make_blocker(), NEWS, iframe)

    assert main.outcome == "continue"
    assert iframe.outcome == "abort"


async def test_empty_list_set_falls_back_to_builtin_domains():
    blocker = await ContentBlocker.from_filter_lists([])
    assert blocker.should_block("https://stats.g.doubleclick.net/collect", "image", NEWS)
