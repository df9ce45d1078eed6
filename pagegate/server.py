"""
HTTP surface: a single `GET /` endpoint in front of PageFetcher.

Query parameters:
    url       : target URL, may be repeated (rendered mode only)
    selector  : element to wait for, required unless raw
    timeout   : per-fetch deadline in ms (default 30000)
    waitUntil : load | domcontentloaded | networkidle0 | networkidle2
    raw       : return upstream bytes; truthy unless "false" / "0"
    adblock   : content blocking, disabled by "false" / "0"
"""

import logging
from dataclasses import dataclass

import pydantic
from aiohttp import web

from .errors import MissingParameterError, ValidationError
from .fetcher import PageFetcher
from .models import NavigationOptions, parse_flag
from .settings import FetchConfig, load_fetch_config, load_proxy_from_env

logger = logging.getLogger(__name__)

FETCHER_KEY = web.AppKey("fetcher", PageFetcher)


@dataclass(frozen=True)
class FetchQuery:
    urls: list[str]
    selector: str | None
    raw: bool
    options: NavigationOptions


def is_raw_requested(value: str | None) -> bool:
    if value is None:
        return False
    return parse_flag(value)


def parse_query(query) -> FetchQuery:
    """
    Validate query parameters.

    Raises MissingParameterError for absent required values and
    ValidationError for conflicting or malformed ones.
    """
    urls = [u for u in query.getall("url", []) if u]
    if not urls:
        raise MissingParameterError("URL parameter is required")

    raw = is_raw_requested(query.get("raw"))
    selector = query.get("selector") or None

    if raw and selector:
        raise ValidationError("selector cannot be used together with raw")
    if raw and len(urls) > 1:
        raise ValidationError("Raw response only supports a single URL")
    if not raw and not selector:
        raise MissingParameterError("selector parameter is required")

    nav = {k: query[k] for k in ("timeout", "waitUntil", "adblock") if k in query}
    try:
        options = NavigationOptions.model_validate(nav)
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid parameters: {problems}") from None

    return FetchQuery(urls=urls, selector=selector, raw=raw, options=options)


def error_response(message: str, status: int = 200) -> web.Response:
    return web.json_response({"success": False, "error": message}, status=status)


async def handle_fetch(request: web.Request) -> web.Response:
    fetcher = request.app[FETCHER_KEY]

    try:
        query = parse_query(request.query)
    except MissingParameterError as e:
        return error_response(str(e))
    except ValidationError as e:
        return error_response(str(e), status=400)

    try:
        if query.raw:
            raw, _ = await fetcher.get_raw_response(query.urls[0], query.options)
            headers = {}
            if raw.content_type:
                headers["Content-Type"] = raw.content_type
            return web.Response(body=raw.body, status=raw.status, headers=headers)

        documents, from_cache = await fetcher.get_page_content(query.urls, query.selector, query.options)
        return web.json_response({"success": True, "fromCache": from_cache, "data": documents})

    except ValidationError as e:
        return error_response(str(e), status=400)
    except Exception as e:
        logger.exception("Request for %s failed", ", ".join(query.urls))
        return error_response(str(e) or type(e).__name__, status=500)


def create_app(fetcher: PageFetcher) -> web.Application:
    app = web.Application()
    app[FETCHER_KEY] = fetcher
    app.router.add_get("/", handle_fetch)

    async def on_cleanup(app: web.Application) -> None:
        logger.info("Shutting down, closing browser")
        await app[FETCHER_KEY].shutdown()

    app.on_cleanup.append(on_cleanup)
    return app


def main(config: FetchConfig | None = None) -> None:
    config = config or load_fetch_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    fetcher = PageFetcher.from_config(config, load_proxy_from_env())
    app = create_app(fetcher)
    logger.info("Server is running on http://%s:%d", config.host, config.port)
    # run_app handles SIGINT/SIGTERM and runs on_cleanup before exiting.
    web.run_app(app, host=config.host, port=config.port, print=None)


if __name__ == "__main__":
    main()
