from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_TIMEOUT_MS = 30_000


def parse_flag(value: Any, default: bool = True) -> bool:
    """
    Interpret a query-string flag.

    Anything other than "false" / "0" (case-insensitive) counts as enabled,
    including an empty string. None falls back to `default`.
    """
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in {"false", "0"}


class WaitUntil(str, Enum):
    LOAD = "load"
    DOMCONTENTLOADED = "domcontentloaded"
    NETWORKIDLE0 = "networkidle0"   # no connections left
    NETWORKIDLE2 = "networkidle2"   # at most a couple of connections left

    @property
    def playwright_state(self) -> str:
        # Playwright only has one network-idle state.
        if self in (WaitUntil.NETWORKIDLE0, WaitUntil.NETWORKIDLE2):
            return "networkidle"
        return self.value


class NavigationOptions(BaseModel):
    """
    Per-fetch navigation settings, parsed from query parameters.

    Accepts the wire names (`timeout`, `waitUntil`) as well as the
    attribute names.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    timeout_ms: int = Field(DEFAULT_TIMEOUT_MS, alias="timeout", gt=0)
    wait_until: WaitUntil = Field(WaitUntil.LOAD, alias="waitUntil")
    adblock: bool = True

    @field_validator("adblock", mode="before")
    @classmethod
    def _adblock_flag(cls, value: Any) -> bool:
        return parse_flag(value, default=True)

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000

    def fingerprint_fields(self) -> dict[str, Any]:
        return {
            "timeout": self.timeout_ms,
            "waitUntil": self.wait_until.value,
            "adblock": self.adblock,
        }


@dataclass(frozen=True)
class FetchRequest:
    """
    One URL to fetch.

    Fields:
        url      : Target URL, navigated verbatim.
        selector : Element to wait for. None means "return whatever is there
                   once navigation settles".
        options  : NavigationOptions for this fetch.
        raw      : Return the upstream response bytes instead of rendered HTML.
    """
    url: str
    selector: str | None = None
    options: NavigationOptions = NavigationOptions()
    raw: bool = False

    def cache_options(self) -> dict[str, Any]:
        return {
            **self.options.fingerprint_fields(),
            "raw": self.raw,
            "selector": self.selector,
        }


@dataclass(frozen=True)
class RawResponse:
    """
    Unprocessed upstream response captured from the main navigation.

    Fields:
        body         : Response bytes exactly as the browser received them.
        content_type : Upstream Content-Type header, if any.
        status       : Upstream HTTP status code.
    """
    body: bytes
    content_type: str | None
    status: int


FetchResult = Union[str, RawResponse]
