"""Web search capability: web.search.

Two engines behind one contract:
- duckduckgo: the keyless HTML endpoint, parsed with regexes
- brave: the Brave Search JSON API (needs BRAVE_SEARCH_API_KEY)

Bounds are clamped (1-10 results, 1-60s) and the whole search runs under
asyncio.wait_for, so a slow engine can never stall the turn. A search that
fails returns an error; it never returns partial results as a success.
Uses a separate httpx client (NOT AgentRunner's model client).
"""

from __future__ import annotations

import asyncio
import html as html_module
import logging
import re
from typing import Any
from urllib.parse import parse_qs, unquote, urlparse

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from palaver.api.tools import ToolError, ToolExecutor
from palaver.config import Settings

logger = logging.getLogger(__name__)

WEB_SEARCH = "web.search"

MIN_COUNT, MAX_COUNT = 1, 10
MIN_TIMEOUT_MS, MAX_TIMEOUT_MS = 1000, 60000

_DDG_URL = "https://html.duckduckgo.com/html/"
_BRAVE_URL = "https://api.search.brave.com/res/v1/web/search"
_USER_AGENT = "Mozilla/5.0 (compatible; Palaver/0.1; +https://github.com/palaver)"

_DDG_RESULT = re.compile(
    r'<a[^>]+class="[^"]*result__a[^"]*"[^>]+href="(?P<href>[^"]+)"[^>]*>(?P<title>.*?)</a>'
    r"(?P<rest>.*?)(?=<a[^>]+class=\"[^\"]*result__a|\Z)",
    re.DOTALL | re.IGNORECASE,
)
_DDG_SNIPPET = re.compile(
    r'class="[^"]*result__snippet[^"]*"[^>]*>(?P<snippet>.*?)</(?:a|div|td)>',
    re.DOTALL | re.IGNORECASE,
)


class SearchError(ToolError):
    """The search produced no usable answer."""


class WebSearchArgs(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore")

    query: str = Field(description="Search query")
    count: int = Field(5, description="Number of results (clamped to 1-10)")
    timeout_ms: int = Field(10000, description="Timeout in milliseconds (clamped to 1000-60000)")

    @field_validator("query")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("query must be a non-empty string")
        return v

    @field_validator("count")
    @classmethod
    def _clamp_count(cls, v: int) -> int:
        return max(MIN_COUNT, min(v, MAX_COUNT))

    @field_validator("timeout_ms")
    @classmethod
    def _clamp_timeout(cls, v: int) -> int:
        return max(MIN_TIMEOUT_MS, min(v, MAX_TIMEOUT_MS))


# ---------------------------------------------------------------------------
# HTML helpers
# ---------------------------------------------------------------------------


def _strip_tags(fragment: str) -> str:
    text = re.sub(r"<[^>]+>", " ", fragment)
    text = html_module.unescape(text)
    return re.sub(r"\s+", " ", text).strip()


def _unwrap_ddg_link(href: str) -> str:
    """DuckDuckGo wraps targets as //duckduckgo.com/l/?uddg=<encoded url>."""
    href = html_module.unescape(href)
    parsed = urlparse(href)
    if parsed.path.startswith("/l/"):
        target = parse_qs(parsed.query).get("uddg")
        if target:
            return unquote(target[0])
    if href.startswith("//"):
        return f"https:{href}"
    return href


def parse_duckduckgo_html(page: str, count: int) -> list[dict[str, str]]:
    """Extract ``{title, link, snippet}`` records from a DuckDuckGo HTML page."""
    results: list[dict[str, str]] = []
    for match in _DDG_RESULT.finditer(page):
        title = _strip_tags(match.group("title"))
        link = _unwrap_ddg_link(match.group("href"))
        if not title or not link.startswith(("http://", "https://")):
            continue
        record = {"title": title, "link": link}
        snippet_match = _DDG_SNIPPET.search(match.group("rest"))
        if snippet_match:
            snippet = _strip_tags(snippet_match.group("snippet"))
            if snippet:
                record["snippet"] = snippet
        results.append(record)
        if len(results) >= count:
            break
    return results


# ---------------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------------


async def _search_duckduckgo(query: str, count: int, http: httpx.AsyncClient, timeout: float) -> list[dict[str, str]]:
    response = await http.post(
        _DDG_URL,
        data={"q": query},
        headers={"User-Agent": _USER_AGENT},
        timeout=timeout,
    )
    if response.status_code != 200:
        raise SearchError(f"search failed (HTTP {response.status_code})")
    page = response.text
    if "result__a" not in page and "no-results" not in page:
        raise SearchError("search failed: unexpected response from duckduckgo")
    return parse_duckduckgo_html(page, count)


async def _search_brave(
    query: str,
    count: int,
    http: httpx.AsyncClient,
    timeout: float,
    api_key: str,
) -> list[dict[str, str]]:
    if not api_key:
        raise SearchError("search failed: BRAVE_SEARCH_API_KEY not configured")
    response = await http.get(
        _BRAVE_URL,
        params={"q": query, "count": count},
        headers={
            "Accept": "application/json",
            "Accept-Encoding": "gzip",
            "X-Subscription-Token": api_key,
        },
        timeout=timeout,
    )
    if response.status_code != 200:
        raise SearchError(f"search failed (HTTP {response.status_code}). Check BRAVE_SEARCH_API_KEY if 401.")
    try:
        data = response.json()
    except ValueError as e:
        raise SearchError("search failed: invalid JSON from brave") from e

    items = data.get("web", {}).get("results", []) if isinstance(data, dict) else None
    if not isinstance(items, list):
        raise SearchError("search failed: unexpected response from brave")

    results: list[dict[str, str]] = []
    for item in items[:count]:
        if not isinstance(item, dict) or not item.get("url"):
            continue
        record = {"title": _strip_tags(item.get("title", "")), "link": item["url"]}
        if item.get("description"):
            record["snippet"] = _strip_tags(item["description"])
        results.append(record)
    return results


async def web_search_tool(
    query: str,
    count: int,
    timeout_ms: int,
    *,
    _settings: Settings,
    _http: httpx.AsyncClient,
) -> dict[str, Any]:
    """Run one bounded search. Raises SearchError on total failure."""
    engine = _settings.search_engine
    timeout = timeout_ms / 1000

    if engine == "brave":
        search = _search_brave(query, count, _http, timeout, _settings.brave_search_api_key)
    else:
        search = _search_duckduckgo(query, count, _http, timeout)

    try:
        results = await asyncio.wait_for(search, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise SearchError(f"search timed out after {timeout_ms}ms") from e
    except httpx.TimeoutException as e:
        raise SearchError(f"search timed out after {timeout_ms}ms") from e
    except httpx.HTTPError as e:
        raise SearchError(f"could not reach search service: {e}") from e

    logger.info("web.search (%s) %r -> %d results", engine, query, len(results))
    return {"query": query, "engine": engine, "results": results}


def register_web_tools(
    executor: ToolExecutor,
    settings: Settings,
    http_client: httpx.AsyncClient,
) -> None:
    """Register web.search with the executor unless disabled in settings."""
    if not settings.web_search_enabled:
        logger.info("web.search disabled by settings")
        return

    async def _search(args: WebSearchArgs) -> dict[str, Any]:
        return await web_search_tool(
            args.query,
            args.count,
            args.timeout_ms,
            _settings=settings,
            _http=http_client,
        )

    executor.register(
        WEB_SEARCH,
        _search,
        WebSearchArgs,
        "Search the web. Returns an ordered list of {title, link, snippet} records.",
    )
