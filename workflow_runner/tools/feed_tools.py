"""RSS/Atom feed discovery and validation tools."""

import asyncio
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from html.parser import HTMLParser
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin, urlparse
from xml.etree import ElementTree

import httpx

from ..core.exceptions import InvalidInputError
from ..core.logging import get_logger

logger = get_logger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; RSS Reader Bot)"

FEED_LINK_TYPES = frozenset({"application/rss+xml", "application/atom+xml", "text/xml"})

COMMON_FEED_PATHS = (
    "/feed",
    "/rss",
    "/atom.xml",
    "/feed.xml",
    "/index.xml",
    "/rss.xml",
    "/feeds/all.rss",
    "/blog/feed",
    "/blog/rss",
)

PAGE_TIMEOUT = httpx.Timeout(5.0)
PROBE_TIMEOUT = httpx.Timeout(3.0)
FEED_TIMEOUT = httpx.Timeout(10.0, connect=5.0)

DEFAULT_FRESHNESS_DAYS = 30

ATOM_NS = "{http://www.w3.org/2005/Atom}"


class _AlternateLinkParser(HTMLParser):
    """Collects href values of <link rel="alternate"> feed links."""

    def __init__(self):
        super().__init__()
        self.hrefs: List[str] = []

    def handle_starttag(self, tag, attrs):
        if tag != "link":
            return
        attributes = {name.lower(): (value or "") for name, value in attrs}
        rel = attributes.get("rel", "").lower().split()
        if "alternate" in rel and attributes.get("type", "").lower() in FEED_LINK_TYPES and attributes.get("href"):
            self.hrefs.append(attributes["href"])


def site_root(url: str) -> str:
    """
    Scheme and host of a website URL.

    Raises:
        InvalidInputError: If the URL is not an absolute http(s) URL
    """
    if not url or not isinstance(url, str):
        raise InvalidInputError("URL is required and must be a string")
    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidInputError(f"Invalid URL format: {url}")
    return f"{parsed.scheme}://{parsed.netloc}"


def extract_feed_links(html: str, base_url: str) -> List[str]:
    """Absolute feed URLs advertised by a page's alternate links."""
    parser = _AlternateLinkParser()
    parser.feed(html)
    return [urljoin(base_url, href) for href in parser.hrefs]


async def discover_feed_urls(client: httpx.AsyncClient, url: str) -> Dict[str, Any]:
    """
    Find RSS/Atom feed URLs for a website.

    Parses the page's alternate links, then probes common feed paths.

    Returns:
        ``{"site_url": ..., "rss_urls": [...]}``
    """
    site_url = site_root(url)
    found: Dict[str, None] = {}

    try:
        response = await client.get(
            url,
            headers={"User-Agent": USER_AGENT, "Accept": "text/html,application/xhtml+xml"},
            timeout=PAGE_TIMEOUT,
            follow_redirects=True,
        )
        if response.is_success:
            for feed_url in extract_feed_links(response.text, str(response.url)):
                found.setdefault(feed_url, None)
    except httpx.HTTPError as e:
        logger.warning(f"Error fetching {url}: {str(e)}")

    for path in COMMON_FEED_PATHS:
        feed_url = urljoin(site_url, path)
        if feed_url in found:
            continue
        try:
            response = await client.head(
                feed_url, headers={"User-Agent": USER_AGENT}, timeout=PROBE_TIMEOUT
            )
        except httpx.HTTPError:
            continue
        content_type = response.headers.get("content-type", "")
        if response.is_success and any(kind in content_type for kind in ("xml", "rss", "atom")):
            found.setdefault(feed_url, None)

    rss_urls = list(found)
    logger.info(f"Found {len(rss_urls)} feed URLs for {site_url}")
    return {"site_url": site_url, "rss_urls": rss_urls}


def _text(element: Optional[ElementTree.Element], path: str) -> Optional[str]:
    if element is None:
        return None
    found = element.find(path)
    if found is None:
        return None
    value = (found.text or "").strip()
    return value or None


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_feed(content: bytes) -> Dict[str, Any]:
    """
    Parse RSS 2.0 or Atom content into title, link, item count and latest date.

    Raises:
        ValueError: If the content is not XML or its root is not a feed
    """
    try:
        root = ElementTree.fromstring(content)
    except ElementTree.ParseError as e:
        raise ValueError(f"Feed is not valid XML: {e}")

    if root.tag == "rss":
        channel = root.find("channel")
        items = channel.findall("item") if channel is not None else []
        title = _text(channel, "title")
        link = _text(channel, "link")
        dates = [_parse_date(_text(item, "pubDate")) for item in items]
    elif root.tag == f"{ATOM_NS}feed":
        items = root.findall(f"{ATOM_NS}entry")
        title = _text(root, f"{ATOM_NS}title")
        link_element = root.find(f"{ATOM_NS}link")
        link = link_element.get("href") if link_element is not None else None
        dates = [
            _parse_date(_text(entry, f"{ATOM_NS}updated") or _text(entry, f"{ATOM_NS}published"))
            for entry in items
        ]
    else:
        raise ValueError(f"Unsupported feed root element: {root.tag}")

    dates = [date for date in dates if date is not None]
    return {
        "title": title,
        "site_url": link,
        "item_count": len(items),
        "last_published_at": max(dates).isoformat() if dates else None,
    }


async def validate_feed(
    client: httpx.AsyncClient,
    url: str,
    freshness_days: Optional[float] = DEFAULT_FRESHNESS_DAYS
) -> Dict[str, Any]:
    """
    Fetch and parse a feed. A feed is valid when it has a title and at least one item.

    Fetch and parse failures are reported in the result, not raised.
    """
    site_root(url)
    try:
        response = await client.get(
            url, headers={"User-Agent": USER_AGENT}, timeout=FEED_TIMEOUT, follow_redirects=True
        )
        response.raise_for_status()
        metadata = parse_feed(response.content)
    except httpx.TimeoutException as e:
        return {"ok": False, "error": f"Network error: timed out ({str(e)})"}
    except httpx.HTTPError as e:
        return {"ok": False, "error": f"Network error: {str(e)}"}
    except ValueError as e:
        return {"ok": False, "error": str(e)}

    is_fresh = True
    if metadata["last_published_at"] and freshness_days:
        published = datetime.fromisoformat(metadata["last_published_at"])
        age_days = (datetime.now(timezone.utc) - published).total_seconds() / 86400
        is_fresh = age_days <= freshness_days

    ok = bool(metadata["title"]) and metadata["item_count"] > 0
    return {
        "ok": ok,
        **metadata,
        "is_fresh": is_fresh,
        "error": None if ok else "Feed appears inactive or invalid",
    }


def _candidate_urls(params: Dict[str, Any]) -> List[Dict[str, Any]]:
    candidates = params.get("candidates")
    if candidates is None and params.get("urls") is not None:
        candidates = [{"website_url": url} for url in params["urls"]]
    if candidates is None and params.get("url"):
        candidates = [{"website_url": params["url"]}]
    if not isinstance(candidates, list):
        raise InvalidInputError("discover_feeds requires 'candidates', 'urls' or 'url'")
    return [c for c in candidates if isinstance(c, dict) and (c.get("website_url") or c.get("url"))]


async def discover_feeds(params: Dict[str, Any], transport: Optional[httpx.AsyncBaseTransport] = None) -> Dict[str, Any]:
    """Tool: discover feed URLs for each candidate website.

    Input: ``{"candidates": [{"name": ..., "website_url": ...}]}`` (or ``urls`` / ``url``).
    Output: ``{"feeds": [{..candidate, "site_url", "rss_urls", "error"?}]}``.
    """
    candidates = _candidate_urls(params)

    async with httpx.AsyncClient(transport=transport) as client:
        async def discover(candidate: Dict[str, Any]) -> Dict[str, Any]:
            url = candidate.get("website_url") or candidate.get("url")
            try:
                found = await discover_feed_urls(client, url)
            except InvalidInputError as e:
                return {**candidate, "site_url": url, "rss_urls": [], "error": e.message}
            return {**candidate, **found}

        feeds = await asyncio.gather(*(discover(candidate) for candidate in candidates))

    return {"feeds": list(feeds)}


async def validate_feeds(params: Dict[str, Any], transport: Optional[httpx.AsyncBaseTransport] = None) -> Dict[str, Any]:
    """Tool: validate every discovered feed URL.

    Input: ``{"feeds": [{"rss_urls": [...], ...}], "freshness_days"?: 30}``.
    Output: ``{"feeds": [{..feed, "validations": [{"rss_url", "ok", ...}]}]}``.
    """
    feeds = params.get("feeds")
    if not isinstance(feeds, list):
        raise InvalidInputError("validate_feeds requires a 'feeds' list")
    freshness_days = params.get("freshness_days", DEFAULT_FRESHNESS_DAYS)

    async with httpx.AsyncClient(transport=transport) as client:
        async def validate(rss_url: str) -> Dict[str, Any]:
            try:
                result = await validate_feed(client, rss_url, freshness_days)
            except InvalidInputError as e:
                result = {"ok": False, "error": e.message}
            return {"rss_url": rss_url, **result}

        results = []
        for feed in feeds:
            if not isinstance(feed, dict):
                continue
            rss_urls = feed.get("rss_urls") or ([feed["rss_url"]] if feed.get("rss_url") else [])
            validations = await asyncio.gather(*(validate(url) for url in rss_urls))
            results.append({**feed, "validations": list(validations)})

    return {"feeds": results}
