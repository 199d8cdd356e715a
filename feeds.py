"""Async RSS feed collection module.

This module handles concurrent fetching and parsing of RSS feeds and
turns their entries into RawSourceItem objects for curation.

Features:
    - Concurrent fetching with connection pooling
    - SSL certificate handling with fallback
    - Deduplication by link (fallback: title), newest first, capped
    - Optional region keyword filter with fallback to the full list

Error Handling Strategy:
    - Individual feed failures don't affect other feeds
    - SSL errors trigger a retry without verification
    - Parse errors result in an empty item list for that feed
    - A run only fails if *every* feed comes back empty
"""

import asyncio
import logging
import re
from datetime import datetime, timezone

import aiohttp
import feedparser

from models.source import RawSourceItem
from tools.utils import USER_AGENT, create_ssl_context

logger = logging.getLogger(__name__)

MAX_ITEMS_PER_FEED = 20

# Region codes mapped to keywords that identify regional stories
REGION_KEYWORDS: dict[str, list[str]] = {
    "ap": ["Andhra Pradesh", "AP", "Hyderabad", "Vijayawada"],
    "ar": ["Arunachal Pradesh", "Itanagar"],
    "as": ["Assam", "Guwahati", "Assamese"],
    "br": ["Bihar", "Patna", "Bihari"],
    "cg": ["Chhattisgarh", "Raipur"],
    "ga": ["Goa", "Panaji"],
    "gj": ["Gujarat", "Ahmedabad", "Gujarati"],
    "hr": ["Haryana", "Chandigarh", "Gurugram"],
    "hp": ["Himachal Pradesh", "Shimla"],
    "jk": ["Jammu", "Kashmir", "Srinagar", "J&K"],
    "jh": ["Jharkhand", "Ranchi"],
    "ka": ["Karnataka", "Bangalore", "Bengaluru", "Kannada"],
    "kl": ["Kerala", "Thiruvananthapuram", "Kochi", "Malayalam"],
    "mp": ["Madhya Pradesh", "Bhopal"],
    "mh": ["Maharashtra", "Mumbai", "Pune", "Marathi"],
    "mn": ["Manipur", "Imphal"],
    "ml": ["Meghalaya", "Shillong"],
    "mz": ["Mizoram", "Aizawl"],
    "nl": ["Nagaland", "Kohima"],
    "od": ["Odisha", "Bhubaneswar", "Odia"],
    "pb": ["Punjab", "Chandigarh", "Punjabi"],
    "rj": ["Rajasthan", "Jaipur"],
    "sk": ["Sikkim", "Gangtok"],
    "tn": ["Tamil Nadu", "Chennai", "Tamil"],
    "tg": ["Telangana", "Hyderabad", "Telugu"],
    "tr": ["Tripura", "Agartala"],
    "up": ["Uttar Pradesh", "Lucknow"],
    "uk": ["Uttarakhand", "Dehradun"],
    "wb": ["West Bengal", "Kolkata", "Bengali"],
    "dl": ["Delhi", "New Delhi"],
    "ch": ["Chandigarh"],
    "ld": ["Lakshadweep"],
    "py": ["Puducherry", "Pondicherry"],
}


def region_keywords(region: str | None) -> list[str]:
    """Keywords for a region given as a code ("ka") or name ("Karnataka")."""
    if not region:
        return []
    key = region.strip().lower()
    if key in REGION_KEYWORDS:
        return REGION_KEYWORDS[key]
    for keywords in REGION_KEYWORDS.values():
        if keywords[0].lower() == key:
            return keywords
    return [region.strip()]


def _parse_date(entry: dict) -> datetime | None:
    """Extract publication date from feed entry.

    Tries multiple date fields in order of preference:
    1. published_parsed - Standard RSS pubDate
    2. updated_parsed - Atom updated timestamp
    3. created_parsed - Less common creation date

    Returns:
        Datetime in UTC, or None if no valid date found
    """
    for field in ("published_parsed", "updated_parsed", "created_parsed"):
        time_tuple = entry.get(field)
        if time_tuple:
            try:
                return datetime(*time_tuple[:6], tzinfo=timezone.utc)
            except (TypeError, ValueError):
                continue
    return None


async def _fetch_feed(
    session: aiohttp.ClientSession,
    url: str,
    timeout: int,
    verify_ssl: bool = True,
) -> str | None:
    """Fetch feed content from URL with SSL fallback.

    On SSL certificate errors, automatically retries without verification.

    Returns:
        Feed content as string, or None on any error
    """
    try:
        async with session.get(
            url,
            timeout=aiohttp.ClientTimeout(total=timeout),
            headers={"User-Agent": USER_AGENT},
            ssl=create_ssl_context(verify_ssl),
        ) as resp:
            if resp.status != 200:
                if resp.status >= 500:
                    logger.warning("Feed %s: server error HTTP %d", url, resp.status)
                else:
                    logger.debug("Feed %s: HTTP %d", url, resp.status)
                return None
            return await resp.text()
    except aiohttp.ClientSSLError as e:
        if verify_ssl:
            logger.debug("Feed %s: SSL error, retrying without verification", url)
            return await _fetch_feed(session, url, timeout, verify_ssl=False)
        logger.warning("Feed %s: SSL verification failed after retry: %s", url, e)
        return None
    except asyncio.TimeoutError:
        logger.warning("Feed %s: request timed out after %ds", url, timeout)
        return None
    except Exception as e:
        logger.warning("Feed %s: %s: %s", url, type(e).__name__, e)
        return None


def parse_feed_content(content: str, source_url: str, limit: int = MAX_ITEMS_PER_FEED) -> list[RawSourceItem]:
    """Parse feed content into RawSourceItem objects.

    Entries without titles are skipped; at most `limit` entries are kept
    per feed.

    Args:
        content: Raw feed content (XML/RSS/Atom)
        source_url: URL of the feed
        limit: Maximum entries to keep

    Returns:
        List of RawSourceItem objects (may be empty)
    """
    feed = feedparser.parse(content)
    source_name = feed.feed.get("title", "") if hasattr(feed, "feed") else ""
    items = []

    for entry in feed.entries:
        title = (entry.get("title") or "").strip()
        if not title:
            continue
        items.append(RawSourceItem(
            title=title,
            link=(entry.get("link") or "").strip() or None,
            description=entry.get("description", "") or entry.get("summary", ""),
            published_at=_parse_date(entry),
            source=source_name or source_url,
        ))
        if len(items) >= limit:
            break

    return items


async def _parse_feed(session: aiohttp.ClientSession, url: str, timeout: int) -> list[RawSourceItem]:
    """Fetch and parse a single feed. Returns empty list on any error."""
    content = await _fetch_feed(session, url, timeout)
    if not content:
        return []
    return parse_feed_content(content, url)


async def fetch_all_feeds(
    urls: list[str],
    timeout: int = 30,
    max_concurrent: int = 10,
) -> list[RawSourceItem]:
    """Fetch and parse all feeds concurrently.

    Individual feed failures are logged but don't affect other feeds.

    Args:
        urls: Feed URLs to fetch
        timeout: Request timeout per feed in seconds
        max_concurrent: Maximum concurrent TCP connections

    Returns:
        Combined list of items from all successful feeds (not deduplicated)
    """
    connector = aiohttp.TCPConnector(limit=max_concurrent)

    async with aiohttp.ClientSession(connector=connector) as session:
        tasks = [_parse_feed(session, url, timeout) for url in urls]
        results = await asyncio.gather(*tasks, return_exceptions=True)

    items = []
    errors = 0
    for i, result in enumerate(results):
        if isinstance(result, Exception):
            logger.warning("Feed error %s: %s (%s)", urls[i], result, type(result).__name__)
            errors += 1
        elif result:
            items.extend(result)
            logger.debug("Feed %s: %d items", urls[i], len(result))

    logger.info("Feeds fetched | items=%d feeds=%d errors=%d", len(items), len(urls), errors)
    return items


def dedupe_items(items: list[RawSourceItem]) -> list[RawSourceItem]:
    """Drop duplicates by link (fallback: title); first occurrence wins."""
    seen: set[str] = set()
    unique = []
    for item in items:
        key = item.dedup_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(item)
    return unique


def newest_first(items: list[RawSourceItem], limit: int) -> list[RawSourceItem]:
    """Sort by publication time (undated last) and keep the first `limit`."""
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    ordered = sorted(items, key=lambda i: i.published_at or epoch, reverse=True)
    return ordered[:limit]


def filter_by_region(items: list[RawSourceItem], region: str | None) -> list[RawSourceItem]:
    """Keep items mentioning the region; fall back to all items if none do."""
    keywords = region_keywords(region)
    if not keywords:
        return items
    pattern = re.compile(r"\b(" + "|".join(re.escape(k) for k in keywords) + r")\b", re.IGNORECASE)
    matched = [i for i in items if pattern.search(i.title) or pattern.search(i.plain_description)]
    if not matched:
        logger.warning("No items matched region, using unfiltered list | region=%s items=%d", region, len(items))
        return items
    logger.info("Region filter applied | region=%s kept=%d of=%d", region, len(matched), len(items))
    return matched


async def collect_raw_items(
    urls: list[str],
    max_items: int = 50,
    region: str | None = None,
    timeout: int = 30,
    max_concurrent: int = 10,
) -> list[RawSourceItem]:
    """Fetch feeds and prepare raw items for curation.

    Steps: fetch all feeds, dedupe, sort newest first, cap at max_items,
    then apply the optional region filter.

    Example:
        >>> items = await collect_raw_items(config.feeds_for("sports"), max_items=50)
        >>> len(items) <= 50
        True
    """
    fetched = await fetch_all_feeds(urls, timeout=timeout, max_concurrent=max_concurrent)
    unique = dedupe_items(fetched)
    items = newest_first(unique, max_items)
    logger.info("Raw items prepared | fetched=%d unique=%d kept=%d", len(fetched), len(unique), len(items))
    return filter_by_region(items, region)
