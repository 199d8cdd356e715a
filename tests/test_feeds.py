import os
import sys
import unittest
from datetime import datetime, timezone
from unittest import mock

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import feeds  # noqa: E402
from feeds import (  # noqa: E402
    collect_raw_items,
    dedupe_items,
    filter_by_region,
    newest_first,
    parse_feed_content,
    region_keywords,
)
from models.source import RawSourceItem  # noqa: E402

RSS = """<?xml version="1.0"?>
<rss version="2.0"><channel><title>Example News</title>
<item><title>Budget passed</title><link>https://example.com/a</link>
<description>&lt;p&gt;Parliament &lt;b&gt;passed&lt;/b&gt; the budget.&lt;/p&gt;</description>
<pubDate>Fri, 10 Jan 2025 08:00:00 GMT</pubDate></item>
<item><title></title><link>https://example.com/empty</link></item>
<item><title>Rain in Bengaluru</title><link>https://example.com/b</link>
<description>Karnataka braces for rain.</description></item>
</channel></rss>"""


def raw(title: str, link: str | None = None, hour: int | None = None, description: str = "") -> RawSourceItem:
    published = datetime(2025, 1, 10, hour, tzinfo=timezone.utc) if hour is not None else None
    return RawSourceItem(title=title, link=link, published_at=published, description=description)


class ParseFeedTests(unittest.TestCase):
    def test_parse_skips_untitled_entries(self) -> None:
        items = parse_feed_content(RSS, "https://example.com/rss")
        self.assertEqual([i.title for i in items], ["Budget passed", "Rain in Bengaluru"])
        self.assertEqual(items[0].source, "Example News")
        self.assertEqual(items[0].published_at, datetime(2025, 1, 10, 8, tzinfo=timezone.utc))
        self.assertIsNone(items[1].published_at)
        self.assertEqual(items[0].plain_description, "Parliament passed the budget.")

    def test_parse_respects_limit(self) -> None:
        self.assertEqual(len(parse_feed_content(RSS, "u", limit=1)), 1)

    def test_garbage_content_yields_nothing(self) -> None:
        self.assertEqual(parse_feed_content("not a feed", "u"), [])


class PrepareItemsTests(unittest.TestCase):
    def test_dedupe_by_link_then_title(self) -> None:
        items = [
            raw("A", "https://x/1"),
            raw("A copy", "https://x/1"),
            raw("Same Title"),
            raw("same   title"),
            raw("Other"),
        ]
        self.assertEqual([i.title for i in dedupe_items(items)], ["A", "Same Title", "Other"])

    def test_newest_first_puts_undated_last_and_caps(self) -> None:
        items = [raw("old", hour=1), raw("undated"), raw("new", hour=9), raw("mid", hour=5)]
        self.assertEqual([i.title for i in newest_first(items, 3)], ["new", "mid", "old"])

    def test_region_filter_matches_name_or_code(self) -> None:
        items = [raw("Rain in Bengaluru"), raw("Delhi traffic"), raw("Quiet day", description="Karnataka polls")]
        self.assertEqual([i.title for i in filter_by_region(items, "ka")], ["Rain in Bengaluru", "Quiet day"])
        self.assertEqual(region_keywords("Karnataka"), region_keywords("KA"))

    def test_region_filter_falls_back_when_nothing_matches(self) -> None:
        items = [raw("Delhi traffic")]
        self.assertEqual(filter_by_region(items, "Kerala"), items)
        self.assertEqual(filter_by_region(items, None), items)


class CollectTests(unittest.IsolatedAsyncioTestCase):
    async def test_collect_dedupes_sorts_caps_and_filters(self) -> None:
        fetched = [
            raw("Old Bengaluru news", "https://x/1", hour=1),
            raw("Fresh Bengaluru news", "https://x/2", hour=9),
            raw("Fresh Bengaluru news", "https://x/2", hour=9),
            raw("Mumbai rains", "https://x/3", hour=8),
        ]
        with mock.patch.object(feeds, "fetch_all_feeds", mock.AsyncMock(return_value=fetched)) as fetch:
            items = await collect_raw_items(["https://feed"], max_items=2, region="Karnataka")
        fetch.assert_awaited_once()
        self.assertEqual([i.title for i in items], ["Fresh Bengaluru news"])

    async def test_collect_returns_empty_when_all_feeds_fail(self) -> None:
        with mock.patch.object(feeds, "fetch_all_feeds", mock.AsyncMock(return_value=[])):
            self.assertEqual(await collect_raw_items(["https://feed"]), [])


if __name__ == "__main__":
    unittest.main()
