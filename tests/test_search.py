import asyncio
import unittest

import httpx

from booksource.models import Source
from booksource.search import (
    explore_books,
    explore_entries,
    explore_rule,
    parse_book_list,
    search_books,
    searchable,
)
from booksource.rules import RuleInterpreter

RESULTS_PAGE = """
<html><body><ul class="results">
<li><a class="name" href="/book/1">First Book</a><span class="author">Ann</span><img src="/c/1.jpg"></li>
<li><a class="name" href="https://cdn.other.com/book/2">Second Book</a><span class="author">Bob</span></li>
<li><a class="name">No link</a></li>
<li><span class="author">No name</span><a class="name" href="/book/4"></a></li>
</ul></body></html>
"""

EMPTY_PAGE = '<html><body><ul class="results"></ul></body></html>'


def make_source(host, **fields):
    data = {
        "bookSourceUrl": f"https://{host}",
        "bookSourceName": host,
        "searchUrl": "/search?q={{key}}",
        "ruleSearch": {
            "bookList": "class.results@tag.li",
            "name": "class.name@text",
            "author": "class.author@text",
            "bookUrl": "class.name@href",
            "coverUrl": "img@src",
        },
    }
    data.update(fields)
    return Source.model_validate(data)


class TestParseBookList(unittest.TestCase):

    def test_incomplete_candidates_are_dropped(self):
        source = make_source("a.com")
        books = parse_book_list(RuleInterpreter(source), RESULTS_PAGE, source.rule_search)
        self.assertEqual([b.name for b in books], ["First Book", "Second Book"])
        first, second = books
        self.assertEqual(first.book_url, "https://a.com/book/1")
        self.assertEqual(first.cover_url, "https://a.com/c/1.jpg")
        self.assertEqual(first.author, "Ann")
        self.assertEqual(first.origin, "https://a.com")
        self.assertEqual(first.origin_name, "a.com")
        self.assertEqual(second.book_url, "https://cdn.other.com/book/2")
        self.assertIsNone(second.cover_url)


class TestSearchable(unittest.TestCase):

    def test_filters_and_orders(self):
        sources = [
            make_source("low.com", weight=1),
            make_source("off.com", enabled=False),
            make_source("high.com", weight=9),
            make_source("nosearch.com", searchUrl=None),
        ]
        self.assertEqual([s.url for s in searchable(sources)], ["https://high.com", "https://low.com"])


class TestSearchBooks(unittest.IsolatedAsyncioTestCase):

    async def collect(self, sources, handler):
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return [batch async for batch in search_books("book", sources, client=client)]

    async def test_one_batch_per_non_empty_source(self):
        requested = []

        def handler(request):
            requested.append(request.url.host)
            if request.url.host == "empty.com":
                return httpx.Response(200, text=EMPTY_PAGE)
            if request.url.host == "down.com":
                return httpx.Response(503)
            return httpx.Response(200, text=RESULTS_PAGE)

        sources = [
            make_source("a.com"),
            make_source("b.com"),
            make_source("empty.com"),
            make_source("down.com"),
            make_source("off.com", enabled=False),
        ]
        batches = await self.collect(sources, handler)
        self.assertEqual(len(batches), 2)
        self.assertEqual(sorted(batch[0].origin for batch in batches), ["https://a.com", "https://b.com"])
        self.assertNotIn("off.com", requested)

    async def test_keyword_is_encoded(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, text=EMPTY_PAGE)

        await self.collect([make_source("a.com")], handler)
        self.assertEqual(seen, ["https://a.com/search?q=book"])

    async def test_unbuildable_source_is_skipped(self):
        def handler(request):
            return httpx.Response(200, text=RESULTS_PAGE)

        sources = [make_source("a.com"), make_source("bad.com", searchUrl="ftp://bad.com/{{key}}")]
        batches = await self.collect(sources, handler)
        self.assertEqual(len(batches), 1)

    async def test_no_sources(self):
        self.assertEqual(await self.collect([], lambda request: httpx.Response(200)), [])

    async def test_closing_early_cancels_pending_sources(self):
        release = asyncio.Event()
        cancelled = []

        async def handler(request):
            if request.url.host == "fast.com":
                return httpx.Response(200, text=RESULTS_PAGE)
            try:
                await release.wait()
            except asyncio.CancelledError:
                cancelled.append(request.url.host)
                raise
            return httpx.Response(200, text=RESULTS_PAGE)

        sources = [make_source("fast.com"), make_source("slow.com")]
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            stream = search_books("book", sources, client=client)
            first = await stream.__anext__()
            await stream.aclose()
        self.assertEqual(first[0].origin, "https://fast.com")
        self.assertEqual(cancelled, ["slow.com"])


class TestExplore(unittest.IsolatedAsyncioTestCase):

    def test_entries(self):
        source = make_source("a.com", exploreUrl="Hot::/hot/{{page}}&&New::/new\n/all")
        self.assertEqual(
            explore_entries(source),
            [("Hot", "/hot/{{page}}"), ("New", "/new"), ("/all", "/all")],
        )

    def test_rule_falls_back_to_search_fields(self):
        source = make_source("a.com", ruleExplore={"bookList": "class.results@tag.li", "name": "a@text"})
        rule = explore_rule(source)
        self.assertEqual(rule.name, "a@text")
        self.assertEqual(rule.book_url, "class.name@href")

    async def test_explore_books(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, text=RESULTS_PAGE)

        source = make_source("a.com", exploreUrl="Hot::/hot/{{page}}")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            books = await explore_books(source, "/hot/{{page}}", client=client, page=2)
        self.assertEqual(seen, ["https://a.com/hot/2"])
        self.assertEqual(len(books), 2)

    async def test_explore_disabled(self):
        source = make_source("a.com", enabledExplore=False)
        self.assertEqual(await explore_books(source, "/hot"), [])


if __name__ == "__main__":
    unittest.main()
