import unittest

import httpx

from booksource.extractor import (
    content_rule_with_default,
    decode_content,
    fetch_page,
    get_book_info,
    get_chapter_list,
    get_content,
)
from booksource.models import Book, Source
from booksource.request import RequestSpec

GB_TEXT = "章节内容"
GB_BYTES = bytes.fromhex("d5c2bddac4dac8dd")


def chapter_page(body, next_href=None):
    link = f'<a id="next" href="{next_href}">Next</a>' if next_href else ""
    return f'<html><body><div id="content"><p>{body}</p></div>{link}</body></html>'


def make_client(pages, requested, status=None):
    """An AsyncClient answering from ``pages`` (path -> html) and recording URLs."""
    status = status or {}

    def handler(request):
        requested.append(str(request.url))
        path = request.url.path
        if path not in pages:
            return httpx.Response(404, text="missing")
        return httpx.Response(status.get(path, 200), content=pages[path].encode("utf-8"))

    return httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)


CONTENT_SOURCE = Source.model_validate(
    {
        "bookSourceUrl": "https://s.com",
        "ruleContent": {"content": "id.content", "nextContentUrl": "id.next@href"},
    }
)


class TestDecodeContent(unittest.TestCase):

    def test_declared_charset(self):
        self.assertEqual(decode_content(GB_BYTES, "gbk"), GB_TEXT)

    def test_falls_back_to_gb18030(self):
        self.assertEqual(decode_content(GB_BYTES, None), GB_TEXT)
        self.assertEqual(decode_content(GB_BYTES, "utf-8"), GB_TEXT)

    def test_unknown_charset_is_skipped(self):
        self.assertEqual(decode_content(GB_BYTES, "no-such-charset"), GB_TEXT)

    def test_latin1_last_resort(self):
        self.assertEqual(decode_content(b"\xff", None), "\xff")

    def test_utf8(self):
        self.assertEqual(decode_content("中文".encode("utf-8")), "中文")


class TestContentRuleDefault(unittest.TestCase):

    def test_plain_alternatives_get_html(self):
        self.assertEqual(content_rule_with_default("id.content||class.text"), "id.content@html||class.text@html")

    def test_affix_stays_last(self):
        self.assertEqual(content_rule_with_default("id.content##ad##"), "id.content@html##ad##")

    def test_explicit_rules_untouched(self):
        for rule in ("id.content@text", "@js:result", "//div[@id='c']", "$.content"):
            self.assertEqual(content_rule_with_default(rule), rule)


class TestFetchPage(unittest.IsolatedAsyncioTestCase):

    async def test_charset_from_header(self):
        def handler(request):
            return httpx.Response(200, content=GB_BYTES, headers={"Content-Type": "text/html; charset=gbk"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            page = await fetch_page(client, RequestSpec(method="GET", url="https://s.com/a"))
        self.assertEqual(page.text, GB_TEXT)
        self.assertEqual(page.url, "https://s.com/a")

    async def test_http_error_is_none(self):
        async with make_client({}, []) as client:
            with self.assertLogs("booksource.extractor", level="WARNING"):
                page = await fetch_page(client, RequestSpec(method="GET", url="https://s.com/missing"))
        self.assertIsNone(page)

    async def test_connection_error_is_none(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with self.assertLogs("booksource.extractor", level="WARNING"):
                page = await fetch_page(client, RequestSpec(method="GET", url="https://s.com/a"))
        self.assertIsNone(page)


    async def test_unencodable_header_is_none(self):
        async with make_client({"/a": "ok"}, []) as client:
            with self.assertLogs("booksource.extractor", level="WARNING"):
                page = await fetch_page(client, RequestSpec(method="GET", url="https://s.com/a", headers={"X-Title": "书"}))
        self.assertIsNone(page)


class TestGetContent(unittest.IsolatedAsyncioTestCase):

    async def test_non_ascii_source_header(self):
        source = Source.model_validate(
            {
                "bookSourceUrl": "https://s.com",
                "header": '{"Referer": "https://s.com/书"}',
                "ruleContent": {"content": "id.content"},
            }
        )
        referers = []

        def handler(request):
            referers.append(request.headers["referer"])
            return httpx.Response(200, text=chapter_page("Body"))

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            content = await get_content(source, "https://s.com/c/1.html", client=client, delay=0)
        self.assertEqual(referers, ["https://s.com/%E4%B9%A6"])
        self.assertEqual(content.text, "　　Body")

    async def test_follows_pages_until_next_chapter(self):
        pages = {
            "/c/1.html": chapter_page("Part one", "/c/1_2.html"),
            "/c/1_2.html": chapter_page("Part two", "/c/2.html"),
            "/c/2.html": chapter_page("Next chapter"),
        }
        requested = []
        async with make_client(pages, requested) as client:
            content = await get_content(
                CONTENT_SOURCE, "https://s.com/c/1.html", "https://s.com/c/2.html", client=client, delay=0
            )
        self.assertEqual(content.text, "　　Part one\n　　Part two")
        self.assertEqual(content.pages, ["https://s.com/c/1.html", "https://s.com/c/1_2.html"])
        self.assertNotIn("https://s.com/c/2.html", requested)

    async def test_self_cycle_terminates(self):
        pages = {"/c/1.html": chapter_page("Only", "/c/1.html")}
        requested = []
        async with make_client(pages, requested) as client:
            content = await get_content(CONTENT_SOURCE, "https://s.com/c/1.html", client=client, delay=0)
        self.assertEqual(requested, ["https://s.com/c/1.html"])
        self.assertEqual(content.text, "　　Only")

    async def test_longer_cycle_terminates(self):
        pages = {
            "/a": chapter_page("A", "/b"),
            "/b": chapter_page("B", "/a"),
        }
        requested = []
        async with make_client(pages, requested) as client:
            content = await get_content(CONTENT_SOURCE, "https://s.com/a", client=client, delay=0)
        self.assertEqual(len(requested), 2)
        self.assertEqual(content.text, "　　A\n　　B")

    async def test_transport_error_keeps_accumulated_body(self):
        pages = {
            "/c/1.html": chapter_page("Part one", "/c/1_2.html"),
            "/c/1_2.html": chapter_page("Part two"),
        }
        async with make_client(pages, [], status={"/c/1_2.html": 500}) as client:
            with self.assertLogs("booksource.extractor", level="WARNING"):
                content = await get_content(CONTENT_SOURCE, "https://s.com/c/1.html", client=client, delay=0)
        self.assertEqual(content.text, "　　Part one")
        self.assertEqual(content.pages, ["https://s.com/c/1.html"])

    async def test_unbuildable_next_url_stops(self):
        pages = {"/c/1.html": chapter_page("Part one", "javascript:void(0)")}
        async with make_client(pages, []) as client:
            with self.assertLogs("booksource.extractor", level="WARNING"):
                content = await get_content(CONTENT_SOURCE, "https://s.com/c/1.html", client=client, delay=0)
        self.assertEqual(content.text, "　　Part one")

    async def test_replace_regex_applied(self):
        source = Source.model_validate(
            {
                "bookSourceUrl": "https://s.com",
                "ruleContent": {"content": "id.content", "replaceRegex": "one##1"},
            }
        )
        pages = {"/c/1.html": chapter_page("Part one", "/c/1_2.html")}
        async with make_client(pages, []) as client:
            content = await get_content(source, "https://s.com/c/1.html", client=client, delay=0)
        self.assertEqual(content.text, "　　Part 1")

    async def test_no_content_rule(self):
        source = Source(url="https://s.com")
        content = await get_content(source, "https://s.com/c/1.html", delay=0)
        self.assertEqual(content.text, "")
        self.assertEqual(content.pages, [])


TOC_SOURCE = Source.model_validate(
    {
        "bookSourceUrl": "https://s.com",
        "ruleBookInfo": {
            "init": "class.info",
            "name": "tag.h1@text",
            "author": "class.author@text",
            "coverUrl": "img@src",
            "tocUrl": "class.toc@href",
        },
        "ruleToc": {
            "chapterList": "class.chapters@tag.li",
            "chapterName": "text",
            "chapterUrl": "a@href",
            "isVolume": "data-volume",
            "nextTocUrl": "id.more@href",
        },
    }
)

DETAIL_PAGE = """
<html><body><div class="info">
<h1> Real Name </h1><p class="author">Someone</p>
<img src="/cover.jpg"><a class="toc" href="/toc/1">All chapters</a>
</div></body></html>
"""

TOC_PAGE_1 = """
<html><body><ul class="chapters">
<li data-volume="true">Volume 1</li>
<li><a href="/c/1.html">Chapter 1</a></li>
<li><a href="/c/2.html">Chapter 2</a></li>
</ul><a id="more" href="/toc/2">More</a></body></html>
"""

TOC_PAGE_2 = """
<html><body><ul class="chapters">
<li><a href="/c/3.html">Chapter 3</a></li>
</ul><a id="more" href="/toc/1">Back</a></body></html>
"""


class TestBookPages(unittest.IsolatedAsyncioTestCase):

    async def test_book_info(self):
        book = Book(name="", book_url="https://s.com/book/1", origin="https://s.com")
        async with make_client({"/book/1": DETAIL_PAGE}, []) as client:
            info = await get_book_info(TOC_SOURCE, book, client=client)
        self.assertEqual(info.name, "Real Name")
        self.assertEqual(info.author, "Someone")
        self.assertEqual(info.cover_url, "https://s.com/cover.jpg")
        self.assertEqual(info.toc_url, "https://s.com/toc/1")

    async def test_book_info_fetch_failure_returns_book(self):
        book = Book(name="Kept", book_url="https://s.com/book/404", origin="https://s.com")
        async with make_client({}, []) as client:
            with self.assertLogs("booksource.extractor", level="WARNING"):
                info = await get_book_info(TOC_SOURCE, book, client=client)
        self.assertEqual(info, book)

    async def test_chapter_list_across_pages(self):
        book = Book(name="A", book_url="https://s.com/book/1", origin="https://s.com", toc_url="https://s.com/toc/1")
        requested = []
        pages = {"/toc/1": TOC_PAGE_1, "/toc/2": TOC_PAGE_2}
        async with make_client(pages, requested) as client:
            chapters = await get_chapter_list(TOC_SOURCE, book, client=client)
        self.assertEqual([c.title for c in chapters], ["Volume 1", "Chapter 1", "Chapter 2", "Chapter 3"])
        self.assertEqual([c.index for c in chapters], [0, 1, 2, 3])
        self.assertTrue(chapters[0].is_volume)
        self.assertFalse(chapters[1].is_volume)
        self.assertEqual(chapters[3].url, "https://s.com/c/3.html")
        self.assertEqual(len(requested), 2)

    async def test_reversed_chapter_list(self):
        source = Source.model_validate(
            {
                "bookSourceUrl": "https://s.com",
                "ruleToc": {"chapterList": "-class.chapters@tag.li", "chapterName": "text", "chapterUrl": "a@href"},
            }
        )
        book = Book(name="A", book_url="https://s.com/toc/2", origin="https://s.com")
        page = '<ul class="chapters"><li><a href="/c/2">Two</a></li><li><a href="/c/1">One</a></li></ul>'
        async with make_client({"/toc/2": page}, []) as client:
            chapters = await get_chapter_list(source, book, client=client)
        self.assertEqual([c.title for c in chapters], ["One", "Two"])

    async def test_untitled_chapters_keep_their_place(self):
        source = Source.model_validate(
            {
                "bookSourceUrl": "https://s.com",
                "ruleToc": {"chapterList": "#list a", "chapterName": "a@text", "chapterUrl": "a@href"},
            }
        )
        book = Book(name="A", book_url="https://s.com/toc", origin="https://s.com")
        page = '<div id="list"><a href="/c/1">One</a><a href="/c/2"></a><a href="/c/3">Three</a></div>'
        async with make_client({"/toc": page}, []) as client:
            chapters = await get_chapter_list(source, book, client=client)
        self.assertEqual([c.title for c in chapters], ["One", "", "Three"])
        self.assertEqual([c.index for c in chapters], [0, 1, 2])
        self.assertEqual(chapters[2].url, "https://s.com/c/3")


if __name__ == "__main__":
    unittest.main()
