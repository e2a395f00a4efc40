"""Fetching pages and extracting one book from a source.

This module holds the per-book side of retrieval: it downloads a page
for a :class:`~booksource.request.RequestSpec`, decodes it with a
charset ladder and applies the source's rules to get the book details,
the table of contents and the body of a chapter. Chapter bodies and
tables of contents may span several pages. Those are followed one page
at a time until the rules stop pointing at a new page.

Like the rest of the package these functions are resilient: a failed
request, an undecodable page or a URL that cannot be built ends the
crawl with whatever has been collected so far instead of raising.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

import httpx

from . import config
from .models import Book, Chapter, Content, Source
from .normalizer import ContentNormalizer
from .request import RequestBuildError, RequestSpec, build_request
from .rules import RuleInterpreter, Subject, split_outside_scripts
from .script import ScriptBridge

logger = logging.getLogger(__name__)

_LEGACY_FALLBACKS = ("gb18030", "utf-8", "latin-1")


@dataclass(frozen=True)
class Page:
    """A decoded response body and the URL it was finally served from."""

    text: str
    url: str


@asynccontextmanager
async def client_scope(client: Optional[httpx.AsyncClient] = None) -> AsyncIterator[httpx.AsyncClient]:
    """Use ``client`` when given, otherwise a short-lived client of our own."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(follow_redirects=True, timeout=config.REQUEST_TIMEOUT) as owned:
        yield owned


def decode_content(data: bytes, declared: Optional[str] = None) -> Optional[str]:
    """Decode ``data`` trying the declared charset first.

    The ladder is: declared charset (UTF-8 when nothing is declared),
    GB18030, UTF-8, Latin-1. Each rung decodes strictly and the first
    success wins. Unknown charset names are skipped. ``None`` means no
    rung could decode the bytes.
    """
    ladder: List[str] = []
    for name in (declared or "utf-8", *_LEGACY_FALLBACKS):
        try:
            codec = codecs.lookup(name).name
        except LookupError:
            logger.debug("Skipping unknown charset %r", name)
            continue
        if codec not in ladder:
            ladder.append(codec)
    for codec in ladder:
        try:
            return data.decode(codec)
        except UnicodeDecodeError:
            continue
    return None


async def fetch_page(client: httpx.AsyncClient, spec: RequestSpec) -> Optional[Page]:
    """Send ``spec`` and decode the response.

    Returns ``None`` instead of raising on transport errors, non-2xx
    statuses and undecodable bodies.
    """
    try:
        request = spec.to_httpx()
    except (httpx.InvalidURL, UnicodeEncodeError) as exc:
        logger.warning("Cannot send %s %s: %s", spec.method, spec.url, exc)
        return None
    try:
        response = await client.send(request)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("Request %s %s failed: %s", spec.method, spec.url, exc)
        return None
    text = decode_content(response.content, spec.charset or response.charset_encoding)
    if text is None:
        logger.warning("Could not decode response from %s", spec.url)
        return None
    return Page(text=text, url=str(response.url))


def field_text(interpreter: RuleInterpreter, subject: Subject, rule: Optional[str], base_url: str) -> str:
    """Text for an optional rule field ("" when the field has no rule)."""
    if not rule:
        return ""
    return interpreter.text(subject, rule, base_url).strip()


def field_url(interpreter: RuleInterpreter, subject: Subject, rule: Optional[str], base_url: str) -> str:
    if not rule:
        return ""
    # Multi-valued results (XPath) keep only the first line.
    value = interpreter.url(subject, rule, base_url).strip()
    return value.splitlines()[0].strip() if value else ""


async def _request_page(
    http: httpx.AsyncClient,
    url: str,
    source: Source,
    bridge: Optional[ScriptBridge],
) -> Optional[Page]:
    try:
        spec = build_request(url, source, bridge=bridge)
    except RequestBuildError as exc:
        logger.warning("Cannot request %r on %s: %s", url, source.url, exc)
        return None
    return await fetch_page(http, spec)


async def get_book_info(
    source: Source,
    book: Book,
    client: Optional[httpx.AsyncClient] = None,
    bridge: Optional[ScriptBridge] = None,
) -> Book:
    """Complete ``book`` from its detail page.

    Fields are only overwritten with non-empty values. The returned book
    always has a ``toc_url``: the one found by the rules, the one it
    already had, or the detail page itself.
    """
    rule = source.rule_book_info
    if rule is None:
        return book
    async with client_scope(client) as http:
        page = await _request_page(http, book.book_url, source, bridge)
    if page is None:
        return book

    interpreter = RuleInterpreter(source, bridge)
    root: Subject = page.text
    if rule.init:
        found = interpreter.elements(page.text, rule.init, page.url)
        if found:
            root = found[0]

    updates = {}
    for name, field_rule in (
        ("name", rule.name),
        ("author", rule.author),
        ("intro", rule.intro),
        ("kind", rule.kind),
        ("latest_chapter_title", rule.last_chapter),
    ):
        value = field_text(interpreter, root, field_rule, page.url)
        if value:
            updates[name] = value
    cover = field_url(interpreter, root, rule.cover_url, page.url)
    if cover:
        updates["cover_url"] = cover
    toc_url = field_url(interpreter, root, rule.toc_url, page.url)
    updates["toc_url"] = toc_url or book.toc_url or page.url
    return book.model_copy(update=updates)


def _is_true(value: str) -> bool:
    return value.strip().lower() in ("true", "1")


async def get_chapter_list(
    source: Source,
    book: Book,
    client: Optional[httpx.AsyncClient] = None,
    bridge: Optional[ScriptBridge] = None,
) -> List[Chapter]:
    """Collect the table of contents, following ``nextTocUrl`` pages.

    A chapter list rule starting with ``-`` lists chapters newest first;
    each page is reversed so that indexes still run in reading order.
    Every selected element is kept, even when its title comes out empty.
    """
    rule = source.rule_toc
    if rule is None or not rule.chapter_list:
        return []
    list_rule = rule.chapter_list
    reverse = list_rule.startswith("-")
    if reverse:
        list_rule = list_rule[1:]

    interpreter = RuleInterpreter(source, bridge)
    chapters: List[Chapter] = []
    visited = set()
    url = book.toc_url or book.book_url
    async with client_scope(client) as http:
        while url and url not in visited and len(visited) < config.MAX_TOC_PAGES:
            visited.add(url)
            page = await _request_page(http, url, source, interpreter.bridge)
            if page is None:
                break
            visited.add(page.url)
            elements = interpreter.elements(page.text, list_rule, page.url)
            if reverse:
                elements.reverse()
            for element in elements:
                chapters.append(
                    Chapter(
                        title=field_text(interpreter, element, rule.chapter_name, page.url),
                        url=field_url(interpreter, element, rule.chapter_url, page.url),
                        index=len(chapters),
                        is_volume=_is_true(field_text(interpreter, element, rule.is_volume, page.url)),
                    )
                )
            url = field_url(interpreter, page.text, rule.next_toc_url, page.url)
    logger.info("%s: %d chapters for %s", source.name or source.url, len(chapters), book.name or book.book_url)
    return chapters


def content_rule_with_default(rule: str) -> str:
    """Append ``@html`` to every plain alternative of a content rule.

    Chapter bodies keep their markup so that paragraph breaks survive
    until normalization.
    """
    alternatives = []
    for alternative in split_outside_scripts(rule, "||"):
        selection, separator, affix = alternative.partition("##")
        lowered = selection.lower()
        plain = (
            selection.strip()
            and "@" not in selection
            and "js:" not in lowered
            and "<js>" not in lowered
            and not selection.strip().startswith(("/", "$", "{{"))
        )
        if plain:
            selection = selection.rstrip() + "@html"
        alternatives.append(selection + separator + affix)
    return "||".join(alternatives)


async def get_content(
    source: Source,
    chapter_url: str,
    next_chapter_url: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
    bridge: Optional[ScriptBridge] = None,
    delay: Optional[float] = None,
) -> Content:
    """Download a chapter body, following ``nextContentUrl`` pages.

    The crawl stops when there is no next-page rule, the next URL is
    empty, points back at the current page, at the next chapter or at any
    page already visited, or after ``MAX_CONTENT_PAGES`` pages.
    """
    rule = source.rule_content
    if rule is None or not rule.content:
        return Content(chapter_url=chapter_url)
    body_rule = content_rule_with_default(rule.content)
    pause = max(config.PAGE_DELAY if delay is None else delay, source.rate_interval())

    interpreter = RuleInterpreter(source, bridge)
    pieces: List[str] = []
    pages: List[str] = []
    visited = set()
    url = chapter_url
    async with client_scope(client) as http:
        while url and len(pages) < config.MAX_CONTENT_PAGES:
            visited.add(url)
            try:
                spec = build_request(url, source, bridge=interpreter.bridge)
            except RequestBuildError as exc:
                logger.warning("Stopping chapter crawl at %r: %s", url, exc)
                break
            page = await fetch_page(http, spec)
            if page is None:
                break
            pages.append(spec.url)
            visited.add(page.url)

            body = interpreter.text(page.text, body_rule, page.url)
            if body:
                pieces.append(body)

            next_url = field_url(interpreter, page.text, rule.next_content_url, page.url)
            if not next_url or next_url in visited or next_url == next_chapter_url:
                break
            url = next_url
            if pause > 0:
                await asyncio.sleep(pause)

    text = ContentNormalizer().process("\n".join(pieces), source)
    logger.debug("Fetched %d page(s) for %s", len(pages), chapter_url)
    return Content(chapter_url=chapter_url, text=text, pages=pages)
