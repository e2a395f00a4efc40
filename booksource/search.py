"""Concurrent search across book sources.

:func:`search_books` sends the keyword to every enabled source at once
and yields each source's results as soon as they are parsed, so callers
can show partial results while slow sites are still answering. Closing
the iterator early cancels the sources that have not answered yet.

:func:`explore_books` reuses the same book-list parsing for a source's
browse pages.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Iterable, List, Optional, Tuple

import httpx

from . import config
from .extractor import client_scope, fetch_page, field_text, field_url
from .models import Book, BookListRule, Source
from .nodes import resolve_url
from .request import RequestBuildError, build_request
from .rules import RuleInterpreter, Subject
from .script import ScriptBridge

logger = logging.getLogger(__name__)


def parse_book_list(
    interpreter: RuleInterpreter,
    content: Subject,
    rule: BookListRule,
    base_url: Optional[str] = None,
) -> List[Book]:
    """Books described by ``content`` according to a book-list rule.

    Candidates without a name or a book URL are dropped. Cover and book
    URLs are resolved against the source URL.
    """
    source = interpreter.source
    base_url = source.url if base_url is None else base_url
    books: List[Book] = []
    for element in interpreter.elements(content, rule.book_list, base_url):
        name = field_text(interpreter, element, rule.name, base_url)
        book_url = resolve_url(field_url(interpreter, element, rule.book_url, base_url), source.url)
        if not name or not book_url:
            continue
        cover_url = resolve_url(field_url(interpreter, element, rule.cover_url, base_url), source.url)
        books.append(
            Book(
                name=name,
                author=field_text(interpreter, element, rule.author, base_url),
                cover_url=cover_url or None,
                book_url=book_url,
                origin=source.url,
                origin_name=source.name,
                intro=field_text(interpreter, element, rule.intro, base_url) or None,
                kind=field_text(interpreter, element, rule.kind, base_url) or None,
                latest_chapter_title=field_text(interpreter, element, rule.last_chapter, base_url) or None,
            )
        )
    return books


async def search_source(
    source: Source,
    keyword: str,
    client: httpx.AsyncClient,
    bridge: Optional[ScriptBridge] = None,
) -> List[Book]:
    """Search one source. Every failure results in an empty list."""
    rule = source.rule_search
    if not source.search_url or rule is None:
        return []
    try:
        spec = build_request(source.search_url, source, keyword=keyword, bridge=bridge)
    except RequestBuildError as exc:
        logger.warning("Cannot build search request for %s: %s", source.url, exc)
        return []
    page = await fetch_page(client, spec)
    if page is None:
        return []
    books = parse_book_list(RuleInterpreter(source, bridge), page.text, rule)
    logger.info("%s: %d result(s) for %r", source.name or source.url, len(books), keyword)
    return books


def searchable(sources: Iterable[Source]) -> List[Source]:
    """Enabled sources with a search URL, highest weight first."""
    usable = [s for s in sources if s.enabled and s.search_url and s.rule_search is not None]
    return sorted(usable, key=lambda s: (-s.weight, s.custom_order))


async def search_books(
    keyword: str,
    sources: Iterable[Source],
    client: Optional[httpx.AsyncClient] = None,
    bridge: Optional[ScriptBridge] = None,
) -> AsyncIterator[List[Book]]:
    """Yield one non-empty batch of books per answering source.

    Batches arrive in completion order. At most ``SEARCH_CONCURRENCY``
    sources are queried at the same time.
    """
    candidates = searchable(sources)
    if not candidates:
        return
    semaphore = asyncio.Semaphore(config.SEARCH_CONCURRENCY)

    async with client_scope(client) as http:

        async def run(source: Source) -> List[Book]:
            async with semaphore:
                try:
                    return await search_source(source, keyword, http, bridge)
                except Exception:
                    logger.exception("Search on %s failed", source.url)
                    return []

        tasks = [asyncio.create_task(run(source)) for source in candidates]
        try:
            for finished in asyncio.as_completed(tasks):
                books = await finished
                if books:
                    yield books
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)


def explore_entries(source: Source) -> List[Tuple[str, str]]:
    """``(title, url)`` pairs listed in ``exploreUrl``.

    Entries are separated by newlines or ``&&`` and written
    ``title::url``. An entry without a title uses its URL as the title.
    """
    raw = (source.explore_url or "").strip()
    entries = []
    for line in raw.replace("&&", "\n").splitlines():
        line = line.strip()
        if not line:
            continue
        title, separator, url = line.partition("::")
        if not separator:
            title, url = line, line
        if url.strip():
            entries.append((title.strip(), url.strip()))
    return entries


def explore_rule(source: Source) -> Optional[BookListRule]:
    """``ruleExplore`` with missing fields taken from ``ruleSearch``."""
    explore, search = source.rule_explore, source.rule_search
    if explore is None or search is None:
        return explore or search
    merged = {
        name: getattr(explore, name) or getattr(search, name)
        for name in BookListRule.model_fields
    }
    return BookListRule(**merged)


async def explore_books(
    source: Source,
    url: str,
    client: Optional[httpx.AsyncClient] = None,
    bridge: Optional[ScriptBridge] = None,
    page: int = 1,
) -> List[Book]:
    """Books listed on one of the source's browse pages."""
    rule = explore_rule(source)
    if rule is None or not source.enabled_explore:
        return []
    try:
        spec = build_request(url, source, page=page, bridge=bridge)
    except RequestBuildError as exc:
        logger.warning("Cannot build explore request for %s: %s", source.url, exc)
        return []
    async with client_scope(client) as http:
        fetched = await fetch_page(http, spec)
    if fetched is None:
        return []
    return parse_book_list(RuleInterpreter(source, bridge), fetched.text, rule)
