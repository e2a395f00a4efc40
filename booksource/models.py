"""Source configuration and the records produced from it.

A :class:`Source` mirrors the widely shared book-source JSON format
(``bookSourceUrl``, ``ruleSearch`` ...). Models accept either those
camelCase keys or the snake_case field names, ignore keys they do not
know and are frozen once loaded, so one search run can never alter the
configuration it was started with.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


class _RuleGroup(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class BookListRule(_RuleGroup):
    """Rules for a list of books (search results or an explore page)."""

    book_list: Optional[str] = Field(None, alias="bookList")
    name: Optional[str] = None
    author: Optional[str] = None
    intro: Optional[str] = None
    kind: Optional[str] = None
    last_chapter: Optional[str] = Field(None, alias="lastChapter")
    update_time: Optional[str] = Field(None, alias="updateTime")
    cover_url: Optional[str] = Field(None, alias="coverUrl")
    book_url: Optional[str] = Field(None, alias="bookUrl")
    word_count: Optional[str] = Field(None, alias="wordCount")
    check_key_word: Optional[str] = Field(None, alias="checkKeyWord")


class BookInfoRule(_RuleGroup):
    """Rules for the book detail page."""

    init: Optional[str] = None
    name: Optional[str] = None
    author: Optional[str] = None
    intro: Optional[str] = None
    kind: Optional[str] = None
    last_chapter: Optional[str] = Field(None, alias="lastChapter")
    update_time: Optional[str] = Field(None, alias="updateTime")
    cover_url: Optional[str] = Field(None, alias="coverUrl")
    toc_url: Optional[str] = Field(None, alias="tocUrl")
    word_count: Optional[str] = Field(None, alias="wordCount")


class TocRule(_RuleGroup):
    """Rules for the table of contents."""

    chapter_list: Optional[str] = Field(None, alias="chapterList")
    chapter_name: Optional[str] = Field(None, alias="chapterName")
    chapter_url: Optional[str] = Field(None, alias="chapterUrl")
    is_volume: Optional[str] = Field(None, alias="isVolume")
    update_time: Optional[str] = Field(None, alias="updateTime")
    next_toc_url: Optional[str] = Field(None, alias="nextTocUrl")


class ContentRule(_RuleGroup):
    """Rules for a chapter body."""

    content: Optional[str] = None
    next_content_url: Optional[str] = Field(None, alias="nextContentUrl")
    replace_regex: Optional[str] = Field(None, alias="replaceRegex")
    source_regex: Optional[str] = Field(None, alias="sourceRegex")


class Source(BaseModel):
    """A scraping configuration for one site."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    url: str = Field(..., alias="bookSourceUrl", description="Identity and base URL of the site")
    name: str = Field("", alias="bookSourceName")
    group: Optional[str] = Field(None, alias="bookSourceGroup")
    source_type: int = Field(0, alias="bookSourceType")
    enabled: bool = True
    enabled_explore: bool = Field(True, alias="enabledExplore")
    enabled_cookie_jar: Optional[bool] = Field(True, alias="enabledCookieJar")
    custom_order: int = Field(0, alias="customOrder")
    weight: int = 0
    last_update_time: int = Field(0, alias="lastUpdateTime")
    respond_time: int = Field(180000, alias="respondTime")
    concurrent_rate: Optional[str] = Field(None, alias="concurrentRate")
    header: Optional[str] = Field(None, description="JSON object of extra request headers, or a script")
    login_url: Optional[str] = Field(None, alias="loginUrl")
    comment: Optional[str] = Field(None, alias="bookSourceComment")
    search_url: Optional[str] = Field(None, alias="searchUrl")
    explore_url: Optional[str] = Field(None, alias="exploreUrl")

    rule_search: Optional[BookListRule] = Field(None, alias="ruleSearch")
    rule_explore: Optional[BookListRule] = Field(None, alias="ruleExplore")
    rule_book_info: Optional[BookInfoRule] = Field(None, alias="ruleBookInfo")
    rule_toc: Optional[TocRule] = Field(None, alias="ruleToc")
    rule_content: Optional[ContentRule] = Field(None, alias="ruleContent")

    def rate_interval(self) -> float:
        """Minimum seconds between two requests according to ``concurrentRate``.

        The rate is written either as ``"<ms>"`` (one request per interval)
        or ``"<count>/<ms>"``. Anything unparsable means no limit.
        """
        rate = (self.concurrent_rate or "").strip()
        if not rate:
            return 0.0
        try:
            if "/" in rate:
                count, window = rate.split("/", 1)
                return max(float(window) / max(int(count), 1), 0.0) / 1000.0
            return max(float(rate), 0.0) / 1000.0
        except ValueError:
            logger.warning("Ignoring malformed concurrentRate %r on %s", rate, self.url)
            return 0.0


class Book(BaseModel):
    """A book as seen by one source."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    author: str = ""
    cover_url: Optional[str] = None
    book_url: str
    origin: str
    origin_name: str = ""
    intro: Optional[str] = None
    kind: Optional[str] = None
    latest_chapter_title: Optional[str] = None
    toc_url: Optional[str] = None


class Chapter(BaseModel):
    title: str
    url: str
    index: int
    is_volume: bool = False


class Content(BaseModel):
    """The normalized text of one chapter, possibly joined from several pages."""

    chapter_url: str
    text: str = ""
    pages: List[str] = Field(default_factory=list)


def parse_sources(payload: Any) -> List[Source]:
    """Build sources from a JSON document holding one source or a list of them.

    ``payload`` may be the raw JSON text or already-decoded data. Entries
    that fail validation are logged and skipped. When two entries share a
    source URL the later one replaces the earlier one in place.
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError as exc:
            logger.warning("Source document is not valid JSON: %s", exc)
            return []
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        logger.warning("Source document must be an object or an array, got %s", type(payload).__name__)
        return []

    by_url: Dict[str, Source] = {}
    for raw in payload:
        try:
            source = Source.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Skipping invalid source: %s", exc.errors()[0].get("msg", exc))
            continue
        # Replacing an existing key keeps its original insertion position.
        by_url[source.url] = source
    return list(by_url.values())
