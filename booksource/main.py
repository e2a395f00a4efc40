"""FastAPI application for the book source service.

The endpoints take the source definitions in the request body, so the
service keeps no state between requests:

* ``POST /search`` – query many sources and stream results as NDJSON,
  one JSON array of books per line, as each source answers.
* ``POST /explore`` – list the books of one browse page of a source.
* ``POST /book`` – fetch book details and the table of contents.
* ``POST /content`` – fetch and clean the text of one chapter.
* ``POST /sources/validate`` – parse source definitions and return the
  ones that are usable.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from . import config
from .extractor import get_book_info, get_chapter_list, get_content
from .models import Book, Source, parse_sources
from .search import explore_books, explore_entries, search_books

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Book Source Scraper")


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")


async def _read_object(request: Request) -> Dict[str, Any]:
    data = await _read_json(request)
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return data


def _source_from(data: Dict[str, Any]) -> Source:
    raw = data.get("source")
    if not isinstance(raw, dict):
        raise HTTPException(status_code=400, detail="Missing 'source' in request body")
    try:
        return Source.model_validate(raw)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid source: {exc.errors()[0]['msg']}")


def _books_json(books: List[Book]) -> List[Dict[str, Any]]:
    return [book.model_dump(mode="json") for book in books]


@app.post("/search")
async def search_endpoint(request: Request) -> Response:
    data = await _read_object(request)
    keyword = str(data.get("keyword") or "").strip()
    if not keyword:
        raise HTTPException(status_code=400, detail="Missing 'keyword' in request body")
    sources = parse_sources(data.get("sources") or [])
    if not sources:
        raise HTTPException(status_code=400, detail="No valid sources in request body")

    async def stream():
        async for batch in search_books(keyword, sources):
            yield json.dumps(_books_json(batch), ensure_ascii=False) + "\n"

    logger.info("Searching %d source(s) for %r", len(sources), keyword)
    return StreamingResponse(stream(), media_type="application/x-ndjson")


@app.post("/explore")
async def explore_endpoint(request: Request) -> Response:
    data = await _read_object(request)
    source = _source_from(data)
    url = str(data.get("url") or "").strip()
    if not url:
        entries = explore_entries(source)
        if not entries:
            raise HTTPException(status_code=400, detail="Missing 'url' and the source has no explore entries")
        url = entries[0][1]
    page = data.get("page") or 1
    if not isinstance(page, int):
        raise HTTPException(status_code=400, detail="'page' must be an integer")
    books = await explore_books(source, url, page=page)
    return JSONResponse({"results": _books_json(books)})


@app.post("/book")
async def book_endpoint(request: Request) -> Response:
    data = await _read_object(request)
    source = _source_from(data)
    raw_book = data.get("book")
    try:
        if isinstance(raw_book, dict):
            book = Book.model_validate({"origin": source.url, "name": "", **raw_book})
        elif data.get("book_url"):
            book = Book(name="", book_url=str(data["book_url"]), origin=source.url)
        else:
            raise HTTPException(status_code=400, detail="Missing 'book' in request body")
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid book: {exc.errors()[0]['msg']}")
    book = await get_book_info(source, book)
    chapters = await get_chapter_list(source, book)
    return JSONResponse(
        {
            "book": book.model_dump(mode="json"),
            "chapters": [chapter.model_dump(mode="json") for chapter in chapters],
        }
    )


@app.post("/content")
async def content_endpoint(request: Request) -> Response:
    data = await _read_object(request)
    source = _source_from(data)
    chapter_url = str(data.get("chapter_url") or "").strip()
    if not chapter_url:
        raise HTTPException(status_code=400, detail="Missing 'chapter_url' in request body")
    next_chapter_url = data.get("next_chapter_url") or None
    content = await get_content(source, chapter_url, next_chapter_url)
    return JSONResponse(content.model_dump(mode="json"))


@app.post("/sources/validate")
async def validate_sources_endpoint(request: Request) -> Response:
    data = await _read_json(request)
    if isinstance(data, dict) and "sources" in data:
        data = data["sources"]
    if not isinstance(data, (list, dict)):
        raise HTTPException(status_code=400, detail="Expected a source or a list of sources")
    sources = parse_sources(data)
    return JSONResponse(
        {
            "count": len(sources),
            "sources": [source.model_dump(mode="json", by_alias=True, exclude_none=True) for source in sources],
        }
    )
