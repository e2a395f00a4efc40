"""Build HTTP requests from URL rule templates.

A template is a URL with placeholders, optionally followed by a JSON
option block::

    https://example.com/search?q={{key}}&p={{page}}, {"method": "POST", "charset": "gbk"}

:func:`build_request` expands such a template into a :class:`RequestSpec`
in a fixed order: script hook, variable substitution (remaining
``{{expr}}`` blocks are evaluated as scripts), option split, keyword
encoding, request construction.
"""

from __future__ import annotations

import codecs
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from . import config
from .models import Source
from .nodes import resolve_url
from .script import ScriptBridge

logger = logging.getLogger(__name__)

_OPTIONS_SPLIT = re.compile(r"\s*,\s*(?=\{)")
_SCRIPT_HOOK = re.compile(r"@js:|<js>|\{\{js:", re.IGNORECASE)
_EXPRESSION = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
_KEY_PLACEHOLDERS = ("{{key}}", "{{searchKey}}", "{key}")
# Left untouched in a header value that is not ASCII.
_HEADER_SAFE = "!#$&'()*+,/:;=?@[]~%"
_PAGE_PLACEHOLDERS = ("{{page}}", "{{searchPage}}", "{page}")
# Bytes kept verbatim when encoding for a legacy charset (besides ASCII alphanumerics).
_LEGACY_SAFE = frozenset(b"-_.*")


class RequestBuildError(ValueError):
    """The expanded template is not a usable http(s) URL."""


class UrlOptions(BaseModel):
    """The JSON option block trailing a URL template."""

    model_config = ConfigDict(extra="ignore")

    method: Optional[str] = None
    charset: Optional[str] = None
    headers: Dict[str, str] = {}
    body: Optional[str] = None

    @field_validator("headers", mode="before")
    @classmethod
    def _stringify_headers(cls, value: Any) -> Dict[str, str]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("headers must be an object")
        return {str(key): str(item) for key, item in value.items()}

    @field_validator("body", mode="before")
    @classmethod
    def _serialize_body(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        return str(value)


@dataclass(frozen=True)
class RequestSpec:
    """Everything needed to send one request."""

    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    timeout: float = config.REQUEST_TIMEOUT
    charset: Optional[str] = None

    def to_httpx(self) -> httpx.Request:
        content = None
        if self.body is not None:
            content = self.body.encode(_codec_for(self.charset), errors="replace")
        return httpx.Request(
            self.method,
            self.url,
            headers=self.headers,
            content=content,
            extensions={"timeout": httpx.Timeout(self.timeout).as_dict()},
        )


def split_url_options(template: str) -> Tuple[str, Optional[UrlOptions]]:
    """Separate the URL from its JSON option block.

    The split happens at the first comma followed (after optional
    whitespace) by ``{``. This is a heuristic: a URL which itself contains
    ``,{`` is cut at that point, and an option block that is not valid
    JSON is logged and dropped.
    """
    match = _OPTIONS_SPLIT.search(template)
    if match is None:
        return template.strip(), None
    url = template[: match.start()].strip()
    raw = template[match.end():]
    try:
        return url, UrlOptions.model_validate_json(raw)
    except ValidationError as exc:
        logger.warning("Ignoring unparsable URL options %r: %s", raw[:120], exc.errors()[0].get("msg", exc))
        return url, None


def _codec_for(charset: Optional[str]) -> str:
    name = (charset or "utf-8").strip().lower()
    if "gb" in name:
        return "gb18030"
    try:
        return codecs.lookup(name).name
    except LookupError:
        logger.warning("Unknown charset %r, using utf-8", charset)
        return "utf-8"


def encode_keyword(keyword: str, charset: Optional[str] = None) -> str:
    """Percent-encode ``keyword`` for a query string in ``charset``.

    UTF-8 escapes every reserved character. Any other charset escapes
    each encoded byte that is not an ASCII letter, digit or one of
    ``-_.*`` as ``%XX``.
    """
    codec = _codec_for(charset)
    if codec == "utf-8":
        return quote(keyword, safe="")
    try:
        data = keyword.encode(codec)
    except UnicodeEncodeError:
        logger.warning("Keyword %r cannot be encoded as %s, using utf-8", keyword, codec)
        return quote(keyword, safe="")
    out = []
    for byte in data:
        if byte < 0x80 and (chr(byte).isalnum() or byte in _LEGACY_SAFE):
            out.append(chr(byte))
        else:
            out.append("%%%02X" % byte)
    return "".join(out)


def substitute_variables(template: str, source: Source, page: int = 1) -> str:
    result = template.replace("{{baseUrl}}", source.url)
    for placeholder in _PAGE_PLACEHOLDERS:
        result = result.replace(placeholder, str(page))
    return result


def evaluate_expressions(
    template: str,
    source: Source,
    bridge: ScriptBridge,
    keyword: Optional[str] = None,
    page: int = 1,
) -> str:
    """Replace each remaining ``{{expr}}`` with its script value.

    Keyword placeholders are kept for the encoding step.
    """

    def replace(match: re.Match) -> str:
        if match.group(0) in _KEY_PLACEHOLDERS:
            return match.group(0)
        return bridge.run_text(match.group(0), "", source.url, key=keyword or "", page=page)

    return _EXPRESSION.sub(replace, template)


def _header_value(value: str) -> str:
    if value.isascii():
        return value
    return quote(value, safe=_HEADER_SAFE)


def _replace_key(text: str, encoded: str) -> str:
    for placeholder in _KEY_PLACEHOLDERS:
        text = text.replace(placeholder, encoded)
    return text


def source_headers(source: Source, bridge: ScriptBridge) -> Dict[str, str]:
    """Headers every request to ``source`` carries (``header`` field)."""
    raw = (source.header or "").strip()
    if not raw:
        return {}
    if _SCRIPT_HOOK.search(raw):
        raw = bridge.render_template(raw, base_url=source.url)
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("Ignoring malformed header policy on %s", source.url)
        return {}
    if not isinstance(data, dict):
        return {}
    return {str(key): str(value) for key, value in data.items()}


def _validate_url(url: str) -> None:
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as exc:
        raise RequestBuildError(f"invalid request URL {url!r}: {exc}") from exc
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise RequestBuildError(f"invalid request URL {url!r}")


def _has_header(headers: Dict[str, str], name: str) -> bool:
    return any(key.lower() == name.lower() for key in headers)


def build_request(
    template: str,
    source: Source,
    keyword: Optional[str] = None,
    page: int = 1,
    bridge: Optional[ScriptBridge] = None,
) -> RequestSpec:
    """Expand ``template`` into a :class:`RequestSpec`.

    Relative URLs are resolved against the source URL. Raises
    :class:`RequestBuildError` when the final URL is not a valid http(s)
    URL. The error only concerns this one request.
    """
    bridge = bridge or ScriptBridge()
    rule = template.strip()

    if _SCRIPT_HOOK.search(rule):
        rule = bridge.render_template(rule, base_url=source.url, key=keyword or "", page=page)

    rule = substitute_variables(rule, source, page)
    rule = evaluate_expressions(rule, source, bridge, keyword, page)
    url, options = split_url_options(rule)
    charset = options.charset if options else None
    body = options.body if options else None

    if keyword is not None:
        encoded = encode_keyword(keyword, charset)
        url = _replace_key(url, encoded)
        if body:
            body = _replace_key(body, encoded)

    url = resolve_url(url, source.url)
    _validate_url(url)

    method = ((options.method if options else None) or "GET").upper()
    headers = source_headers(source, bridge)
    if options:
        headers.update(options.headers)
    if not _has_header(headers, "User-Agent"):
        headers["User-Agent"] = config.USER_AGENT
    if not _has_header(headers, "Cache-Control"):
        headers["Cache-Control"] = "no-cache"
    headers.setdefault("Pragma", "no-cache")
    headers = {name: _header_value(value) for name, value in headers.items()}

    if method == "POST" and body is not None:
        if not _has_header(headers, "Content-Type"):
            kind = "application/json" if body.lstrip().startswith(("{", "[")) else "application/x-www-form-urlencoded"
            headers["Content-Type"] = f"{kind}; charset={_codec_for(charset)}"
    else:
        body = None

    return RequestSpec(
        method=method,
        url=url,
        headers=headers,
        body=body,
        timeout=config.REQUEST_TIMEOUT,
        charset=charset,
    )
