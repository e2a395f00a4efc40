"""Extraction subjects passed between rule steps.

Selection produces nodes and extraction consumes them. A node is one of
three shapes:

* :class:`MarkupNode` wraps a BeautifulSoup tag (or a whole document),
* :class:`PathNode` wraps an lxml element or a string returned by XPath,
* :class:`TextNode` wraps a raw string (page content, script output,
  JSON fragments).

Helpers here turn any node back into markup or text and resolve links,
so the rule interpreter never has to test types itself.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Union

import httpx
from bs4 import BeautifulSoup, Comment, NavigableString, Tag
from lxml import etree
from lxml import html as lxml_html

_WHITESPACE = re.compile(r"[ \t\n\r\f]+")
_XML_DECLARATION = re.compile(r"^\s*<\?xml[^>]*\?>", re.IGNORECASE)


@dataclass(frozen=True)
class MarkupNode:
    tag: Tag


@dataclass(frozen=True)
class PathNode:
    value: Any


@dataclass(frozen=True)
class TextNode:
    value: str


Node = Union[MarkupNode, PathNode, TextNode]


def as_node(subject: Union[Node, str]) -> Node:
    """Wrap plain strings; nodes pass through untouched."""
    if isinstance(subject, str):
        return TextNode(subject)
    return subject


def parse_markup(content: str) -> BeautifulSoup:
    return BeautifulSoup(content, "lxml")


def parse_path_tree(content: str):
    """Parse ``content`` into an lxml tree suitable for XPath.

    lxml repairs broken markup the same way a browser would, which gives
    the tidied tree XPath rules expect. Raises ``etree.ParserError`` for
    empty documents.
    """
    return lxml_html.fromstring(_XML_DECLARATION.sub("", content, count=1))


def normalize_space(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def serialize(node: Node) -> str:
    """Markup (or raw text) of ``node``."""
    match node:
        case MarkupNode(tag=tag):
            return str(tag)
        case PathNode(value=value):
            if isinstance(value, etree._Element):
                return etree.tostring(value, encoding="unicode", method="html", with_tail=False)
            return str(value)
        case TextNode(value=value):
            return value
    raise TypeError(f"not a node: {node!r}")


def serialize_all(nodes: Iterable[Node]) -> str:
    return "\n".join(serialize(node) for node in nodes)


def node_text(node: Node) -> str:
    """Whitespace-normalized text content of ``node``."""
    match node:
        case MarkupNode(tag=tag):
            return normalize_space(tag.get_text())
        case PathNode(value=value):
            if isinstance(value, etree._Element):
                return normalize_space(value.text_content())
            return str(value)
        case TextNode(value=value):
            return value
    raise TypeError(f"not a node: {node!r}")


def own_text(tag: Tag) -> str:
    """Text of the direct text children of ``tag`` only."""
    parts = [
        str(child)
        for child in tag.children
        if isinstance(child, NavigableString) and not isinstance(child, Comment)
    ]
    return normalize_space("".join(parts))


def text_nodes(tag: Tag) -> str:
    """Direct text children of ``tag``, one per line, blanks dropped."""
    lines = []
    for child in tag.children:
        if isinstance(child, NavigableString) and not isinstance(child, Comment):
            stripped = child.strip()
            if stripped:
                lines.append(stripped)
    return "\n".join(lines)


def attribute(tag: Tag, name: str) -> str:
    value = tag.get(name)
    if value is None:
        return ""
    if isinstance(value, list):
        return " ".join(value)
    return str(value)


def resolve_url(link: str, base_url: str) -> str:
    """Make ``link`` absolute against ``base_url``.

    Links that already carry an http(s) scheme are returned unchanged.
    When either side cannot be parsed the link is returned as-is.
    """
    link = (link or "").strip()
    if not link or link.lower().startswith(("http://", "https://")):
        return link
    if not base_url:
        return link
    try:
        return str(httpx.URL(base_url).join(link))
    except (httpx.InvalidURL, ValueError, TypeError):
        return link
