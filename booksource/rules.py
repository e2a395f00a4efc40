"""Rule interpreter.

A rule is a small selector language used by book sources to point at
pieces of a page. Its grammar, loosely::

    rule         := alternative ("||" alternative)*
    alternative  := selection ("##" pattern ("##" replacement ("###")?)?)?
    selection    := "@css:" css ("@" css)*
                  | "@xpath:" xpath | "//" ... | "./" ... | "/" ...
                  | "@json:" jsonpath | "$." ... | "$[" ...
                  | "@js:" script | "<js>" script "</js>" | "{{" script "}}"
                  | step ("@" step)*
    step         := selector index? | leaf
    index        := ("." | "!") "-"? digits

Alternatives are tried left to right and the first non-empty result
wins. Script envelopes are located before any splitting, so ``||``,
``@`` and ``##`` inside a script never act as separators.

Structural steps accept CSS plus a handful of aliases (``class.a b``,
``id.x``, ``tag.p``, ``text.Next``, ``children``). The index suffix picks
one match (``.2``, ``.-1``) or drops one (``!0``); when several are
stacked only the rightmost counts.

Nothing here raises for a bad rule or a bad page. Selector, regex, XPath
and JSON errors are logged and produce an empty result.
"""

from __future__ import annotations

import json
import logging
import re
from typing import List, Optional, Sequence, Tuple, Union

from bs4 import BeautifulSoup, Tag
from jsonpath_ng.exceptions import JSONPathError
from jsonpath_ng.ext import parse as jsonpath_parse
from lxml import etree
from soupsieve import SelectorSyntaxError, escape as css_escape, match as css_match

from .models import Source
from .nodes import (
    MarkupNode,
    Node,
    PathNode,
    TextNode,
    as_node,
    attribute,
    node_text,
    own_text,
    parse_markup,
    parse_path_tree,
    resolve_url,
    serialize,
    serialize_all,
    text_nodes,
)
from .script import ScriptBridge, is_script

logger = logging.getLogger(__name__)

Subject = Union[Node, str]

# ``@js:`` runs to the end of the rule, the other two envelopes are closed.
_SCRIPT_SPAN = re.compile(r"<js>.*?</js>|\{\{.*?\}\}|@js:.*", re.DOTALL | re.IGNORECASE)
_TEMPLATE = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
_INDEX_RANGE = re.compile(r"[.!]-?\d*:-?\d*$")
_INDEX_SUFFIX = re.compile(r"(?:[.!]-?\d+)+$")
_INDEX_PART = re.compile(r"([.!])(-?\d+)")
_GROUP_REF = re.compile(r"\$(\d+)")

_SUB_RULE_PREFIXES = ("@css:", "@xpath:", "@json:", "$.", "$[", "//")


class RuleSyntaxError(ValueError):
    """A rule uses a construct the interpreter does not support."""


_EXTRACTION_ERRORS = (
    SelectorSyntaxError,
    re.error,
    etree.XPathError,
    etree.ParserError,
    JSONPathError,
    ValueError,
    NotImplementedError,
)


def _append_split(parts: List[str], segment: str, separator: str) -> None:
    pieces = segment.split(separator)
    parts[-1] += pieces[0]
    parts.extend(pieces[1:])


def split_outside_scripts(rule: str, separator: str) -> List[str]:
    """Split ``rule`` on ``separator`` wherever it is not part of a script.

    When splitting a cascade on ``@``, an ``@js:`` envelope starts a new
    step of its own.
    """
    parts = [""]
    position = 0
    for match in _SCRIPT_SPAN.finditer(rule):
        _append_split(parts, rule[position:match.start()], separator)
        span = match.group(0)
        if separator == "@" and span.startswith("@"):
            parts.append("")
        parts[-1] += span
        position = match.end()
    _append_split(parts, rule[position:], separator)
    return parts


def _steps(selection: str) -> List[str]:
    return [step.strip() for step in split_outside_scripts(selection, "@") if step.strip()]


Affix = Tuple[str, str, bool]


def _split_affix(alternative: str) -> Tuple[str, Optional[Affix]]:
    parts = split_outside_scripts(alternative, "##")
    selection = parts[0].strip()
    if len(parts) == 1 or not parts[1]:
        return selection, None
    replacement = parts[2] if len(parts) > 2 else ""
    # A trailing ``###`` replaces the first match only.
    first_only = len(parts) > 3
    return selection, (parts[1], replacement, first_only)


def _apply_affix(text: str, affix: Affix) -> str:
    pattern, replacement, first_only = affix
    compiled = re.compile(pattern, re.DOTALL)
    return compiled.sub(_GROUP_REF.sub(r"\\g<\1>", replacement), text, count=1 if first_only else 0)


def _classify(selection: str) -> Tuple[str, str]:
    lowered = selection.lower()
    if lowered.startswith("@css:"):
        return "css", selection[5:]
    if lowered.startswith("@xpath:"):
        return "xpath", selection[7:]
    if selection.startswith(("//", "./", "/")):
        return "xpath", selection
    if lowered.startswith("@json:"):
        return "json", selection[6:]
    if selection.startswith(("$.", "$[")):
        return "json", selection
    if lowered.startswith(("@js:", "<js>")):
        return "script", selection
    if selection.startswith("{{") and selection.endswith("}}") and selection.count("{{") == 1:
        return "script", selection
    if "{{" in selection:
        return "template", selection
    return "steps", selection


def _split_index(step: str) -> Tuple[str, Optional[Tuple[bool, int]]]:
    if _INDEX_RANGE.search(step):
        raise RuleSyntaxError(f"index ranges are not supported: {step!r}")
    match = _INDEX_SUFFIX.search(step)
    if match is None or match.start() == 0:
        return step, None
    marker, number = _INDEX_PART.findall(match.group(0))[-1]
    return step[: match.start()], (marker == "!", int(number))


def _apply_index(matches: List[Node], index: Optional[Tuple[bool, int]]) -> List[Node]:
    if index is None:
        return matches
    exclude, number = index
    position = number if number >= 0 else len(matches) + number
    if exclude:
        return [node for i, node in enumerate(matches) if i != position]
    if 0 <= position < len(matches):
        return [matches[position]]
    # Out of range keeps the whole set.
    return matches


def _containing_own_text(container: Tag, needle: str) -> List[Tag]:
    return [tag for tag in container.find_all(True) if needle in own_text(tag)]


def _css_select(container: Tag, selector: str) -> List[Tag]:
    """``container.select`` that also considers ``container`` itself."""
    found = container.select(selector)
    if not isinstance(container, BeautifulSoup) and css_match(selector, container):
        found = [container, *found]
    return found


def _alias_select(container: Tag, selector: str) -> List[Node]:
    head, _, rest = selector.partition(".")
    # Selection starts at the container, so it can match itself.
    element = not isinstance(container, BeautifulSoup)
    itself = False
    match head:
        case "class" if rest:
            found = _css_select(container, "." + ".".join(css_escape(name) for name in rest.split()))
        case "id" if rest:
            found = container.find_all(id=rest)
            itself = element and container.get("id") == rest
        case "tag" if rest:
            found = container.find_all(rest)
            itself = element and container.name == rest
        case "text" if rest:
            found = _containing_own_text(container, rest)
            itself = element and rest in own_text(container)
        case "children" if not rest:
            found = [child for child in container.children if isinstance(child, Tag)]
        case _:
            found = _css_select(container, selector)
    if itself:
        found = [container, *found]
    return [MarkupNode(tag) for tag in found]


def _markup(node: Node) -> Tag:
    """The BeautifulSoup tree to run selectors on for ``node``."""
    match node:
        case MarkupNode(tag=tag):
            return tag
        case PathNode() | TextNode():
            return parse_markup(serialize(node))
    raise TypeError(f"not a node: {node!r}")


def _element(tag: Tag) -> Tag:
    """The first real element of a parsed fragment, or ``tag`` itself."""
    if isinstance(tag, BeautifulSoup):
        root = tag.body if tag.body is not None else tag
        return root.find(True) or tag
    return tag


def _json_scalar(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


class RuleInterpreter:
    """Evaluate rules for one source.

    ``base_url`` is passed to every call and defaults to the source URL.
    It is never kept on the instance, so one interpreter can serve pages
    from different URLs concurrently.
    """

    def __init__(self, source: Source, bridge: Optional[ScriptBridge] = None) -> None:
        self.source = source
        self.bridge = bridge or ScriptBridge()

    def _base(self, base_url: Optional[str]) -> str:
        return self.source.url if base_url is None else base_url

    # -- public operations -------------------------------------------------

    def elements(self, content: Subject, rule: Optional[str], base_url: Optional[str] = None) -> List[Node]:
        """Nodes selected by ``rule`` in ``content`` (empty on any failure)."""
        base_url = self._base(base_url)
        for alternative in split_outside_scripts((rule or "").strip(), "||"):
            alternative = alternative.strip()
            if not alternative:
                continue
            try:
                nodes = self._select(content, alternative, base_url)
            except _EXTRACTION_ERRORS as exc:
                logger.warning("Rule %r failed: %s", alternative[:100], exc)
                nodes = []
            if nodes:
                return nodes
        return []

    def text(self, subject: Subject, rule: Optional[str], base_url: Optional[str] = None) -> str:
        """String extracted from ``subject`` by ``rule`` ("" on any failure)."""
        base_url = self._base(base_url)
        rule = (rule or "").strip()
        if not rule:
            node = as_node(subject)
            return node.value if isinstance(node, TextNode) else node_text(node)
        for alternative in split_outside_scripts(rule, "||"):
            alternative = alternative.strip()
            if not alternative:
                continue
            try:
                value = self._extract(subject, alternative, base_url)
            except _EXTRACTION_ERRORS as exc:
                logger.warning("Rule %r failed: %s", alternative[:100], exc)
                value = ""
            if value:
                return value
        return ""

    def url(self, subject: Subject, rule: Optional[str], base_url: Optional[str] = None) -> str:
        """Like :meth:`text`, with the result made absolute against ``base_url``."""
        base_url = self._base(base_url)
        return resolve_url(self.text(subject, rule, base_url), base_url)

    # -- node selection ----------------------------------------------------

    def _select(self, content: Subject, alternative: str, base_url: str) -> List[Node]:
        selection, affix = _split_affix(alternative)
        subject = as_node(content)
        if affix is not None:
            subject = TextNode(_apply_affix(serialize(subject), affix))
        kind, body = _classify(selection)
        match kind:
            case "css":
                return self._cascade(subject, _steps(body), base_url, raw_css=True)
            case "xpath":
                return list(self._xpath(subject, body))
            case "json":
                return [TextNode(value) for value in self._json(subject, body)]
            case "script":
                return list(self.bridge.run_nodes(body, serialize(subject), base_url))
            case "template":
                rendered = self._render(subject, body, base_url)
                return [TextNode(rendered)] if rendered else []
            case _:
                return self._cascade(subject, _steps(body), base_url)

    def _cascade(self, subject: Node, steps: Sequence[str], base_url: str, raw_css: bool = False) -> List[Node]:
        nodes: List[Node] = [subject]
        for step in steps:
            if is_script(step):
                return list(self.bridge.run_nodes(step, serialize_all(nodes), base_url))
            nodes = self._select_step(nodes, step, raw_css)
            if not nodes:
                return []
        return nodes

    def _select_step(self, nodes: Sequence[Node], step: str, raw_css: bool) -> List[Node]:
        selected: List[Node] = []
        for node in nodes:
            selected.extend(self._select_in(_markup(node), step, raw_css))
        return selected

    @staticmethod
    def _select_in(container: Tag, step: str, raw_css: bool) -> List[Node]:
        if raw_css:
            return [MarkupNode(tag) for tag in _css_select(container, step)]
        selector, index = _split_index(step)
        return _apply_index(_alias_select(container, selector), index)

    @staticmethod
    def _xpath(subject: Node, expression: str) -> List[PathNode]:
        match subject:
            case PathNode(value=value) if isinstance(value, etree._Element):
                root = value
            case _:
                root = parse_path_tree(serialize(subject))
        result = root.xpath(expression)
        if not isinstance(result, list):
            result = [result]
        return [PathNode(item if isinstance(item, etree._Element) else str(item)) for item in result]

    @staticmethod
    def _json(subject: Node, path: str) -> List[str]:
        match subject:
            case TextNode(value=value):
                raw = value
            case _:
                raw = node_text(subject)
        data = json.loads(raw)
        return [_json_scalar(found.value) for found in jsonpath_parse(path.strip()).find(data)]

    # -- string extraction -------------------------------------------------

    def _extract(self, subject: Subject, alternative: str, base_url: str) -> str:
        selection, affix = _split_affix(alternative)
        node = as_node(subject)
        kind, body = _classify(selection)
        match kind:
            case "xpath":
                value = "\n".join(node_text(found) for found in self._xpath(node, body))
            case "json":
                value = "\n".join(self._json(node, body))
            case "script":
                value = self.bridge.run_text(body, serialize(node), base_url)
            case "template":
                value = self._render(node, body, base_url)
            case "css":
                value = self._cascade_text(node, _steps(body), base_url, raw_css=True)
            case _:
                value = self._cascade_text(node, _steps(body), base_url)
        if affix is not None and value:
            value = _apply_affix(value, affix)
        return value

    def _cascade_text(self, node: Node, steps: Sequence[str], base_url: str, raw_css: bool = False) -> str:
        current = node
        for position, step in enumerate(steps):
            if is_script(step):
                return self.bridge.run_text(step, serialize(current), base_url)
            if position == len(steps) - 1:
                return self._leaf(current, step, base_url, raw_css)
            matches = self._select_in(_markup(current), step, raw_css)
            if not matches:
                return ""
            current = matches[0]
        return ""

    def _leaf(self, node: Node, action: str, base_url: str, raw_css: bool) -> str:
        match node, action:
            case TextNode(value=value), "text":
                return value
            case _, "text":
                return node_text(node)
            case _, "html" | "all":
                return serialize(node)

        tree = _markup(node)
        tag = _element(tree)
        match action:
            case "ownText":
                return own_text(tag)
            case "textNodes":
                return text_nodes(tag)
            case "href" | "src":
                return resolve_url(attribute(tag, action), base_url)
        if action.startswith("abs:"):
            return resolve_url(attribute(tag, action[4:]), base_url)
        if tag.has_attr(action):
            return attribute(tag, action)

        matches = self._select_in(tree, action, raw_css)
        return node_text(matches[0]) if matches else ""

    def _render(self, node: Node, template: str, base_url: str) -> str:
        """Replace each ``{{...}}`` in ``template``.

        A block holding a rule (``{{@css:...}}``, ``{{$.x}}``, ``{{//p}}``)
        is extracted from ``node``; anything else runs as a script.
        """
        result = serialize(node)

        def replace(match: re.Match) -> str:
            inner = match.group(1).strip()
            if inner.lower().startswith(_SUB_RULE_PREFIXES):
                return self.text(node, inner, base_url)
            return self.bridge.run_text("{{" + inner + "}}", result, base_url)

        return _TEMPLATE.sub(replace, template)
