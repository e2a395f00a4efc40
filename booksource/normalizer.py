"""Turn raw chapter markup into reader-friendly plain text."""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Tuple

from bs4 import BeautifulSoup

from .models import Source

logger = logging.getLogger(__name__)

NEWLINE_SENTINEL = "[[_NEWLINE_]]"
PARAGRAPH_INDENT = "\u3000\u3000"

_LINE_BREAKS = re.compile(r"<br\s*/?>|</p>|</div>", re.IGNORECASE)
_WHITESPACE = re.compile(r"[ \t\n\r\f]+")
_GROUP_REF = re.compile(r"\$(\d+)")


class ContentNormalizer:
    """Clean the body of a chapter.

    Processing happens in a fixed order: the source's own replacement
    rules, line breaks folded into a sentinel, markup stripped and
    whitespace collapsed, the sentinel turned back into newlines,
    non-breaking spaces removed and finally every line trimmed and
    indented.
    """

    def process(self, content: str, source: Optional[Source] = None) -> str:
        if not content:
            return ""
        text = self.apply_replacements(content, source)
        text = _LINE_BREAKS.sub(NEWLINE_SENTINEL, text)
        text = BeautifulSoup(text, "lxml").get_text()
        text = _WHITESPACE.sub(" ", text)
        text = text.replace(NEWLINE_SENTINEL, "\n")
        text = text.replace("\u00a0", " ")
        return self.typeset(text)

    @staticmethod
    def replacement_rules(source: Optional[Source]) -> List[Tuple[re.Pattern, str]]:
        """Compiled ``pattern##replacement`` lines of ``ruleContent.replaceRegex``."""
        rule = source.rule_content if source is not None else None
        raw = (rule.replace_regex if rule is not None else None) or ""
        rules = []
        for line in raw.splitlines():
            pattern, _, replacement = line.partition("##")
            if not pattern.strip():
                continue
            try:
                compiled = re.compile(pattern, re.IGNORECASE | re.DOTALL)
            except re.error as exc:
                logger.warning("Skipping bad replacement pattern %r: %s", pattern, exc)
                continue
            rules.append((compiled, _GROUP_REF.sub(r"\\g<\1>", replacement)))
        return rules

    def apply_replacements(self, content: str, source: Optional[Source]) -> str:
        for pattern, replacement in self.replacement_rules(source):
            try:
                content = pattern.sub(replacement, content)
            except re.error as exc:
                logger.warning("Replacement %r failed: %s", pattern.pattern, exc)
        return content

    @staticmethod
    def typeset(text: str) -> str:
        lines = (line.strip() for line in text.split("\n"))
        return "\n".join(PARAGRAPH_INDENT + line for line in lines if line)
