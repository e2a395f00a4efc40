"""Embedded script support for rules.

Rules may escape into JavaScript with one of three envelopes:
``{{js: ...}}`` (or bare ``{{ ... }}``), ``@js: ...`` up to the end of the
rule, and ``<js> ... </js>``. The :class:`ScriptBridge` strips the
envelope, binds ``result`` (the content the rule is looking at) and
``baseUrl``, and hands the script to an evaluator.

Evaluators are pluggable: anything with a ``name`` attribute and an
``evaluate(script, bindings)`` method will do. The bundled
:class:`QuickJSEvaluator` runs scripts in QuickJS with a time and memory
limit and a brand new context for every call, so nothing one script
defines is visible to the next. Scripts reach the host only through the
fixed ``java`` object described by :data:`NATIVE_FUNCTIONS`.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, Union

import quickjs
from Crypto.Cipher import AES
from Crypto.Util.Padding import unpad

from . import config
from .nodes import TextNode

logger = logging.getLogger(__name__)

ScriptValue = Union[None, str, List[str]]

_ENVELOPE = re.compile(
    r"<js>(?P<tag>.*?)</js>|\{\{(?:js:)?(?P<brace>.*?)\}\}|@js:(?P<at>.*)",
    re.DOTALL | re.IGNORECASE,
)
_INLINE_JS = re.compile(r"\{\{js:(.*?)\}\}", re.DOTALL | re.IGNORECASE)
_TRAILING_JS = re.compile(r"<js>|@js:", re.IGNORECASE)
_IDENTIFIER = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*$")


# Native helpers exposed to scripts as ``java.<name>``.

def js_log(message: str) -> str:
    logger.info("[js] %s", message)
    return message


def md5_hex(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def base64_encode(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def base64_decode(text: str) -> str:
    try:
        return base64.b64decode(text).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        logger.warning("base64Decode failed: %s", exc)
        return ""


def aes_base64_decode_to_string(data: str, key: str, transformation: str, iv: str) -> str:
    """Decrypt base64 ``data`` with AES-CBC and PKCS7 padding.

    ``key`` and ``iv`` are used as their raw UTF-8 bytes. ``transformation``
    is accepted for compatibility with the Java-style signature; only
    CBC with PKCS5/PKCS7 padding is supported.
    """
    if transformation and "CBC" not in transformation.upper():
        logger.warning("Unsupported AES transformation %r, decrypting as CBC/PKCS7", transformation)
    try:
        cipher = AES.new(key.encode("utf-8"), AES.MODE_CBC, iv.encode("utf-8"))
        plain = unpad(cipher.decrypt(base64.b64decode(data)), AES.block_size)
        return plain.decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError, KeyError) as exc:
        logger.warning("AES decrypt failed: %s", exc)
        return ""


NATIVE_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "log": js_log,
    "md5": md5_hex,
    "base64Encode": base64_encode,
    "base64Decode": base64_decode,
    "aesBase64DecodeToString": aes_base64_decode_to_string,
}

# Arguments are coerced to strings before crossing into Python.
_PRELUDE = """
var java = {
  log: function (msg) { return __native_log(String(msg)); },
  md5: function (s) { return __native_md5(String(s)); },
  md5Encode: function (s) { return __native_md5(String(s)); },
  base64Encode: function (s) { return __native_base64Encode(String(s)); },
  base64Decode: function (s) { return __native_base64Decode(String(s)); },
  aesBase64DecodeToString: function (data, key, transformation, iv) {
    return __native_aesBase64DecodeToString(String(data), String(key), String(transformation), String(iv));
  }
};
"""


class Evaluator(Protocol):
    """Anything able to run a script with a set of bound variables."""

    name: str

    def evaluate(self, script: str, bindings: Dict[str, Any]) -> Any:
        ...


class QuickJSEvaluator:
    """Run scripts in a fresh QuickJS context with resource limits."""

    name = "quickjs"

    def __init__(
        self,
        time_limit: float = config.SCRIPT_TIME_LIMIT,
        memory_limit: int = config.SCRIPT_MEMORY_LIMIT,
    ) -> None:
        self.time_limit = time_limit
        self.memory_limit = memory_limit

    def _new_context(self) -> quickjs.Context:
        context = quickjs.Context()
        context.set_time_limit(self.time_limit)
        context.set_memory_limit(self.memory_limit)
        for name, func in NATIVE_FUNCTIONS.items():
            context.add_callable(f"__native_{name}", func)
        context.eval(_PRELUDE)
        return context

    def evaluate(self, script: str, bindings: Dict[str, Any]) -> Any:
        context = self._new_context()
        for key, value in bindings.items():
            if not _IDENTIFIER.match(key):
                raise ValueError(f"invalid binding name {key!r}")
            context.eval(f"var {key} = {json.dumps(value)};")
        return _from_js(context.eval(script))


def _from_js(value: Any) -> Any:
    if isinstance(value, quickjs.Object):
        raw = value.json()
        return json.loads(raw) if raw else None
    return value


def _scalar(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def to_script_value(value: Any) -> ScriptValue:
    """Sequences become lists of strings, everything else a single string."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return [_scalar(item) for item in value]
    return _scalar(value)


def is_script(rule: str) -> bool:
    return "@js:" in rule or "<js>" in rule.lower() or "{{" in rule


def strip_envelope(text: str) -> Optional[Tuple[str, str]]:
    """Split off the first script envelope in ``text``.

    Returns ``(prefix, script)`` where ``prefix`` is everything before
    the envelope, or ``None`` when ``text`` holds no envelope.
    """
    match = _ENVELOPE.search(text)
    if match is None:
        return None
    script = next(group for group in match.group("tag", "brace", "at") if group is not None)
    return text[: match.start()], script.strip()


class ScriptBridge:
    """Glue between rules and an :class:`Evaluator`.

    Failures never escape: a missing envelope, a script exception or a
    timeout is logged and reported as an empty result.
    """

    def __init__(self, evaluator: Optional[Evaluator] = None) -> None:
        self.evaluator = evaluator or QuickJSEvaluator()

    def run(self, rule: str, result: Optional[str] = None, base_url: str = "", **extra: Any) -> ScriptValue:
        envelope = strip_envelope(rule)
        if envelope is None:
            logger.warning("No script envelope found in %r", rule[:80])
            return None
        prefix, script = envelope
        bindings: Dict[str, Any] = {
            "result": prefix if result is None else result,
            "baseUrl": base_url,
        }
        bindings.update(extra)
        try:
            value = self.evaluator.evaluate(script, bindings)
        except Exception as exc:
            logger.warning("Script evaluation failed (%s): %s", self.evaluator.name, exc)
            return None
        return to_script_value(value)

    def run_text(self, rule: str, result: Optional[str] = None, base_url: str = "", **extra: Any) -> str:
        value = self.run(rule, result, base_url, **extra)
        if isinstance(value, list):
            return "\n".join(value)
        return value or ""

    def run_nodes(self, rule: str, result: Optional[str] = None, base_url: str = "", **extra: Any) -> List[TextNode]:
        value = self.run(rule, result, base_url, **extra)
        if isinstance(value, list):
            return [TextNode(item) for item in value]
        return [TextNode(value)] if value else []

    def render_template(self, template: str, base_url: str = "", **extra: Any) -> str:
        """Evaluate the scripts embedded in a URL template.

        Inline ``{{js:...}}`` blocks are replaced by their value. A trailing
        ``@js:`` or ``<js>`` envelope then receives the text in front of it
        as ``result`` and its value becomes the template.
        """
        text = _INLINE_JS.sub(
            lambda match: self.run_text("{{js:" + match.group(1) + "}}", "", base_url, **extra),
            template,
        )
        if _TRAILING_JS.search(text):
            return self.run_text(text, None, base_url, **extra)
        return text
