"""
Extraction and repair of JSON payloads from generative service output.

The service is asked for one JSON object but may wrap it in prose or markdown
fences, or emit trailing commas, single quotes, bare property names,
unescaped control characters or a truncated tail. Parsing is layered:

1. strict    - ``json.loads`` on the cleaned text
2. tolerant  - ``json5.loads``, which accepts trailing commas, single quotes
               and unquoted keys
3. balanced  - string-escape-aware brace/bracket balancing, then layer 2 again

Payloads recovered by layers 2 or 3 additionally get known-field repairs
(scheme-less URLs, out-of-vocabulary severity words). Nothing here decides
whether a record is *correct*; that is left to validation and deduplication.
"""
import json
import re
from enum import StrEnum
from typing import Any, Mapping, Optional

import json5
from pydantic import BaseModel, ConfigDict

from disruption_intel.logger import get_logger

logger = get_logger(__name__)

_FENCE_RE = re.compile(r"```[a-zA-Z0-9_-]*")
_DOUBLE_COMMA_RE = re.compile(r",(\s*,)+")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_WHITESPACE_RE = re.compile(r"\s+")
_MISSING_COMMA_RE = re.compile(r"}\s*{")
_SMART_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})
_URL_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")

_CLOSERS = {"{": "}", "[": "]"}
URL_FIELDS = ("sourceUrl", "source_url", "url")
SEVERITY_FIELDS = ("impactLevel", "impact_level", "impact", "severity")


class ParseError(Exception):
    """The payload could not be recovered by any parsing layer."""


class ParseLayer(StrEnum):
    """Layer that produced the payload."""

    STRICT = "strict"
    TOLERANT = "tolerant"
    BALANCED = "balanced"


class ParseResult(BaseModel):
    """Parsed payload and the layer that recovered it."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    data: Any
    layer: ParseLayer

# --- cleaning

def strip_code_fences(text: str) -> str:
    """Remove markdown code fence markers, keeping their content."""
    return _FENCE_RE.sub("", text)


def extract_outer_object(text: str) -> str:
    """
    Keep the span from the first ``{`` to the last ``}``, or the whole text
    when it is a bare list.

    A payload with an opening brace but no closing one is kept to the end of
    the text so the balancing layer can still close it.
    """
    stripped = text.strip()
    if stripped.startswith("["):
        return stripped
    start = text.find("{")
    if start == -1:
        return stripped
    end = text.rfind("}")
    if end < start:
        return text[start:].strip()
    return text[start : end + 1]


def normalize_common_defects(text: str) -> str:
    """Drop doubled and trailing commas, insert missing commas between objects, collapse whitespace."""
    text = text.translate(_SMART_QUOTES)
    text = _WHITESPACE_RE.sub(" ", text)
    text = _DOUBLE_COMMA_RE.sub(",", text)
    text = _TRAILING_COMMA_RE.sub(r"\1", text)
    text = _MISSING_COMMA_RE.sub("},{", text)
    return text.strip()


def clean_response(raw_text: str) -> str:
    """Apply fence stripping, outer-object extraction and defect normalization."""
    return normalize_common_defects(extract_outer_object(strip_code_fences(raw_text)))

# --- parsing layers

def parse_strict(text: str) -> Any:
    """Layer 1: standard JSON."""
    try:
        return json.loads(text)
    except ValueError as e:
        raise ParseError(f"strict parse failed: {e}") from e


def parse_tolerant(text: str) -> Any:
    """Layer 2: JSON5 grammar (trailing commas, single quotes, unquoted keys)."""
    try:
        return json5.loads(text)
    except ValueError as e:
        raise ParseError(f"tolerant parse failed: {e}") from e


def balance_structure(text: str) -> str:
    """
    Close whatever the text left open.

    Walks the text once, tracking string state (either quote style, honouring
    backslash escapes) and a stack of open braces/brackets. Closers that do not
    match the innermost opener are dropped. At the end an unterminated string
    is closed, a dangling comma is removed and the missing closers are
    appended innermost first.
    """
    out: list[str] = []
    stack: list[str] = []
    quote: Optional[str] = None
    escaped = False

    for ch in text:
        if quote is not None:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in ('"', "'"):
            quote = ch
        elif ch in _CLOSERS:
            stack.append(ch)
        elif ch in ("}", "]"):
            if not stack or _CLOSERS[stack[-1]] != ch:
                continue
            stack.pop()
        out.append(ch)

    if quote is not None:
        if escaped:
            out.pop()
        out.append(quote)

    result = "".join(out).rstrip()
    while result.endswith(","):
        result = result[:-1].rstrip()
    if result.endswith(":"):
        result += " null"

    return result + "".join(_CLOSERS[opener] for opener in reversed(stack))


def parse_balanced(text: str) -> Any:
    """Layer 3: structural balancing followed by the tolerant grammar."""
    return parse_tolerant(balance_structure(text))

# --- known-field repairs

def _prefix_scheme(url: str) -> str:
    url = url.strip()
    if url and not _URL_SCHEME_RE.match(url):
        return "https://" + url.lstrip("/")
    return url


def repair_known_fields(data: Any, severity_synonyms: Mapping[str, str] | None = None) -> Any:
    """
    Recursively prefix scheme-less URLs and remap severity words.

    :param data: Parsed payload.
    :param severity_synonyms: Case-insensitive synonym -> canonical severity map.
    :return: Repaired copy of *data*.
    """
    lowered = {k.lower(): v for k, v in (severity_synonyms or {}).items()}
    if isinstance(data, list):
        return [repair_known_fields(item, severity_synonyms) for item in data]
    if not isinstance(data, dict):
        return data
    repaired: dict[str, Any] = {}
    for key, value in data.items():
        if key in URL_FIELDS and isinstance(value, str):
            value = _prefix_scheme(value)
        elif key in SEVERITY_FIELDS and isinstance(value, str):
            value = lowered.get(value.strip().lower(), value)
        elif isinstance(value, (dict, list)):
            value = repair_known_fields(value, severity_synonyms)
        repaired[key] = value
    return repaired


class ResponseSanitizer:
    """Turns raw generative output into a parsed JSON payload."""

    def __init__(self, severity_synonyms: Mapping[str, str] | None = None) -> None:
        """Initialize the sanitizer with the severity synonym table used in repair."""
        self._severity_synonyms = dict(severity_synonyms or {})

    def parse(self, raw_text: str) -> ParseResult:
        """
        Parse *raw_text* through the strict, tolerant and balanced layers.

        :raises ParseError: When every layer fails.
        """
        if not raw_text or not raw_text.strip():
            raise ParseError("empty response")
        cleaned = clean_response(raw_text)

        try:
            return ParseResult(data=parse_strict(cleaned), layer=ParseLayer.STRICT)
        except ParseError as e:
            logger.debug("Strict parse failed, trying tolerant grammar: %s", e)

        errors: list[str] = []
        for layer, parse_fn in ((ParseLayer.TOLERANT, parse_tolerant), (ParseLayer.BALANCED, parse_balanced)):
            try:
                data = parse_fn(cleaned)
            except ParseError as e:
                errors.append(str(e))
                continue
            logger.info("Recovered malformed payload with %s layer", layer)
            return ParseResult(data=repair_known_fields(data, self._severity_synonyms), layer=layer)

        preview = cleaned[:200]
        raise ParseError(f"payload irrecoverable ({'; '.join(errors)}); starts with: {preview!r}")

    def parse_records(self, raw_text: str, key: str = "alerts") -> list[dict[str, Any]]:
        """
        Parse *raw_text* and return the list of record objects under *key*.

        A bare top-level list or a single object carrying ``title`` is accepted too.

        :raises ParseError: When the payload is unparseable or has no record list.
        """
        data = self.parse(raw_text).data
        if isinstance(data, dict) and key in data:
            records = data[key]
        elif isinstance(data, list):
            records = data
        elif isinstance(data, dict) and "title" in data:
            records = [data]
        else:
            raise ParseError(f"payload has no '{key}' list")
        if not isinstance(records, list):
            raise ParseError(f"'{key}' is not a list")
        return [r for r in records if isinstance(r, dict)]
