"""
Robust JSON extraction from free-form LLM responses.

parse_json_robust() runs an ordered cascade of strategies, each more
aggressive than the last, and returns the first successful result:

  1. Regex span: first '[' ... last ']' via regex, sanitized
  2. Head slice: first opening bracket to end of text, sanitized
  3. Bracket slice: first opening to last closing bracket, sanitized
  4. Aggressive: fences stripped, escapes protected by token map,
     all control/extended chars removed, then regex span
  5. Rebuild: every escape protected individually, punctuation
     spacing normalised, then parsed as-is
  6. Balanced: scan with a depth counter for the exact matching
     closing bracket, sanitized
  7. Repair: json_repair on the first opening to last closing bracket
     (or to end of text when the closer is missing)

Different malformations are caught by different strategies, so the chain is
kept whole even though most responses succeed at step 1.
"""

import json
import logging
import re
from typing import Any, Callable, List, Literal, Tuple

import json_repair

from generation.errors import JsonExtractionError
from generation.json_sanitizer import (
    normalize_smart_characters,
    protect,
    sanitize_json_string,
)

log = logging.getLogger(__name__)

ExpectedShape = Literal["array", "object"]

_SPAN_RE = {
    "array": re.compile(r"\[[\s\S]*\]"),
    "object": re.compile(r"\{[\s\S]*\}"),
}
_BRACKETS = {"array": ("[", "]"), "object": ("{", "}")}

_AGGRESSIVE_FENCE_RE = re.compile(r"```(?:javascript|json|js)?", re.IGNORECASE)
_AGGRESSIVE_JSON_WORD_RE = re.compile(r"^json\s*", re.IGNORECASE)
_EXTENDED_CONTROL_RE = re.compile(r"[\x00-\x1F\x7F-\x9F]")

# Escape sequence → token used by the aggressive strategy
ESCAPE_TOKENS = {
    "\\\\": "___BACKSLASH___",
    "\\n": "___NEWLINE___",
    "\\r": "___RETURN___",
    "\\t": "___TAB___",
    '\\"': "___QUOTE___",
    "\\f": "___FORMFEED___",
    "\\b": "___BACKSPACE___",
}

_REBUILD_ESCAPES = (
    re.compile(r'\\"'),
    re.compile(r"\\\\"),
    re.compile(r"\\n"),
    re.compile(r"\\r"),
    re.compile(r"\\t"),
    re.compile(r"\\f"),
    re.compile(r"\\b"),
)
_REBUILD_CONTROL_RE = re.compile(r"[\x00-\x09\x0B-\x1F\x7F-\x9F]")
_REBUILD_SPACING = (
    (re.compile(r"\s+"), " "),
    (re.compile(r",\s*([}\]])"), r"\1"),
    (re.compile(r'"\s+:'), '":'),
    (re.compile(r':\s+"'), ':"'),
    (re.compile(r',\s+"'), ',"'),
    (re.compile(r'\{\s+"'), '{"'),
    (re.compile(r"\[\s+"), "["),
    (re.compile(r"\s+\]"), "]"),
    (re.compile(r"\s+\}"), "}"),
)


# ─── Helpers ───────────────────────────────────────────────────────────────────

def _loads_shape(text: str, expected: ExpectedShape) -> Any:
    return _check_shape(json.loads(text), expected)


def _check_shape(value: Any, expected: ExpectedShape) -> Any:
    wanted = list if expected == "array" else dict
    if not isinstance(value, wanted):
        raise ValueError(f"expected {expected}, got {type(value).__name__}")
    return value


def _bracket_bounds(response: str, expected: ExpectedShape) -> Tuple[int, int]:
    open_char, close_char = _BRACKETS[expected]
    first = response.find(open_char)
    last = response.rfind(close_char)
    if first == -1 or last == -1 or last <= first:
        raise ValueError("invalid bracket positions")
    return first, last


def find_balanced_span(text: str, expected: ExpectedShape) -> str:
    """
    Return the text from the first opening bracket to its matching closer.

    Only the expected bracket type is counted, so brackets of the other kind
    and brackets inside strings are not special-cased.
    """
    open_char, close_char = _BRACKETS[expected]
    start = text.find(open_char)
    if start == -1:
        raise ValueError("no opening bracket found")
    depth = 0
    for idx in range(start, len(text)):
        ch = text[idx]
        if ch == open_char:
            depth += 1
        elif ch == close_char:
            depth -= 1
        if depth == 0:
            return text[start: idx + 1]
    raise ValueError("no matching closing bracket found")


# ─── Strategies ────────────────────────────────────────────────────────────────

def _regex_span(response: str, expected: ExpectedShape) -> Any:
    match = _SPAN_RE[expected].search(response)
    if not match:
        raise ValueError("no JSON found in response")
    return _loads_shape(sanitize_json_string(match.group(0)), expected)


def _head_slice(response: str, expected: ExpectedShape) -> Any:
    start = response.find(_BRACKETS[expected][0])
    if start == -1:
        raise ValueError("no opening bracket found")
    return _loads_shape(sanitize_json_string(response[start:]), expected)


def _bracket_slice(response: str, expected: ExpectedShape) -> Any:
    first, last = _bracket_bounds(response, expected)
    return _loads_shape(sanitize_json_string(response[first: last + 1]), expected)


def _aggressive_clean(response: str, expected: ExpectedShape) -> Any:
    cleaned = _AGGRESSIVE_FENCE_RE.sub("", response).strip()
    cleaned = _AGGRESSIVE_JSON_WORD_RE.sub("", cleaned)

    for escaped, token in ESCAPE_TOKENS.items():
        cleaned = cleaned.replace(escaped, token)
    cleaned = _EXTENDED_CONTROL_RE.sub(" ", cleaned)
    for escaped, token in ESCAPE_TOKENS.items():
        cleaned = cleaned.replace(token, escaped)

    cleaned = normalize_smart_characters(cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned)

    match = _SPAN_RE[expected].search(cleaned)
    if not match:
        raise ValueError("no JSON after aggressive cleaning")
    return _loads_shape(match.group(0), expected)


def _rebuild(response: str, expected: ExpectedShape) -> Any:
    first, last = _bracket_bounds(response, expected)
    text = response[first: last + 1]

    restorers: List[Callable[[str], str]] = []
    for pattern in _REBUILD_ESCAPES:
        text, restore = protect(text, pattern)
        restorers.append(restore)

    text = _REBUILD_CONTROL_RE.sub(" ", text)
    for pattern, replacement in _REBUILD_SPACING:
        text = pattern.sub(replacement, text)

    for restore in reversed(restorers):
        text = restore(text)
    return _loads_shape(text, expected)


def _balanced(response: str, expected: ExpectedShape) -> Any:
    span = find_balanced_span(response, expected)
    return _loads_shape(sanitize_json_string(span), expected)


def _repair(response: str, expected: ExpectedShape) -> Any:
    open_char, close_char = _BRACKETS[expected]
    start = response.find(open_char)
    if start == -1:
        raise ValueError("no opening bracket found")
    end = response.rfind(close_char)
    end = end + 1 if end > start else len(response)
    # json_repair returns "" for text it cannot salvage
    return _check_shape(json_repair.loads(response[start:end]), expected)


STRATEGIES: List[Tuple[str, Callable[[str, ExpectedShape], Any]]] = [
    ("regex span", _regex_span),
    ("head slice", _head_slice),
    ("bracket slice", _bracket_slice),
    ("aggressive clean", _aggressive_clean),
    ("rebuild", _rebuild),
    ("bracket balance", _balanced),
    ("json repair", _repair),
]


# ─── Main entry ────────────────────────────────────────────────────────────────

def parse_json_robust(response: str, expected: ExpectedShape = "array") -> Any:
    """
    Parse an LLM response into a list (expected="array") or dict ("object").

    Raises:
        JsonExtractionError: when every strategy fails. The error lists one
            terse reason per strategy and never echoes the response text.
    """
    if expected not in _BRACKETS:
        raise ValueError(f"Unknown expected shape: {expected!r}")

    reasons: List[str] = []
    for idx, (name, strategy) in enumerate(STRATEGIES, start=1):
        try:
            result = strategy(response or "", expected)
        except (ValueError, RecursionError) as e:
            # json.JSONDecodeError is a ValueError; its message has positions only
            reasons.append(f"Strategy {idx} ({name}): {str(e)[:120]}")
            continue
        if idx > 1:
            log.debug(f"[PARSE] Recovered JSON {expected} with strategy {idx} ({name})")
        return result

    log.warning(f"[PARSE] JSON parsing failed after all {len(STRATEGIES)} strategies")
    raise JsonExtractionError(reasons)
