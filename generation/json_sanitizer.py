"""
JSON sanitizer for raw LLM output.

Turns text that *should* contain one JSON array/object (but arrives wrapped in
markdown fences, with raw newlines inside strings, smart quotes, broken
escapes, trailing commas ...) into a string that json.loads has a fair chance
of accepting.

The output is best-effort only: callers must still parse and handle failure.
"""

import re
from typing import Callable, List, Tuple


# ─── Patterns ──────────────────────────────────────────────────────────────────

_FENCE_RE = re.compile(r"```[ \t]*(?:(?:javascript|json|js)\b)?", re.IGNORECASE)
_LEADING_JSON_WORD_RE = re.compile(r"^\s*json\b\s*", re.IGNORECASE)

# Escapes that are already valid JSON and must survive control-char cleanup
_VALID_ESCAPE_RE = re.compile(r'\\[nrtfb"\\]')

_CONTROL_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_LINEBREAK_RE = re.compile(r"[\n\r\t]")

_ESCAPED_BACKSLASH_RE = re.compile(r"\\\\")
_UNICODE_KEEP_RE = re.compile(r"\\\\|\\u[0-9a-fA-F]{4}")
_BARE_UNICODE_RE = re.compile(r"\\u")

_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_WHITESPACE_RE = re.compile(r"\s+")

# Anything after a backslash that is not one of the nine legal JSON escapes
_ILLEGAL_ESCAPE_RE = re.compile(r'\\([^"\\/bfnrtu])')
_HEX_ESCAPE_RE = re.compile(r"\\x[0-9a-fA-F]{0,2}")
_OCTAL_ESCAPE_RE = re.compile(r"\\[0-7]{1,3}")

# Mojibake first: it contains characters that the single-char rules also touch
SMART_CHARACTERS = (
    ("â€¦", "..."),
    ("“", '"'),
    ("”", '"'),
    ("„", '"'),
    ("‟", '"'),
    ("″", '"'),
    ("‘", "'"),
    ("’", "'"),
    ("‚", "'"),
    ("‛", "'"),
    ("′", "'"),
    ("…", "..."),
)


# ─── Placeholder protection ────────────────────────────────────────────────────

def _free_marker(text: str) -> str:
    """Pick a private-use character that does not occur in text."""
    for codepoint in range(0xE000, 0xF900):
        marker = chr(codepoint)
        if marker not in text:
            return marker
    raise ValueError("No free placeholder character available")


def protect(text: str, pattern: "re.Pattern[str]") -> Tuple[str, Callable[[str], str]]:
    """
    Replace every match of pattern with a unique placeholder.

    Returns the protected text and a function that puts the original matches
    back into any string derived from it.
    """
    marker = _free_marker(text)
    saved: List[str] = []

    def _stash(match: "re.Match[str]") -> str:
        saved.append(match.group(0))
        return f"{marker}{len(saved) - 1}{marker}"

    protected = pattern.sub(_stash, text)
    placeholder_re = re.compile(f"{marker}(\\d+){marker}")

    def restore(value: str) -> str:
        return placeholder_re.sub(lambda m: saved[int(m.group(1))], value)

    return protected, restore


# ─── Individual repairs ────────────────────────────────────────────────────────

def strip_markdown_fences(text: str) -> str:
    text = _FENCE_RE.sub("", text)
    text = _LEADING_JSON_WORD_RE.sub("", text)
    return text.strip()


def normalize_smart_characters(text: str) -> str:
    for fancy, plain in SMART_CHARACTERS:
        text = text.replace(fancy, plain)
    return text


def remove_trailing_commas(text: str) -> str:
    while True:
        fixed = _TRAILING_COMMA_RE.sub(r"\1", text)
        if fixed == text:
            return fixed
        text = fixed


def _clean_control_characters(text: str) -> str:
    protected, restore = protect(text, _VALID_ESCAPE_RE)
    protected = _CONTROL_RE.sub(" ", protected)
    protected = _LINEBREAK_RE.sub(" ", protected)
    return restore(protected)


def _fix_unicode_escapes(text: str) -> str:
    protected, restore = protect(text, _UNICODE_KEEP_RE)
    protected = _BARE_UNICODE_RE.sub("u", protected)
    return restore(protected)


def _drop_illegal_escapes(text: str) -> str:
    protected, restore = protect(text, _ESCAPED_BACKSLASH_RE)
    protected = _ILLEGAL_ESCAPE_RE.sub(r"\1", protected)
    return restore(protected)


def _final_safety_net(text: str) -> str:
    protected, restore = protect(text, _ESCAPED_BACKSLASH_RE)
    protected = _HEX_ESCAPE_RE.sub("", protected)
    protected = _OCTAL_ESCAPE_RE.sub("", protected)
    return _CONTROL_RE.sub("", restore(protected))


def _sanitize_pass(text: str) -> str:
    cleaned = strip_markdown_fences(text)
    cleaned = _clean_control_characters(cleaned)
    cleaned = normalize_smart_characters(cleaned)
    cleaned = _fix_unicode_escapes(cleaned)
    cleaned = remove_trailing_commas(cleaned)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    cleaned = _drop_illegal_escapes(cleaned)
    return _final_safety_net(cleaned)


# ─── Public entry ──────────────────────────────────────────────────────────────

def sanitize_json_string(raw: str) -> str:
    """
    Clean a JSON-ish LLM response.

    A later repair can expose work for an earlier one (dropping the backslash
    in ``,\\]`` leaves a trailing comma), so the pass repeats until it is a
    no-op. After the first pass no rule lengthens the text, so this ends.
    """
    cleaned = _sanitize_pass(raw)
    while True:
        again = _sanitize_pass(cleaned)
        if again == cleaned:
            return cleaned
        cleaned = again
