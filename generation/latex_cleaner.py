"""
LaTeX cleaner for model output.

Models (and the JSON round-trip) mangle LaTeX in a few recurring ways:
  - "\\backslashalpha", "\\ackslashhat", "Δackslash" instead of a plain backslash
  - "rac{" left over when "\\f" of "\\frac" was read as a form feed
  - other commands whose leading "\\t", "\\b", "\\n", "\\r" became control chars

clean_latex_syntax() repairs those; clean_question_latex() applies it to every
text field of a question.
"""

import re
from typing import Optional, TypeVar

from generation.schemas import CandidateItem

ItemT = TypeVar("ItemT", bound=CandidateItem)

# A JSON escape swallowed the command's first letter
_CONTROL_CHAR_COMMANDS = (
    ("\x0crac{", "\\frac{"),
    ("\x09heta", "\\theta"),
    ("\x09imes", "\\times"),
    ("\x09au", "\\tau"),
    ("\x09ext{", "\\text{"),
    ("\x09ilde", "\\tilde"),
    ("\x08eta", "\\beta"),
    ("\x08ar{", "\\bar{"),
    ("\x0aabla", "\\nabla"),
    ("\x0aeq", "\\neq"),
    ("\x0au", "\\nu"),
    ("\x0dho", "\\rho"),
    ("\x0dightarrow", "\\rightarrow"),
)

_SYMBOL_ACKSLASH_RE = re.compile(r"[ΔαβγδεθλμσςτωπΣΠΩΛΘΓ⊗]ackslash")
_BACKSLASH_OT_RE = re.compile(r"\\backslashot\b")
_BACKSLASH_COMMAND_RE = re.compile(r"\\backslash([a-zA-Z{} ])")
_BARE_ACKSLASH_RE = re.compile(r"\\?b?ackslash")
_BROKEN_FRAC_RE = re.compile(r"(?<![A-Za-z\\])rac\{")


def clean_latex_syntax(text: Optional[str]) -> Optional[str]:
    if not text or not isinstance(text, str):
        return text

    cleaned = text
    for broken, fixed in _CONTROL_CHAR_COMMANDS:
        cleaned = cleaned.replace(broken, fixed)

    cleaned = _SYMBOL_ACKSLASH_RE.sub(r"\\", cleaned)
    cleaned = _BACKSLASH_OT_RE.sub(r"\\lim", cleaned)
    cleaned = _BACKSLASH_COMMAND_RE.sub(r"\\\1", cleaned)
    cleaned = _BARE_ACKSLASH_RE.sub(r"\\", cleaned)
    cleaned = _BROKEN_FRAC_RE.sub(r"\\frac{", cleaned)
    return cleaned


def clean_question_latex(item: ItemT) -> ItemT:
    """Return a copy of item with LaTeX repaired in every text field."""
    update = {}
    for field in ("question_statement", "answer", "solution", "image_description"):
        value = getattr(item, field, None)
        if value:
            update[field] = clean_latex_syntax(value)
    if item.options:
        update["options"] = [clean_latex_syntax(o) if o else o for o in item.options]
    return item.model_copy(update=update)
