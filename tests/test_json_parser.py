import json

import pytest

from generation.errors import JsonExtractionError
from generation.json_parser import find_balanced_span, parse_json_robust
from generation.json_sanitizer import sanitize_json_string
from generation.latex_cleaner import clean_latex_syntax


MESSY_RESPONSES = [
    '```json\n[{"question_statement": "What is 2+2?", "answer": "A",}]\n```',
    'json [{“question_statement”: “Smart quotes”, "options": null}]',
    '[{"question_statement": "Line one\nline two", "answer": "4"}]',
    '[{"a": "bad \\x41 hex \\101 octal \\q escape"},]',
    '[{"a": "keep \\\\ and \\u00e9 and \\uZZ"}]',
    ',\\]',
]


@pytest.mark.parametrize("raw", MESSY_RESPONSES)
def test_sanitizer_is_idempotent(raw):
    once = sanitize_json_string(raw)
    assert sanitize_json_string(once) == once


def test_fenced_array_with_trailing_commas():
    response = '```json\n[\n  {"question_statement": "What is 2+2?", "answer": "4",},\n]\n```'
    assert parse_json_robust(response) == [{"question_statement": "What is 2+2?", "answer": "4"}]


def test_array_surrounded_by_prose():
    response = (
        "Here are the questions you asked for:\n"
        '[{"question_statement": "Find the derivative of x^2", "question_type": "NAT", "answer": "2x"}]\n'
        "Let me know if you need more."
    )
    result = parse_json_robust(response)
    assert result[0]["question_type"] == "NAT"
    assert result[0]["answer"] == "2x"


def test_raw_newlines_and_smart_quotes_inside_strings():
    response = '[{"question_statement": “Evaluate\nthe integral”, "answer": "B"}]'
    result = parse_json_robust(response)
    assert result == [{"question_statement": "Evaluate the integral", "answer": "B"}]


def test_object_shape():
    response = 'Verdict: {"isWrong": false, "reason": "Answer matches", "correctAnswer": "C"} done'
    assert parse_json_robust(response, "object") == {
        "isWrong": False,
        "reason": "Answer matches",
        "correctAnswer": "C",
    }


def test_array_requested_but_object_given_fails():
    with pytest.raises(JsonExtractionError):
        parse_json_robust('{"answer": "A"}', "array")


def test_failure_lists_strategies_without_echoing_response():
    with pytest.raises(JsonExtractionError) as exc:
        parse_json_robust("I cannot help with that TOPSECRET request")
    assert len(exc.value.reasons) == 7
    assert "TOPSECRET" not in str(exc.value)


def test_empty_response_fails():
    with pytest.raises(JsonExtractionError):
        parse_json_robust("")


def test_unknown_shape_rejected():
    with pytest.raises(ValueError):
        parse_json_robust("[]", "tuple")


def test_frac_survives_parse_and_latex_cleanup():
    # "\f" is a legal JSON escape, so json.loads turns "\frac" into form feed + "rac"
    response = r'[{"question_statement": "Simplify $\frac{a}{b}$", "answer": "A"}]'
    statement = parse_json_robust(response)[0]["question_statement"]
    assert clean_latex_syntax(statement) == r"Simplify $\frac{a}{b}$"


def test_balanced_span_stops_at_matching_bracket():
    text = 'prefix [1, [2, 3]] trailing ] junk'
    assert find_balanced_span(text, "array") == "[1, [2, 3]]"


def test_balanced_span_without_closer():
    with pytest.raises(ValueError):
        find_balanced_span("[1, 2", "array")


# ─── json_repair fallback ──────────────────────────────────────────────────────

@pytest.mark.parametrize("raw", [
    "[{'question_statement': 'Find x', 'answer': 'A'}]",
    '[{question_statement: "Find x", answer: "A"}]',
    'Here it is: [{"question_statement": "Find x", "answer": "A"}',
])
def test_repair_fallback_recovers_what_the_chain_cannot(raw):
    assert parse_json_robust(raw) == [{"question_statement": "Find x", "answer": "A"}]


def test_repair_fallback_still_checks_shape():
    with pytest.raises(JsonExtractionError) as exc:
        parse_json_robust("{'answer': 'A'}", "array")
    assert "Strategy 7 (json repair)" in exc.value.reasons[-1]


# ─── Round trip through fences and prose ───────────────────────────────────────

# Strings holding runs of whitespace, or ",}" / ",]", do not survive: the
# sanitizer collapses whitespace and drops trailing commas inside strings too.
ROUND_TRIP_VALUES = [
    [1, 2.5, -3, True, False, None],
    [[1, [2, [3, []]]], {"nested": {"deeper": [{"x": 1}]}}],
    [{"question_statement": 'Say "hi" to C:\\temp', "options": ["a\nb", "tab\there"]}],
    [{"text": "caf\u00e9 na\u00efve \u03c0 \u2264 \u221e"}],
    {"isWrong": False, "reason": "Answer \u00e9 matches", "correctAnswer": "C"},
    {"items": [{"answer": "B", "solution": "Step 1. Therefore B."}], "count": 1},
]


@pytest.mark.parametrize("value", ROUND_TRIP_VALUES)
@pytest.mark.parametrize("ensure_ascii", [True, False])
def test_dumped_value_survives_fences_and_prose(value, ensure_ascii):
    dumped = json.dumps(value, ensure_ascii=ensure_ascii)
    response = f"Sure! Here is the data:\n```json\n{dumped}\n```\nLet me know if you need more."
    expected = "object" if isinstance(value, dict) else "array"
    assert parse_json_robust(response, expected) == value
