"""
Validator: rules applied to generated and extracted questions.

Structural rule (cheap, inline before every insert):
  - statement non-empty
  - type is one of MCQ / MSQ / NAT / Subjective and matches the requested type
  - MCQ/MSQ carry exactly 4 options; NAT/Subjective options are dropped
  - an answer is present

Semantic rule (expensive, a separate run over stored questions):
  the model re-solves the question and says whether the stored answer holds.
  Subjective questions are always accepted without a model call.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from pydantic import ValidationError

from generation.control import RunControl
from generation.errors import ContentBlockedError, GenerationError, JsonExtractionError
from generation.json_parser import parse_json_robust
from generation.progress import ProgressSink, emit
from generation.schemas import (
    OPTION_TYPES,
    REQUIRED_OPTION_COUNT,
    CandidateItem,
    GenerationTimings,
    ProgressEvent,
    QuestionType,
    SemanticVerdict,
    StructuralCheck,
    ValidationRunReport,
)

log = logging.getLogger("generation.pipeline")

_VALID_TYPES = {t.value for t in QuestionType}


# ─── Structural validation ─────────────────────────────────────────────────────

def validate_structure(raw: Any, expected_type: Optional[QuestionType] = None) -> StructuralCheck:
    """
    Check one parsed item. On success the returned item is normalised
    (options nulled for NAT/Subjective).
    """
    if isinstance(raw, CandidateItem):
        item = raw
    elif isinstance(raw, dict):
        try:
            item = CandidateItem.model_validate(raw)
        except ValidationError as e:
            return StructuralCheck(ok=False, reason=f"Malformed question: {e.errors()[0]['msg']}")
    else:
        return StructuralCheck(ok=False, reason="Question is not an object")

    if not item.question_statement.strip():
        return StructuralCheck(ok=False, reason="Empty question statement")

    if item.question_type not in _VALID_TYPES:
        return StructuralCheck(ok=False, reason="Invalid question type")
    qtype = QuestionType(item.question_type)

    if expected_type is not None and qtype != QuestionType(expected_type):
        return StructuralCheck(
            ok=False,
            reason=f"Expected {QuestionType(expected_type).value} question, got {qtype.value}",
        )

    if qtype in OPTION_TYPES:
        count = len(item.options or [])
        if count != REQUIRED_OPTION_COUNT:
            return StructuralCheck(
                ok=False,
                reason=f"{qtype.value} must have exactly {REQUIRED_OPTION_COUNT} options. Got {count}",
            )
    elif item.options is not None:
        item = item.model_copy(update={"options": None})

    if not (item.answer or "").strip():
        return StructuralCheck(ok=False, reason="Missing answer")

    return StructuralCheck(ok=True, reason="Question passes structural validation", item=item)


# ─── Semantic validation ───────────────────────────────────────────────────────

SEMANTIC_PROMPT = """You are an expert question validator. Solve this question independently and decide whether it is WRONG or CORRECT.

Question Details:
- Statement: {statement}
- Type: {question_type}
- Options: {options}
- Provided Answer: {answer}

VALIDATION RULES:
MCQ (single correct):
- WRONG if no option is correct, several options are correct, or the provided answer does not match the correct option
MSQ (multiple correct):
- WRONG if no option is correct, or the provided answer does not include exactly the correct options
NAT (numerical):
- WRONG if the answer is not numerical, the question is unsolvable, or the provided answer is mathematically incorrect

Return ONLY a JSON object on a single line, no markdown:
{{"isWrong": true, "reason": "single line explanation", "correctAnswer": "correct answer if applicable"}}"""

SEMANTIC_TEMPERATURE = 0.1
SEMANTIC_MAX_TOKENS = 2000


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


async def validate_question_semantics(client, item) -> SemanticVerdict:
    """
    Ask the model whether a stored question is wrong.

    Never raises for provider or parse problems: the question is then treated
    as correct and the reason says why. Content blocks are the exception and
    propagate.
    """
    if item.question_type == QuestionType.SUBJECTIVE.value:
        return SemanticVerdict(is_wrong=False, reason="Subjective questions are not validated")

    prompt = SEMANTIC_PROMPT.format(
        statement=item.question_statement,
        question_type=item.question_type,
        options=", ".join(item.options) if item.options else "None",
        answer=item.answer or "None",
    )

    try:
        response = await client.complete(
            prompt, temperature=SEMANTIC_TEMPERATURE, max_tokens=SEMANTIC_MAX_TOKENS
        )
    except ContentBlockedError:
        raise
    except GenerationError as e:
        log.warning(f"[VALIDATE] Validation call failed: {e}")
        return SemanticVerdict(
            is_wrong=False, reason=f"Validation failed: {e} - marked as correct by default"
        )

    try:
        data = parse_json_robust(response, "object")
    except JsonExtractionError:
        return SemanticVerdict(is_wrong=False, reason="Validation skipped - marked as correct")

    verdict = SemanticVerdict(
        is_wrong=_as_bool(data.get("isWrong", data.get("is_wrong", False))),
        reason=str(data.get("reason") or ""),
        correct_answer=(
            str(data["correctAnswer"]) if data.get("correctAnswer") is not None else None
        ),
    )
    log.info(f"[VALIDATE] Result: {'WRONG' if verdict.is_wrong else 'CORRECT'} - {verdict.reason}")
    return verdict


async def run_question_validation(
    store,
    client,
    topic_ids: Sequence[int],
    control: Optional[RunControl] = None,
    timings: Optional[GenerationTimings] = None,
    sink: Optional[ProgressSink] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ValidationRunReport:
    """Validate every generated question of the given topics and store verdicts."""
    control = control or RunControl()
    timings = timings or GenerationTimings()
    report = ValidationRunReport()

    questions = store.list_generated_for_topics(topic_ids)
    total = len(questions)
    log.info(f"[VALIDATE] Validating {total} question(s) across {len(topic_ids)} topic(s)")

    for i, question in enumerate(questions, start=1):
        if not await control.checkpoint():
            report.stopped = True
            log.info(f"[VALIDATE] Stopped after {report.validated} question(s)")
            break

        emit(sink, ProgressEvent(
            stage="validation",
            message=f"Validating {question.question_type} question {i}/{total}",
            item_index=i,
            items_in_topic=total,
            generated=report.validated,
            target=total,
        ))

        try:
            verdict = await validate_question_semantics(client, question)
            store.set_verdict(question.id, verdict.is_wrong, verdict.reason)
        except Exception as e:
            report.failed += 1
            log.error(f"[VALIDATE] Failed to validate question {question.id}: {e}")
            emit(sink, ProgressEvent(
                stage="validation", level="error",
                message=f"Failed to validate question {i}: {e}",
                item_index=i, items_in_topic=total, target=total,
            ))
            await sleep(timings.validation_error_cooldown)
            continue

        report.validated += 1
        if verdict.is_wrong:
            report.wrong += 1
            report.wrong_ids.append(question.id)
        else:
            report.correct += 1

        emit(sink, ProgressEvent(
            stage="validation",
            level="warning" if verdict.is_wrong else "success",
            message=(
                f"Question {i} marked as {'WRONG' if verdict.is_wrong else 'CORRECT'}"
                + (f": {verdict.reason}" if verdict.is_wrong else "")
            ),
            item_index=i,
            items_in_topic=total,
            generated=report.validated,
            target=total,
        ))
        if i < total:
            await sleep(timings.validation_cooldown)

    log.info(
        f"[VALIDATE] Done: {report.wrong} wrong, {report.correct} correct, "
        f"{report.failed} failed of {total}"
    )
    return report


def delete_wrong_questions(store, topic_ids: Sequence[int], ids: Optional[List[int]] = None) -> int:
    """Delete questions marked wrong (optionally only the given ids)."""
    deleted = store.delete_wrong_items(topic_ids, ids)
    log.info(f"[VALIDATE] Deleted {deleted} wrong question(s)")
    return deleted
