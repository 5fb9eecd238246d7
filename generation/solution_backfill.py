"""
Reference solution backfill.

Previous-year (reference) questions are often stored without an answer or a
worked solution. This job solves them one at a time and writes back only the
answer and solution fields. A failure on one question (model or database) is
counted and the batch moves on.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Sequence

from generation.control import RunControl
from generation.errors import (
    ConfigurationError,
    ContentBlockedError,
    GenerationError,
    JsonExtractionError,
)
from generation.json_parser import parse_json_robust
from generation.latex_cleaner import clean_latex_syntax
from generation.progress import ProgressSink, emit
from generation.schemas import (
    BackfillReport,
    GenerationTimings,
    ProgressEvent,
    SolvedAnswer,
    TopicInput,
)

log = logging.getLogger("generation.pipeline")

SOLVE_MAX_ATTEMPTS = 5
SOLVE_TEMPERATURE = 0.1
SOLVE_MAX_TOKENS = 3000
SOLVE_NOTES_LIMIT = 2500


SOLUTION_PROMPT = """You are an expert professor solving {topic_name} questions with 100% accuracy using authentic scientific concepts and methods.
{notes_block}
LATEX: wrap ALL mathematics in $...$ or $$...$$ and use proper commands ($\\alpha$, $\\frac{{a}}{{b}}$, $\\sqrt{{x}}$). NEVER write \\backslash or \\ackslash.

These are previous year questions verified by professors. The options provided are CORRECT. If your result is not among them, re-check your work and try a different approach; never conclude the question is wrong.

ANSWER FORMAT:
- MCQ: a single letter, e.g. "A"
- MSQ: comma-separated letters, e.g. "A, C"
- NAT: the numerical value only, e.g. "3.14"
- Subjective: a comprehensive step-by-step answer

SOLUTION RULES:
- Single continuous line, steps separated by periods, max 500 characters

Question to solve:
Statement: {statement}
Type: {question_type}
{options_block}

Return ONLY a JSON array, no markdown, no line breaks inside strings:
[{{"answer":"A","solution":"Step 1. ... Step 2. ... Therefore A."}}]"""


def build_solution_prompt(item, topic_name: str, notes: str = "") -> str:
    options_block = ""
    if item.options:
        options_block = "Options:\n" + "\n".join(
            f"  {chr(65 + idx)}. {opt}" for idx, opt in enumerate(item.options)
        )
    notes_block = (
        f"\nTOPIC NOTES (use these concepts and methods to solve):\n{notes[:SOLVE_NOTES_LIMIT]}\n"
        if notes else ""
    )
    return SOLUTION_PROMPT.format(
        topic_name=topic_name or "academic",
        notes_block=notes_block,
        statement=item.question_statement,
        question_type=item.question_type,
        options_block=options_block,
    )


async def solve_reference_item(
    client,
    item,
    topic_name: str,
    notes: str = "",
    timings: Optional[GenerationTimings] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> SolvedAnswer:
    """
    Solve one reference question, retrying up to SOLVE_MAX_ATTEMPTS times.

    Raises GenerationError when every attempt failed; content blocks and
    configuration errors are raised at once.
    """
    timings = timings or GenerationTimings()
    prompt = build_solution_prompt(item, topic_name, notes)
    last_error: Optional[Exception] = None

    for attempt in range(1, SOLVE_MAX_ATTEMPTS + 1):
        try:
            response = await client.complete(
                prompt, temperature=SOLVE_TEMPERATURE, max_tokens=SOLVE_MAX_TOKENS
            )
            solutions = parse_json_robust(response, "array")
            if not solutions or not isinstance(solutions[0], dict):
                raise GenerationError("Solution response is empty")
            solved = SolvedAnswer.model_validate(solutions[0])
            if not solved.answer.strip() or not solved.solution.strip():
                raise GenerationError("Solution missing answer or solution text")
            return SolvedAnswer(
                answer=clean_latex_syntax(solved.answer),
                solution=clean_latex_syntax(solved.solution),
            )
        except (ContentBlockedError, ConfigurationError):
            raise
        except (JsonExtractionError, GenerationError, ValueError) as e:
            # ValueError covers a malformed answer object
            last_error = e
            log.warning(f"[SOLVE] Attempt {attempt}/{SOLVE_MAX_ATTEMPTS} failed: {e}")

        if attempt < SOLVE_MAX_ATTEMPTS:
            wait = min(timings.solution_retry_step * attempt, timings.solution_retry_cap)
            if wait > 0:
                await sleep(wait)

    raise GenerationError(
        f"Failed to generate solution after {SOLVE_MAX_ATTEMPTS} attempts: {last_error}"
    )


async def backfill_reference_solutions(
    store,
    client,
    topics: Sequence[TopicInput],
    control: Optional[RunControl] = None,
    timings: Optional[GenerationTimings] = None,
    sink: Optional[ProgressSink] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> BackfillReport:
    """Fill in missing answers/solutions for the reference questions of the given topics."""
    control = control or RunControl()
    timings = timings or GenerationTimings()
    topic_map: Dict[int, TopicInput] = {t.id: t for t in topics}
    topic_ids = list(topic_map)

    stats = store.reference_solution_stats(topic_ids)
    pending = [
        q for q in store.query_items_needing_solutions(topic_ids) if q.topic_id in topic_map
    ]
    report = BackfillReport(
        total=stats["total"],
        with_answer=stats["with_answer"],
        with_solution=stats["with_solution"],
        already_complete=stats["with_both"],
        needing_solutions=len(pending),
    )
    log.info(
        f"[SOLVE] {report.total} reference question(s): {report.with_answer} with answer, "
        f"{report.with_solution} with solution, {report.already_complete} complete, "
        f"{report.needing_solutions} to solve"
    )

    if not pending:
        emit(sink, ProgressEvent(
            stage="pyq_solutions", level="success",
            message=f"All {report.total} reference questions already have complete solutions",
        ))
        return report

    total = len(pending)
    for i, item in enumerate(pending, start=1):
        if not await control.checkpoint():
            report.stopped = True
            log.info(f"[SOLVE] Stopped after {i - 1} question(s)")
            break

        topic = topic_map[item.topic_id]
        progress = dict(
            current_topic=topic.name, item_index=i, items_in_topic=total, target=total,
        )
        emit(sink, ProgressEvent(
            stage="pyq_solutions", message=f"Solving reference question {i}/{total}",
            generated=report.completed, **progress,
        ))

        try:
            solved = await solve_reference_item(
                client, item, topic.name, topic.notes or "", timings=timings, sleep=sleep
            )
        except GenerationError as e:
            report.failed += 1
            log.error(f"[SOLVE] Failed to solve reference question {item.id}: {e}")
            emit(sink, ProgressEvent(
                stage="pyq_solutions", level="error",
                message=f"Failed to generate solution {i}: {e}",
                generated=report.completed, **progress,
            ))
            continue

        try:
            store.update_item(item.id, {"answer": solved.answer, "solution": solved.solution})
        except Exception as e:
            report.failed += 1
            log.error(f"[SOLVE] Failed to save solution for reference question {item.id}: {e}")
            emit(sink, ProgressEvent(
                stage="pyq_solutions", level="error",
                message=f"Failed to save solution: {e}",
                generated=report.completed, **progress,
            ))
        else:
            report.completed += 1
            emit(sink, ProgressEvent(
                stage="pyq_solutions", level="success",
                message=f"Solution {i} generated and saved",
                generated=report.completed, **progress,
            ))

        if i < total and timings.solution_cooldown > 0:
            await sleep(timings.solution_cooldown)

    log.info(f"[SOLVE] Done: {report.completed} solved, {report.failed} failed of {total}")
    return report
