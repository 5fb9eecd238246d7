"""
Generation Orchestrator: drives a whole question-generation run for a course.

Flow:
  1. Load the course's topics and compute quotas (quota.py)
  2. Subtract questions already stored for (topic, type); drop topics with nothing left
  3. Per topic, load reference questions and already-generated questions as context
  4. Per missing question, up to max_attempts tries of
       generate → parse → structural check → self-flag check → persist
  5. Cooldowns between questions and between topics; pause/stop between questions

A question that cannot be produced is skipped; it never aborts the topic or
the run. Everything is serial: each accepted question is in the
anti-repetition context before the next provider call starts.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from generation.control import RunControl
from generation.errors import (
    CompletionExhaustedError,
    ConfigurationError,
    ContentBlockedError,
    GenerationError,
    GenerationTimeoutError,
    JsonExtractionError,
    NoApiKeysError,
)
from generation.latex_cleaner import clean_question_latex
from generation.progress import ProgressSink, emit
from generation.question_generator import (
    AntiRepetitionContext,
    format_reference_context,
    generate_questions_for_topic,
)
from generation.quota import compute_topic_quotas
from generation.schemas import (
    CandidateItem,
    GenerationRequest,
    GenerationSummary,
    GenerationTimings,
    ProgressEvent,
    TopicQuota,
)
from generation.validator import validate_structure

log = logging.getLogger("generation.pipeline")

# Failures that end the current question without further attempts
_ABORT_ITEM = (ContentBlockedError, ConfigurationError, CompletionExhaustedError)


class GenerationOrchestrator:
    def __init__(
        self,
        store,
        client,
        control: Optional[RunControl] = None,
        timings: Optional[GenerationTimings] = None,
        sink: Optional[ProgressSink] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.client = client
        self.timings = timings or GenerationTimings()
        self.control = control or RunControl(poll_interval=self.timings.pause_poll, sleep=sleep)
        self.sink = sink
        self._sleep = sleep

    async def _cooldown(self, seconds: float) -> None:
        if seconds > 0:
            await self._sleep(seconds)

    def _emit(self, message: str, level: str = "info", **fields) -> None:
        emit(self.sink, ProgressEvent(stage="questions", message=message, level=level, **fields))

    # ── Run ───────────────────────────────────────────────────────────────────

    async def run(self, request: GenerationRequest) -> GenerationSummary:
        """
        Generate the missing questions for a course.

        Raises (before any work starts):
            NoApiKeysError: the client's key pool is empty
            LookupError:    unknown course
        """
        if self.client.pool.size == 0:
            raise NoApiKeysError("No API keys configured. Please add API keys first.")

        course = self.store.get_course(request.course_id)
        if course is None:
            raise LookupError(f"Course {request.course_id} not found")
        exam_name = course.exam.name if course.exam else ""

        topics = self.store.list_course_topics(request.course_id)
        plan = compute_topic_quotas(topics, request.total_questions)
        qtype = request.question_type.value

        work: List[TopicQuota] = []
        for quota in plan.topics:
            existing = self.store.count_items(quota.topic_id, qtype)
            remaining = max(0, quota.quota - existing)
            if remaining > 0:
                work.append(quota.model_copy(update={"existing_count": existing, "remaining": remaining}))
            else:
                log.info(f"[GEN] Topic '{quota.topic_name}' already has {existing}/{quota.quota} {qtype} question(s)")

        summary = GenerationSummary(target=sum(t.remaining for t in work))
        log.info(
            f"[GEN] Run for course '{course.name}': {summary.target} {qtype} question(s) "
            f"across {len(work)} topic(s) (requested {plan.total_requested}, extra {plan.extra_count})"
        )
        self._emit(
            f"Generating {summary.target} {qtype} question(s) across {len(work)} topic(s)",
            total_topics=len(work), target=summary.target,
        )

        for topic_index, topic in enumerate(work, start=1):
            await self._process_topic(
                topic, topic_index, len(work), request, exam_name, course.name, summary
            )
            if summary.stopped:
                break
            if topic_index < len(work):
                log.info(f"[GEN] Topic '{topic.topic_name}' completed, moving to next topic")
                await self._cooldown(self.timings.topic_cooldown)

        log.info(
            f"[GEN] Run finished: {summary.generated}/{summary.target} generated, "
            f"{summary.skipped} skipped{' (stopped)' if summary.stopped else ''}"
        )
        self._emit(
            f"Generated {summary.generated}/{summary.target} question(s)",
            level="warning" if summary.stopped else "success",
            total_topics=len(work), generated=summary.generated, target=summary.target,
        )
        return summary

    # ── Topic ─────────────────────────────────────────────────────────────────

    async def _process_topic(
        self,
        topic: TopicQuota,
        topic_index: int,
        total_topics: int,
        request: GenerationRequest,
        exam_name: str,
        course_name: str,
        summary: GenerationSummary,
    ) -> None:
        qtype = request.question_type.value
        references = self.store.list_reference_items(topic.topic_id, qtype, request.slot, request.part)
        existing = self.store.list_generated_items(topic.topic_id, qtype, request.slot, request.part)
        context = AntiRepetitionContext(existing)
        reference_context = format_reference_context(references)
        log.info(
            f"[GEN] Topic {topic_index}/{total_topics} '{topic.topic_name}': "
            f"{topic.remaining} to generate, {len(references)} reference(s), {len(context)} existing"
        )

        generated_here = 0
        for item_index in range(1, topic.remaining + 1):
            if not await self.control.checkpoint():
                summary.stopped = True
                log.info("[GEN] Stop honoured between questions")
                break

            progress = dict(
                current_topic=topic.topic_name,
                topic_index=topic_index,
                total_topics=total_topics,
                item_index=item_index,
                items_in_topic=topic.remaining,
                target=summary.target,
            )
            item = await self._generate_one(
                topic, request, exam_name, course_name, reference_context, context, progress
            )
            if item is None:
                summary.skipped += 1
                log.warning(
                    f"[GEN] Skipping question {item_index} for '{topic.topic_name}' "
                    f"after {request.max_attempts} attempt(s)"
                )
                self._emit(
                    f"Could not generate question {item_index} for {topic.topic_name}. Skipping",
                    level="warning", generated=summary.generated, **progress,
                )
                continue

            generated_here += 1
            summary.generated += 1
            self._emit(
                f"Question {item_index} for {topic.topic_name} validated and saved",
                level="success", generated=summary.generated, **progress,
            )
            if item_index < topic.remaining:
                await self._cooldown(self.timings.item_cooldown)

        summary.per_topic[topic.topic_name] = generated_here

    # ── Question ──────────────────────────────────────────────────────────────

    async def _generate_one(
        self,
        topic: TopicQuota,
        request: GenerationRequest,
        exam_name: str,
        course_name: str,
        reference_context: str,
        context: AntiRepetitionContext,
        progress: dict,
    ) -> Optional[CandidateItem]:
        """One accepted and stored question, or None once attempts run out."""
        max_attempts = request.max_attempts

        for attempt in range(1, max_attempts + 1):
            last = attempt == max_attempts
            log.info(
                f"[GEN] '{topic.topic_name}' question {progress['item_index']}/{topic.remaining}: "
                f"attempt {attempt}/{max_attempts}"
            )
            try:
                items = await asyncio.wait_for(
                    generate_questions_for_topic(
                        self.client,
                        topic=topic,
                        exam_name=exam_name,
                        course_name=course_name,
                        question_type=request.question_type,
                        reference_context=reference_context,
                        existing_context=context.render(),
                        recent_statements=context.recent,
                        count=1,
                        notes=topic.notes or "",
                    ),
                    timeout=self.timings.call_timeout,
                )
            except asyncio.TimeoutError:
                err = GenerationTimeoutError(self.timings.call_timeout)
                self._attempt_failed(str(err), attempt, progress, last)
                if not last:
                    await self._cooldown(self.timings.error_cooldown)
                continue
            except _ABORT_ITEM as e:
                log.error(f"[GEN] Aborting question for '{topic.topic_name}': {e}")
                self._emit(str(e), level="error", **progress)
                return None
            except (JsonExtractionError, GenerationError) as e:
                self._attempt_failed(f"AI response format error: {e}", attempt, progress, last)
                if not last:
                    await self._cooldown(self.timings.retry_cooldown)
                continue
            except Exception as e:
                log.exception(f"[GEN] Unexpected error for '{topic.topic_name}'")
                self._attempt_failed(str(e), attempt, progress, last)
                if not last:
                    await self._cooldown(self.timings.error_cooldown)
                continue

            check = validate_structure(items[0], request.question_type)
            if not check.ok:
                self._attempt_failed(f"Question validation failed: {check.reason}", attempt, progress, last)
                if not last:
                    await self._cooldown(self.timings.retry_cooldown)
                continue

            item = check.item
            if item.is_wrong:
                self._attempt_failed(
                    f"Model flagged its own question: {item.validation_reason or 'no reason given'}",
                    attempt, progress, last,
                )
                if not last:
                    await self._cooldown(self.timings.retry_cooldown)
                continue

            item = clean_question_latex(item)
            record = {
                "topic_id": topic.topic_id,
                "topic_name": topic.topic_name,
                "question_statement": item.question_statement,
                "question_type": request.question_type.value,
                "options": item.options,
                "answer": item.answer,
                "solution": item.solution,
                "slot": request.slot,
                "part": request.part,
                "is_wrong": False,
                **request.config.model_dump(),
            }
            try:
                self.store.insert_item(record)
            except Exception as e:
                # No retry: the model output was fine, storage was not
                log.error(f"[GEN] Failed to save question for '{topic.topic_name}': {e}")
                self._emit(f"Failed to save question: {e}", level="error", **progress)
                return None

            context.add(item.question_statement, item.options, item.answer)
            log.info(f"[GEN] Saved question: {item.question_statement[:100]}")
            return item

        return None

    def _attempt_failed(self, reason: str, attempt: int, progress: dict, last: bool) -> None:
        log.warning(f"[GEN] Attempt {attempt} failed: {reason}")
        self._emit(f"{reason}{'' if last else '. Retrying...'}", level="warning", **progress)


async def run_generation(store, client, request: GenerationRequest, **kwargs) -> GenerationSummary:
    """Convenience wrapper: build an orchestrator and run it once."""
    return await GenerationOrchestrator(store, client, **kwargs).run(request)
