"""
Generation Router: /generation

Starts and controls the background jobs of the question bank pipeline.
Endpoints:
  POST   /generation/runs                     : start question generation or PYQ solution backfill
  GET    /generation/runs/current             : status + progress of the current/last run
  POST   /generation/runs/current/pause       : pause between questions
  POST   /generation/runs/current/resume      : resume a paused run
  POST   /generation/runs/current/stop        : stop at the next checkpoint
  GET    /generation/stats/{course_id}        : per-topic target / existing / remaining
  POST   /generation/validation               : start a semantic validation run
  DELETE /generation/validation/wrong         : delete questions marked wrong
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from database.database import get_db
from database.question_store import QuestionStore
from generation.completion_client import CompletionClient
from generation.errors import RunConflictError
from generation.key_pool import ApiKeyPool
from generation.orchestrator import GenerationOrchestrator
from generation.quota import topic_stats
from generation.run_manager import RunManager
from generation.schemas import (
    GenerationRequest,
    QuestionType,
    RunStartRequest,
    ValidationRunRequest,
)
from generation.solution_backfill import backfill_reference_solutions
from generation.validator import delete_wrong_questions, run_question_validation
from routers.deps import get_completion_client, get_key_pool, get_run_manager

router = APIRouter(prefix="/generation", tags=["generation"])

log = logging.getLogger("generation.pipeline")


def _require_keys(pool: ApiKeyPool) -> None:
    if pool.size == 0:
        raise HTTPException(status_code=400, detail="No API keys configured. Please add API keys first.")


def _require_course(store: QuestionStore, course_id: int):
    course = store.get_course(course_id)
    if not course:
        raise HTTPException(status_code=404, detail=f"Course {course_id} not found")
    return course


def _start(runs: RunManager, kind: str, job) -> dict:
    try:
        handle = runs.start(kind, job)
    except RunConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return handle.snapshot()


# ─── Runs ──────────────────────────────────────────────────────────────────────

@router.post("/runs")
async def start_run(
    body: RunStartRequest,
    request: Request,
    db: Session = Depends(get_db),
    pool: ApiKeyPool = Depends(get_key_pool),
    client: CompletionClient = Depends(get_completion_client),
    runs: RunManager = Depends(get_run_manager),
):
    """
    Start a background run for a course.

    - `mode="questions"`: generate `total_questions` new questions of `question_type`,
      distributed over the course's topics by weightage
    - `mode="pyq_solutions"`: fill in missing answers/solutions of reference questions
    """
    _require_keys(pool)
    store = QuestionStore(db)
    _require_course(store, body.course_id)

    session_factory = request.app.state.session_factory
    timings = request.app.state.timings

    if body.mode == "questions":
        if not body.total_questions:
            raise HTTPException(status_code=400, detail="total_questions is required for question generation")
        gen_request = GenerationRequest(
            course_id=body.course_id,
            question_type=body.question_type,
            total_questions=body.total_questions,
            slot=body.slot,
            part=body.part,
            config=body.config,
        )
        log.info(
            f"[GEN] Run requested: course={body.course_id} type={body.question_type.value} "
            f"total={body.total_questions} slot={body.slot} part={body.part}"
        )

        async def job(control, progress):
            session = session_factory()
            try:
                orchestrator = GenerationOrchestrator(
                    QuestionStore(session), client, control=control, timings=timings, sink=progress
                )
                return await orchestrator.run(gen_request)
            finally:
                session.close()

    else:
        topics = store.list_course_topics(body.course_id)
        log.info(f"[SOLVE] Backfill requested: course={body.course_id}, {len(topics)} topic(s)")

        async def job(control, progress):
            session = session_factory()
            try:
                return await backfill_reference_solutions(
                    QuestionStore(session), client, topics,
                    control=control, timings=timings, sink=progress,
                )
            finally:
                session.close()

    return _start(runs, body.mode, job)


def _current(runs: RunManager):
    if runs.current is None:
        raise HTTPException(status_code=404, detail="No run has been started")
    return runs.current


@router.get("/runs/current")
def current_run(runs: RunManager = Depends(get_run_manager)):
    return _current(runs).snapshot()


@router.post("/runs/current/pause")
def pause_run(runs: RunManager = Depends(get_run_manager)):
    handle = _current(runs)
    if not handle.active:
        raise HTTPException(status_code=409, detail="Run is not active")
    handle.control.pause()
    return handle.snapshot()


@router.post("/runs/current/resume")
def resume_run(runs: RunManager = Depends(get_run_manager)):
    handle = _current(runs)
    handle.control.resume()
    return handle.snapshot()


@router.post("/runs/current/stop")
def stop_run(runs: RunManager = Depends(get_run_manager)):
    handle = _current(runs)
    handle.control.stop()
    return handle.snapshot()


# ─── Statistics ────────────────────────────────────────────────────────────────

@router.get("/stats/{course_id}")
def course_stats(
    course_id: int,
    question_type: QuestionType = Query(QuestionType.MCQ),
    total_questions: int = Query(100, ge=1),
    db: Session = Depends(get_db),
):
    """Target / existing / remaining question counts per topic for a planned run."""
    store = QuestionStore(db)
    _require_course(store, course_id)
    topics = store.list_course_topics(course_id)
    return topic_stats(store, topics, question_type.value, total_questions)


# ─── Semantic validation ───────────────────────────────────────────────────────

@router.post("/validation")
async def start_validation(
    body: ValidationRunRequest,
    request: Request,
    db: Session = Depends(get_db),
    pool: ApiKeyPool = Depends(get_key_pool),
    client: CompletionClient = Depends(get_completion_client),
    runs: RunManager = Depends(get_run_manager),
):
    _require_keys(pool)
    store = QuestionStore(db)
    _require_course(store, body.course_id)
    topic_ids = [t.id for t in store.list_course_topics(body.course_id)]

    session_factory = request.app.state.session_factory
    timings = request.app.state.timings

    async def job(control, progress):
        session = session_factory()
        try:
            return await run_question_validation(
                QuestionStore(session), client, topic_ids,
                control=control, timings=timings, sink=progress,
            )
        finally:
            session.close()

    return _start(runs, "validation", job)


@router.delete("/validation/wrong")
def remove_wrong_questions(course_id: int = Query(...), db: Session = Depends(get_db)):
    store = QuestionStore(db)
    _require_course(store, course_id)
    topic_ids = [t.id for t in store.list_course_topics(course_id)]
    return {"deleted": delete_wrong_questions(store, topic_ids)}
