import asyncio
import json
import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine

from api import app
from conftest import FakeClient
from database import models
from database.database import Base, get_db
from generation.run_manager import RunManager
from generation.schemas import GenerationTimings


def mcq_reply(statement):
    return json.dumps([{
        "question_statement": statement,
        "question_type": "MCQ",
        "options": ["1", "2", "3", "4"],
        "answer": "A",
        "solution": "Step 1. Count. Therefore A.",
        "is_wrong": False,
    }])


class _SlowFakeClient(FakeClient):
    async def complete(self, prompt, image_base64=None, temperature=0.1, max_tokens=4000):
        await asyncio.sleep(0.3)
        return await super().complete(prompt, image_base64, temperature, max_tokens)


@pytest.fixture
def engine(tmp_path):
    # Background runs and request handlers use separate connections here,
    # so a file database replaces the shared in-memory one
    engine = create_engine(
        f"sqlite:///{tmp_path / 'api.db'}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def api(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as http:
        app.state.session_factory = session_factory
        app.state.timings = GenerationTimings.zero()
        app.state.run_manager = RunManager(pause_poll=0.01)
        yield http
    app.dependency_overrides.clear()


def _use_client(fake):
    app.state.key_pool = fake.pool
    app.state.completion_client = fake


def _wait_for_finish(http, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        snapshot = http.get("/generation/runs/current").json()
        if snapshot["status"] not in ("running", "paused"):
            return snapshot
        time.sleep(0.02)
    raise AssertionError("run did not finish in time")


# ─── API keys ──────────────────────────────────────────────────────────────────

def test_configure_and_inspect_keys(api):
    resp = api.post("/api-keys", json={"text": "AIzaSyAAA111, AIzaSyBBB222\nnoise", "gemini_pattern": True})
    assert resp.status_code == 200
    assert resp.json()["configured"] == 2

    body = api.get("/api-keys").json()
    assert (body["total"], body["active"]) == (2, 2)
    assert "AIzaSyAAA111" not in json.dumps(body)

    assert api.post("/api-keys/reset").status_code == 200


def test_configure_without_usable_keys(api):
    assert api.post("/api-keys", json={"keys": ["  ", ""]}).status_code == 400


# ─── Runs ──────────────────────────────────────────────────────────────────────

def test_start_requires_keys(api, course):
    _use_client(FakeClient([], keys=None))
    resp = api.post("/generation/runs", json={"course_id": course.id, "total_questions": 3})
    assert resp.status_code == 400


def test_start_unknown_course(api):
    _use_client(FakeClient([]))
    assert api.post("/generation/runs", json={"course_id": 404, "total_questions": 3}).status_code == 404


def test_question_run_requires_total(api, course):
    _use_client(FakeClient([]))
    assert api.post("/generation/runs", json={"course_id": course.id}).status_code == 400


def test_no_current_run(api):
    assert api.get("/generation/runs/current").status_code == 404


def test_question_run_completes(api, course, db):
    _use_client(FakeClient([mcq_reply("Q one"), mcq_reply("Q two"), mcq_reply("Q three")]))

    resp = api.post("/generation/runs", json={"course_id": course.id, "total_questions": 3, "slot": "S1"})
    assert resp.status_code == 200
    assert resp.json()["kind"] == "questions"

    snapshot = _wait_for_finish(api)
    assert snapshot["status"] == "completed"
    assert snapshot["result"]["generated"] == 3
    assert snapshot["latest"]["level"] == "success"
    assert db.query(models.GeneratedQuestion).count() == 3


def test_second_run_conflicts_while_first_active(api, course):
    _use_client(_SlowFakeClient([mcq_reply("Slow one"), mcq_reply("Slow two"), mcq_reply("Slow three")]))

    first = api.post("/generation/runs", json={"course_id": course.id, "total_questions": 3})
    assert first.status_code == 200
    second = api.post("/generation/runs", json={"course_id": course.id, "mode": "pyq_solutions"})
    assert second.status_code == 409

    stopped = api.post("/generation/runs/current/stop").json()
    assert stopped["kind"] == "questions"
    snapshot = _wait_for_finish(api)
    assert snapshot["status"] == "stopped"
    assert snapshot["result"]["stopped"] is True


def test_pyq_solution_backfill_run(api, course, db):
    calculus = next(t for t in course.topics if t.name == "Calculus")
    db.add(models.ReferenceQuestion(
        topic_id=calculus.id, question_statement="d/dx of x^2 at x = 1?", question_type="NAT", year=2020,
    ))
    db.commit()
    _use_client(FakeClient(['[{"answer": "2", "solution": "Step 1. 2x at 1. Therefore 2."}]']))

    resp = api.post("/generation/runs", json={"course_id": course.id, "mode": "pyq_solutions"})
    assert resp.status_code == 200

    snapshot = _wait_for_finish(api)
    assert snapshot["result"]["completed"] == 1
    db.expire_all()
    assert db.query(models.ReferenceQuestion).one().answer == "2"


# ─── Stats & validation ────────────────────────────────────────────────────────

def test_course_stats(api, course):
    resp = api.get(f"/generation/stats/{course.id}", params={"question_type": "MCQ", "total_questions": 30})
    assert resp.status_code == 200
    body = resp.json()
    assert [t["topic_name"] for t in body["topics"]] == ["Calculus", "Algebra", "Probability"]
    assert body["total_remaining"] == body["total_target"]


def test_validation_run_and_delete_wrong(api, course, db):
    algebra = next(t for t in course.topics if t.name == "Algebra")
    db.add(models.GeneratedQuestion(
        topic_id=algebra.id, question_statement="1 + 1 = ?", question_type="MCQ",
        options=["1", "2", "3", "4"], answer="A",
    ))
    db.commit()
    _use_client(FakeClient(['{"isWrong": true, "reason": "1 + 1 is 2", "correctAnswer": "B"}']))

    resp = api.post("/generation/validation", json={"course_id": course.id})
    assert resp.status_code == 200
    snapshot = _wait_for_finish(api)
    assert snapshot["result"]["wrong"] == 1

    deleted = api.delete("/generation/validation/wrong", params={"course_id": course.id})
    assert deleted.json() == {"deleted": 1}
