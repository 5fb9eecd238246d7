from types import SimpleNamespace

import pytest

from conftest import FakeClient
from generation.control import RunControl
from generation.errors import ContentBlockedError, GenerationError
from generation.schemas import GenerationTimings, TopicInput
from generation.solution_backfill import (
    SOLVE_MAX_ATTEMPTS,
    backfill_reference_solutions,
    build_solution_prompt,
    solve_reference_item,
)


def _ref(id, topic_id=1, answer=None, solution=None):
    return SimpleNamespace(
        id=id, topic_id=topic_id, question_statement=f"Reference question {id}",
        question_type="MCQ", options=["1", "2", "3", "4"], answer=answer, solution=solution,
    )


SOLVED = '[{"answer": "B", "solution": "Step 1. Differentiate. Step 2. Therefore B."}]'


class _ReferenceStore:
    def __init__(self, pending, stats=None, fail_update_ids=()):
        self.pending = pending
        self.stats = stats or {"total": 5, "with_answer": 3, "with_solution": 2, "with_both": 2}
        self.fail_update_ids = set(fail_update_ids)
        self.updates = {}

    def reference_solution_stats(self, topic_ids):
        return dict(self.stats)

    def query_items_needing_solutions(self, topic_ids):
        return list(self.pending)

    def update_item(self, question_id, fields):
        if question_id in self.fail_update_ids:
            raise RuntimeError("connection lost")
        self.updates[question_id] = fields


TOPICS = [TopicInput(id=1, name="Calculus", weightage=0.5, notes="Chain rule")]


def test_solution_prompt_lists_options_and_notes():
    prompt = build_solution_prompt(_ref(1), "Calculus", "Chain rule")
    assert "  A. 1" in prompt and "  D. 4" in prompt
    assert "TOPIC NOTES" in prompt and "Chain rule" in prompt
    assert "Reference question 1" in prompt


async def test_solve_retries_with_growing_waits(no_sleep):
    client = FakeClient(["not json", '[{"answer": "", "solution": "x"}]', SOLVED])
    timings = GenerationTimings(solution_retry_step=3, solution_retry_cap=15)
    solved = await solve_reference_item(client, _ref(1), "Calculus", timings=timings, sleep=no_sleep)
    assert solved.answer == "B"
    assert no_sleep.waits == [3, 6]


async def test_solve_gives_up_after_max_attempts(no_sleep):
    client = FakeClient(["nope"] * SOLVE_MAX_ATTEMPTS)
    timings = GenerationTimings(solution_retry_step=3, solution_retry_cap=10)
    with pytest.raises(GenerationError):
        await solve_reference_item(client, _ref(1), "Calculus", timings=timings, sleep=no_sleep)
    assert len(client.prompts) == SOLVE_MAX_ATTEMPTS
    assert no_sleep.waits == [3, 6, 9, 10]


async def test_solve_content_block_is_immediate(no_sleep):
    client = FakeClient([ContentBlockedError("SAFETY"), SOLVED])
    with pytest.raises(ContentBlockedError):
        await solve_reference_item(client, _ref(1), "Calculus", sleep=no_sleep)
    assert len(client.prompts) == 1


async def test_backfill_counts_and_tolerates_failed_update(no_sleep):
    store = _ReferenceStore([_ref(1), _ref(2), _ref(3)], fail_update_ids={2})
    client = FakeClient([SOLVED, SOLVED, SOLVED])
    events = []

    report = await backfill_reference_solutions(
        store, client, TOPICS, timings=GenerationTimings.zero(), sink=events.append, sleep=no_sleep
    )

    assert report.needing_solutions == 3
    assert report.completed == 2
    assert report.failed == 1
    assert report.already_complete == 2
    assert set(store.updates) == {1, 3}
    assert store.updates[1] == {"answer": "B", "solution": "Step 1. Differentiate. Step 2. Therefore B."}
    assert events[-1].stage == "pyq_solutions"


async def test_backfill_with_nothing_pending():
    store = _ReferenceStore([], stats={"total": 4, "with_answer": 4, "with_solution": 4, "with_both": 4})
    client = FakeClient([])
    events = []
    report = await backfill_reference_solutions(store, client, TOPICS, sink=events.append)
    assert report.needing_solutions == 0
    assert client.prompts == []
    assert events[0].level == "success"


async def test_backfill_stops_between_items(no_sleep):
    control = RunControl()
    store = _ReferenceStore([_ref(1), _ref(2)])

    def solve_then_stop(prompt):
        control.stop()
        return SOLVED

    client = FakeClient([solve_then_stop, SOLVED])
    report = await backfill_reference_solutions(
        store, client, TOPICS, control=control, timings=GenerationTimings.zero(), sleep=no_sleep
    )
    assert report.stopped
    assert report.completed == 1
    assert list(store.updates) == [1]
