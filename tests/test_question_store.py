import pytest

from database import models
from database.question_store import QuestionStore


def _topic(course, name):
    return next(t for t in course.topics if t.name == name)


def _reference(topic, **fields):
    values = dict(topic_id=topic.id, question_statement="PYQ", question_type="MCQ")
    values.update(fields)
    return models.ReferenceQuestion(**values)


def test_list_course_topics_by_weight(db, course):
    topics = QuestionStore(db).list_course_topics(course.id)
    assert [t.name for t in topics] == ["Calculus", "Algebra", "Probability", "History of Mathematics"]
    assert topics[0].notes == "Limits and derivatives"
    assert topics[-1].weightage == 0.0


def test_insert_count_and_list_generated(db, course):
    store = QuestionStore(db)
    calculus = _topic(course, "Calculus")
    first = store.insert_item({
        "topic_id": calculus.id, "question_statement": "First", "question_type": "MCQ",
        "answer": "A", "slot": "S1", "part": "A", "is_wrong": False,
    })
    second = store.insert_item({
        "topic_id": calculus.id, "question_statement": "Second", "question_type": "MCQ",
        "answer": "B", "slot": "S2", "part": "A", "is_wrong": False,
    })
    store.insert_item({
        "topic_id": calculus.id, "question_statement": "Numeric", "question_type": "NAT", "answer": "3",
    })

    assert second > first
    assert store.count_items(calculus.id, "MCQ") == 2
    assert store.count_items(calculus.id, "NAT") == 1
    assert [q.question_statement for q in store.list_generated_items(calculus.id, "MCQ")] == ["Second", "First"]
    assert [q.question_statement for q in store.list_generated_items(calculus.id, "MCQ", slot="S1")] == ["First"]
    assert store.list_generated_items(calculus.id, "MCQ", part="B") == []


def test_verdicts_and_delete_wrong(db, course):
    store = QuestionStore(db)
    algebra = _topic(course, "Algebra")
    ids = [
        store.insert_item({"topic_id": algebra.id, "question_statement": f"Q{i}",
                           "question_type": "MCQ", "answer": "A"})
        for i in range(3)
    ]
    store.set_verdict(ids[0], True, "no correct option")
    store.set_verdict(ids[1], False, "ok")

    assert [q.id for q in store.list_generated_for_topics([algebra.id])] == ids
    assert store.delete_wrong_items([algebra.id]) == 1
    assert store.count_items(algebra.id, "MCQ") == 2

    with pytest.raises(LookupError):
        store.set_verdict(9999, True)


def test_delete_wrong_restricted_to_ids(db, course):
    store = QuestionStore(db)
    algebra = _topic(course, "Algebra")
    ids = [
        store.insert_item({"topic_id": algebra.id, "question_statement": f"Q{i}",
                           "question_type": "MCQ", "answer": "A", "is_wrong": True})
        for i in range(2)
    ]
    assert store.delete_wrong_items([algebra.id], ids=[ids[1]]) == 1
    assert store.delete_wrong_items([]) == 0


def test_reference_queries(db, course):
    calculus = _topic(course, "Calculus")
    db.add_all([
        _reference(calculus, year=2019, answer="A", solution="Because"),
        _reference(calculus, year=2023, answer="B", solution="   "),
        _reference(calculus, year=2021, answer=None, solution=None, slot="Evening"),
        _reference(calculus, question_type="NAT", year=2022, answer="", solution="Worked"),
    ])
    db.commit()
    store = QuestionStore(db)

    assert store.count_reference_items(calculus.id) == 4
    assert [q.year for q in store.list_reference_items(calculus.id, "MCQ")] == [2023, 2021, 2019]
    assert [q.year for q in store.list_reference_items(calculus.id, "MCQ", slot="Evening")] == [2021]

    stats = store.reference_solution_stats([calculus.id])
    assert stats == {"total": 4, "with_answer": 2, "with_solution": 2, "with_both": 1}

    pending = store.query_items_needing_solutions([calculus.id])
    assert sorted(q.year for q in pending) == [2021, 2022, 2023]


def test_update_item_only_writes_solution_fields(db, course):
    calculus = _topic(course, "Calculus")
    ref = _reference(calculus, year=2020, slot="Morning")
    db.add(ref)
    db.commit()
    store = QuestionStore(db)

    store.update_item(ref.id, {"answer": "C", "solution": "Step 1.", "slot": "Night"})
    db.refresh(ref)
    assert (ref.answer, ref.solution, ref.slot) == ("C", "Step 1.", "Morning")

    with pytest.raises(LookupError):
        store.update_item(9999, {"answer": "A"})


def test_get_course(db, course):
    store = QuestionStore(db)
    assert store.get_course(course.id).exam.name == "GATE"
    assert store.get_course(12345) is None
