"""Test cases for db operations."""

import json
import math
from datetime import datetime, timezone

import pytest

from db import (
    _conn,
    apply_attempt_updates,
    delete_recommendations,
    delete_user_attempts,
    get_recommendations,
    insert_attempts,
    list_attempts,
    list_test_sessions,
    recent_attempts,
    save_recommendations,
    upsert_test_session,
)
from engines.attempts import Attempt
from engines.mastery import TimeRange
from engines.normalization import AttemptUpdate, normalize_attempts


def _record(attempt_id, **overrides):
    record = {
        "id": attempt_id,
        "user_id": "learner",
        "correctness": True,
        "confidence_rating": 4,
        "time_taken_seconds": 50,
        "attempted_at": "2026-02-20T10:00:00Z",
        "question_metadata": {"topic": "Optics", "subject": "Physics", "difficulty": "Hard"},
    }
    record.update(overrides)
    return Attempt.from_record(record)


def test_insert_and_list_round_trip(temp_db):
    attempts = [
        _record("q1", test_session_id="mock-1", exam_type="JEE", test_date="2026-02-20"),
        _record("q2", attempted_at="2026-02-19T10:00:00Z", correctness=False, mistake_type="guess"),
    ]

    assert insert_attempts("learner", attempts) == 2

    stored = list_attempts("learner")
    assert [a.id for a in stored] == ["q2", "q1"]
    first = stored[1]
    assert first.topic == "Optics"
    assert first.difficulty == "Hard"
    assert first.exam_type == "JEE"
    assert first.test_date == datetime(2026, 2, 20, tzinfo=timezone.utc)
    assert stored[0].correctness is False
    assert stored[0].mistake_type == "guess"


def test_duplicate_ids_are_ignored(temp_db):
    assert insert_attempts("learner", [_record("q1"), _record("q2")]) == 2
    assert insert_attempts("learner", [_record("q2"), _record("q3")]) == 1
    assert len(list_attempts("learner")) == 3


def test_missing_ids_get_generated(temp_db):
    inserted = insert_attempts("learner", [_record(None), _record(None)])
    assert inserted == 2
    ids = [a.id for a in list_attempts("learner")]
    assert all(ids) and len(set(ids)) == 2


def test_list_attempts_filters_by_exam_type(temp_db):
    insert_attempts(
        "learner",
        [
            _record("q1", test_session_id="jee-1", exam_type="JEE"),
            _record("q2", test_session_id="neet-1", exam_type="NEET"),
            _record("q3"),
        ],
    )
    assert [a.id for a in list_attempts("learner", exam_type="jee")] == ["q1"]
    assert len(list_attempts("learner")) == 3
    assert list_attempts("someone-else") == []


def test_upsert_session_keeps_known_fields(temp_db):
    upsert_test_session("mock-1", "learner", exam_type="CAT", test_name="Mock 1", test_date="2026-01-05")
    upsert_test_session("mock-1", "learner", test_name=None)

    (session,) = list_test_sessions("learner")
    assert session["exam_type"] == "CAT"
    assert session["test_name"] == "Mock 1"
    assert session["test_date"].startswith("2026-01-05")


def test_malformed_numbers_read_back_as_nan(temp_db):
    insert_attempts(
        "learner",
        [
            _record("q1", time_taken_seconds=60),
            _record("q2", time_taken_seconds=120),
            _record("q3", confidence_rating="high", time_taken_seconds=float("nan")),
        ],
    )
    stored = {a.id: a for a in list_attempts("learner")}
    assert math.isnan(stored["q3"].confidence_rating)
    assert math.isnan(stored["q3"].time_taken_seconds)
    assert TimeRange.from_attempts(stored.values()) == TimeRange(60.0, 120.0)


def test_ungrouped_attempts_keep_exam_context(temp_db):
    insert_attempts(
        "learner",
        [
            _record("q1", exam_type="JEE", test_name="Practice"),
            _record("q2", test_session_id="neet-1", exam_type="NEET"),
        ],
    )
    (jee,) = list_attempts("learner", exam_type="jee")
    assert jee.id == "q1"
    assert jee.test_session_id is None
    assert jee.exam_type == "JEE"
    assert jee.test_name == "Practice"


def test_shared_question_ids_do_not_collide(temp_db):
    records = [
        {"questionId": "Q1", "user_id": "u", "correctness": True, "attempted_at": "2026-02-01T10:00:00Z"},
        {"questionId": "Q1", "user_id": "u", "correctness": False, "attempted_at": "2026-02-02T10:00:00Z"},
        {"questionId": "Q1", "user_id": "v", "correctness": True, "attempted_at": "2026-02-01T10:00:00Z"},
    ]
    attempts = [Attempt.from_record(r) for r in records]

    assert insert_attempts("u", attempts[:2]) == 2
    assert insert_attempts("v", attempts[2:]) == 1
    stored = list_attempts("u")
    assert len(stored) == 2
    assert {a.metadata.extra["question_id"] for a in stored} == {"Q1"}
    assert len(list_attempts("v")) == 1


def test_same_attempt_id_is_scoped_per_user(temp_db):
    assert insert_attempts("u", [_record("a1", user_id="u", test_session_id="s1", exam_type="JEE")]) == 1
    assert insert_attempts("v", [_record("a1", user_id="v", test_session_id="s1", exam_type="NEET")]) == 1

    (mine,) = list_attempts("u")
    (theirs,) = list_attempts("v")
    assert mine.exam_type == "JEE"
    assert theirs.exam_type == "NEET"

    apply_attempt_updates([AttemptUpdate("a1", "v", {"topic": "Optics", "subject": "Physics"}, mistake_type="guess")])
    assert list_attempts("u")[0].mistake_type is None
    assert list_attempts("v")[0].mistake_type == "guess"


def test_recent_attempts_newest_first_with_limit(temp_db):
    insert_attempts(
        "learner",
        [
            _record("q1", attempted_at="2026-02-18T10:00:00Z"),
            _record("q2", attempted_at="2026-02-20T10:00:00Z", test_session_id="s1", test_name="Mock 1"),
            _record("q3", attempted_at="2026-02-19T10:00:00Z"),
        ],
    )
    recent = recent_attempts("learner", limit=2)
    assert [a.id for a in recent] == ["q2", "q3"]
    assert recent[0].test_name == "Mock 1"


def test_recommendations_are_stored_per_exam(temp_db):
    cards = [{"title": "Revise optics"}]
    save_recommendations("learner", "JEE", "ok", cards, {"topics": 3}, "2026-02-20T10:00:00+00:00")
    save_recommendations("learner", "NEET", "empty", [], {}, "2026-02-20T10:00:00+00:00")
    save_recommendations("learner", "JEE", "partial", cards * 2, {}, "2026-02-21T10:00:00+00:00")

    stored = get_recommendations("learner", "JEE")
    assert stored["status"] == "partial"
    assert stored["cards"] == cards * 2
    assert stored["updated_at"].startswith("2026-02-21")
    assert get_recommendations("other", "JEE") is None

    assert delete_recommendations("learner", "JEE") == 1
    assert get_recommendations("learner", "JEE") is None
    assert get_recommendations("learner", "NEET")["status"] == "empty"

    delete_user_attempts("learner")
    assert get_recommendations("learner", "NEET") is None


def test_apply_updates_never_overwrites_mistake_type(temp_db):
    insert_attempts(
        "learner",
        [
            _record("q1", correctness=False, mistake_type="calculation", question_metadata={"topic": "optics"}),
            _record("q2", correctness=False, question_metadata={"topic": "optics"}),
        ],
    )
    updates = [
        AttemptUpdate("q1", "learner", {"topic": "Optics", "subject": "Physics"}, mistake_type="conceptual", metadata_changed=True),
        AttemptUpdate("q2", "learner", {"topic": "Optics", "subject": "Physics"}, mistake_type="conceptual", metadata_changed=True),
    ]

    assert apply_attempt_updates(updates, chunk_size=1) == 2

    stored = {a.id: a for a in list_attempts("learner")}
    assert stored["q1"].mistake_type == "calculation"
    assert stored["q2"].mistake_type == "conceptual"
    assert stored["q1"].topic == "Optics"
    with _conn() as con:
        raw = con.execute("SELECT question_metadata FROM question_attempts WHERE id = 'q2'").fetchone()
    assert json.loads(raw["question_metadata"]) == {"topic": "Optics", "subject": "Physics"}


def test_normalisation_persisted_once(temp_db):
    insert_attempts(
        "learner",
        [
            _record("q1", correctness=False, confidence_rating=5, question_metadata={"topic": "ray_optics", "subject": "physics"}),
            _record("q2", question_metadata={"topic": "Optics", "subject": "Physics"}),
        ],
    )
    result = normalize_attempts(list_attempts("learner"))
    apply_attempt_updates(result.updates)

    again = normalize_attempts(list_attempts("learner"))
    assert result.updated_count == 1
    assert again.updated_count == 0
    stored = {a.id: a for a in again.attempts}
    assert stored["q1"].subject == "Physics"
    assert stored["q1"].topic == "Ray Optics"
    assert stored["q1"].mistake_type == "conceptual"


def test_delete_user_attempts(temp_db):
    insert_attempts("learner", [_record("q1", test_session_id="s1", exam_type="JEE"), _record("q2")])
    insert_attempts("other", [_record("q3", user_id="other")])

    assert delete_user_attempts("learner") == 2
    assert list_attempts("learner") == []
    assert list_test_sessions("learner") == []
    assert [a.id for a in list_attempts("other")] == ["q3"]


@pytest.mark.parametrize("user_id", ["learner", "nobody"])
def test_delete_is_safe_to_repeat(temp_db, user_id):
    delete_user_attempts(user_id)
    assert delete_user_attempts(user_id) == 0
