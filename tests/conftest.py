import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from engines.attempts import Attempt, QuestionMetadata  # noqa: E402

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_attempt():
    counter = {"n": 0}

    def _make(
        topic="Algebra",
        correct=True,
        confidence=3,
        seconds=60,
        days_ago=0.0,
        session=None,
        subject=None,
        subtopic=None,
        difficulty=None,
        mistake_type=None,
        exam_type=None,
        test_date=None,
        user_id="learner",
    ):
        counter["n"] += 1
        return Attempt(
            id=f"a-{counter['n']}",
            user_id=user_id,
            correctness=correct,
            confidence_rating=confidence,
            time_taken_seconds=seconds,
            attempted_at=NOW - timedelta(days=days_ago),
            metadata=QuestionMetadata(
                topic=topic, subtopic=subtopic, subject=subject, difficulty=difficulty
            ),
            test_session_id=session,
            mistake_type=mistake_type,
            exam_type=exam_type,
            test_date=test_date,
        )

    return _make


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))
    db.init()
    return str(db_path)
