import asyncio
import json
from urllib.parse import urlencode

import pytest

import app
import db
from engines.recommendations import RecommendationService

AS_OF = "2026-03-01T00:00:00Z"


def _request(method: str, path: str, payload=None, params=None) -> tuple[int, object]:
    async def _call():
        body = json.dumps(payload).encode("utf-8") if payload is not None else b""
        received_once = False

        async def receive():
            nonlocal received_once
            if not received_once:
                received_once = True
                return {"type": "http.request", "body": body, "more_body": False}
            return {"type": "http.disconnect"}

        messages = []

        async def send(message):
            messages.append(message)

        headers = [(b"host", b"testserver"), (b"content-length", str(len(body)).encode())]
        if payload is not None:
            headers.append((b"content-type", b"application/json"))
        scope = {
            "type": "http",
            "http_version": "1.1",
            "method": method,
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "scheme": "http",
            "query_string": urlencode(params or {}).encode(),
            "headers": headers,
            "client": ("testclient", 12345),
            "server": ("testserver", 80),
            "state": {},
        }

        await app.app(scope, receive, send)
        return messages

    messages = asyncio.run(_call())
    status = 500
    body_bytes = b""

    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")

    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data


def _upload(user_id="learner"):
    attempts = []
    for index in range(3):
        attempts.append(
            {
                "id": f"t1-{index}",
                "testSessionId": "mock-1",
                "examType": "JEE",
                "testDate": "2026-02-10",
                "questionMetadata": {"topic": "algebra"},
                "correctness": True,
                "confidenceRating": 4,
                "timeTakenSeconds": 40,
                "attemptedAt": "2026-02-10T09:00:00Z",
            }
        )
        attempts.append(
            {
                "id": f"t2-{index}",
                "test_session_id": "mock-2",
                "exam_type": "JEE",
                "test_date": "2026-02-20",
                "topic": "Algebra",
                "correctness": index == 0,
                "confidence_rating": 5,
                "time_taken_seconds": 80,
                "attempted_at": "2026-02-20T09:00:00Z",
            }
        )
    return _request("POST", "/api/attempts/bulk", {"user_id": user_id, "attempts": attempts})


@pytest.fixture
def api_db(temp_db, monkeypatch):
    monkeypatch.delenv("NORMALIZE_ON_UPLOAD", raising=False)
    monkeypatch.delenv("MASTERY_STRATEGY", raising=False)
    monkeypatch.setattr(app.app.state, "recommendation_service", RecommendationService(None), raising=False)
    return temp_db


class FakeGenerator:
    def __init__(self, cards=None, error=None):
        self.cards = cards or []
        self.error = error
        self.payloads = []

    def generate(self, payload):
        self.payloads.append(payload)
        if self.error:
            raise self.error
        return self.cards


def _card():
    return {
        "priority": "High",
        "subject": "Mathematics",
        "topic": "Algebra",
        "confidence": 75,
        "dataPoints": 6,
        "why": "Accuracy dropped from 100% to 33% in the latest mock.",
        "actions": ["Redo missed algebra items", "Drill factorisation", "Take a timed mini-test"],
    }


def test_health(api_db):
    status, payload = _request("GET", "/health")
    assert status == 200
    assert payload["status"] == "ok"
    assert payload["config"]["mastery_strategy"] == "blended"


def test_bulk_upload_counts_inserts_and_sessions(api_db):
    status, payload = _upload()
    assert status == 200
    assert payload == {"inserted": 6, "sessions": 2}

    status, payload = _upload()
    assert payload == {"inserted": 0, "sessions": 2}


def test_bulk_upload_rejects_empty_and_malformed_batches(api_db):
    status, _ = _request("POST", "/api/attempts/bulk", {"user_id": "learner", "attempts": []})
    assert status == 400

    status, _ = _request("POST", "/api/attempts/bulk", {"user_id": "learner", "attempts": [{"topic": "x"}]})
    assert status == 422

    status, _ = _request("POST", "/api/attempts/bulk", {"user_id": "  ", "attempts": [{"correctness": True}]})
    assert status == 400


def test_summary_and_topic_mastery(api_db):
    _upload()

    status, summary = _request("GET", "/api/analytics/summary", params={"user_id": "learner", "as_of": AS_OF})
    assert status == 200
    assert summary["total_attempts"] == 6
    assert summary["avg_accuracy"] == pytest.approx(66.7)
    assert summary["avg_time"] == 60

    status, topics = _request(
        "GET", "/api/analytics/topic-mastery", params={"user_id": "learner", "as_of": AS_OF}
    )
    assert status == 200
    (algebra,) = topics
    assert algebra["topic"] == "Algebra"
    assert algebra["subject"] == "Mathematics"
    assert algebra["attempts"] == 6
    assert algebra["confidence_gap"] == "high"
    assert 0 <= algebra["mastery"] <= 100


def test_topic_mastery_rejects_unknown_strategy(api_db):
    _upload()
    status, payload = _request(
        "GET", "/api/analytics/topic-mastery", params={"user_id": "learner", "strategy": "median"}
    )
    assert status == 400
    assert "median" in payload["detail"]


def test_exam_metrics(api_db):
    _upload()
    status, payload = _request("GET", "/api/analytics/exam-metrics", params={"user_id": "learner", "exam_type": "JEE"})
    assert status == 200
    assert payload["test_count"] == 2
    assert [point["date"] for point in payload["timeline"]] == ["2026-02-10", "2026-02-20"]
    assert payload["areas"][0]["name"] == "Algebra"
    assert payload["areas"][0]["trend"] == "unstable"


def test_recommendation_input(api_db):
    _upload()
    status, payload = _request(
        "GET", "/api/recommendations/input", params={"user_id": "learner", "exam_type": "JEE", "as_of": AS_OF}
    )
    assert status == 200
    (record,) = payload["aggregated_performance_data"]
    assert record["topic"] == "Algebra"
    assert record["has_regression"] is True
    assert record["last_seen_index"] == 1
    assert record["data_points"] == 6


def test_generate_without_generator_is_unavailable(api_db):
    _upload()
    status, _ = _request("POST", "/api/recommendations/generate", {"user_id": "learner", "exam_type": "JEE"})
    assert status == 503


def test_generate_with_generator(api_db, monkeypatch):
    _upload()
    service = RecommendationService(FakeGenerator([_card(), {"__error": "parse failure"}]))
    monkeypatch.setattr(app.app.state, "recommendation_service", service)

    status, payload = _request("POST", "/api/recommendations/generate", {"user_id": "learner", "exam_type": "JEE"})

    assert status == 200
    assert payload["status"] == "partial"
    assert payload["cards"][0]["dataPoints"] == 6
    assert payload["evidence"]["test_count"] == 2
    assert payload["evidence"]["dropped_cards"] == 1


def test_generate_reports_generator_failure(api_db, monkeypatch):
    _upload()
    service = RecommendationService(FakeGenerator(error=TimeoutError("upstream timed out")))
    monkeypatch.setattr(app.app.state, "recommendation_service", service)

    status, payload = _request("POST", "/api/recommendations/generate", {"user_id": "learner", "exam_type": "JEE"})
    assert status == 502
    assert "timed out" in payload["detail"]


def test_normalize_then_reset(api_db):
    _upload()
    status, payload = _request("POST", "/api/attempts/normalize", {"user_id": "learner"})
    assert status == 200
    # Every attempt gains subject "General"; the two confident mistakes get "conceptual".
    assert payload == {"updated_count": 6, "inferred_mistake_count": 2, "normalized_count": 6}

    status, payload = _request("POST", "/api/attempts/normalize", {"user_id": "learner"})
    assert payload["updated_count"] == 0

    status, payload = _request("DELETE", "/api/attempts", params={"user_id": "learner"})
    assert status == 200
    assert payload == {"deleted": 6}
    status, summary = _request("GET", "/api/analytics/summary", params={"user_id": "learner"})
    assert summary["total_attempts"] == 0


def test_upload_can_normalize_immediately(api_db, monkeypatch):
    monkeypatch.setenv("NORMALIZE_ON_UPLOAD", "true")
    _upload()
    status, payload = _request("POST", "/api/attempts/normalize", {"user_id": "learner"})
    assert payload["updated_count"] == 0


def test_recent_attempts_listing(api_db):
    _upload()
    status, payload = _request("GET", "/api/attempts", params={"user_id": "learner", "limit": 2})
    assert status == 200
    assert [item["id"] for item in payload] == ["t2-2", "t2-1"]
    assert payload[0]["exam_type"] == "JEE"
    assert payload[0]["test_session_id"] == "mock-2"

    status, payload = _request("GET", "/api/attempts", params={"user_id": "learner"})
    assert len(payload) == 6

    status, _ = _request("GET", "/api/attempts", params={"user_id": "learner", "limit": 0})
    assert status == 400


def test_attempt_history_newest_test_first(api_db):
    _upload()
    status, history = _request("GET", "/api/attempt-history", params={"user_id": "learner"})
    assert status == 200
    assert [entry["test_session_id"] for entry in history] == ["mock-2", "mock-1"]
    latest, previous = history
    assert latest["accuracy"] == pytest.approx(33.3)
    assert latest["avg_time"] == 80
    assert latest["topics"] == [{"topic": "Algebra", "accuracy": pytest.approx(33.3), "attempts": 3}]
    assert latest["trend"] == {"accuracy_change": pytest.approx(-66.7), "time_change": 40, "direction": "declining"}
    assert previous["trend"] is None
    assert previous["test_date"].startswith("2026-02-10")


def test_topic_detail_breaks_down_subtopics(api_db):
    attempts = [
        {"id": "o1", "topic": "optics", "subtopic": "lenses", "correctness": True, "attemptedAt": "2026-02-01T09:00:00Z"},
        {"id": "o2", "topic": "Optics", "subtopic": "Lenses", "correctness": False, "attemptedAt": "2026-02-02T09:00:00Z"},
        {"id": "o3", "topic": "Optics", "subtopic": "Mirrors", "correctness": True, "attemptedAt": "2026-02-03T09:00:00Z"},
        {"id": "o4", "topic": "Optics", "correctness": True, "attemptedAt": "2026-02-04T09:00:00Z"},
    ]
    _request("POST", "/api/attempts/bulk", {"user_id": "learner", "attempts": attempts})

    status, detail = _request(
        "GET", "/api/analytics/topic-mastery/optics", params={"user_id": "learner", "as_of": AS_OF}
    )
    assert status == 200
    assert detail["topic"] == "Optics"
    assert detail["strategy"] == "blended"
    assert detail["total_attempts"] == 4
    assert detail["correct_attempts"] == 3
    assert [(s["subtopic"], s["attempt_count"], s["correct_count"]) for s in detail["subtopics"]] == [
        ("Lenses", 2, 1),
        ("Mirrors", 1, 1),
    ]
    assert [a["id"] for a in detail["recent_attempts"]] == ["o4", "o3", "o2", "o1"]

    status, _ = _request("GET", "/api/analytics/topic-mastery/thermodynamics", params={"user_id": "learner"})
    assert status == 404


def test_generated_cards_are_stored_and_fed_back(api_db, monkeypatch):
    _upload()
    generator = FakeGenerator([_card()])
    monkeypatch.setattr(app.app.state, "recommendation_service", RecommendationService(generator))

    status, _ = _request("GET", "/api/recommendations", params={"user_id": "learner", "exam_type": "JEE"})
    assert status == 404

    _request("POST", "/api/recommendations/generate", {"user_id": "learner", "exam_type": "JEE"})
    status, stored = _request("GET", "/api/recommendations", params={"user_id": "learner", "exam_type": "JEE"})
    assert status == 200
    assert stored["status"] == "ok"
    assert stored["cards"][0]["topic"] == "Algebra"

    _request("POST", "/api/recommendations/generate", {"user_id": "learner", "exam_type": "JEE"})
    assert generator.payloads[0]["previous_recommendation_cards"] == []
    assert generator.payloads[1]["previous_recommendation_cards"][0]["topic"] == "Algebra"


def test_generate_without_tests_clears_stored_cards(api_db, monkeypatch):
    _upload()
    db.save_recommendations("learner", "NEET", "ok", [_card()], {}, "2026-02-01T00:00:00+00:00")
    generator = FakeGenerator([_card()])
    monkeypatch.setattr(app.app.state, "recommendation_service", RecommendationService(generator))

    status, payload = _request("POST", "/api/recommendations/generate", {"user_id": "learner", "exam_type": "NEET"})

    assert status == 200
    assert payload["status"] == "empty"
    assert generator.payloads == []
    status, _ = _request("GET", "/api/recommendations", params={"user_id": "learner", "exam_type": "NEET"})
    assert status == 404
