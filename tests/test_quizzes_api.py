from __future__ import annotations

import pytest

from quiz_service import crud
from shared.database import make_session_factory
from shared.errors import ConcurrentUpdateError


def seed(api, category_id: str, n: int, prefix: str = "Question") -> list[str]:
    return [
        api.question(category_id, f"{prefix} number {i}?", [f"right {i}", f"wrong {i}"], f"right {i}")
        for i in range(n)
    ]


def correct_option(api, question: dict) -> str:
    return api.get_question(question["id"])["correctAnswerId"]


def wrong_option(api, question: dict) -> str:
    stored = api.get_question(question["id"])
    return next(o["id"] for o in stored["options"] if o["id"] != stored["correctAnswerId"])


def play_through(api, quiz: dict, correct_for=lambda i: True, clock=None, step_ms: int = 0) -> list[dict]:
    replies = []
    question = quiz["firstQuestion"]
    i = 0
    while question is not None:
        if clock is not None:
            clock.advance(step_ms)
        chosen = correct_option(api, question) if correct_for(i) else wrong_option(api, question)
        r = api.answer(quiz["quizId"], question["id"], chosen)
        assert r.status_code == 200, r.text
        reply = r.json()["data"]
        replies.append(reply)
        question = reply["nextQuestion"]
        i += 1
    return replies


@pytest.fixture
def literature(api) -> dict:
    lit = api.category("Literature")
    am = api.category("American Literature", lit)
    return {"lit": lit, "am": am, "questions": seed(api, lit, 2) + seed(api, am, 2, "American")}


def test_start_quiz_by_category(api, literature) -> None:
    quiz = api.start(categoryId=literature["lit"])
    assert quiz["totalQuestions"] == 4
    assert quiz["categoryName"] == "Literature"
    first = quiz["firstQuestion"]
    assert first["id"] in literature["questions"]
    assert "correctAnswerId" not in first

    sub = api.start(categoryId=literature["am"])
    assert sub["totalQuestions"] == 2
    assert sub["categoryName"] == "Literature/American Literature"


def test_start_quiz_errors(api, client) -> None:
    assert client.post("/quizzes", json={}).status_code == 400
    assert client.post("/quizzes", json={"categoryId": "missing"}).status_code == 404

    empty = api.category("Empty")
    r = client.post("/quizzes", json={"categoryId": empty})
    assert r.status_code == 404
    assert r.json()["error"] == "No questions found for the specified criteria."

    assert client.post("/quizzes", json={"random": True}).status_code == 404
    assert client.post("/quizzes", json={"random": True, "questionCount": 0}).status_code == 400


def test_random_quiz_samples_across_categories(api) -> None:
    a = api.category("A")
    b = api.category("B")
    nested = api.category("B1", b)
    pool = set(seed(api, a, 8, "Alpha") + seed(api, b, 6, "Beta") + seed(api, nested, 6, "Nested"))

    quiz = api.start(random=True, questionCount=5)
    assert quiz["totalQuestions"] == 5
    assert quiz["categoryName"] == "5 Random Questions"

    replies = play_through(api, quiz)
    asked = {quiz["firstQuestion"]["id"]} | {r["nextQuestion"]["id"] for r in replies if r["nextQuestion"]}
    assert len(asked) == 5
    assert asked <= pool


def test_answer_flow(api, client, literature, clock) -> None:
    quiz = api.start(categoryId=literature["lit"])
    replies = play_through(api, quiz, correct_for=lambda i: i != 1, clock=clock, step_ms=1500)

    assert [r["isCorrect"] for r in replies] == [True, False, True, True]
    assert [r["isComplete"] for r in replies] == [False, False, False, True]
    assert all("correctAnswerId" in r for r in replies)

    status = client.get(f"/quizzes/{quiz['quizId']}").json()["data"]
    assert status["status"] == "completed"
    assert status["isCompleted"] is True
    assert status["currentQuestion"] is None


def test_answer_ordering_errors(api, client, literature) -> None:
    quiz = api.start(categoryId=literature["lit"])
    first = quiz["firstQuestion"]
    other = next(q for q in literature["questions"] if q != first["id"])

    r = api.answer(quiz["quizId"], other, "whatever")
    assert r.status_code == 400
    assert "questionId" in r.json()["error"]

    assert api.answer(quiz["quizId"], first["id"], correct_option(api, first)).status_code == 200
    # the same question again is no longer current
    assert api.answer(quiz["quizId"], first["id"], correct_option(api, first)).status_code == 400

    assert api.answer("missing", first["id"], "x").status_code == 404


def test_answer_after_completion(api, literature) -> None:
    quiz = api.start(categoryId=literature["am"])
    play_through(api, quiz)
    r = api.answer(quiz["quizId"], quiz["firstQuestion"]["id"], "x")
    assert r.status_code == 400
    assert "not active" in r.json()["error"]


def test_pause_and_resume(api, client, literature, clock) -> None:
    quiz = api.start(categoryId=literature["am"])
    qid = quiz["quizId"]

    r = client.post(f"/quizzes/{qid}/pause")
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "paused"
    assert client.post(f"/quizzes/{qid}/pause").status_code == 400

    status = client.get(f"/quizzes/{qid}").json()["data"]
    assert status["status"] == "paused" and status["currentQuestion"] is None

    first = quiz["firstQuestion"]
    assert api.answer(qid, first["id"], correct_option(api, first)).status_code == 400

    clock.advance(60_000)
    r = client.post(f"/quizzes/{qid}/resume")
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "active"
    assert client.post(f"/quizzes/{qid}/resume").status_code == 400

    clock.advance(2_000)
    play_through(api, quiz)
    results = client.get(f"/quizzes/{qid}/results").json()["data"]
    # paused time is excluded from per-question time but not from the wall clock total
    assert results["answers"][0]["timeTaken"] == 2_000
    assert results["totalTimeSeconds"] == 62

    assert client.post(f"/quizzes/{qid}/pause").status_code == 400
    assert client.post(f"/quizzes/{qid}/resume").status_code == 400


def test_results(api, client, clock) -> None:
    cat = api.category("Ten")
    seed(api, cat, 10)
    quiz = api.start(categoryId=cat)

    assert client.get(f"/quizzes/{quiz['quizId']}/results").status_code == 400

    play_through(api, quiz, correct_for=lambda i: i < 7, clock=clock, step_ms=1000)
    r = client.get(f"/quizzes/{quiz['quizId']}/results")
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["scorePercentage"] == 70
    assert data["correctCount"] == 7
    assert data["incorrectCount"] == 3
    assert data["skippedCount"] == 0
    assert data["totalQuestions"] == 10
    assert data["totalTimeSeconds"] == 10
    assert len(data["answers"]) == 10
    assert all("correctAnswerId" in q for q in data["questions"])


def test_sessions_belong_to_their_starter(api, bob_client, literature) -> None:
    quiz = api.start(categoryId=literature["am"])
    qid = quiz["quizId"]
    first = quiz["firstQuestion"]

    assert bob_client.get(f"/quizzes/{qid}").status_code == 403
    assert bob_client.post(f"/quizzes/{qid}/pause").status_code == 403
    assert bob_client.post(f"/quizzes/{qid}/answer",
                           json={"questionId": first["id"], "selectedAnswerId": "x"}).status_code == 403
    assert bob_client.get(f"/quizzes/{qid}/results").status_code == 403


def test_stale_write_is_a_conflict(api, app, literature) -> None:
    quiz = api.start(categoryId=literature["am"])
    SessionLocal = make_session_factory(app.state.engine)

    with SessionLocal() as db:
        stale = crud.get_session(db, quiz["quizId"])
        fresh = crud.save_session(db, stale)
        assert fresh.version == stale.version + 1
        with pytest.raises(ConcurrentUpdateError):
            crud.save_session(db, stale)


# -------------------------
# Explanations during review
# -------------------------

def test_stored_explanation_is_returned(api, client, generator) -> None:
    cat = api.category("Geo")
    api.question(cat, "Capital of France?", ["Paris", "Rome"], "Paris", explanation="It is Paris.")
    quiz = api.start(categoryId=cat)
    play_through(api, quiz)

    r = client.post(f"/quizzes/{quiz['quizId']}/questions/{quiz['firstQuestion']['id']}/explanation")
    assert r.status_code == 200
    assert r.json()["data"] == {"explanation": "It is Paris.", "generated": False}
    assert generator.calls == []


def test_generated_explanation(api, client, generator) -> None:
    cat = api.category("Geo")
    api.question(cat, "Capital of Italy?", ["Rome", "Milan"], "Rome")
    quiz = api.start(categoryId=cat)
    play_through(api, quiz, correct_for=lambda i: False)

    url = f"/quizzes/{quiz['quizId']}/questions/{quiz['firstQuestion']['id']}/explanation"
    r = client.post(url)
    assert r.status_code == 200
    assert r.json()["data"] == {"explanation": "Because it is.", "generated": True}
    (request,) = generator.calls
    assert request.question_text == "Capital of Italy?"
    assert request.selected_answer_id != request.correct_answer_id

    generator.fail = True
    r = client.post(url)
    assert r.status_code == 502
    assert r.json()["success"] is False


def test_explanation_requires_completed_quiz(api, client, literature) -> None:
    quiz = api.start(categoryId=literature["am"])
    url = f"/quizzes/{quiz['quizId']}/questions/{quiz['firstQuestion']['id']}/explanation"
    assert client.post(url).status_code == 400

    play_through(api, quiz)
    assert client.post(f"/quizzes/{quiz['quizId']}/questions/missing/explanation").status_code == 404
