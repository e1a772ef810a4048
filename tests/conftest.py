from __future__ import annotations

import random

import pytest
from fastapi.testclient import TestClient

from ai_service.generator import DistractorResult, ExplanationResult
from gateway.main import create_app
from shared.config import Settings
from shared.errors import GenerationError, UnauthorizedError

USERS = {
    "token-alice": {"sub": "alice", "email": "alice@example.com"},
    "token-bob": {"sub": "bob", "email": "bob@example.com"},
}


class ManualClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeGenerator:
    def __init__(self):
        self.distractors = ["Blue", "Green", "Yellow"]
        self.explanation = "Because it is."
        self.fail = False
        self.calls: list = []

    def generate_distractors(self, request):
        self.calls.append(request)
        if self.fail:
            raise GenerationError("AI provider timed out.")
        return DistractorResult(distractors=self.distractors[: request.num_distractors])

    def explain_answer(self, request):
        self.calls.append(request)
        if self.fail:
            raise GenerationError("AI provider timed out.")
        return ExplanationResult(explanation=self.explanation)


async def fake_verify(token: str) -> dict:
    if token not in USERS:
        raise UnauthorizedError("Unauthorized: Invalid token.")
    return USERS[token]


class Api:
    """Thin helpers over the HTTP surface used across test modules."""

    def __init__(self, client: TestClient):
        self.client = client

    def category(self, name: str, parent_id: str | None = None) -> str:
        r = self.client.post("/categories", json={"name": name, "parentId": parent_id})
        assert r.status_code == 201, r.text
        return r.json()["data"]["id"]

    def question(self, category_id: str, text: str, options: list[str], correct: str, **extra) -> str:
        body = {"text": text, "options": options, "correctAnswerText": correct, **extra}
        r = self.client.post(f"/categories/{category_id}/questions", json=body)
        assert r.status_code == 201, r.text
        return r.json()["data"]["id"]

    def get_question(self, question_id: str) -> dict:
        r = self.client.get(f"/questions/{question_id}")
        assert r.status_code == 200, r.text
        return r.json()["data"]

    def start(self, **body) -> dict:
        r = self.client.post("/quizzes", json=body)
        assert r.status_code == 200, r.text
        return r.json()["data"]

    def answer(self, quiz_id: str, question_id: str, selected_answer_id: str, confidence: int | None = None):
        body = {"questionId": question_id, "selectedAnswerId": selected_answer_id}
        if confidence is not None:
            body["confidence"] = confidence
        return self.client.post(f"/quizzes/{quiz_id}/answer", json=body)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def app(clock, generator):
    settings = Settings(database_url="sqlite:///:memory:", log_level="WARNING")
    return create_app(
        settings,
        token_verifier=fake_verify,
        generator=generator,
        clock=clock,
        rng=random.Random(1234),
    )


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app, headers={"Authorization": "Bearer token-alice"})


@pytest.fixture
def bob_client(app) -> TestClient:
    return TestClient(app, headers={"Authorization": "Bearer token-bob"})


@pytest.fixture
def api(client) -> Api:
    return Api(client)
