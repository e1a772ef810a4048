from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from gateway.middleware import HttpTokenVerifier, build_auth_middleware
from shared.errors import QuizCraftError, UnauthorizedError


def test_missing_token_is_rejected(app) -> None:
    anonymous = TestClient(app)
    r = anonymous.get("/categories")
    assert r.status_code == 401
    assert r.json() == {"success": False, "error": "Unauthorized: No token provided."}

    r = anonymous.get("/categories", headers={"Authorization": "Basic abc"})
    assert r.status_code == 401


def test_empty_and_unknown_tokens(app) -> None:
    anonymous = TestClient(app)
    r = anonymous.get("/categories", headers={"Authorization": "Bearer    "})
    assert r.status_code == 401

    r = anonymous.get("/categories", headers={"Authorization": "Bearer forged"})
    assert r.status_code == 401
    assert r.json()["error"] == "Unauthorized: Invalid token."


def test_public_paths(app) -> None:
    anonymous = TestClient(app)
    r = anonymous.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy", "service": "quizcraft"}
    assert anonymous.get("/openapi.json").status_code == 200
    assert anonymous.get("/docs").status_code == 200


def test_unknown_route_is_enveloped(client) -> None:
    r = client.get("/nothing-here")
    assert r.status_code == 404
    assert r.json()["success"] is False


def _echo_app(verify) -> FastAPI:
    app = FastAPI()
    app.middleware("http")(build_auth_middleware(verify))

    @app.get("/whoami")
    def whoami(request: Request):
        return {
            "id": request.headers.get("X-User-ID"),
            "email": request.headers.get("X-User-Email"),
            "state": request.state.user,
        }

    return app


def test_spoofed_identity_headers_are_replaced() -> None:
    async def verify(token: str) -> dict:
        return {"sub": "alice", "email": "alice@example.com"}

    client = TestClient(_echo_app(verify))
    r = client.get("/whoami", headers={
        "Authorization": "Bearer ok",
        "X-User-ID": "mallory",
        "X-User-Email": "mallory@example.com",
    })
    assert r.status_code == 200
    assert r.json() == {
        "id": "alice",
        "email": "alice@example.com",
        "state": {"sub": "alice", "email": "alice@example.com"},
    }


def test_verifier_unavailable_is_503() -> None:
    async def verify(token: str) -> dict:
        raise QuizCraftError("Authentication service unavailable", status_code=503)

    r = TestClient(_echo_app(verify)).get("/whoami", headers={"Authorization": "Bearer ok"})
    assert r.status_code == 503


def test_spoofed_id_cannot_reach_other_sessions(api, app) -> None:
    cat = api.category("Any")
    api.question(cat, "What is 2+2?", ["3", "4"], "4")
    quiz = api.start(categoryId=cat)

    bob = TestClient(app, headers={"Authorization": "Bearer token-bob", "X-User-ID": "alice"})
    assert bob.get(f"/quizzes/{quiz['quizId']}").status_code == 403


# -------------------------
# HttpTokenVerifier against a mocked auth service
# -------------------------

def _verify(handler, token: str = "tok") -> dict:
    verifier = HttpTokenVerifier("http://auth.local/", transport=httpx.MockTransport(handler))
    return asyncio.run(verifier(token))


def test_http_verifier_success() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"sub": 42, "email": "a@example.com"})

    assert _verify(handler) == {"sub": "42", "email": "a@example.com"}
    assert seen == {"url": "http://auth.local/auth/verify", "body": {"token": "tok"}}


def test_http_verifier_nested_user() -> None:
    def handler(request):
        return httpx.Response(200, json={"user": {"sub": "u1"}})

    assert _verify(handler) == {"sub": "u1", "email": ""}


@pytest.mark.parametrize(
    "response, message",
    [
        (httpx.Response(401, json={"detail": "Token expired"}), "Token expired"),
        (httpx.Response(403, text="nope"), "Unauthorized: Invalid token."),
        (httpx.Response(200, json={"email": "x@example.com"}), "Unauthorized: Token missing sub."),
    ],
)
def test_http_verifier_rejections(response, message) -> None:
    with pytest.raises(UnauthorizedError) as exc:
        _verify(lambda request: response)
    assert exc.value.message == message


def test_http_verifier_unreachable() -> None:
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(QuizCraftError) as exc:
        _verify(handler)
    assert exc.value.status_code == 503


def test_http_verifier_rejects_identity_that_cannot_be_forwarded() -> None:
    def handler(request):
        return httpx.Response(200, json={"sub": "用户-1", "email": "u@example.com"})

    with pytest.raises(UnauthorizedError) as exc:
        _verify(handler)
    assert exc.value.status_code == 401


def test_gate_rejects_non_latin1_identity_from_any_verifier() -> None:
    async def verify(token: str) -> dict:
        return {"sub": "ok", "email": "ünïcødé@例え.jp"}

    r = TestClient(_echo_app(verify)).get("/whoami", headers={"Authorization": "Bearer ok"})
    assert r.status_code == 401
    assert r.json() == {"success": False, "error": "Unauthorized: Identity cannot be forwarded."}
