import logging
from typing import Any, Awaitable, Callable, Optional

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse

from shared.errors import QuizCraftError, UnauthorizedError

logger = logging.getLogger("gateway")

TokenVerifier = Callable[[str], Awaitable[dict[str, Any]]]

# Public paths that don't require auth
PUBLIC_PATHS = {
    "/health",
    "/openapi.json",
    "/redoc",
}

PUBLIC_PREFIXES = (
    "/docs",
)

# identity headers only the gateway may set
USER_HEADERS = (b"x-user-id", b"x-user-email")


def _is_public_path(path: str) -> bool:
    if path in PUBLIC_PATHS:
        return True
    return any(path.startswith(p) for p in PUBLIC_PREFIXES)


class HttpTokenVerifier:
    """Verify a bearer token against the auth service's ``POST /auth/verify``."""

    def __init__(self, auth_service_url: str, timeout: float = 5.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.auth_service_url = auth_service_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def __call__(self, token: str) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                r = await client.post(f"{self.auth_service_url}/auth/verify", json={"token": token})
        except httpx.RequestError as e:
            logger.error("Auth service error: %s", e)
            raise QuizCraftError("Authentication service unavailable", status_code=503)

        try:
            data: Any = r.json()
        except ValueError:
            data = r.text

        if r.status_code != 200:
            detail = "Unauthorized: Invalid token."
            if isinstance(data, dict):
                detail = data.get("detail") or data.get("message") or detail
            raise UnauthorizedError(str(detail))

        payload = data
        if isinstance(payload, dict) and isinstance(payload.get("user"), dict):
            payload = payload["user"]
        if not isinstance(payload, dict) or not payload.get("sub"):
            raise UnauthorizedError("Unauthorized: Token missing sub.")

        user = {"sub": str(payload["sub"]), "email": str(payload.get("email") or "")}
        try:
            _header_values(user)
        except UnicodeEncodeError:
            raise UnauthorizedError("Unauthorized: Identity cannot be forwarded.")
        return user


def _header_values(user: dict[str, Any]) -> list[tuple[bytes, bytes]]:
    # ASGI header values are latin-1 bytes
    values = [(b"x-user-id", user["sub"].encode("latin-1"))]
    if user.get("email"):
        values.append((b"x-user-email", user["email"].encode("latin-1")))
    return values


def _set_user_headers(request: Request, user: dict[str, Any]) -> None:
    injected = _header_values(user)
    headers = [(k, v) for k, v in request.scope["headers"] if k.lower() not in USER_HEADERS]
    request.scope["headers"] = headers + injected


def _unauthorized(message: str, status_code: int = 401) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def build_auth_middleware(verify_token: TokenVerifier):
    async def auth_middleware(request: Request, call_next):
        # Let CORS preflight pass through
        if request.method == "OPTIONS":
            return await call_next(request)

        if _is_public_path(request.url.path):
            return await call_next(request)

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.lower().startswith("bearer "):
            return _unauthorized("Unauthorized: No token provided.")

        token = auth_header.split(" ", 1)[1].strip()
        if not token:
            return _unauthorized("Unauthorized: Malformed token.")

        try:
            user = await verify_token(token)
        except QuizCraftError as e:
            logger.warning("Token rejected for %s %s: %s", request.method, request.url.path, e.message)
            return _unauthorized(e.message, e.status_code)

        try:
            _set_user_headers(request, user)
        except UnicodeEncodeError:
            logger.warning("Verified identity for %s %s is not header-safe", request.method, request.url.path)
            return _unauthorized("Unauthorized: Identity cannot be forwarded.")
        request.state.user = user
        return await call_next(request)

    return auth_middleware
