# gateway/main.py
from __future__ import annotations

import logging
import os
import random
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException

from ai_service.generator import OpenRouterGenerator
from ai_service.routes import build_router as build_ai_router
from quiz_service.quiz_logic import Clock, system_clock
from quiz_service.routes import build_router as build_quiz_router
from shared.config import Settings, load_settings
from shared.database import init_db, make_engine, make_session_factory
from shared.errors import QuizCraftError
from shared.responses import fail
from .middleware import HttpTokenVerifier, TokenVerifier, build_auth_middleware

logger = logging.getLogger("gateway")


def _field_errors(exc: RequestValidationError) -> dict[str, list[str]]:
    out: dict[str, list[str]] = {}
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        key = loc[-1] if loc else "body"
        # list indices are not useful as field names
        if key.isdigit() and len(loc) > 1:
            key = loc[-2]
        out.setdefault(key, []).append(err.get("msg", "Invalid value"))
    return out


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(QuizCraftError)
    async def quizcraft_error_handler(request: Request, exc: QuizCraftError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return fail(exc.payload(), exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return fail(_field_errors(exc), 400)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return fail(exc.detail, exc.status_code)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error in %s %s", request.method, request.url.path)
        return fail(str(exc) or "An unknown error occurred", 500)


def create_app(
    settings: Optional[Settings] = None,
    *,
    token_verifier: Optional[TokenVerifier] = None,
    generator=None,
    clock: Clock = system_clock,
    rng: Optional[random.Random] = None,
) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    engine = make_engine(settings.database_url)
    init_db(engine)
    SessionLocal = make_session_factory(engine)

    generator = generator or OpenRouterGenerator(settings)
    verify_token = token_verifier or HttpTokenVerifier(settings.auth_service_url, settings.auth_timeout)

    app = FastAPI(title="QuizCraft API", version="1.0.0")
    app.state.settings = settings
    app.state.engine = engine

    origins = list(settings.cors_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        # Browsers reject "*" with credentials
        allow_credentials=origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(build_auth_middleware(verify_token))
    register_exception_handlers(app)

    @app.get("/health", operation_id="health_check", tags=["Health"])
    async def health_check():
        return {"status": "healthy", "service": "quizcraft"}

    app.include_router(build_quiz_router(SessionLocal, generator, clock=clock, rng=rng))
    app.include_router(build_ai_router(generator, generator), prefix="/ai", tags=["AI"])
    return app


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(create_app(), host="0.0.0.0", port=port)
