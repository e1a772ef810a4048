from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _get_env(name: str, default: Optional[str] = None) -> str:
    val = os.getenv(name, default)
    if val is None or val.strip() == "":
        if default is not None:
            return default
        raise RuntimeError(f"Missing required environment variable: {name}")
    return val.strip()


def _get_float(name: str, default: float) -> float:
    raw = _get_env(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable {name} must be a number, got {raw!r}")


def _get_int(name: str, default: int) -> int:
    raw = _get_env(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {raw!r}")


def _parse_origins(raw: str) -> list[str]:
    raw = (raw or "").strip()
    if not raw:
        return ["*"]
    if raw == "*":
        return ["*"]
    return [o.strip() for o in raw.split(",") if o.strip()]


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./quizcraft.db"
    auth_service_url: str = "http://auth-service:8001"
    auth_timeout: float = 5.0
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_model: str = "deepseek/deepseek-r1-0528:free"
    ai_timeout: float = 20.0
    ai_max_retries: int = 3
    cors_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"


def load_settings() -> Settings:
    load_dotenv()
    return Settings(
        database_url=_get_env("DATABASE_URL", Settings.database_url),
        auth_service_url=_get_env("AUTH_SERVICE_URL", Settings.auth_service_url).rstrip("/"),
        auth_timeout=_get_float("AUTH_TIMEOUT", Settings.auth_timeout),
        openrouter_api_key=os.getenv("OPENROUTER_API_KEY", "").strip(),
        openrouter_base_url=_get_env("OPENROUTER_BASE_URL", Settings.openrouter_base_url),
        openrouter_model=_get_env("OPENROUTER_MODEL", Settings.openrouter_model),
        ai_timeout=_get_float("AI_TIMEOUT", Settings.ai_timeout),
        ai_max_retries=_get_int("AI_MAX_RETRIES", Settings.ai_max_retries),
        cors_origins=tuple(_parse_origins(os.getenv("CORS_ORIGINS", "*"))),
        log_level=_get_env("LOG_LEVEL", Settings.log_level).upper(),
    )
