"""Error taxonomy shared by every package.

Each error carries the HTTP status it maps to; the gateway turns them into
the ``{"success": false, "error": ...}`` envelope.
"""
from __future__ import annotations

from typing import Optional


class QuizCraftError(Exception):
    status_code = 500

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def payload(self):
        return self.message


class ValidationError(QuizCraftError):
    status_code = 400

    def __init__(self, message: str, *, field_errors: Optional[dict[str, list[str]]] = None):
        super().__init__(message)
        self.field_errors = field_errors or {}

    def payload(self):
        return self.field_errors or self.message


class NotFoundError(QuizCraftError):
    status_code = 404


class ForbiddenError(QuizCraftError):
    status_code = 403


class StateError(QuizCraftError):
    status_code = 400


class ConcurrentUpdateError(StateError):
    status_code = 409


class UnauthorizedError(QuizCraftError):
    status_code = 401


class InternalError(QuizCraftError):
    status_code = 500


class CategoryCycleError(InternalError):
    pass


class GenerationError(InternalError):
    status_code = 502
