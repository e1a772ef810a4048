"""AI text-generation collaborator: distractor suggestions and answer explanations.

Callers depend on the ``DistractorGenerator`` / ``AnswerExplainer``
protocols only. Any failure (missing key, timeout, provider error, output
that does not parse) surfaces as ``GenerationError``; nothing here touches
question or session state.
"""
from __future__ import annotations

import json
import logging
import random
import re
import time
from typing import Callable, Optional, Protocol, TypeVar

from openai import APITimeoutError, OpenAI, RateLimitError
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from shared.config import Settings
from shared.errors import GenerationError

logger = logging.getLogger("ai-service")

T = TypeVar("T")

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


class DistractorRequest(BaseModel):
    question: str
    correct_answer: str
    num_distractors: int = 3


class DistractorResult(BaseModel):
    distractors: list[str] = Field(default_factory=list)


class ExplanationOption(BaseModel):
    id: str
    text: str


class ExplanationRequest(BaseModel):
    question_text: str
    options: list[ExplanationOption]
    correct_answer_id: str
    selected_answer_id: Optional[str] = None


class ExplanationResult(BaseModel):
    explanation: str


class DistractorGenerator(Protocol):
    def generate_distractors(self, request: DistractorRequest) -> DistractorResult: ...


class AnswerExplainer(Protocol):
    def explain_answer(self, request: ExplanationRequest) -> ExplanationResult: ...


def call_with_backoff(fn: Callable[[], T], max_retries: int = 3, sleep: Callable[[float], None] = time.sleep) -> T:
    """Call ``fn``, retrying up to ``max_retries`` more times while it is rate limited."""
    base = 0.5
    attempts = max(0, max_retries) + 1
    for attempt in range(attempts):
        try:
            return fn()
        except RateLimitError:
            if attempt == attempts - 1:
                raise
            sleep(min(15.0, base * (2 ** attempt)) + random.uniform(0, 0.25))
    raise GenerationError("AI provider retries exhausted")


def distractor_prompt(request: DistractorRequest) -> str:
    return (
        "You are helping quiz creators write plausible distractors (incorrect answer options) "
        "for multiple-choice questions.\n\n"
        f"Generate {request.num_distractors} plausible distractors that someone who does not know "
        "the correct answer is likely to pick. They must be diverse, not too similar to each other, "
        "and factually incorrect.\n\n"
        f"Question: {request.question}\n"
        f"Correct Answer: {request.correct_answer}\n\n"
        'Reply with JSON only: {"distractors": ["...", "..."]}'
    )


def explanation_prompt(request: ExplanationRequest) -> str:
    by_id = {o.id: o.text for o in request.options}
    correct_text = by_id[request.correct_answer_id]
    lines = [
        "You are a quiz explainer. Give a concise, clear explanation in Markdown.",
        "",
        f"Question:\n{request.question_text}",
        "",
        "Options Provided:",
        *[f"- {o.text}" for o in request.options],
        "",
        f"Correct Answer:\n{correct_text}",
        "",
    ]
    if request.selected_answer_id:
        selected_text = by_id.get(request.selected_answer_id, "An option that was not listed.")
        lines.append(f"User Selected:\n{selected_text}\n")
        if request.selected_answer_id == request.correct_answer_id:
            lines.append(f'The selection was CORRECT. Explain why "{correct_text}" is the correct answer.')
        else:
            lines.append(
                f'The selection was INCORRECT. Explain why "{correct_text}" is correct '
                f'and why "{selected_text}" is not.'
            )
    else:
        lines.append(f'The user SKIPPED this question. Explain why "{correct_text}" is the correct answer.')
    lines.append("")
    lines.append('Reply with JSON only: {"explanation": "..."}')
    return "\n".join(lines)


def parse_json_reply(raw: str, model: type[BaseModel]):
    text = _FENCE_RE.sub("", (raw or "").strip()).strip()
    try:
        return model.model_validate(json.loads(text))
    except (json.JSONDecodeError, PydanticValidationError) as e:
        raise GenerationError(f"AI provider returned unparseable output: {type(e).__name__}")


def clean_distractors(result: DistractorResult, request: DistractorRequest) -> DistractorResult:
    correct = request.correct_answer.strip().lower()
    seen: set[str] = set()
    out: list[str] = []
    for d in result.distractors:
        text = d.strip()
        key = text.lower()
        if not text or key == correct or key in seen:
            continue
        seen.add(key)
        out.append(text)
    return DistractorResult(distractors=out[: request.num_distractors])


class OpenRouterGenerator:
    """Both generator capabilities over an OpenAI-compatible chat completions API."""

    def __init__(self, settings: Settings, client: Optional[OpenAI] = None):
        self.settings = settings
        self._client = client

    def _get_client(self) -> OpenAI:
        if self._client is None:
            if not self.settings.openrouter_api_key:
                raise GenerationError("OPENROUTER_API_KEY is not set")
            self._client = OpenAI(
                api_key=self.settings.openrouter_api_key,
                base_url=self.settings.openrouter_base_url,
                timeout=self.settings.ai_timeout,
                max_retries=0,
                default_headers={"X-Title": "quizcraft"},
            )
        return self._client

    def _complete(self, prompt: str) -> str:
        client = self._get_client()
        try:
            resp = call_with_backoff(
                lambda: client.chat.completions.create(
                    model=self.settings.openrouter_model,
                    messages=[{"role": "user", "content": prompt}],
                    timeout=self.settings.ai_timeout,
                ),
                max_retries=self.settings.ai_max_retries,
            )
        except RateLimitError:
            logger.error("AI provider rate limited after %d attempts", self.settings.ai_max_retries + 1)
            raise GenerationError("AI provider is rate limiting requests. Please retry shortly.")
        except APITimeoutError:
            logger.error("AI provider timed out after %.1fs", self.settings.ai_timeout)
            raise GenerationError("AI provider timed out.")
        except GenerationError:
            raise
        except Exception as e:
            logger.error("AI provider error: %s", e)
            raise GenerationError(f"LLM provider error: {type(e).__name__}")

        if resp is not None and getattr(resp, "choices", None):
            return (resp.choices[0].message.content or "").strip()
        return ""

    def generate_distractors(self, request: DistractorRequest) -> DistractorResult:
        result = parse_json_reply(self._complete(distractor_prompt(request)), DistractorResult)
        return clean_distractors(result, request)

    def explain_answer(self, request: ExplanationRequest) -> ExplanationResult:
        if request.correct_answer_id not in {o.id for o in request.options}:
            return ExplanationResult(
                explanation="Error: Could not find the correct answer details to generate an explanation."
            )
        result = parse_json_reply(self._complete(explanation_prompt(request)), ExplanationResult)
        if not result.explanation.strip():
            raise GenerationError("AI provider returned an empty explanation.")
        return result
