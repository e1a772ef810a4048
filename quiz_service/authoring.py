"""Question authoring helpers: option ids, patch merging and the batch formats.

The text batch format is one question per line::

    ;;What is 2+2?;; {3 - 4 - 5} [4]

Question text between ``;;`` pairs, options in braces separated by ``" - "``,
the correct option's text in brackets.
"""
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Optional

from shared.errors import ValidationError

MIN_OPTIONS = 2
OPTION_SEPARATOR = " - "
ERROR_SNIPPET_LENGTH = 50
MISSING_CORRECT_ANSWER = "CORRECT_ANSWER_NOT_FOUND"

_QUESTION_RE = re.compile(r";;(.*?);;")
_OPTIONS_RE = re.compile(r"\{(.*?)\}")
_CORRECT_RE = re.compile(r"\[(.*?)\]")
_NEWLINES_RE = re.compile(r"[\r\n]+")

# marks fields a patch leaves untouched, so that None can mean "clear"
UNSET: Any = object()


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class OptionDraft:
    id: str
    text: str


@dataclass(frozen=True)
class QuestionDraft:
    """A validated question ready to be written to the store."""

    text: str
    options: tuple[OptionDraft, ...]
    correct_answer_id: str
    category_id: str
    explanation: Optional[str] = None
    source: Optional[str] = None
    id: str = field(default_factory=new_id)


@dataclass(frozen=True)
class QuestionPatch:
    text: Any = UNSET
    options: Any = UNSET
    correct_answer_id: Any = UNSET
    category_id: Any = UNSET
    explanation: Any = UNSET
    source: Any = UNSET


def build_options(raw: Iterable) -> tuple[OptionDraft, ...]:
    """Normalize option input, minting ids for options that lack one.

    Accepts plain strings or mappings with ``text`` and optional ``id``.
    """
    out = []
    for item in raw:
        if isinstance(item, str):
            out.append(OptionDraft(id=new_id(), text=item))
        elif isinstance(item, OptionDraft):
            out.append(item)
        else:
            text = item.get("text") if isinstance(item, dict) else getattr(item, "text", None)
            oid = item.get("id") if isinstance(item, dict) else getattr(item, "id", None)
            out.append(OptionDraft(id=oid or new_id(), text=text or ""))
    return tuple(out)


def validate_question(draft: QuestionDraft) -> QuestionDraft:
    errors: dict[str, list[str]] = {}
    if not draft.text or not draft.text.strip():
        errors.setdefault("text", []).append("Question text cannot be empty.")
    if len(draft.options) < MIN_OPTIONS:
        errors.setdefault("options", []).append(f"At least {MIN_OPTIONS} options are required.")
    if any(not o.text.strip() for o in draft.options):
        errors.setdefault("options", []).append("Option text cannot be empty.")
    ids = [o.id for o in draft.options]
    if len(set(ids)) != len(ids):
        errors.setdefault("options", []).append("Option ids must be unique.")
    if ids.count(draft.correct_answer_id) != 1:
        errors.setdefault("correctAnswerId", []).append(
            "The correctAnswerId must match exactly one of the options."
        )
    if errors:
        raise ValidationError("Invalid question.", field_errors=errors)
    return draft


def draft_from_text_answer(
    *,
    text: str,
    options: Iterable,
    correct_answer_text: str,
    category_id: str,
    explanation: Optional[str] = None,
    source: Optional[str] = None,
) -> QuestionDraft:
    """Build a draft whose correct answer is named by its option text."""
    built = build_options(options)
    correct = next((o for o in built if o.text == correct_answer_text), None)
    if correct is None:
        raise ValidationError(
            "The provided correctAnswerText does not match any of the options.",
            field_errors={"correctAnswerText": ["Does not match any of the options."]},
        )
    return validate_question(QuestionDraft(
        text=text,
        options=built,
        correct_answer_id=correct.id,
        category_id=category_id,
        explanation=explanation,
        source=source,
    ))


def merge_question(existing: QuestionDraft, patch: QuestionPatch) -> QuestionDraft:
    """Apply a sparse patch and return a new draft; ``existing`` is not modified.

    When options are replaced without a new correct id, the existing id
    must still be one of the new options.
    """
    changes: dict[str, Any] = {}
    if patch.text is not UNSET and patch.text is not None:
        changes["text"] = patch.text
    if patch.options is not UNSET and patch.options is not None:
        changes["options"] = build_options(patch.options)
    if patch.correct_answer_id is not UNSET and patch.correct_answer_id is not None:
        changes["correct_answer_id"] = patch.correct_answer_id
    if patch.category_id is not UNSET and patch.category_id is not None:
        changes["category_id"] = patch.category_id
    if patch.explanation is not UNSET:
        changes["explanation"] = patch.explanation
    if patch.source is not UNSET:
        changes["source"] = patch.source

    merged = replace(existing, **changes)
    if "options" in changes and merged.correct_answer_id not in {o.id for o in merged.options}:
        if "correct_answer_id" in changes:
            msg = "The provided correctAnswerId is not present in the updated options array."
        else:
            msg = (
                "The existing correctAnswerId is not present in the new options array. "
                "You must provide a new correctAnswerId."
            )
        raise ValidationError(msg, field_errors={"correctAnswerId": [msg]})
    return validate_question(merged)


# -------------------------
# Batch import
# -------------------------

@dataclass
class BatchReport:
    added: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def record_failure(self, message: str) -> None:
        self.failed += 1
        self.errors.append(message)

    @property
    def status_code(self) -> int:
        if self.added > 0 and self.failed > 0:
            return 207
        if self.failed > 0:
            return 400
        return 201

    def as_dict(self) -> dict:
        out: dict[str, Any] = {"added": self.added, "failed": self.failed}
        if self.errors:
            out["errors"] = list(self.errors)
        return out


def _snippet(value: str) -> str:
    return f"{value[:ERROR_SNIPPET_LENGTH]}..."


def parse_batch_line(line: str, category_id: str) -> QuestionDraft:
    """Parse one ``;;q;; {a - b} [a]`` line; raises ``ValidationError`` with a message naming the line."""
    question_match = _QUESTION_RE.search(line)
    options_match = _OPTIONS_RE.search(line)
    correct_match = _CORRECT_RE.search(line)
    if not question_match or not options_match or not correct_match:
        raise ValidationError(f"Skipping malformed line: {_snippet(line)}")

    question_text = question_match.group(1).strip()
    option_texts = [o.strip() for o in options_match.group(1).split(OPTION_SEPARATOR) if o.strip()]
    correct_text = correct_match.group(1).strip()

    if not question_text or len(option_texts) < MIN_OPTIONS or not correct_text:
        raise ValidationError(f"Skipping invalid data in line: {_snippet(line)}")

    try:
        return draft_from_text_answer(
            text=question_text,
            options=option_texts,
            correct_answer_text=correct_text,
            category_id=category_id,
        )
    except ValidationError:
        raise ValidationError(
            f'Correct answer text "{correct_text}" not found in options for line: {_snippet(line)}'
        )


def iter_batch_lines(batch_text: str) -> list[str]:
    return [line for line in batch_text.splitlines() if line.strip()]


def parse_batch_item(item: Any, category_id: str) -> QuestionDraft:
    """Parse one structured item: ``{question, options: {A: ..}, correctAnswer: "A", explanation?}``."""
    label = _snippet(str(item))
    if not isinstance(item, dict):
        raise ValidationError(f"Skipping item that is not an object: {label}")

    question_text = item.get("question")
    options = item.get("options")
    correct_key = item.get("correctAnswer")
    explanation = item.get("explanation")

    if not isinstance(question_text, str) or not question_text.strip():
        raise ValidationError(f"Skipping item without question text: {label}")
    if not isinstance(options, dict) or len(options) < MIN_OPTIONS:
        raise ValidationError(f"Skipping item with fewer than {MIN_OPTIONS} options: {label}")
    if not isinstance(correct_key, str) or len(correct_key.strip()) != 1:
        raise ValidationError(f"Skipping item with an invalid correctAnswer key: {label}")
    if explanation is not None and not isinstance(explanation, str):
        raise ValidationError(f"Skipping item with a non-text explanation: {label}")

    keyed: dict[str, OptionDraft] = {}
    for key, text in options.items():
        if not isinstance(key, str) or len(key.strip()) != 1 or not isinstance(text, str) or not text.strip():
            raise ValidationError(f"Skipping item with a malformed option '{key}': {label}")
        normalized = key.strip().upper()
        if normalized in keyed:
            raise ValidationError(f"Skipping item with duplicate option key '{normalized}': {label}")
        keyed[normalized] = OptionDraft(id=new_id(), text=text.strip())

    correct = keyed.get(correct_key.strip().upper())
    if correct is None:
        raise ValidationError(f'Correct answer key "{correct_key}" not found in options for item: {label}')

    return validate_question(QuestionDraft(
        text=question_text.strip(),
        options=tuple(keyed.values()),
        correct_answer_id=correct.id,
        category_id=category_id,
        explanation=explanation.strip() if explanation else None,
    ))


# -------------------------
# Export
# -------------------------

def _flatten(text: str) -> str:
    return _NEWLINES_RE.sub(" ", text or "")


def format_batch_line(question) -> str:
    option_texts = OPTION_SEPARATOR.join(_flatten(o.text) for o in question.options)
    correct = next((o for o in question.options if o.id == question.correct_answer_id), None)
    correct_text = _flatten(correct.text) if correct else MISSING_CORRECT_ANSWER
    return f";;{_flatten(question.text)};; {{{option_texts}}} [{correct_text}]"


def export_batch_text(questions: Iterable) -> str:
    return "\n".join(format_batch_line(q) for q in questions)
