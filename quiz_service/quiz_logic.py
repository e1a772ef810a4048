"""Quiz session state machine.

Sessions move ``active -> paused -> active`` any number of times and end
with ``active -> completed``. Every transition takes the current record and
returns a new one; persistence (and the optimistic version check) is the
caller's job.

Time is epoch milliseconds from an injected clock. Per-question time is
derived rather than tracked: the time spent on the question being answered
is the wall-clock time since the session started, minus time spent paused,
minus what earlier answers already consumed.
"""
from __future__ import annotations

import math
import random
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Optional, Sequence

from shared.errors import ForbiddenError, NotFoundError, StateError, ValidationError

ACTIVE = "active"
PAUSED = "paused"
COMPLETED = "completed"

RANDOM_CATEGORY_ID = "__ALL_QUESTIONS_RANDOM__"

Clock = Callable[[], int]


def system_clock() -> int:
    return int(time.time() * 1000)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class OptionSnapshot:
    id: str
    text: str


@dataclass(frozen=True)
class QuestionSnapshot:
    id: str
    text: str
    options: tuple[OptionSnapshot, ...]
    correct_answer_id: str
    category_id: str
    explanation: Optional[str] = None
    source: Optional[str] = None

    def public_view(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "options": [{"id": o.id, "text": o.text} for o in self.options],
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "options": [{"id": o.id, "text": o.text} for o in self.options],
            "correctAnswerId": self.correct_answer_id,
            "categoryId": self.category_id,
            "explanation": self.explanation,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QuestionSnapshot":
        return cls(
            id=data["id"],
            text=data["text"],
            options=tuple(OptionSnapshot(id=o["id"], text=o["text"]) for o in data["options"]),
            correct_answer_id=data["correctAnswerId"],
            category_id=data.get("categoryId", ""),
            explanation=data.get("explanation"),
            source=data.get("source"),
        )

    @classmethod
    def from_question(cls, q) -> "QuestionSnapshot":
        return cls(
            id=q.id,
            text=q.text,
            options=tuple(OptionSnapshot(id=o.id, text=o.text) for o in q.options),
            correct_answer_id=q.correct_answer_id,
            category_id=q.category_id,
            explanation=q.explanation,
            source=q.source,
        )


@dataclass(frozen=True)
class QuizAnswer:
    question_id: str
    time_taken: int
    skipped: bool = False
    selected_answer_id: Optional[str] = None
    is_correct: Optional[bool] = None

    def to_dict(self) -> dict:
        out = {"questionId": self.question_id, "timeTaken": self.time_taken, "skipped": self.skipped}
        if not self.skipped:
            out["selectedAnswerId"] = self.selected_answer_id
            out["isCorrect"] = self.is_correct
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "QuizAnswer":
        return cls(
            question_id=data["questionId"],
            time_taken=int(data.get("timeTaken", 0)),
            skipped=bool(data.get("skipped", False)),
            selected_answer_id=data.get("selectedAnswerId"),
            is_correct=data.get("isCorrect"),
        )


@dataclass(frozen=True)
class SessionRecord:
    id: str
    category_id: str
    category_name: str
    questions: tuple[QuestionSnapshot, ...]
    start_time: int
    current_question_index: int = 0
    answers: tuple[QuizAnswer, ...] = ()
    status: str = ACTIVE
    user_id: Optional[str] = None
    end_time: Optional[int] = None
    pause_time: Optional[int] = None
    total_paused_time: int = 0
    version: int = 0

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    @property
    def current_question(self) -> Optional[QuestionSnapshot]:
        if 0 <= self.current_question_index < len(self.questions):
            return self.questions[self.current_question_index]
        return None

    def question(self, question_id: str) -> QuestionSnapshot:
        for q in self.questions:
            if q.id == question_id:
                return q
        raise NotFoundError(f"Question '{question_id}' is not part of this quiz session.")

    def answer_for(self, question_id: str) -> Optional[QuizAnswer]:
        for a in self.answers:
            if a.question_id == question_id:
                return a
        return None


@dataclass(frozen=True)
class AnswerOutcome:
    is_correct: bool
    correct_answer_id: str
    is_complete: bool
    next_question: Optional[dict]

    def as_dict(self) -> dict:
        return {
            "isCorrect": self.is_correct,
            "correctAnswerId": self.correct_answer_id,
            "isComplete": self.is_complete,
            "nextQuestion": self.next_question,
        }


@dataclass(frozen=True)
class QuizResults:
    quiz_id: str
    category_name: str
    status: str
    score_percentage: int
    total_questions: int
    correct_count: int
    incorrect_count: int
    skipped_count: int
    total_time_seconds: int
    answers: list[dict] = field(default_factory=list)
    questions: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "quizId": self.quiz_id,
            "categoryName": self.category_name,
            "status": self.status,
            "scorePercentage": self.score_percentage,
            "totalQuestions": self.total_questions,
            "correctCount": self.correct_count,
            "incorrectCount": self.incorrect_count,
            "skippedCount": self.skipped_count,
            "totalTimeSeconds": self.total_time_seconds,
            "answers": self.answers,
            "questions": self.questions,
        }


# -------------------------
# Creation
# -------------------------

def shuffled(items: Sequence, rng: random.Random) -> list:
    out = list(items)
    rng.shuffle(out)
    return out


def build_session(
    *,
    session_id: str,
    category_id: str,
    category_name: str,
    questions: Sequence[QuestionSnapshot],
    now: int,
    rng: random.Random,
    question_count: Optional[int] = None,
    user_id: Optional[str] = None,
) -> SessionRecord:
    """Shuffle, sample and snapshot ``questions`` into a fresh active session.

    Truncation to ``question_count`` happens after the shuffle, so a partial
    quiz is a random sample rather than a prefix.
    """
    if not questions:
        raise NotFoundError("No questions found for the specified criteria.")

    picked = shuffled(questions, rng)
    if question_count and 0 < question_count < len(picked):
        picked = picked[:question_count]
    picked = [replace(q, options=tuple(shuffled(q.options, rng))) for q in picked]

    if category_id == RANDOM_CATEGORY_ID:
        category_name = f"{len(picked)} Random Questions"

    return SessionRecord(
        id=session_id,
        category_id=category_id,
        category_name=category_name,
        questions=tuple(picked),
        start_time=now,
        user_id=user_id,
    )


# -------------------------
# Transitions
# -------------------------

def check_access(session: SessionRecord, requester_id: Optional[str]) -> None:
    # sessions without an owner are reachable by anyone holding the id
    if session.user_id and session.user_id != requester_id:
        raise ForbiddenError("Forbidden: You do not have access to this quiz session.")


def elapsed_active_time(session: SessionRecord, now: int) -> int:
    """Non-paused milliseconds since the session started."""
    paused = session.total_paused_time
    if session.status == PAUSED and session.pause_time is not None:
        paused += max(0, now - session.pause_time)
    return max(0, now - session.start_time - paused)


def submit_answer(
    session: SessionRecord,
    question_id: str,
    selected_answer_id: str,
    now: int,
    requester_id: Optional[str] = None,
) -> tuple[SessionRecord, AnswerOutcome]:
    check_access(session, requester_id)
    if session.status != ACTIVE:
        raise StateError(f"Quiz is not active. Current status: {session.status}")

    current = session.current_question
    if current is None or current.id != question_id:
        raise ValidationError(
            "The submitted answer is for the wrong question.",
            field_errors={"questionId": ["Does not match the current question."]},
        )
    if session.answer_for(question_id) is not None:
        raise StateError("This question has already been answered.")

    is_correct = selected_answer_id == current.correct_answer_id
    already_spent = sum(a.time_taken for a in session.answers)
    time_taken = max(0, elapsed_active_time(session, now) - already_spent)

    answer = QuizAnswer(
        question_id=question_id,
        selected_answer_id=selected_answer_id,
        is_correct=is_correct,
        time_taken=time_taken,
        skipped=False,
    )
    next_index = session.current_question_index + 1
    is_complete = next_index >= session.total_questions

    updated = replace(
        session,
        answers=session.answers + (answer,),
        current_question_index=next_index,
        status=COMPLETED if is_complete else ACTIVE,
        end_time=now if is_complete else None,
    )
    next_question = None if is_complete else updated.questions[next_index].public_view()
    return updated, AnswerOutcome(
        is_correct=is_correct,
        correct_answer_id=current.correct_answer_id,
        is_complete=is_complete,
        next_question=next_question,
    )


def pause(session: SessionRecord, now: int, requester_id: Optional[str] = None) -> SessionRecord:
    check_access(session, requester_id)
    if session.status != ACTIVE:
        raise StateError(f"Cannot pause a quiz that is not active. Current status: {session.status}")
    return replace(session, status=PAUSED, pause_time=now)


def resume(session: SessionRecord, now: int, requester_id: Optional[str] = None) -> SessionRecord:
    check_access(session, requester_id)
    if session.status != PAUSED:
        raise StateError(f"Cannot resume a quiz that is not paused. Current status: {session.status}")
    paused_for = max(0, now - session.pause_time) if session.pause_time is not None else 0
    return replace(
        session,
        status=ACTIVE,
        pause_time=None,
        total_paused_time=session.total_paused_time + paused_for,
    )


# -------------------------
# Projections
# -------------------------

def status_view(session: SessionRecord, requester_id: Optional[str] = None) -> dict:
    check_access(session, requester_id)
    current = session.current_question
    return {
        "quizId": session.id,
        "status": session.status,
        "categoryName": session.category_name,
        "totalQuestions": session.total_questions,
        "currentQuestionIndex": session.current_question_index,
        "currentQuestion": current.public_view() if session.status == ACTIVE and current else None,
        "isCompleted": session.status == COMPLETED,
    }


def results(session: SessionRecord, requester_id: Optional[str] = None) -> QuizResults:
    check_access(session, requester_id)
    if session.status != COMPLETED:
        raise StateError(f"Quiz is not completed. Current status: {session.status}")

    total = session.total_questions
    correct = sum(1 for a in session.answers if a.is_correct)
    incorrect = sum(1 for a in session.answers if not a.skipped and not a.is_correct)
    skipped = total - correct - incorrect
    score = _round_half_up(100 * correct / total) if total else 0
    total_seconds = _round_half_up((session.end_time - session.start_time) / 1000) if session.end_time else 0

    return QuizResults(
        quiz_id=session.id,
        category_name=session.category_name,
        status=session.status,
        score_percentage=score,
        total_questions=total,
        correct_count=correct,
        incorrect_count=incorrect,
        skipped_count=skipped,
        total_time_seconds=total_seconds,
        answers=[a.to_dict() for a in session.answers],
        questions=[
            {"id": q.id, "text": q.text, "correctAnswerId": q.correct_answer_id}
            for q in session.questions
        ],
    )


def reviewable_question(session: SessionRecord, question_id: str, requester_id: Optional[str] = None):
    """Question snapshot and the user's answer for the results-review flow."""
    check_access(session, requester_id)
    if session.status != COMPLETED:
        raise StateError(f"Quiz is not completed. Current status: {session.status}")
    return session.question(question_id), session.answer_for(question_id)
