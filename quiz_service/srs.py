"""Spaced repetition scheduling and learning analytics.

Scheduling is SM-2: every question a user answers carries an ease factor,
an interval in days and a count of consecutive correct answers. The user's
confidence in an answer (1 = guess .. 4 = knew it) and its correctness map
to an SM-2 quality score between 0 and 5. Failed questions come back on a
short escalating schedule (a minute, an hour, then a day) instead of the
day-granular SM-2 intervals.

Like ``quiz_logic``, everything here is a pure function over frozen records
with times in epoch milliseconds; persistence is the caller's job.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Mapping, Optional, Sequence

DEFAULT_EASE_FACTOR = 2.5
MIN_EASE_FACTOR = 1.3
MASTERY_THRESHOLD = 3
CONFIDENCE_HISTORY_SIZE = 5

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS
SHORT_INTERVALS_MS = (MINUTE_MS, HOUR_MS, DAY_MS)

GUESS = 1
UNSURE = 2
SURE = 3
KNEW_IT = 4

REVIEW_CATEGORY_ID = "__SRS_REVIEW__"
WEAK_SPOTS_CATEGORY_ID = "__WEAK_SPOTS__"
UNKNOWN_CATEGORY = "Unknown Category"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _round_tenth(value: float) -> float:
    return _round_half_up(value * 10) / 10


@dataclass(frozen=True)
class Performance:
    user_id: str
    question_id: str
    category_id: str
    next_review: int
    last_reviewed: int
    ease_factor: float = DEFAULT_EASE_FACTOR
    interval: float = 0.0  # days
    repetitions: int = 0
    total_attempts: int = 0
    correct_attempts: int = 0
    incorrect_attempts: int = 0
    confidence_history: tuple[int, ...] = ()

    @property
    def accuracy(self) -> float:
        if self.total_attempts == 0:
            return 0.0
        return self.correct_attempts / self.total_attempts * 100

    @property
    def is_mastered(self) -> bool:
        return self.repetitions >= MASTERY_THRESHOLD

    @property
    def is_weak_spot(self) -> bool:
        return self.total_attempts >= 2 and self.accuracy < 50

    def is_due(self, now: int) -> bool:
        return self.next_review <= now

    def to_dict(self) -> dict:
        return {
            "questionId": self.question_id,
            "categoryId": self.category_id,
            "easeFactor": self.ease_factor,
            "interval": self.interval,
            "repetitions": self.repetitions,
            "nextReview": self.next_review,
            "lastReviewed": self.last_reviewed,
            "totalAttempts": self.total_attempts,
            "correctAttempts": self.correct_attempts,
            "incorrectAttempts": self.incorrect_attempts,
            "confidenceHistory": list(self.confidence_history),
            "accuracy": _round_tenth(self.accuracy),
            "mastered": self.is_mastered,
        }


@dataclass(frozen=True)
class CategoryStats:
    user_id: str
    category_id: str
    total_questions: int
    mastered_questions: int
    struggling_questions: int
    average_accuracy: float
    last_updated: int

    @property
    def mastery_percentage(self) -> int:
        return category_mastery(self.mastered_questions, self.total_questions)

    def as_dict(self, category_name: Optional[str] = None) -> dict:
        out = {
            "categoryId": self.category_id,
            "totalQuestions": self.total_questions,
            "masteredQuestions": self.mastered_questions,
            "strugglingQuestions": self.struggling_questions,
            "averageAccuracy": self.average_accuracy,
            "masteryPercentage": self.mastery_percentage,
            "lastUpdated": self.last_updated,
        }
        if category_name is not None:
            out["categoryName"] = category_name
        return out


@dataclass(frozen=True)
class WeakSpot:
    question_id: str
    question_text: str
    category_id: str
    category_name: str
    accuracy: float
    attempts: int
    last_attempted: int

    def as_dict(self) -> dict:
        return {
            "questionId": self.question_id,
            "questionText": self.question_text,
            "categoryId": self.category_id,
            "categoryName": self.category_name,
            "accuracy": _round_tenth(self.accuracy),
            "attempts": self.attempts,
            "lastAttempted": self.last_attempted,
        }


# -------------------------
# Scheduling
# -------------------------

def new_performance(user_id: str, question_id: str, category_id: str, now: int) -> Performance:
    """A never-answered question, due immediately."""
    return Performance(
        user_id=user_id,
        question_id=question_id,
        category_id=category_id,
        next_review=now,
        last_reviewed=now,
    )


def confidence_to_quality(is_correct: bool, confidence: int) -> int:
    """SM-2 quality (0-5). Being confidently wrong scores lowest."""
    if not is_correct:
        return {KNEW_IT: 0, SURE: 0, UNSURE: 1, GUESS: 2}.get(confidence, 1)
    return {KNEW_IT: 5, SURE: 4, UNSURE: 3, GUESS: 3}.get(confidence, 4)


def short_term_interval(fail_count: int) -> int:
    return SHORT_INTERVALS_MS[min(max(fail_count, 0), len(SHORT_INTERVALS_MS) - 1)]


def schedule(perf: Performance, is_correct: bool, now: int, confidence: int = SURE) -> Performance:
    """Apply one answer to ``perf`` and work out when the question is next due."""
    quality = confidence_to_quality(is_correct, confidence)
    history = (perf.confidence_history + (confidence,))[-CONFIDENCE_HISTORY_SIZE:]
    incorrect = perf.incorrect_attempts + (0 if is_correct else 1)

    if quality < 3:
        # escalate only while the question has never been answered right since the last reset
        fail_streak = min(incorrect - 1, 2) if perf.repetitions == 0 else 0
        interval_ms = short_term_interval(fail_streak)
        repetitions = 0
        ease_factor = perf.ease_factor
        interval = interval_ms / DAY_MS
    else:
        repetitions = perf.repetitions + 1
        lapse = 5 - quality
        ease_factor = max(MIN_EASE_FACTOR, perf.ease_factor + (0.1 - lapse * (0.08 + lapse * 0.02)))
        if repetitions == 1:
            interval = 1
        elif repetitions == 2:
            interval = 6
        else:
            interval = _round_half_up(perf.interval * ease_factor)
        interval_ms = int(interval * DAY_MS)

    return replace(
        perf,
        ease_factor=ease_factor,
        interval=interval,
        repetitions=repetitions,
        next_review=now + interval_ms,
        last_reviewed=now,
        total_attempts=perf.total_attempts + 1,
        correct_attempts=perf.correct_attempts + (1 if is_correct else 0),
        incorrect_attempts=incorrect,
        confidence_history=history,
    )


def due_queue(performances: Sequence[Performance], now: int, limit: Optional[int] = None) -> list[Performance]:
    """Due performances, longest overdue first."""
    due = sorted((p for p in performances if p.is_due(now)), key=lambda p: (p.next_review, p.question_id))
    return due[:limit] if limit else due


# -------------------------
# Analytics
# -------------------------

def category_mastery(mastered: int, total_questions: int) -> int:
    if total_questions <= 0:
        return 0
    return _round_half_up(mastered / total_questions * 100)


def build_category_stats(
    user_id: str,
    category_id: str,
    performances: Sequence[Performance],
    total_questions: int,
    now: int,
) -> CategoryStats:
    attempted = [p for p in performances if p.total_attempts > 0]
    average = sum(p.accuracy for p in attempted) / len(attempted) if attempted else 0.0
    return CategoryStats(
        user_id=user_id,
        category_id=category_id,
        total_questions=total_questions,
        mastered_questions=sum(1 for p in performances if p.is_mastered),
        struggling_questions=sum(1 for p in performances if p.is_weak_spot),
        average_accuracy=_round_tenth(average),
        last_updated=now,
    )


def overall_stats(stats: Sequence[CategoryStats]) -> dict:
    """Totals across categories; accuracy is weighted by each category's question count."""
    total = sum(s.total_questions for s in stats)
    mastered = sum(s.mastered_questions for s in stats)
    struggling = sum(s.struggling_questions for s in stats)
    accuracy_sum = sum(s.average_accuracy * s.total_questions for s in stats)
    return {
        "totalQuestions": total,
        "totalMastered": mastered,
        "totalStruggling": struggling,
        "overallAccuracy": _round_tenth(accuracy_sum / total) if total else 0.0,
        "masteryPercentage": category_mastery(mastered, total),
    }


def identify_weak_spots(
    performances: Sequence[Performance],
    questions: Mapping[str, object],
    category_names: Mapping[str, str],
    limit: int = 5,
) -> list[WeakSpot]:
    """Struggling questions, lowest accuracy first.

    ``questions`` maps question id to anything with a ``text`` attribute;
    performances whose question no longer exists are dropped.
    """
    spots = []
    for p in performances:
        if not p.is_weak_spot or p.question_id not in questions:
            continue
        spots.append(WeakSpot(
            question_id=p.question_id,
            question_text=questions[p.question_id].text,
            category_id=p.category_id,
            category_name=category_names.get(p.category_id, UNKNOWN_CATEGORY),
            accuracy=p.accuracy,
            attempts=p.total_attempts,
            last_attempted=p.last_reviewed,
        ))
    spots.sort(key=lambda s: s.accuracy)
    return spots[:limit] if limit > 0 else []
