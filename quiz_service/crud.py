import json
import logging
import uuid
from dataclasses import replace
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shared.errors import ConcurrentUpdateError, NotFoundError, QuizCraftError, ValidationError
from . import srs
from .authoring import (
    BatchReport,
    OptionDraft,
    QuestionDraft,
    QuestionPatch,
    merge_question,
    validate_question,
)
from .category_tree import get_descendant_category_ids
from .models import AnswerOption, Category, CategoryAnalytics, Question, QuestionPerformance, QuizSession
from .quiz_logic import QuestionSnapshot, QuizAnswer, SessionRecord

logger = logging.getLogger("quiz-service")


# -------------------------
# Categories
# -------------------------

def get_all_categories(db: Session) -> list[Category]:
    return db.query(Category).all()


def get_category(db: Session, category_id: str) -> Optional[Category]:
    return db.query(Category).filter(Category.id == category_id).first()


def require_category(db: Session, category_id: str) -> Category:
    c = get_category(db, category_id)
    if not c:
        raise NotFoundError("Category not found.")
    return c


def create_category(db: Session, name: str, parent_id: Optional[str] = None) -> Category:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Category name is required.", field_errors={"name": ["Category name is required."]})
    if parent_id and not get_category(db, parent_id):
        raise NotFoundError(f"Parent category '{parent_id}' not found.")

    c = Category(id=str(uuid.uuid4()), name=name, parent_id=parent_id or None)
    db.add(c)
    db.commit()
    db.refresh(c)
    return c


def update_category_name(db: Session, category_id: str, name: str) -> Category:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Category name is required.", field_errors={"name": ["Category name is required."]})
    c = require_category(db, category_id)
    c.name = name
    db.commit()
    db.refresh(c)
    return c


def delete_category(db: Session, category_id: str) -> dict:
    """Delete a category, its descendants and every question they own, as one transaction."""
    require_category(db, category_id)
    doomed = [category_id] + get_descendant_category_ids(category_id, get_all_categories(db))

    try:
        question_ids = [
            qid for (qid,) in db.query(Question.id).filter(Question.category_id.in_(doomed)).all()
        ]
        if question_ids:
            db.query(AnswerOption).filter(AnswerOption.question_id.in_(question_ids)).delete(synchronize_session=False)
            db.query(Question).filter(Question.id.in_(question_ids)).delete(synchronize_session=False)
        # children first so no parent pointer dangles mid-statement
        for cid in reversed(doomed):
            db.query(Category).filter(Category.id == cid).delete(synchronize_session=False)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Deleted category %s: %d categories, %d questions", category_id, len(doomed), len(question_ids)
    )
    return {"categories": len(doomed), "questions": len(question_ids)}


# -------------------------
# Questions
# -------------------------

def to_draft(q: Question) -> QuestionDraft:
    return QuestionDraft(
        id=q.id,
        text=q.text,
        options=tuple(OptionDraft(id=o.id, text=o.text) for o in q.options),
        correct_answer_id=q.correct_answer_id,
        category_id=q.category_id,
        explanation=q.explanation,
        source=q.source,
    )


def _option_rows(question_id: str, options) -> list[AnswerOption]:
    return [
        AnswerOption(id=o.id, question_id=question_id, text=o.text, position=i)
        for i, o in enumerate(options)
    ]


def add_question(db: Session, draft: QuestionDraft) -> Question:
    validate_question(draft)
    require_category(db, draft.category_id)

    q = Question(
        id=draft.id,
        text=draft.text,
        category_id=draft.category_id,
        correct_answer_id=draft.correct_answer_id,
        explanation=draft.explanation,
        source=draft.source,
    )
    q.options = _option_rows(q.id, draft.options)
    db.add(q)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(q)
    return q


def get_question(db: Session, question_id: str) -> Optional[Question]:
    return db.query(Question).filter(Question.id == question_id).first()


def require_question(db: Session, question_id: str) -> Question:
    q = get_question(db, question_id)
    if not q:
        raise NotFoundError("Question not found.")
    return q


def list_questions_in(db: Session, category_ids: list[str]) -> list[Question]:
    if not category_ids:
        return []
    return (
        db.query(Question)
        .filter(Question.category_id.in_(category_ids))
        .order_by(Question.category_id.asc(), Question.id.asc())
        .all()
    )


def get_questions_by_category_and_descendants(db: Session, category_id: str, categories=None) -> list[Question]:
    if categories is None:
        categories = get_all_categories(db)
    ids = [category_id] + get_descendant_category_ids(category_id, categories)
    return list_questions_in(db, ids)


def get_questions_by_category(db: Session, category_id: str) -> list[Question]:
    return list_questions_in(db, [category_id])


def update_question(db: Session, question_id: str, patch: QuestionPatch) -> Question:
    q = require_question(db, question_id)
    merged = merge_question(to_draft(q), patch)
    if merged.category_id != q.category_id:
        require_category(db, merged.category_id)

    try:
        q.text = merged.text
        q.category_id = merged.category_id
        q.correct_answer_id = merged.correct_answer_id
        q.explanation = merged.explanation
        q.source = merged.source
        if merged.options != to_draft(q).options:
            # drop the old rows before inserting so reused option ids don't collide
            q.options.clear()
            db.flush()
            q.options = _option_rows(q.id, merged.options)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(q)
    return q


def import_questions(db: Session, category_id: str, entries, parse) -> BatchReport:
    """Add one question per entry; a bad entry is recorded and skipped, never fatal."""
    require_category(db, category_id)
    report = BatchReport()
    for entry in entries:
        try:
            add_question(db, parse(entry, category_id))
            report.added += 1
        except QuizCraftError as e:
            report.record_failure(e.message)
        except SQLAlchemyError as e:
            report.record_failure(f"Failed to add question from entry: {str(entry)[:50]}... Error: {type(e).__name__}")
    logger.info(
        "Batch import into %s: %d added, %d failed", category_id, report.added, report.failed
    )
    return report


def delete_question(db: Session, question_id: str) -> None:
    q = require_question(db, question_id)
    db.delete(q)
    db.commit()


# -------------------------
# Quiz sessions
# -------------------------

def _to_record(row: QuizSession) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        category_id=row.category_id,
        category_name=row.category_name,
        questions=tuple(QuestionSnapshot.from_dict(d) for d in json.loads(row.questions_json or "[]")),
        answers=tuple(QuizAnswer.from_dict(d) for d in json.loads(row.answers_json or "[]")),
        current_question_index=row.current_question_index,
        status=row.status,
        user_id=row.user_id,
        start_time=row.start_time,
        end_time=row.end_time,
        pause_time=row.pause_time,
        total_paused_time=row.total_paused_time,
        version=row.version,
    )


def create_session(db: Session, record: SessionRecord) -> SessionRecord:
    row = QuizSession(
        id=record.id,
        category_id=record.category_id,
        category_name=record.category_name,
        questions_json=json.dumps([q.to_dict() for q in record.questions]),
        answers_json=json.dumps([a.to_dict() for a in record.answers]),
        current_question_index=record.current_question_index,
        status=record.status,
        user_id=record.user_id,
        start_time=record.start_time,
        end_time=record.end_time,
        pause_time=record.pause_time,
        total_paused_time=record.total_paused_time,
        version=record.version,
    )
    db.add(row)
    db.commit()
    return record


def get_session(db: Session, session_id: str) -> SessionRecord:
    row = db.query(QuizSession).filter(QuizSession.id == session_id).first()
    if not row:
        raise NotFoundError("Quiz session not found.")
    return _to_record(row)


def save_session(db: Session, record: SessionRecord) -> SessionRecord:
    """Write ``record`` back only if nobody else has since the caller read version ``record.version``.

    The question snapshot is immutable and never rewritten.
    """
    updated = (
        db.query(QuizSession)
        .filter(QuizSession.id == record.id, QuizSession.version == record.version)
        .update(
            {
                QuizSession.answers_json: json.dumps([a.to_dict() for a in record.answers]),
                QuizSession.current_question_index: record.current_question_index,
                QuizSession.status: record.status,
                QuizSession.end_time: record.end_time,
                QuizSession.pause_time: record.pause_time,
                QuizSession.total_paused_time: record.total_paused_time,
                QuizSession.version: record.version + 1,
            },
            synchronize_session=False,
        )
    )
    if updated != 1:
        db.rollback()
        raise ConcurrentUpdateError("Quiz session was modified concurrently. Reload and retry.")
    db.commit()
    return replace(record, version=record.version + 1)


# -------------------------
# Spaced repetition and analytics
# -------------------------

def _to_performance(row: QuestionPerformance) -> srs.Performance:
    return srs.Performance(
        user_id=row.user_id,
        question_id=row.question_id,
        category_id=row.category_id,
        next_review=row.next_review,
        last_reviewed=row.last_reviewed,
        ease_factor=row.ease_factor,
        interval=row.interval_days,
        repetitions=row.repetitions,
        total_attempts=row.total_attempts,
        correct_attempts=row.correct_attempts,
        incorrect_attempts=row.incorrect_attempts,
        confidence_history=tuple(json.loads(row.confidence_history_json or "[]")),
    )


def _to_stats(row: CategoryAnalytics) -> srs.CategoryStats:
    return srs.CategoryStats(
        user_id=row.user_id,
        category_id=row.category_id,
        total_questions=row.total_questions,
        mastered_questions=row.mastered_questions,
        struggling_questions=row.struggling_questions,
        average_accuracy=row.average_accuracy,
        last_updated=row.last_updated,
    )


def get_performance(db: Session, user_id: str, question_id: str) -> Optional[srs.Performance]:
    row = (
        db.query(QuestionPerformance)
        .filter(QuestionPerformance.user_id == user_id, QuestionPerformance.question_id == question_id)
        .first()
    )
    return _to_performance(row) if row else None


def list_performances(db: Session, user_id: str, category_id: Optional[str] = None) -> list[srs.Performance]:
    query = db.query(QuestionPerformance).filter(QuestionPerformance.user_id == user_id)
    if category_id is not None:
        query = query.filter(QuestionPerformance.category_id == category_id)
    return [_to_performance(row) for row in query.order_by(QuestionPerformance.question_id.asc()).all()]


def _refresh_category_stats(db: Session, user_id: str, category_id: str, now: int) -> srs.CategoryStats:
    performances = list_performances(db, user_id, category_id)
    total = db.query(Question).filter(Question.category_id == category_id).count()
    stats = srs.build_category_stats(user_id, category_id, performances, total, now)

    row = (
        db.query(CategoryAnalytics)
        .filter(CategoryAnalytics.user_id == user_id, CategoryAnalytics.category_id == category_id)
        .first()
    )
    if row is None:
        row = CategoryAnalytics(user_id=user_id, category_id=category_id)
        db.add(row)
    row.total_questions = stats.total_questions
    row.mastered_questions = stats.mastered_questions
    row.struggling_questions = stats.struggling_questions
    row.average_accuracy = stats.average_accuracy
    row.last_updated = stats.last_updated
    return stats


def record_answer(
    db: Session,
    user_id: str,
    question_id: str,
    category_id: str,
    is_correct: bool,
    now: int,
    confidence: int = srs.SURE,
) -> srs.Performance:
    """Reschedule one question for ``user_id`` and refresh that category's analytics, in one transaction."""
    row = (
        db.query(QuestionPerformance)
        .filter(QuestionPerformance.user_id == user_id, QuestionPerformance.question_id == question_id)
        .first()
    )
    current = _to_performance(row) if row else srs.new_performance(user_id, question_id, category_id, now)
    updated = srs.schedule(replace(current, category_id=category_id), is_correct, now, confidence)

    try:
        if row is None:
            row = QuestionPerformance(id=str(uuid.uuid4()), user_id=user_id, question_id=question_id)
            db.add(row)
        row.category_id = updated.category_id
        row.ease_factor = updated.ease_factor
        row.interval_days = updated.interval
        row.repetitions = updated.repetitions
        row.total_attempts = updated.total_attempts
        row.correct_attempts = updated.correct_attempts
        row.incorrect_attempts = updated.incorrect_attempts
        row.confidence_history_json = json.dumps(list(updated.confidence_history))
        row.next_review = updated.next_review
        row.last_reviewed = updated.last_reviewed
        db.flush()
        _refresh_category_stats(db, user_id, category_id, now)
        if current.category_id != category_id:
            # the question moved since it was last answered
            _refresh_category_stats(db, user_id, current.category_id, now)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return updated


def list_category_stats(db: Session, user_id: str) -> list[srs.CategoryStats]:
    rows = (
        db.query(CategoryAnalytics)
        .filter(CategoryAnalytics.user_id == user_id)
        .order_by(CategoryAnalytics.category_id.asc())
        .all()
    )
    return [_to_stats(row) for row in rows]


def get_questions_by_ids(db: Session, question_ids: list[str]) -> dict[str, Question]:
    if not question_ids:
        return {}
    return {q.id: q for q in db.query(Question).filter(Question.id.in_(question_ids)).all()}
